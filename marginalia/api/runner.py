"""Assistant runner -- streams one chat turn via the direct Anthropic API.

Drives the bounded tool-use loop with direct httpx streaming calls to
the Messages API (no SDK). Local tools (highlights, citations) are
answered in-process; everything else goes to the user's external tool
gateway. Yields TurnEvents that the REST layer frames as SSE.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID, uuid4

import httpx

from marginalia.api.mcp import ToolGateway, UserToolPool
from marginalia.api.prompts import build_system_prompt, max_tokens_for
from marginalia.api.tools import LOCAL_TOOLS, LocalTool, acknowledgement, build_highlight, build_source, classify_tool
from marginalia.config import Settings
from marginalia.errors import UpstreamError
from marginalia.schemas import ConversationMessage, Highlight, Source, ToolCallResult
from marginalia.storage.projects import ProjectStore
from marginalia.usage import UsageGate

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

STREAM_FAILED = "Stream failed"


@dataclass
class StreamEvent:
    """A single event from the streaming API response."""

    type: str  # text_delta, tool_start, tool_input_delta, block_stop, done, error, message_stop
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    tool_input: dict = field(default_factory=dict)
    stop_reason: str = ""
    block_index: int = 0


@dataclass
class TurnEvent:
    """One event on the client-facing stream."""

    event: str  # text, highlight, source, tool_status, done, error
    data: dict[str, Any]


def _parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse Anthropic SSE event dict into StreamEvent.

    Pings are skipped. stop_reason arrives in message_delta.delta.
    In-stream error events (HTTP 200 with an error body) become type=error.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return StreamEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        return StreamEvent(type="text_block_start", block_index=block_index)

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return StreamEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta.get("type") == "input_json_delta":
            return StreamEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason") or "",
        )

    if event_type == "message_stop":
        return StreamEvent(type="message_stop")

    return None


@dataclass
class _ToolCall:
    id: str
    name: str
    input: dict[str, Any]
    local: LocalTool | None = None


class AssistantRunner:
    """Runs assistant chat turns for one project at a time.

    Collaborators: ProjectStore for history and highlights, UsageGate
    for the ledger entry on success, ToolGateway for external tools.
    """

    def __init__(
        self,
        settings: Settings,
        projects: ProjectStore,
        usage: UsageGate,
        gateway: ToolGateway,
    ) -> None:
        self._settings = settings
        self._projects = projects
        self._usage = usage
        self._gateway = gateway
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""

        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
        elif api_key:
            headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=20,
            max_keepalive_connections=10,
        )

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("httpx client initialized (auth: %s)", "Bearer token" if auth_token else "API key")

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Model API
    # ------------------------------------------------------------------

    def _build_api_payload(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        max_tokens: int,
    ) -> dict[str, Any]:
        return {
            "model": self._settings.model,
            "max_tokens": max_tokens,
            "temperature": self._settings.temperature,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": messages,
            "tools": tools,
            "stream": True,
        }

    async def _call_api_stream(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        max_tokens: int,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Call the Messages API with streaming enabled.

        Yields an error event on HTTP errors or in-stream errors.
        Only data: lines are processed.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_api_payload(system_prompt, messages, tools, max_tokens)

        async with self._http.stream("POST", "/v1/messages", json=payload) as response:
            if response.status_code != 200:
                error_body = await response.aread()
                yield StreamEvent(type="error", text=error_body.decode(errors="replace")[:500])
                return

            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                event = _parse_sse_event(json.loads(line[6:]))
                if event:
                    yield event
                    if event.type == "error":
                        return

    # ------------------------------------------------------------------
    # Streaming chat
    # ------------------------------------------------------------------

    async def stream_chat(
        self,
        user_id: str,
        project_id: UUID,
        message: str,
        pages: dict[str, str],
        active_tab: str,
        tool_access: bool,
    ) -> AsyncGenerator[TurnEvent, None]:
        """Run one assistant turn, yielding client events as they happen.

        The user's message is persisted before the model is called. On a
        natural stop the assistant message, its highlights and one usage
        entry are persisted, then `done` is emitted. Any failure emits a
        single `error` event and records nothing further. Cancellation
        propagates without persisting the assistant message.
        """
        full_text: list[str] = []
        highlights: list[Highlight] = []
        sources: list[Source] = []
        leases = AsyncExitStack()

        try:
            history = await self._projects.load_conversation(project_id)
            user_message = ConversationMessage(role="user", content=message)
            await self._projects.append_messages(project_id, [user_message])

            context = history[-self._settings.history_window:] + [user_message]
            messages = self._format_messages(context)

            project = await self._projects.get_owned_project(project_id, user_id)
            prior_ids = list(project.prior_essays or []) if project else []
            prior_samples = await self._projects.load_prior_samples(prior_ids)

            pool: UserToolPool | None = None
            tools = list(LOCAL_TOOLS)
            if tool_access:
                pool = await leases.enter_async_context(self._gateway.lease(user_id))
                tools.extend(pool.get_tools())

            system_prompt = build_system_prompt(pages, active_tab, tool_access, prior_samples)
            max_tokens = max_tokens_for(pages, self._settings)

            rounds = 0
            while True:
                round_text: list[str] = []
                tool_calls: list[_ToolCall] = []
                block_accumulators: dict[int, dict[str, Any]] = {}
                stop_reason = ""

                async for event in self._call_api_stream(system_prompt, messages, tools, max_tokens):
                    if event.type == "error":
                        raise UpstreamError(event.text)

                    elif event.type == "text_delta":
                        if event.text:
                            full_text.append(event.text)
                            round_text.append(event.text)
                            yield TurnEvent("text", {"chunk": event.text})

                    elif event.type == "tool_start":
                        block_accumulators[event.block_index] = {
                            "id": event.tool_id,
                            "name": event.tool_name,
                            "input_parts": [],
                        }

                    elif event.type == "tool_input_delta":
                        acc = block_accumulators.get(event.block_index)
                        if acc:
                            acc["input_parts"].append(event.text)

                    elif event.type == "block_stop":
                        acc = block_accumulators.pop(event.block_index, None)
                        if acc is None:
                            continue
                        call = self._finish_tool_block(acc)
                        tool_calls.append(call)
                        for turn_event in self._on_tool_block(call, pool, highlights, sources):
                            yield turn_event

                    elif event.type == "done":
                        stop_reason = event.stop_reason

                if stop_reason != "tool_use" or not tool_calls:
                    break

                rounds += 1
                if rounds >= self._settings.max_tool_rounds:
                    logger.warning(
                        "Max tool rounds (%d) reached for project %s -- stopping loop",
                        rounds, project_id,
                    )
                    break

                results: dict[str, ToolCallResult] = {}
                async for turn_event in self._run_gateway_calls(tool_calls, pool, results):
                    yield turn_event

                messages.append({"role": "assistant", "content": self._assistant_blocks(round_text, tool_calls)})
                messages.append({"role": "user", "content": self._tool_results(tool_calls, results)})

            message_id = str(uuid4())
            assistant_message = ConversationMessage(
                role="assistant",
                content="".join(full_text),
                highlights=highlights or None,
                sources=sources or None,
            )
            await self._projects.append_messages(project_id, [assistant_message])
            if highlights:
                await self._projects.append_highlights(project_id, user_id, highlights)
            await self._usage.record(user_id, project_id)

        except Exception as e:
            logger.error("Assistant chat stream failed for project %s: %s", project_id, e)
            yield TurnEvent("error", {"error": STREAM_FAILED})
            return
        finally:
            await leases.aclose()

        yield TurnEvent("done", {"messageId": message_id})

    # ------------------------------------------------------------------
    # Tool dispatch
    # ------------------------------------------------------------------

    def _finish_tool_block(self, acc: dict[str, Any]) -> _ToolCall:
        input_json = "".join(acc["input_parts"])
        try:
            tool_input = json.loads(input_json) if input_json else {}
        except json.JSONDecodeError:
            logger.warning("Failed to parse %s tool input", acc["name"])
            tool_input = {}
        if not isinstance(tool_input, dict):
            tool_input = {}
        return _ToolCall(
            id=acc["id"],
            name=acc["name"],
            input=tool_input,
            local=classify_tool(acc["name"]),
        )

    def _on_tool_block(
        self,
        call: _ToolCall,
        pool: UserToolPool | None,
        highlights: list[Highlight],
        sources: list[Source],
    ) -> list[TurnEvent]:
        """Events to emit as soon as a tool_use block finishes parsing."""
        if call.local is LocalTool.ADD_HIGHLIGHT:
            highlight = build_highlight(call.input)
            if highlight is None:
                return []
            highlights.append(highlight)
            return [TurnEvent("highlight", highlight.to_event())]

        if call.local is LocalTool.CITE_SOURCE:
            source = build_source(call.input)
            if source is None:
                return []
            sources.append(source)
            return [TurnEvent("source", source.model_dump())]

        if pool is not None and pool.is_mcp_tool(call.name):
            return [TurnEvent("tool_status", {
                "tool": call.name,
                "server": pool.server_name(call.name),
                "status": "running",
            })]
        return []

    async def _run_gateway_calls(
        self,
        tool_calls: list[_ToolCall],
        pool: UserToolPool | None,
        results: dict[str, ToolCallResult],
    ) -> AsyncGenerator[TurnEvent, None]:
        """Run this round's gateway calls concurrently, reporting each as it completes."""
        gateway_calls = [c for c in tool_calls if c.local is None]
        if not gateway_calls:
            return

        if pool is None:
            for call in gateway_calls:
                results[call.id] = ToolCallResult(content=f"Unknown tool: {call.name}", is_error=True)
            return

        async def run(call: _ToolCall) -> tuple[_ToolCall, ToolCallResult]:
            return call, await pool.call_tool(call.name, call.input)

        tasks = [asyncio.create_task(run(c)) for c in gateway_calls]
        try:
            for next_done in asyncio.as_completed(tasks):
                call, result = await next_done
                results[call.id] = result
                if pool.is_mcp_tool(call.name):
                    yield TurnEvent("tool_status", {
                        "tool": call.name,
                        "server": pool.server_name(call.name),
                        "status": "error" if result.is_error else "done",
                    })
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    @staticmethod
    def _assistant_blocks(round_text: list[str], tool_calls: list[_ToolCall]) -> list[dict[str, Any]]:
        blocks: list[dict[str, Any]] = []
        text = "".join(round_text)
        if text:
            blocks.append({"type": "text", "text": text})
        for call in tool_calls:
            blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.input})
        return blocks

    @staticmethod
    def _tool_results(tool_calls: list[_ToolCall], results: dict[str, ToolCallResult]) -> list[dict[str, Any]]:
        """All results for a round go back in one user message, in call order."""
        blocks = []
        for call in tool_calls:
            if call.local is not None:
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": call.id,
                    "content": acknowledgement(call.local, call.input),
                })
                continue
            result = results.get(call.id) or ToolCallResult(content="Tool did not run", is_error=True)
            blocks.append({
                "type": "tool_result",
                "tool_use_id": call.id,
                "content": result.content,
                "is_error": result.is_error,
            })
        return blocks

    def _format_messages(self, messages: list[ConversationMessage]) -> list[dict[str, Any]]:
        """Format history for API calls as {"role", "content"} dicts.

        Empty messages are dropped and the list starts with a user turn.
        """
        formatted = [{"role": m.role, "content": m.content} for m in messages if m.content]
        while formatted and formatted[0]["role"] != "user":
            formatted.pop(0)
        return formatted
