"""REST API for the writing assistant.

Endpoints:
  POST   /api/assistant/chat                     - Stream an assistant turn (SSE)
  GET    /api/assistant/conversations/{project}  - Stored conversation for a project
  GET    /api/usage/current                      - Current usage decision (read-only)
  GET    /api/mcp/servers                        - List tool servers
  POST   /api/mcp/servers                        - Add a tool server
  PATCH  /api/mcp/servers/{id}                   - Update a tool server
  DELETE /api/mcp/servers/{id}                   - Remove a tool server
  POST   /api/mcp/servers/{id}/test              - Test a tool server connection
  GET    /health                                 - Health check (DB connectivity)

Every /api route needs a bearer token. Tool server routes additionally
need tool access (active pro plan or admin allowlist).
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from marginalia.api.auth import JWTVerifier
from marginalia.api.mcp import ToolGateway
from marginalia.api.models import ChatRequest, field_errors
from marginalia.api.runner import AssistantRunner
from marginalia.api.sse import encode_event
from marginalia.config import Settings
from marginalia.errors import Forbidden, LimitExceeded, MarginaliaError, NotFound, ValidationFailed
from marginalia.storage.database import Database
from marginalia.storage.projects import ProjectStore
from marginalia.storage.servers import ToolServerStore, validate_server_config, validate_server_update
from marginalia.usage import UsageGate

logger = logging.getLogger(__name__)


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationFailed([{"field": "body", "message": "Invalid JSON body"}]) from None
    if not isinstance(body, dict):
        raise ValidationFailed([{"field": "body", "message": "Body must be an object"}])
    return body


def _uuid_param(request: Request, name: str, not_found: str) -> UUID:
    try:
        return UUID(request.path_params[name])
    except ValueError:
        raise NotFound(not_found) from None


async def _handle_error(request: Request, exc: MarginaliaError) -> JSONResponse:
    return JSONResponse(exc.to_body(), status_code=exc.status_code)


def create_app(
    runner: AssistantRunner,
    projects: ProjectStore,
    servers: ToolServerStore,
    usage: UsageGate,
    gateway: ToolGateway,
    verifier: JWTVerifier,
    database: Database,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def require_tool_access(user_id: str) -> None:
        if not await usage.has_tool_access(user_id):
            raise Forbidden("MCP server configuration requires a Pro subscription")

    # ------------------------------------------------------------------
    # Assistant
    # ------------------------------------------------------------------

    async def chat(request: Request) -> StreamingResponse:
        """POST /api/assistant/chat - SSE streaming assistant turn."""
        user_id = verifier.authenticate(request)
        body = await _json_body(request)
        try:
            chat_request = ChatRequest.model_validate(body)
        except ValidationError as e:
            raise ValidationFailed(field_errors(e), message="Invalid request") from None

        try:
            decision = await usage.evaluate(user_id)
        except LimitExceeded:
            raise
        except Exception as e:
            logger.error("Usage gate check failed for user %s: %s", user_id, e)
            return JSONResponse(
                {"error": "Unable to verify usage limits. Please try again."}, status_code=503
            )

        project = await projects.get_owned_project(chat_request.project_id, user_id)
        if project is None:
            raise NotFound("Project not found")

        async def event_generator():
            async for event in runner.stream_chat(
                user_id,
                chat_request.project_id,
                chat_request.message,
                chat_request.pages,
                chat_request.active_tab,
                tool_access=decision.has_tool_access,
            ):
                yield encode_event(event.event, event.data)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def get_conversation(request: Request) -> JSONResponse:
        """GET /api/assistant/conversations/{project_id}"""
        user_id = verifier.authenticate(request)
        project_id = _uuid_param(request, "project_id", "Project not found")
        if await projects.get_owned_project(project_id, user_id) is None:
            raise NotFound("Project not found")
        messages = await projects.load_conversation(project_id)
        return JSONResponse({"messages": [m.to_storage() for m in messages]})

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def current_usage(request: Request) -> JSONResponse:
        """GET /api/usage/current"""
        user_id = verifier.authenticate(request)
        decision = await usage.current(user_id)
        return JSONResponse(decision.to_wire())

    # ------------------------------------------------------------------
    # Tool servers
    # ------------------------------------------------------------------

    async def list_servers(request: Request) -> JSONResponse:
        """GET /api/mcp/servers"""
        user_id = verifier.authenticate(request)
        await require_tool_access(user_id)
        configs = await servers.list_servers(user_id)
        return JSONResponse({"servers": [c.to_wire() for c in configs]})

    async def create_server(request: Request) -> JSONResponse:
        """POST /api/mcp/servers"""
        user_id = verifier.authenticate(request)
        await require_tool_access(user_id)
        body = await _json_body(request)
        errors = validate_server_config(body)
        if errors:
            raise ValidationFailed(errors)

        config = await servers.create(user_id, body["name"], body["url"], body.get("headers") or {})
        await gateway.invalidate(user_id)
        return JSONResponse({"server": config.to_wire()}, status_code=201)

    async def update_server(request: Request) -> JSONResponse:
        """PATCH /api/mcp/servers/{id}"""
        user_id = verifier.authenticate(request)
        await require_tool_access(user_id)
        server_id = _uuid_param(request, "id", "Server not found")
        body = await _json_body(request)
        errors = validate_server_update(body)
        if errors:
            raise ValidationFailed(errors)

        config = await servers.update(user_id, server_id, body)
        await gateway.invalidate(user_id)
        return JSONResponse({"server": config.to_wire()})

    async def delete_server(request: Request) -> JSONResponse:
        """DELETE /api/mcp/servers/{id}"""
        user_id = verifier.authenticate(request)
        await require_tool_access(user_id)
        server_id = _uuid_param(request, "id", "Server not found")
        await servers.delete(user_id, server_id)
        await gateway.invalidate(user_id)
        return JSONResponse({"success": True})

    async def test_server(request: Request) -> JSONResponse:
        """POST /api/mcp/servers/{id}/test"""
        user_id = verifier.authenticate(request)
        await require_tool_access(user_id)
        server_id = _uuid_param(request, "id", "Server not found")
        config = await servers.get(user_id, server_id)
        return JSONResponse(await gateway.test_server(config))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check with DB connectivity."""
        try:
            await database.connect()
            return JSONResponse({"status": "ok", "database": "connected"})
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return JSONResponse({"status": "unhealthy", "database": "disconnected"}, status_code=503)

    routes = [
        Route("/api/assistant/chat", chat, methods=["POST"]),
        Route("/api/assistant/conversations/{project_id}", get_conversation),
        Route("/api/usage/current", current_usage),
        Route("/api/mcp/servers", list_servers),
        Route("/api/mcp/servers", create_server, methods=["POST"]),
        Route("/api/mcp/servers/{id}", update_server, methods=["PATCH"]),
        Route("/api/mcp/servers/{id}", delete_server, methods=["DELETE"]),
        Route("/api/mcp/servers/{id}/test", test_server, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {
        "routes": routes,
        "exception_handlers": {MarginaliaError: _handle_error},
    }
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
