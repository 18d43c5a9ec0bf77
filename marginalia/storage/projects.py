"""Project, conversation and highlight persistence.

The assistant pipeline only consumes this through a handful of calls:
ownership lookup, conversation load/save, atomic highlight append and
prior-sample loading. Reads are fronted by short-lived TTL caches.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select

from marginalia.config import Settings
from marginalia.errors import NotFound
from marginalia.schemas import ConversationMessage, Highlight
from marginalia.storage.cache import TTLCache
from marginalia.storage.database import Database
from marginalia.storage.models import AssistantConversation, Draft, Project

logger = logging.getLogger(__name__)


def _highlight_sort_key(h: dict[str, Any]) -> str:
    return h.get("createdAt") or ""


class ProjectStore:
    """Owner-scoped access to projects and their assistant conversations."""

    def __init__(self, database: Database, settings: Settings) -> None:
        self._db = database
        self._settings = settings
        self._conversations: TTLCache[UUID, list[ConversationMessage]] = TTLCache(
            settings.cache_ttl, settings.cache_max_entries
        )
        self._projects: TTLCache[UUID, Project] = TTLCache(
            settings.cache_ttl, settings.cache_max_entries
        )

    async def get_owned_project(self, project_id: UUID, user_id: str) -> Project | None:
        """Return the project if it exists and belongs to user_id."""
        project = self._projects.get(project_id)
        if project is None:
            async with self._db.session() as session:
                project = await session.get(Project, project_id)
            if project is None:
                return None
            self._projects.set(project_id, project)
        if project.user_id != user_id:
            return None
        return project

    async def create_project(
        self,
        user_id: str,
        title: str = "Untitled",
        pages: dict[str, str] | None = None,
        prior_essays: list[str] | None = None,
    ) -> Project:
        now = datetime.now(UTC)
        project = Project(
            user_id=user_id,
            title=title,
            pages=pages or {},
            highlights=[],
            prior_essays=prior_essays or [],
            created_at=now,
            updated_at=now,
        )
        async with self._db.session() as session:
            session.add(project)
            await session.commit()
        return project

    async def add_draft(
        self,
        project_id: UUID,
        version: int,
        skeleton: str | None = None,
        rewrite: str | None = None,
    ) -> None:
        async with self._db.session() as session:
            session.add(Draft(project_id=project_id, version=version, skeleton=skeleton, rewrite=rewrite))
            await session.commit()

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def load_conversation(self, project_id: UUID) -> list[ConversationMessage]:
        """Full stored history, oldest first."""
        cached = self._conversations.get(project_id)
        if cached is not None:
            return list(cached)

        async with self._db.session() as session:
            row = await session.get(AssistantConversation, project_id)
        messages = [ConversationMessage.model_validate(m) for m in (row.messages if row else [])]
        self._conversations.set(project_id, messages)
        return list(messages)

    async def save_conversation(self, project_id: UUID, messages: list[ConversationMessage]) -> None:
        """Upsert the conversation for a project."""
        payload = [m.to_storage() for m in messages]
        async with self._db.session() as session:
            row = await session.get(AssistantConversation, project_id)
            if row is None:
                session.add(AssistantConversation(
                    project_id=project_id,
                    messages=payload,
                    updated_at=datetime.now(UTC),
                ))
            else:
                row.messages = payload
                row.updated_at = datetime.now(UTC)
            await session.commit()
        self._conversations.invalidate(project_id)

    async def append_messages(self, project_id: UUID, messages: list[ConversationMessage]) -> int:
        """Append to the stored conversation under the project row lock.

        Reads the current list inside the transaction, so two turns on one
        project both land. Returns the conversation length afterwards.
        """
        payload = [m.to_storage() for m in messages]
        async with self._db.session() as session:
            async with session.begin():
                result = await session.execute(
                    select(Project.id).where(Project.id == project_id).with_for_update()
                )
                if result.scalar_one_or_none() is None:
                    raise NotFound("Project not found")

                row = await session.get(AssistantConversation, project_id)
                if row is None:
                    row = AssistantConversation(
                        project_id=project_id,
                        messages=payload,
                        updated_at=datetime.now(UTC),
                    )
                    session.add(row)
                else:
                    row.messages = list(row.messages or []) + payload
                    row.updated_at = datetime.now(UTC)
                total = len(row.messages)
        self._conversations.invalidate(project_id)
        return total

    # ------------------------------------------------------------------
    # Highlights
    # ------------------------------------------------------------------

    async def append_highlights(
        self,
        project_id: UUID,
        user_id: str,
        highlights: list[Highlight],
    ) -> int:
        """Append highlights in one transaction, keeping the newest `highlight_cap`.

        The project row is locked for the duration (FOR UPDATE on Postgres)
        so concurrent turns never lose each other's highlights.
        Returns the number of stored highlights after the merge.
        """
        if not highlights:
            return 0
        cap = self._settings.highlight_cap
        new = [h.model_dump(by_alias=True, exclude_none=True) for h in highlights]

        async with self._db.session() as session:
            async with session.begin():
                result = await session.execute(
                    select(Project).where(Project.id == project_id).with_for_update()
                )
                project = result.scalar_one_or_none()
                if project is None or project.user_id != user_id:
                    raise NotFound("Project not found or not owned by user")

                merged = list(project.highlights or []) + new
                if len(merged) > cap:
                    merged.sort(key=_highlight_sort_key)
                    dropped = len(merged) - cap
                    merged = merged[-cap:]
                    logger.debug("Evicted %d oldest highlights from project %s", dropped, project_id)
                project.highlights = merged

        self._projects.invalidate(project_id)
        return len(merged)

    async def list_highlights(self, project_id: UUID) -> list[Highlight]:
        async with self._db.session() as session:
            project = await session.get(Project, project_id)
        if project is None:
            return []
        return [Highlight.model_validate(h) for h in project.highlights or []]

    # ------------------------------------------------------------------
    # Prior writing samples
    # ------------------------------------------------------------------

    async def load_prior_samples(self, project_ids: list[str]) -> list[str]:
        """Latest non-empty draft text (rewrite, else skeleton) per project."""
        ids = []
        for raw in project_ids:
            try:
                ids.append(UUID(str(raw)))
            except ValueError:
                logger.debug("Skipping malformed prior essay id %r", raw)
        if not ids:
            return []

        async with self._db.session() as session:
            result = await session.execute(
                select(Draft.project_id, Draft.rewrite, Draft.skeleton)
                .where(Draft.project_id.in_(ids))
                .order_by(Draft.version.desc())
            )
            rows = result.all()

        latest: dict[UUID, str] = {}
        for project_id, rewrite, skeleton in rows:
            if project_id not in latest:
                latest[project_id] = rewrite or skeleton or ""
        return [sample for sample in latest.values() if sample]
