"""Owner-scoped CRUD for external tool server configs.

Validation returns a field-level error list rather than raising, so the
REST layer can report every problem at once. The store itself enforces
the per-owner cap and name uniqueness.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from marginalia.config import Settings
from marginalia.errors import BadRequest, Conflict, NotFound
from marginalia.storage.database import Database
from marginalia.storage.models import UserToolServer

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
UPDATABLE_FIELDS = ("name", "url", "headers", "enabled")


class ToolServerConfig(BaseModel):
    """What the gateway needs to connect to one external tool server."""

    id: UUID
    name: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: UserToolServer) -> ToolServerConfig:
        return cls(
            id=row.id,
            name=row.name,
            url=row.url,
            headers=dict(row.headers or {}),
            enabled=row.enabled,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_name(name: Any) -> list[dict[str, str]]:
    if not isinstance(name, str) or not name.strip():
        return [{"field": "name", "message": "Name is required"}]
    if len(name) > MAX_NAME_LENGTH:
        return [{"field": "name", "message": f"Name must be {MAX_NAME_LENGTH} characters or fewer"}]
    return []


def _check_url(url: Any) -> list[dict[str, str]]:
    if not isinstance(url, str) or not url.strip():
        return [{"field": "url", "message": "URL is required"}]
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return [{"field": "url", "message": "URL must be a valid http(s) URL"}]
    return []


def _check_headers(headers: Any) -> list[dict[str, str]]:
    if headers is None:
        return []
    if not isinstance(headers, dict):
        return [{"field": "headers", "message": "Headers must be an object"}]
    for key, value in headers.items():
        if not isinstance(key, str) or not isinstance(value, str):
            return [{"field": "headers", "message": "Header keys and values must be strings"}]
    return []


def validate_server_config(data: dict[str, Any]) -> list[dict[str, str]]:
    """Field errors for a new server config; empty when valid."""
    return (
        _check_name(data.get("name"))
        + _check_url(data.get("url"))
        + _check_headers(data.get("headers"))
    )


def validate_server_update(data: dict[str, Any]) -> list[dict[str, str]]:
    """Field errors for a partial update; only supplied fields are checked."""
    if not isinstance(data, dict):
        return [{"field": "body", "message": "Body must be an object"}]
    errors: list[dict[str, str]] = []
    if "name" in data:
        errors += _check_name(data["name"])
    if "url" in data:
        errors += _check_url(data["url"])
    if "headers" in data:
        errors += _check_headers(data["headers"])
    if "enabled" in data and not isinstance(data["enabled"], bool):
        errors.append({"field": "enabled", "message": "Enabled must be a boolean"})
    return errors


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ToolServerStore:
    def __init__(self, database: Database, settings: Settings) -> None:
        self._db = database
        self._settings = settings

    async def list_servers(self, owner_id: str, enabled_only: bool = False) -> list[ToolServerConfig]:
        stmt = (
            select(UserToolServer)
            .where(UserToolServer.user_id == owner_id)
            .order_by(UserToolServer.created_at)
        )
        if enabled_only:
            stmt = stmt.where(UserToolServer.enabled.is_(True))
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return [ToolServerConfig.from_row(row) for row in result.scalars()]

    async def get(self, owner_id: str, server_id: UUID) -> ToolServerConfig:
        async with self._db.session() as session:
            row = await session.get(UserToolServer, server_id)
        if row is None or row.user_id != owner_id:
            raise NotFound("Server not found")
        return ToolServerConfig.from_row(row)

    async def create(
        self,
        owner_id: str,
        name: str,
        url: str,
        headers: dict[str, str] | None = None,
    ) -> ToolServerConfig:
        cap = self._settings.max_tool_servers
        now = datetime.now(UTC)
        async with self._db.session() as session:
            count = (
                await session.execute(
                    select(func.count(UserToolServer.id)).where(UserToolServer.user_id == owner_id)
                )
            ).scalar_one()
            if count >= cap:
                raise BadRequest(f"Maximum of {cap} servers allowed")

            row = UserToolServer(
                user_id=owner_id,
                name=name,
                url=url,
                headers=headers or {},
                enabled=True,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise Conflict(f'A server named "{name}" already exists') from None

        logger.info("Added tool server %s for user %s", row.id, owner_id)
        return ToolServerConfig.from_row(row)

    async def update(self, owner_id: str, server_id: UUID, fields: dict[str, Any]) -> ToolServerConfig:
        changes = {k: fields[k] for k in UPDATABLE_FIELDS if k in fields and fields[k] is not None}
        if not changes:
            raise BadRequest("No fields to update")

        async with self._db.session() as session:
            row = await session.get(UserToolServer, server_id)
            if row is None or row.user_id != owner_id:
                raise NotFound("Server not found")
            for key, value in changes.items():
                setattr(row, key, value)
            row.updated_at = datetime.now(UTC)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise Conflict("A server with that name already exists") from None

        return ToolServerConfig.from_row(row)

    async def delete(self, owner_id: str, server_id: UUID) -> None:
        async with self._db.session() as session:
            row = await session.get(UserToolServer, server_id)
            if row is None or row.user_id != owner_id:
                raise NotFound("Server not found")
            await session.delete(row)
            await session.commit()
        logger.info("Removed tool server %s for user %s", server_id, owner_id)
