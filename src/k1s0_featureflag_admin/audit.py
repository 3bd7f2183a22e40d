"""Audit log for recording entity changes."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

logger = structlog.stdlib.get_logger(__name__)


@dataclass
class AuditEvent:
    """Audit event record with before/after details."""

    event: str
    entity_type: str
    entity_id: str
    actor: str
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


def audit_details_update(pre: dict[str, Any], post: dict[str, Any]) -> dict[str, Any]:
    """Build the pre/post details of an update, keeping only changed keys."""
    keys = [k for k in {**pre, **post} if pre.get(k) != post.get(k)]
    return {
        "pre": {k: pre.get(k) for k in keys},
        "post": {k: post.get(k) for k in keys},
    }


class AuditLog(ABC):
    """Abstract audit log."""

    @abstractmethod
    async def record(self, event: AuditEvent) -> None: ...

    @abstractmethod
    async def flush(self) -> list[AuditEvent]: ...


class BufferedAuditLog(AuditLog):
    """Buffered audit log that stores events in memory."""

    def __init__(self) -> None:
        self._buffer: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self._buffer.append(event)

    async def flush(self) -> list[AuditEvent]:
        result = list(self._buffer)
        self._buffer.clear()
        return result


async def record_safely(audit_log: AuditLog, event: AuditEvent) -> None:
    """Record an event without letting audit failures block the caller."""
    try:
        await audit_log.record(event)
    except Exception as e:
        logger.warning(
            "failed to record audit event",
            audit_event=event.event,
            entity_id=event.entity_id,
            error=str(e),
        )
