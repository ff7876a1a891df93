"""Fire-and-forget audit recorder."""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from sqlalchemy.orm import Session

from slotbook.models import AuditLog
from slotbook.services.clock import utcnow

logger = logging.getLogger(__name__)


class AuditRecorder(Protocol):
    def record(
        self,
        actor: str,
        action: str,
        resource_id: str | None,
        details: dict[str, Any] | None = None,
    ) -> None:
        ...


class DatabaseAuditRecorder:
    """Persist audit entries in their own session; never raises."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        if session_factory is None:
            from slotbook.db.session import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    def record(
        self,
        actor: str,
        action: str,
        resource_id: str | None,
        details: dict[str, Any] | None = None,
    ) -> None:
        try:
            with self._session_factory() as session:
                session.add(
                    AuditLog(
                        actor=actor,
                        action=action,
                        resource=resource_id,
                        occurred_at=utcnow(),
                        metadata_json=details,
                    )
                )
                session.commit()
        except Exception:
            logger.exception(
                "audit record failed",
                extra={"audit_action": action, "resource": resource_id},
            )


__all__ = ["AuditRecorder", "DatabaseAuditRecorder"]
