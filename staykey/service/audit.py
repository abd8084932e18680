from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from staykey.logging import get_logger
from staykey.storage.models import SecurityEvent, SecurityEventType

logger = get_logger(__name__)


class AuditSink(Protocol):
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent: ...

    def list_security_events(
        self, user_id: str, *, limit: int = 100
    ) -> List[SecurityEvent]: ...


class AuditRecorder:
    """Append-only trail of credential lifecycle events.

    ``record`` never raises: a failed write is logged and dropped so the
    credential operation that triggered it still completes.
    """

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink

    def record(
        self,
        user_id: str,
        event_type: SecurityEventType,
        ip_addr: str,
        *,
        token_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        detail: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Optional[SecurityEvent]:
        try:
            event = SecurityEvent.new(
                user_id,
                event_type,
                ip_addr,
                token_id=token_id,
                user_agent=user_agent,
                detail=detail,
                created_at=created_at,
            )
            self.sink.append_security_event(event)
        except Exception as exc:
            logger.error(
                "security_event_record_failed",
                user_id=user_id,
                event_type=str(getattr(event_type, "value", event_type)),
                token_id=token_id,
                error=str(exc),
            )
            return None
        logger.info(
            "security_event_recorded",
            user_id=user_id,
            event_type=event.event_type.value,
            token_id=token_id,
        )
        return event

    def list_events(self, user_id: str, *, limit: int = 100) -> List[SecurityEvent]:
        return self.sink.list_security_events(user_id, limit=limit)
