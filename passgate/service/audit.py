from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, Optional

from passgate.logging import get_logger
from passgate.storage.models import AuditEvent, utcnow

logger = get_logger(__name__)

USER_SIGNUP = "USER_SIGNUP"
USER_LOGIN = "USER_LOGIN"
LOGIN_FAILED = "LOGIN_FAILED"
USER_LOGOUT = "USER_LOGOUT"
PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
PASSWORD_CHANGED = "PASSWORD_CHANGED"
EMAIL_VERIFIED = "EMAIL_VERIFIED"
ACCOUNT_LOCKED = "ACCOUNT_LOCKED"


class AuditService:
    """Append-only audit trail.

    Recording is fire-and-forget: a failing or slow audit sink is logged and
    never surfaces to the operation that emitted the event.
    """

    def __init__(self, store, *, timeout_seconds: float = 5.0) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds

    def _build(
        self,
        action: str,
        user_id: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> AuditEvent:
        return AuditEvent(
            id=str(uuid.uuid4()),
            action=action,
            user_id=user_id,
            resource_type="user" if user_id else None,
            resource_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata,
            created_at=utcnow(),
        )

    async def record(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = self._build(action, user_id, ip_address, user_agent, metadata)
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.store.record_audit_event, event),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "audit_record_failed",
                action=action,
                user_id=user_id,
                error=str(exc) or type(exc).__name__,
            )
