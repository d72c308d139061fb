from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class User:
    id: str
    email: str
    full_name: str
    password_hash: Optional[str] = None
    currency_code: str = "USD"
    avatar_url: Optional[str] = None
    email_verified: bool = False
    onboarding_completed: bool = False
    failed_login_attempts: int = 0
    last_failed_login_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_public(self) -> Dict[str, Any]:
        """Projection safe to return to clients (no hash, counters or lock state)."""
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "currency_code": self.currency_code,
            "avatar_url": self.avatar_url,
            "email_verified": self.email_verified,
            "onboarding_completed": self.onboarding_completed,
            "last_login_at": _iso(self.last_login_at),
            "created_at": _iso(self.created_at),
        }


@dataclass
class EmailVerification:
    id: str
    user_id: str
    email: str
    token_hash: str
    expires_at: datetime
    verified_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        email: str,
        token_hash: str,
        ttl: timedelta,
        ip_address: Optional[str] = None,
    ) -> "EmailVerification":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            email=email,
            token_hash=token_hash,
            expires_at=now + ttl,
            ip_address=ip_address,
            created_at=now,
        )

    def is_pending(self, now: datetime) -> bool:
        return self.verified_at is None and self.expires_at > now


@dataclass
class PasswordReset:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl: timedelta,
        ip_address: Optional[str] = None,
    ) -> "PasswordReset":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + ttl,
            ip_address=ip_address,
            created_at=now,
        )

    def is_pending(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now


@dataclass
class Session:
    """Refresh-token grant held in the session store.

    Only ``token_hash`` identifies the grant; the raw refresh token is never stored.
    """

    user_id: str
    token_hash: str
    created_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "Session":
        return cls(
            user_id=user_id,
            token_hash=token_hash,
            created_at=utcnow(),
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "token_hash": self.token_hash,
            "created_at": self.created_at.isoformat(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            created_at=datetime.fromisoformat(data["created_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )


@dataclass
class AuditEvent:
    id: str
    action: str
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
