from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from passgate.config import Settings
from passgate.storage.models import User


@dataclass(frozen=True)
class GuardStatus:
    """``Active`` when ``locked_until`` is None, otherwise ``Locked(locked_until)``."""

    locked_until: Optional[datetime] = None

    @property
    def is_locked(self) -> bool:
        return self.locked_until is not None


ACTIVE = GuardStatus()


@dataclass(frozen=True)
class FailureOutcome:
    attempts: int
    locked_until: Optional[datetime]

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


class AccountGuard:
    """Failed-login accounting and lockout windows.

    Lock expiry is evaluated lazily on each check, so no background sweep is
    needed. The guard holds no state of its own: counters live on the user row
    and every mutation is a single atomic store update.
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.threshold = settings.max_failed_logins
        self.lockout = timedelta(minutes=settings.lockout_minutes)

    def status(self, user: User, now: datetime) -> GuardStatus:
        if user.locked_until is not None and user.locked_until > now:
            return GuardStatus(locked_until=user.locked_until)
        return ACTIVE

    @staticmethod
    def remaining_minutes(locked_until: datetime, now: datetime) -> int:
        remaining = (locked_until - now).total_seconds()
        return max(1, math.ceil(remaining / 60))

    def record_failure(self, user: User, now: datetime) -> FailureOutcome:
        updated = self.store.record_failed_login(
            user.id,
            now=now,
            threshold=self.threshold,
            lock_until=now + self.lockout,
        )
        if updated is None:
            return FailureOutcome(attempts=0, locked_until=None)
        return FailureOutcome(
            attempts=updated.failed_login_attempts,
            locked_until=updated.locked_until,
        )

    def record_success(self, user: User, now: datetime) -> None:
        self.store.record_successful_login(user.id, now=now)
