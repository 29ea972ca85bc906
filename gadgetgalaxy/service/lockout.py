from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from gadgetgalaxy.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutState:
    login_attempts: int
    lock_until: Optional[datetime]

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now


def next_state(
    attempts: int,
    lock_until: Optional[datetime],
    now: datetime,
    *,
    max_attempts: int,
    lock_duration: timedelta,
) -> Tuple[int, Optional[datetime]]:
    """Counter transition for one failed password attempt.

    An expired lock restarts the count at one. Otherwise the counter grows,
    and reaching ``max_attempts`` starts a lock unless one is already set.
    """
    if lock_until is not None and lock_until < now:
        return 1, None
    attempts += 1
    if attempts >= max_attempts and lock_until is None:
        return attempts, now + lock_duration
    return attempts, lock_until


class LockoutPolicy:
    """Per-account brute-force protection backed by the account store."""

    def __init__(self, store, *, max_attempts: int = 5, lock_duration: timedelta = timedelta(hours=1)):
        self.store = store
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration

    @staticmethod
    def state(account) -> LockoutState:
        return LockoutState(account.login_attempts, account.lock_until)

    def is_locked(self, account, now: datetime) -> bool:
        # Lazy expiry: a past lock_until simply reads as unlocked
        return self.state(account).is_locked(now)

    def next_state(self, state: LockoutState, now: datetime) -> LockoutState:
        attempts, lock_until = next_state(
            state.login_attempts,
            state.lock_until,
            now,
            max_attempts=self.max_attempts,
            lock_duration=self.lock_duration,
        )
        return LockoutState(attempts, lock_until)

    def record_failure(self, account, now: datetime) -> LockoutState:
        updated = self.store.record_failed_login(
            account.id,
            max_attempts=self.max_attempts,
            lock_duration=self.lock_duration,
            now=now,
        )
        if updated is None:
            return self.next_state(self.state(account), now)
        state = self.state(updated)
        if state.is_locked(now):
            logger.warning("account_locked", account_id=account.id, attempts=state.login_attempts)
        return state

    def record_success(self, account) -> None:
        if account.login_attempts or account.lock_until is not None:
            self.store.reset_login_attempts(account.id)
