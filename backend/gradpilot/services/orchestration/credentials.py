"""
Quota-aware rotation over interchangeable oracle API credentials.

Environment configuration:
- ORACLE_API_KEY_1 .. ORACLE_API_KEY_{N}: secrets (gaps are skipped)
- ORACLE_API_KEY_SLOTS: N, how many numbered secrets to scan (default: 15)
- ORACLE_KEY_DAILY_CAP: requests per key per day (default: 200)
- ORACLE_KEY_RPM_LIMIT: requests per key in any rolling minute (default: 15)
- ORACLE_KEY_REVIVE_INVALID_ON_ROLLOVER: whether the daily rollover also
  reactivates keys rejected as invalid (default: true)

The pool is the only state mutated by concurrently executing tasks, so every
read-modify-write (rollover sweep, scan-and-claim, usage and failure tracking)
happens under one lock. A claimed key holds a reservation until the caller
reports the outcome through ``track_usage`` or ``track_failure``, or hands it
back through ``release`` when the call never completed. Availability counts
reservations, which keeps ``daily_usage <= daily_cap`` under concurrent claims.

Besides the daily cap a key is skipped while it has taken ``rpm_limit`` claims
in the last minute, or while it sits out a temporary ban after
``MAX_CONSECUTIVE_ERRORS`` failed calls in a row.
"""
import os
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from time import monotonic
from typing import Callable, Deque, List, Optional, Sequence, Tuple, Union

import httpx
from pydantic import BaseModel

from gradpilot.core.logging import get_logger
from gradpilot.core.metrics import record_credential_event, update_credential_pool_metrics

from .errors import CredentialPoolConfigurationError

logger = get_logger(__name__)

DEFAULT_DAILY_CAP = 200
DEFAULT_KEY_SLOTS = 15
DEFAULT_RPM_LIMIT = 15
RATE_WINDOW_SECONDS = 60.0
MAX_CONSECUTIVE_ERRORS = 5
ERROR_BAN_SECONDS = 60.0

QUOTA_MARKERS = (
    "rate limit",
    "too many requests",
    "quota exceeded",
    "resource_exhausted",
    "daily limit",
    "daily quota",
    "requests per day",
)
INVALID_MARKERS = (
    "api key not valid",
    "invalid api key",
    "api_key_invalid",
    "permission denied",
    "unauthorized",
)


class FailureSignal(str, Enum):
    QUOTA = "quota"
    INVALID = "invalid"
    OTHER = "other"


def classify_failure(error: BaseException) -> FailureSignal:
    """Map an oracle call failure to the credential signal it implies."""
    status_code = getattr(error, "status_code", None)
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        message = f"{error} {error.response.text}".lower()
    else:
        message = str(error).lower()

    if status_code == 429 or any(marker in message for marker in QUOTA_MARKERS):
        return FailureSignal.QUOTA
    if status_code in (401, 403) or any(marker in message for marker in INVALID_MARKERS):
        return FailureSignal.INVALID
    return FailureSignal.OTHER


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CredentialKey:
    index: int
    identifier: str
    secret: str = field(repr=False)
    daily_cap: int
    last_reset_date: date
    daily_usage: int = 0
    is_active: bool = True
    invalid: bool = False
    last_used_at: Optional[datetime] = None
    reserved: int = 0
    consecutive_errors: int = 0
    banned_until: Optional[float] = None
    recent_claims: Deque[float] = field(default_factory=deque, repr=False)

    @property
    def headroom(self) -> int:
        return max(0, self.daily_cap - self.daily_usage)

    def is_banned(self, now: float) -> bool:
        return self.banned_until is not None and now < self.banned_until

    def is_claimable(self, now: float, rpm_limit: Optional[int] = None) -> bool:
        if not self.is_active or self.daily_usage + self.reserved >= self.daily_cap:
            return False
        if self.is_banned(now):
            return False
        return rpm_limit is None or len(self.recent_claims) < rpm_limit


class KeyStats(BaseModel):
    index: int
    identifier: str
    daily_usage: int
    daily_cap: int
    is_active: bool
    invalid: bool
    in_flight: int
    requests_last_minute: int
    consecutive_errors: int
    banned: bool
    last_used_at: Optional[datetime] = None


class CredentialPoolStats(BaseModel):
    """Aggregate view of the pool. For observability only."""

    total_keys: int
    active_keys: int
    available_keys: int
    invalid_keys: int
    total_daily_capacity: int
    total_minute_capacity: Optional[int]
    total_daily_used: int
    remaining_quota: int
    next_reset_at: datetime
    keys: List[KeyStats]


class CredentialRotationManager:
    """Round-robin, quota-aware credential pool."""

    def __init__(
        self,
        secrets: Sequence[Tuple[str, Optional[str]]],
        daily_cap: int = DEFAULT_DAILY_CAP,
        rpm_limit: Optional[int] = DEFAULT_RPM_LIMIT,
        revive_invalid_on_rollover: bool = True,
        today: Callable[[], date] = _utc_today,
        now: Callable[[], datetime] = _utc_now,
        clock: Callable[[], float] = monotonic,
    ):
        if daily_cap <= 0:
            raise ValueError("daily_cap must be positive")
        if rpm_limit is not None and rpm_limit <= 0:
            raise ValueError("rpm_limit must be positive")

        self.daily_cap = daily_cap
        self.rpm_limit = rpm_limit
        self.revive_invalid_on_rollover = revive_invalid_on_rollover
        self._today = today
        self._now = now
        self._clock = clock
        self._lock = threading.Lock()
        self._cursor = 0

        current_date = today()
        self._keys: List[CredentialKey] = []
        for name, value in secrets:
            if not value or not value.strip():
                continue
            self._keys.append(
                CredentialKey(
                    index=len(self._keys),
                    identifier=name,
                    secret=value.strip(),
                    daily_cap=daily_cap,
                    last_reset_date=current_date,
                )
            )

        if not self._keys:
            raise CredentialPoolConfigurationError(
                "No oracle API keys configured; set at least one ORACLE_API_KEY_<n>"
            )

        logger.info(
            "credential_pool_initialized",
            keys=len(self._keys),
            skipped=len(secrets) - len(self._keys),
            daily_cap=daily_cap,
            rpm_limit=rpm_limit,
        )
        self._publish_metrics()

    @classmethod
    def from_env(cls) -> "CredentialRotationManager":
        slots = int(os.getenv("ORACLE_API_KEY_SLOTS", str(DEFAULT_KEY_SLOTS)) or DEFAULT_KEY_SLOTS)
        secrets = [
            (f"ORACLE_API_KEY_{i}", os.getenv(f"ORACLE_API_KEY_{i}"))
            for i in range(1, slots + 1)
        ]
        daily_cap = int(os.getenv("ORACLE_KEY_DAILY_CAP", str(DEFAULT_DAILY_CAP)) or DEFAULT_DAILY_CAP)
        rpm_limit = int(os.getenv("ORACLE_KEY_RPM_LIMIT", str(DEFAULT_RPM_LIMIT)) or DEFAULT_RPM_LIMIT)
        revive = os.getenv("ORACLE_KEY_REVIVE_INVALID_ON_ROLLOVER", "true").lower() == "true"
        return cls(
            secrets,
            daily_cap=daily_cap,
            rpm_limit=rpm_limit,
            revive_invalid_on_rollover=revive,
        )

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def keys(self) -> Tuple[CredentialKey, ...]:
        return tuple(self._keys)

    def get_available_key(self) -> Optional[CredentialKey]:
        """
        Claim the next usable key, or return None when the pool is exhausted.

        Applies the date-rollover sweep first, then scans round-robin from the
        position after the last claimed key. Every claim counts towards the
        key's per-minute limit, whatever its outcome.
        """
        with self._lock:
            self._sweep_rollover()
            now = self._clock()
            size = len(self._keys)
            for offset in range(size):
                index = (self._cursor + offset) % size
                key = self._keys[index]
                self._expire(key, now)
                if key.is_claimable(now, self.rpm_limit):
                    key.reserved += 1
                    key.recent_claims.append(now)
                    self._cursor = (index + 1) % size
                    return key

        logger.warning("credential_pool_exhausted", keys=len(self._keys))
        return None

    def track_usage(self, key: CredentialKey) -> None:
        """Record a confirmed successful oracle call made with ``key``."""
        with self._lock:
            key.reserved = max(0, key.reserved - 1)
            key.daily_usage = min(key.daily_cap, key.daily_usage + 1)
            key.consecutive_errors = 0
            key.last_used_at = self._now()
            if key.daily_usage >= key.daily_cap:
                logger.info("credential_key_cap_reached", key=key.identifier)
            self._publish_metrics()

    def track_failure(
        self,
        key: CredentialKey,
        error: Union[FailureSignal, BaseException],
    ) -> FailureSignal:
        """
        Record a failed oracle call made with ``key``.

        Quota/limit signals exhaust the key for the rest of the day; authorization
        signals deactivate it until the next rollover or an explicit reset. Any
        failure extends the key's error streak; a streak of
        ``MAX_CONSECUTIVE_ERRORS`` bans the key for ``ERROR_BAN_SECONDS``.
        """
        signal = error if isinstance(error, FailureSignal) else classify_failure(error)
        with self._lock:
            key.reserved = max(0, key.reserved - 1)
            key.last_used_at = self._now()
            key.consecutive_errors += 1
            now = self._clock()
            if key.consecutive_errors >= MAX_CONSECUTIVE_ERRORS and not key.is_banned(now):
                key.banned_until = now + ERROR_BAN_SECONDS
                record_credential_event("banned")
                logger.warning(
                    "credential_key_banned",
                    key=key.identifier,
                    consecutive_errors=key.consecutive_errors,
                    ban_seconds=ERROR_BAN_SECONDS,
                )
            if signal is FailureSignal.QUOTA:
                key.daily_usage = key.daily_cap
                record_credential_event("exhausted")
                logger.warning("credential_key_exhausted", key=key.identifier)
            elif signal is FailureSignal.INVALID:
                key.is_active = False
                key.invalid = True
                record_credential_event("invalidated")
                logger.error("credential_key_invalidated", key=key.identifier)
            self._publish_metrics()
        return signal

    def release(self, key: CredentialKey) -> None:
        """Hand back a claimed key whose call never completed (e.g. it was cancelled)."""
        with self._lock:
            key.reserved = max(0, key.reserved - 1)

    def reset_key(self, index: int) -> CredentialKey:
        """Operator reset of one key (usage cleared, reactivated)."""
        with self._lock:
            if index < 0 or index >= len(self._keys):
                raise IndexError(f"no credential key at index {index}")
            key = self._keys[index]
            self._reset(key, revive_invalid=True)
            record_credential_event("manual_reset")
            logger.info("credential_key_reset", key=key.identifier)
            self._publish_metrics()
            return key

    def reset_all(self) -> None:
        """Operator reset of every key."""
        with self._lock:
            for key in self._keys:
                self._reset(key, revive_invalid=True)
            record_credential_event("manual_reset")
            logger.info("credential_pool_reset", keys=len(self._keys))
            self._publish_metrics()

    def get_usage_stats(self) -> CredentialPoolStats:
        with self._lock:
            self._sweep_rollover()
            now = self._clock()
            for key in self._keys:
                self._expire(key, now)
            active = [key for key in self._keys if key.is_active]
            tomorrow = self._today() + timedelta(days=1)
            return CredentialPoolStats(
                total_keys=len(self._keys),
                active_keys=len(active),
                available_keys=sum(
                    1 for key in self._keys if key.is_claimable(now, self.rpm_limit)
                ),
                invalid_keys=sum(1 for key in self._keys if key.invalid),
                total_daily_capacity=sum(key.daily_cap for key in self._keys),
                total_minute_capacity=(
                    len(self._keys) * self.rpm_limit if self.rpm_limit is not None else None
                ),
                total_daily_used=sum(key.daily_usage for key in self._keys),
                remaining_quota=sum(key.daily_cap - key.daily_usage for key in active),
                next_reset_at=datetime.combine(tomorrow, time.min, tzinfo=timezone.utc),
                keys=[
                    KeyStats(
                        index=key.index,
                        identifier=key.identifier,
                        daily_usage=key.daily_usage,
                        daily_cap=key.daily_cap,
                        is_active=key.is_active,
                        invalid=key.invalid,
                        in_flight=key.reserved,
                        requests_last_minute=len(key.recent_claims),
                        consecutive_errors=key.consecutive_errors,
                        banned=key.is_banned(now),
                        last_used_at=key.last_used_at,
                    )
                    for key in self._keys
                ],
            )

    # Lock must be held by callers of the helpers below.

    def _sweep_rollover(self) -> None:
        current_date = self._today()
        swept = 0
        for key in self._keys:
            if key.last_reset_date != current_date:
                self._reset(key, revive_invalid=self.revive_invalid_on_rollover)
                swept += 1
        if swept:
            record_credential_event("rollover_reset")
            logger.info("credential_pool_rollover", keys_reset=swept, date=current_date.isoformat())
            self._publish_metrics()

    def _expire(self, key: CredentialKey, now: float) -> None:
        cutoff = now - RATE_WINDOW_SECONDS
        while key.recent_claims and key.recent_claims[0] <= cutoff:
            key.recent_claims.popleft()
        if key.banned_until is not None and now >= key.banned_until:
            key.banned_until = None
            key.consecutive_errors = 0
            logger.info("credential_key_unbanned", key=key.identifier)

    def _reset(self, key: CredentialKey, revive_invalid: bool) -> None:
        key.daily_usage = 0
        key.reserved = 0
        key.consecutive_errors = 0
        key.banned_until = None
        key.recent_claims.clear()
        key.last_reset_date = self._today()
        if revive_invalid or not key.invalid:
            key.is_active = True
            key.invalid = False

    def _publish_metrics(self) -> None:
        active = [key for key in self._keys if key.is_active]
        update_credential_pool_metrics(
            active_keys=len(active),
            remaining_quota=sum(key.headroom for key in active),
        )


_credential_manager: Optional[CredentialRotationManager] = None


def get_credential_manager() -> CredentialRotationManager:
    """
    Process-wide pool built lazily from the environment.

    Components take the manager as a constructor argument; this accessor only
    supplies the default instance for the HTTP app.
    """
    global _credential_manager
    if _credential_manager is None:
        _credential_manager = CredentialRotationManager.from_env()
    return _credential_manager
