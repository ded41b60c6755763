"""
Request-scoped caller identity for tool execution.

The identity lives in a ContextVar, so each asyncio task sees only the
identity bound in its own context: specialists running concurrently for
different callers never observe each other's credentials.
"""
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional

from gradpilot.core.logging import get_logger, user_id_var

from .schema import UserContext

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestIdentity:
    user_id: str
    access_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None

    @classmethod
    def from_context(cls, context: UserContext) -> "RequestIdentity":
        return cls(
            user_id=context.user_id,
            access_token=context.access_token,
            expires_at=context.token_expires_at,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now


_identity_var: ContextVar[Optional[RequestIdentity]] = ContextVar(
    "request_identity", default=None
)


@contextmanager
def bind_identity(identity: RequestIdentity) -> Iterator[RequestIdentity]:
    """Bind ``identity`` for the enclosed block; released on every exit path."""
    identity_token = _identity_var.set(identity)
    user_token = user_id_var.set(identity.user_id)
    if identity.access_token is None:
        logger.debug("identity_bound_without_access_token")
    try:
        yield identity
    finally:
        user_id_var.reset(user_token)
        _identity_var.reset(identity_token)


def current_identity() -> Optional[RequestIdentity]:
    return _identity_var.get()
