from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from .config import get_settings
from .database import get_db_session
from .errors import AuthenticationError, AuthorizationError
from .rate_limit import rate_limit_check


@dataclass(frozen=True)
class Caller:
    id: str
    role: str


def get_db() -> Session:
    yield from get_db_session()


def get_caller(request: Request, authorization: Optional[str] = Header(default=None)) -> Caller:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    identity = get_settings().callers.get(token)
    if identity is None:
        raise AuthenticationError("Invalid token")
    # Rate limit per token + IP (if enabled)
    rate_limit_check(request, token)
    user_id, role = identity
    return Caller(id=user_id, role=role)


def require_roles(*roles: str) -> Callable[..., Caller]:
    allowed = frozenset(roles)

    def dependency(caller: Caller = Depends(get_caller)) -> Caller:
        if caller.role not in allowed:
            raise AuthorizationError(f"Access denied. Requires one of: {', '.join(sorted(allowed))}")
        return caller

    return dependency
