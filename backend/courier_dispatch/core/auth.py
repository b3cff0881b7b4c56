"""Caller identity and role checks for API routes.

Credentials are issued and verified by the external identity service; this
module only maps an already-issued bearer token (or, with auth disabled, the
``X-Actor`` headers) to a caller and role.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from courier_dispatch.core.config import get_settings
from courier_dispatch.core.logging import logger


security = HTTPBearer(auto_error=False)


@dataclass
class CallerContext:
    actor: str
    role: str
    authenticated: bool


SUPPORTED_ROLES = {"viewer", "operator", "admin"}


def _normalize_role(value: str | None) -> str:
    role = (value or "").strip().lower()
    if not role:
        return "admin"
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return role


def _parse_api_tokens(raw: str) -> Dict[str, Tuple[str, str]]:
    """Parse `token:actor:role` comma-separated values from env."""
    mapping: Dict[str, Tuple[str, str]] = {}
    if not raw.strip():
        return mapping

    for segment in raw.split(","):
        item = segment.strip()
        if not item:
            continue
        parts = [part.strip() for part in item.split(":")]
        if len(parts) != 3 or not all(parts):
            logger.warning("Ignoring malformed API token mapping entry", entry=item)
            continue
        token, actor, role = parts
        if role.lower() not in SUPPORTED_ROLES:
            logger.warning("Ignoring API token with unknown role", actor=actor, role=role)
            continue
        mapping[token] = (actor, role.lower())
    return mapping


def get_caller_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_actor: str | None = Header(default=None, alias="X-Actor"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> CallerContext:
    """Resolve the caller from a bearer token, or trust headers when auth is off."""
    settings = get_settings()

    if not settings.auth_enabled:
        return CallerContext(
            actor=(x_actor or settings.default_actor or "operator").strip() or "operator",
            role=_normalize_role(x_actor_role),
            authenticated=False,
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
        )

    token_map = _parse_api_tokens(settings.api_tokens)
    identity = token_map.get(credentials.credentials.strip())
    if not identity:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bearer token",
        )

    actor, role = identity
    return CallerContext(actor=actor, role=role, authenticated=True)


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces role-based access control."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: CallerContext = Depends(get_caller_context)) -> CallerContext:
        if context.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role}' not permitted for this operation",
            )
        return context

    return _guard
