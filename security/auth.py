from __future__ import annotations

from typing import Final

from fastapi import Depends, Header

from core.errors import auth_invalid_token, auth_permission_denied
from security.principal import AuthPrincipal


AUTH_ROLES: Final[tuple[str, ...]] = ('member', 'admin', 'service',)
LEGACY_ROLE_ALIASES: Final[dict[str, str]] = {"user": "member", "owner": "admin"}


def _normalize_role(role: str | None) -> str:
    value = (role or "").strip().lower()
    return LEGACY_ROLE_ALIASES.get(value, value)


async def verify_identity_headers(
    x_user_id: str | None = Header(default=None),
    x_workspace_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> AuthPrincipal:
    """Trust the identity the upstream gateway attached to the request."""
    user_id = (x_user_id or "").strip()
    workspace_id = (x_workspace_id or "").strip()
    if not user_id or not workspace_id:
        raise auth_invalid_token(details={"missing": [
            name
            for name, value in (("X-User-Id", user_id), ("X-Workspace-Id", workspace_id))
            if not value
        ]})

    role = _normalize_role(x_user_role or "member")
    if role not in AUTH_ROLES:
        raise auth_invalid_token(details={"role": x_user_role})

    return AuthPrincipal(user_id=user_id, workspace_id=workspace_id, role=role)


async def verify_admin(principal: AuthPrincipal = Depends(verify_identity_headers)) -> AuthPrincipal:
    if not (principal.is_admin or principal.is_service):
        raise auth_permission_denied("payments:admin")
    return principal
