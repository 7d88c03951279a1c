from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from core.errors import auth_permission_denied


class AuthPrincipal(BaseModel):
    user_id: str
    workspace_id: str
    role: Literal['member', 'admin', 'service']

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_service(self) -> bool:
        return self.role == "service"

    def ensure_workspace(self, workspace_id: str, *, permission_key: str = "workspace:read") -> None:
        """Admins and internal services may read any workspace; members only their own."""
        if self.is_admin or self.is_service:
            return
        if workspace_id != self.workspace_id:
            raise auth_permission_denied(permission_key)
