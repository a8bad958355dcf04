from __future__ import annotations

from typing import Optional, Union

from fastapi import Depends, Header

from sessionguard.service.runtime import get_runtime
from sessionguard.storage.models import Account, Role


async def get_current_account(authorization: Optional[str] = Header(None)) -> Account:
    return get_runtime().guard.authenticate(authorization)


async def get_optional_account(
    authorization: Optional[str] = Header(None),
) -> Optional[Account]:
    return get_runtime().guard.authenticate_optional(authorization)


def require_roles(*roles: Union[Role, str]):
    """Dependency factory admitting only accounts holding one of ``roles``."""

    async def _dependency(
        account: Optional[Account] = Depends(get_optional_account),
        authorization: Optional[str] = Header(None),
    ) -> Account:
        guard = get_runtime().guard
        if account is None and authorization:
            # Surface the precise failure (expired, invalid...) rather than AUTH_REQUIRED
            account = guard.authenticate(authorization)
        return guard.authorize(account, roles)

    return _dependency


get_admin_account = require_roles(Role.ADMIN)
