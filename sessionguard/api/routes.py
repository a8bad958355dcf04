from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import JSONResponse

from sessionguard.api.deps import get_admin_account, get_current_account
from sessionguard.api.schemas import (
    AccountStatusRequest,
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    RegisterRequest,
    TokenRefreshRequest,
    UpdateProfileRequest,
)
from sessionguard.service.auth import AuthResult, ClientInfo
from sessionguard.service.runtime import get_runtime
from sessionguard.storage.models import Account, auth_state

router = APIRouter()


def _ok(message: str, code: str, data: Any = None, *, status_code: int = 200) -> JSONResponse:
    envelope = Envelope(success=True, message=message, code=code, data=data)
    return JSONResponse(status_code=status_code, content=envelope.to_content())


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    )


def _auth_payload(result: AuthResult) -> dict:
    return {"user": result.account.to_public(), "tokens": result.tokens.to_public()}


def _admin_view(account: Account) -> dict:
    view = account.to_public()
    view["isActive"] = account.is_active
    view["authState"] = auth_state(account).value
    return view


@router.post("/auth/register", tags=["auth"], status_code=201)
async def register(body: RegisterRequest, request: Request):
    """Create an account with role ``user`` and open its first session."""
    result = await get_runtime().auth.register(
        body.email, body.password, body.name, client=_client_info(request)
    )
    return _ok(
        "User registered successfully",
        "REGISTRATION_SUCCESS",
        _auth_payload(result),
        status_code=201,
    )


@router.post("/auth/login", tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: invalid credentials or deactivated account
        423: account locked after repeated failures
    """
    result = await get_runtime().auth.login(
        body.email, body.password, client=_client_info(request)
    )
    return _ok("Login successful", "LOGIN_SUCCESS", _auth_payload(result))


@router.post("/auth/refresh-token", tags=["auth"])
async def refresh_token(request: Request, body: Optional[TokenRefreshRequest] = None):
    """Exchange a refresh token for a new pair; the presented token is consumed."""
    presented = body.refresh_token if body else None
    result = await get_runtime().auth.refresh(presented, client=_client_info(request))
    return _ok(
        "Token refreshed successfully",
        "TOKEN_REFRESHED",
        {"tokens": result.tokens.to_public()},
    )


@router.post("/auth/logout", tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    account: Account = Depends(get_current_account),
):
    await get_runtime().auth.logout(account.id, body.refresh_token if body else None)
    return _ok("Logged out successfully", "LOGOUT_SUCCESS")


@router.post("/auth/logout-all", tags=["auth"])
async def logout_all(account: Account = Depends(get_current_account)):
    await get_runtime().auth.logout_all(account.id)
    return _ok("Logged out from all devices", "LOGOUT_ALL_SUCCESS")


@router.get("/auth/me", tags=["auth"])
async def me(account: Account = Depends(get_current_account)):
    return _ok("Profile retrieved", "PROFILE_RETRIEVED", {"user": account.to_public()})


@router.put("/auth/profile", tags=["auth"])
async def update_profile(
    body: UpdateProfileRequest, account: Account = Depends(get_current_account)
):
    profile = body.profile.model_dump(exclude_unset=True) if body.profile else None
    updated = await get_runtime().auth.update_profile(
        account.id, name=body.name, profile=profile
    )
    return _ok("Profile updated successfully", "PROFILE_UPDATED", {"user": updated.to_public()})


@router.put("/auth/change-password", tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, account: Account = Depends(get_current_account)
):
    """Replace the password; every refresh session of the account is revoked."""
    await get_runtime().auth.change_password(
        account.id, body.current_password, body.new_password
    )
    return _ok(
        "Password changed successfully. Please log in again.", "PASSWORD_CHANGED"
    )


@router.get("/auth/sessions", tags=["auth"])
async def list_sessions(account: Account = Depends(get_current_account)):
    sessions = await get_runtime().auth.list_sessions(account.id)
    return _ok(
        "Sessions retrieved",
        "SESSIONS_RETRIEVED",
        {"sessions": [s.to_public() for s in sessions]},
    )


@router.delete("/auth/sessions/{session_id}", tags=["auth"])
async def revoke_session(
    session_id: str = Path(...),
    account: Account = Depends(get_current_account),
):
    await get_runtime().auth.revoke_session(account.id, session_id)
    return _ok("Session revoked", "SESSION_REVOKED")


@router.get("/auth/admin/users", tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    admin: Account = Depends(get_admin_account),
):
    accounts = await get_runtime().auth.list_accounts(limit=limit)
    return _ok(
        "Users retrieved",
        "USERS_RETRIEVED",
        {"users": [_admin_view(a) for a in accounts]},
    )


@router.post("/auth/admin/users/{account_id}/unlock", tags=["admin"])
async def admin_unlock_user(
    account_id: str = Path(..., max_length=64),
    admin: Account = Depends(get_admin_account),
):
    account = await get_runtime().auth.unlock_account(account_id)
    return _ok("Account unlocked", "ACCOUNT_UNLOCKED", {"user": _admin_view(account)})


@router.put("/auth/admin/users/{account_id}/status", tags=["admin"])
async def admin_set_status(
    body: AccountStatusRequest,
    account_id: str = Path(..., max_length=64),
    admin: Account = Depends(get_admin_account),
):
    account = await get_runtime().auth.set_active(account_id, body.is_active)
    return _ok(
        "Account status updated", "ACCOUNT_STATUS_UPDATED", {"user": _admin_view(account)}
    )
