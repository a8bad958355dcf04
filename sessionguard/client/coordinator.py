from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from sessionguard.client.token_store import MemoryTokenStore, StoredTokens, TokenStore
from sessionguard.logging import get_logger

logger = get_logger(__name__)

REFRESH_PATH = "/auth/refresh-token"

# A body, or a callable building it; callables are evaluated on every attempt
Payload = Union[Dict[str, Any], Callable[[], Dict[str, Any]], None]


class ApiError(Exception):
    """Non-2xx answer from the server, carrying its envelope fields."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        *,
        data: Any = None,
        errors: Optional[List[dict]] = None,
    ) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.data = data
        self.errors = errors or []


class SessionExpiredError(ApiError):
    """The refresh token was rejected; the caller must log in again."""

    def __init__(self, message: str = "Session expired. Please login again.") -> None:
        super().__init__(401, "SESSION_EXPIRED", message)


class SessionCoordinator:
    """Client side of the token protocol.

    Attaches the current access token to requests and, when the server
    answers ``TOKEN_EXPIRED``, refreshes the pair. Concurrent callers that
    hit the expiry together share one refresh task, so the server sees a
    single ``/auth/refresh-token`` call per cycle and the rotated-out refresh
    token is never presented twice.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000/api",
        *,
        client: Optional[httpx.AsyncClient] = None,
        token_store: Optional[TokenStore] = None,
        max_refresh_retries: int = 3,
        timeout: float = 10.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.token_store: TokenStore = token_store or MemoryTokenStore()
        self.max_refresh_retries = max_refresh_retries
        self._retry_count = 0
        self._refresh_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "SessionCoordinator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        if self._owns_client:
            await self._client.aclose()

    # ----------------------------------------------------------------- state

    @property
    def access_token(self) -> Optional[str]:
        return self.token_store.load().access_token

    @property
    def refresh_token(self) -> Optional[str]:
        return self.token_store.load().refresh_token

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token)

    def set_tokens(self, access_token: str, refresh_token: str) -> None:
        self.token_store.save(StoredTokens(access_token, refresh_token))

    def clear_tokens(self) -> None:
        self.token_store.clear()

    # ------------------------------------------------------------- transport

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Payload = None,
        authenticated: bool = True,
    ) -> Dict[str, Any]:
        """Send a request and return the decoded success envelope.

        Pass ``json`` as a callable when the body depends on token state
        that a transparent refresh may change between attempts.
        """
        used_token = self.access_token if authenticated else None
        body_json = json() if callable(json) else json
        response = await self._send(method, path, body_json, used_token)
        body = _decode(response)
        if response.is_success:
            self._retry_count = 0
            return body

        error = _error_from(response, body)
        if (
            authenticated
            and error.code == "TOKEN_EXPIRED"
            and self._retry_count < self.max_refresh_retries
        ):
            await self._await_fresh_tokens(used_token)
            return await self.request(method, path, json=json, authenticated=authenticated)
        raise error

    async def _send(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]],
        access_token: Optional[str],
    ) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return await self._client.request(method, path, json=json, headers=headers)

    async def _await_fresh_tokens(self, used_token: Optional[str]) -> None:
        current = self.access_token
        if current and current != used_token:
            # A refresh finished after this request went out; just retry
            return
        if self._refresh_task is None or self._refresh_task.done():
            self._retry_count += 1
            self._refresh_task = asyncio.create_task(self._refresh())
        await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> None:
        refresh_token = self.refresh_token
        if not refresh_token:
            self.clear_tokens()
            raise SessionExpiredError()
        try:
            response = await self._client.post(
                REFRESH_PATH,
                json={"refreshToken": refresh_token},
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("token_refresh_transport_failed", error=str(exc))
            self.clear_tokens()
            raise SessionExpiredError() from exc

        body = _decode(response)
        tokens = (body.get("data") or {}).get("tokens") or {}
        if not response.is_success or not tokens.get("accessToken"):
            logger.info(
                "token_refresh_rejected",
                status_code=response.status_code,
                code=body.get("code"),
            )
            self.clear_tokens()
            raise SessionExpiredError()
        self.set_tokens(tokens["accessToken"], tokens["refreshToken"])
        logger.info("token_refreshed")

    # ------------------------------------------------------------ operations

    async def register(self, name: str, email: str, password: str) -> Dict[str, Any]:
        body = await self.request(
            "POST",
            "/auth/register",
            json={"name": name, "email": email, "password": password},
            authenticated=False,
        )
        self._store_from(body)
        return body["data"]["user"]

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        body = await self.request(
            "POST",
            "/auth/login",
            json={"email": email, "password": password},
            authenticated=False,
        )
        self._store_from(body)
        return body["data"]["user"]

    async def logout(self) -> None:
        """Revoke this device's refresh session; local tokens are dropped regardless."""
        try:
            if self.access_token:
                # Read at send time: a refresh during the call rotates the token
                await self.request(
                    "POST", "/auth/logout", json=lambda: {"refreshToken": self.refresh_token}
                )
        finally:
            self.clear_tokens()

    async def logout_all(self) -> None:
        try:
            await self.request("POST", "/auth/logout-all")
        finally:
            self.clear_tokens()

    async def me(self) -> Dict[str, Any]:
        body = await self.request("GET", "/auth/me")
        return body["data"]["user"]

    async def update_profile(
        self, *, name: Optional[str] = None, profile: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if name is not None:
            payload["name"] = name
        if profile is not None:
            payload["profile"] = profile
        body = await self.request("PUT", "/auth/profile", json=payload)
        return body["data"]["user"]

    async def change_password(self, current_password: str, new_password: str) -> None:
        await self.request(
            "PUT",
            "/auth/change-password",
            json={"currentPassword": current_password, "newPassword": new_password},
        )
        # The server revoked every refresh session
        self.clear_tokens()

    async def sessions(self) -> List[Dict[str, Any]]:
        body = await self.request("GET", "/auth/sessions")
        return body["data"]["sessions"]

    async def revoke_session(self, session_id: str) -> None:
        await self.request("DELETE", f"/auth/sessions/{session_id}")

    def _store_from(self, body: Dict[str, Any]) -> None:
        tokens = body["data"]["tokens"]
        self.set_tokens(tokens["accessToken"], tokens["refreshToken"])


def _decode(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_from(response: httpx.Response, body: Dict[str, Any]) -> ApiError:
    return ApiError(
        response.status_code,
        body.get("code") or "HTTP_ERROR",
        body.get("message") or response.reason_phrase or "Request failed",
        data=body.get("data"),
        errors=body.get("errors"),
    )
