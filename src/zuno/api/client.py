"""
Async HTTP client for the Zuno backend.

Thin typed wrapper over httpx. Responses are validated into the pydantic
schemas in zuno.api.schemas; transport and status failures are raised as
zuno.api.errors exceptions. Authenticated calls read the bearer token from a
provider callable so the client never caches secrets itself.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar
from urllib.parse import quote

import httpx
import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from zuno.api.errors import (
    ApiError,
    HttpStatusError,
    InvalidResponse,
    NoConnection,
    RequestTimeout,
)
from zuno.api.schemas import (
    ApiErrorBody,
    AuthResponse,
    ChallengeResponse,
    CompleteRequest,
    CreateWalletRequest,
    LoginRequest,
    RegisterRequest,
    SendTransactionRequest,
    TransactionResponse,
    UpdateUserRequest,
    UserResponse,
    WalletResponse,
    ZunoTagLookupResponse,
)
from zuno.auth.errors import NotAuthenticated

logger = structlog.get_logger()

_M = TypeVar("_M", bound=BaseModel)

_wallet_list = TypeAdapter(list[WalletResponse])
_transaction_list = TypeAdapter(list[TransactionResponse])

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409


class ZunoApiClient:
    """Typed access to the backend endpoints."""

    def __init__(
        self,
        base_url: str,
        token_provider: Callable[[], str | None] | None = None,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )

    async def __aenter__(self) -> ZunoApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Core request
    # ------------------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        token = self._token_provider() if self._token_provider else None
        if not token:
            msg = "No access token available"
            raise NotAuthenticated(msg)
        return {"Authorization": f"Bearer {token}"}

    async def request(
        self,
        method: str,
        path: str,
        *,
        body: BaseModel | None = None,
        params: dict[str, Any] | None = None,
        authenticated: bool = False,
    ) -> Any:
        """Send a request and return the decoded JSON body."""
        headers = self._auth_headers() if authenticated else {}
        payload = body.model_dump(mode="json", exclude_none=True) if body is not None else None

        try:
            response = await self._http.request(method, path, json=payload, params=params, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("api_timeout", method=method, path=path)
            msg = f"{method} {path} timed out"
            raise RequestTimeout(msg) from e
        except httpx.TransportError as e:
            logger.warning("api_unreachable", method=method, path=path, error=str(e))
            msg = f"{method} {path} failed: {e}"
            raise NoConnection(msg) from e

        if not response.is_success:
            logger.info("api_error_status", method=method, path=path, status=response.status_code)
            try:
                err = ApiErrorBody.model_validate(response.json())
            except ValueError:
                raise HttpStatusError(response.status_code) from None
            raise ApiError(response.status_code, err.error, err.message)

        logger.debug("api_ok", method=method, path=path, status=response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            msg = f"{method} {path} returned a non-JSON body"
            raise InvalidResponse(msg) from e

    @staticmethod
    def _parse(model: type[_M], data: Any) -> _M:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            msg = f"Unexpected {model.__name__} payload: {e.error_count()} error(s)"
            raise InvalidResponse(msg) from e

    @staticmethod
    def _parse_list(adapter: TypeAdapter[list[_M]], data: Any) -> list[_M]:
        try:
            return adapter.validate_python(data)
        except ValidationError as e:
            msg = f"Unexpected list payload: {e.error_count()} error(s)"
            raise InvalidResponse(msg) from e

    # ------------------------------------------------------------------
    # Auth (unauthenticated)
    # ------------------------------------------------------------------

    async def begin_registration(
        self, zuno_tag: str, display_name: str | None = None, email: str | None = None
    ) -> ChallengeResponse:
        body = RegisterRequest(zuno_tag=zuno_tag, display_name=display_name, email=email)
        return self._parse(ChallengeResponse, await self.request("POST", "/auth/register", body=body))

    async def complete_registration(self, challenge_id: str, credential: dict[str, Any]) -> AuthResponse:
        body = CompleteRequest(challenge_id=challenge_id, credential=credential)
        return self._parse(AuthResponse, await self.request("POST", "/auth/register/complete", body=body))

    async def begin_login(self, zuno_tag: str) -> ChallengeResponse:
        body = LoginRequest(zuno_tag=zuno_tag)
        return self._parse(ChallengeResponse, await self.request("POST", "/auth/login", body=body))

    async def complete_login(self, challenge_id: str, credential: dict[str, Any]) -> AuthResponse:
        body = CompleteRequest(challenge_id=challenge_id, credential=credential)
        return self._parse(AuthResponse, await self.request("POST", "/auth/login/complete", body=body))

    async def _check_availability(self, path: str) -> bool:
        # 409 means taken, 404 means nobody has it
        try:
            await self.request("GET", path)
        except HttpStatusError as e:
            if e.status_code == HTTP_CONFLICT:
                return False
            if e.status_code == HTTP_NOT_FOUND:
                return True
            raise
        return True

    async def check_zuno_tag_availability(self, zuno_tag: str) -> bool:
        return await self._check_availability(f"/auth/check-tag/{quote(zuno_tag, safe='')}")

    async def check_email_availability(self, email: str) -> bool:
        return await self._check_availability(f"/auth/check-email/{quote(email, safe='')}")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_current_user(self) -> UserResponse:
        return self._parse(UserResponse, await self.request("GET", "/users/me", authenticated=True))

    async def update_user(self, update: UpdateUserRequest) -> UserResponse:
        data = await self.request("PATCH", "/users/me", body=update, authenticated=True)
        return self._parse(UserResponse, data)

    async def lookup_zuno_tag(self, zuno_tag: str) -> ZunoTagLookupResponse:
        data = await self.request("GET", f"/zuno/{quote(zuno_tag, safe='')}", authenticated=True)
        return self._parse(ZunoTagLookupResponse, data)

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    async def list_wallets(self) -> list[WalletResponse]:
        return self._parse_list(_wallet_list, await self.request("GET", "/wallets", authenticated=True))

    async def create_wallet(self, blockchain: str, name: str | None = None) -> WalletResponse:
        body = CreateWalletRequest(blockchain=blockchain, name=name)
        return self._parse(WalletResponse, await self.request("POST", "/wallets", body=body, authenticated=True))

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def list_transactions(self, wallet_id: str | None = None) -> list[TransactionResponse]:
        params = {"wallet_id": wallet_id} if wallet_id else None
        data = await self.request("GET", "/transactions", params=params, authenticated=True)
        return self._parse_list(_transaction_list, data)

    async def send_transaction(self, send: SendTransactionRequest) -> TransactionResponse:
        data = await self.request("POST", "/transactions/send", body=send, authenticated=True)
        return self._parse(TransactionResponse, data)
