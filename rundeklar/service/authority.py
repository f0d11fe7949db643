from __future__ import annotations

import json
from typing import Any, Dict, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from rundeklar.api.schemas import (
    ErrorBody,
    ForgotPasswordRequest,
    LoginResponse,
    PasswordLoginRequest,
    PinLoginRequest,
    PinResetConfirmRequest,
    PinResetRequest,
    PinResetValidateRequest,
    PinResetValidateResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    ResetPasswordRequest,
)
from rundeklar.logging import get_correlation_id, get_logger
from rundeklar.service.errors import (
    AuthenticationRejected,
    RequestRejected,
    SecondFactorRequired,
    ServerError,
    TransportFailure,
    ValidationFailure,
)

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

CORRELATION_HEADER = "X-Correlation-ID"


def correlation_headers() -> Dict[str, str]:
    cid = get_correlation_id()
    return {CORRELATION_HEADER: cid} if cid else {}


def is_json_response(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type", "")
    return "application/json" in content_type.lower()


def _reason(response: httpx.Response) -> str:
    return response.reason_phrase or ""


def read_json(response: httpx.Response) -> Any:
    """Parse the body, refusing anything not labelled as JSON.

    An HTML error page from a proxy must not be mistaken for an answer.
    """
    if not is_json_response(response):
        logger.warning(
            "authority_non_json_response",
            status_code=response.status_code,
            content_type=response.headers.get("content-type"),
        )
        raise ServerError(
            f"Server error: {response.status_code} {_reason(response)}".rstrip(),
            status_code=response.status_code,
        )
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServerError(
            "Invalid response from server", status_code=response.status_code
        ) from exc


def raise_for_error(response: httpx.Response, *, fallback: str = "Request failed") -> None:
    """Map a non-2xx response onto the error taxonomy."""
    if response.is_success:
        return
    if response.status_code == 401 and not is_json_response(response):
        # The status alone is authoritative; the body is some proxy's page
        raise AuthenticationRejected(fallback, status_code=401)
    raw = read_json(response)
    try:
        body = ErrorBody.model_validate(raw if isinstance(raw, dict) else {})
    except PydanticValidationError:
        body = ErrorBody()
    message = body.display_message or fallback
    detail = body.detail if isinstance(body.detail, str) else None
    status = response.status_code
    if body.requires_2fa:
        raise SecondFactorRequired(status_code=status)
    if body.field_errors:
        raise ValidationFailure(
            message, status_code=status, detail=detail, field_errors=body.field_errors
        )
    if status == 401:
        raise AuthenticationRejected(message, status_code=status, detail=detail)
    raise RequestRejected(message, status_code=status, detail=detail)


def decode_response(
    response: httpx.Response, model: Type[M], *, fallback: str = "Request failed"
) -> M:
    raise_for_error(response, fallback=fallback)
    raw = read_json(response)
    try:
        return model.model_validate(raw)
    except PydanticValidationError as exc:
        logger.warning(
            "authority_response_invalid",
            model=model.__name__,
            status_code=response.status_code,
            errors=exc.error_count(),
        )
        raise TransportFailure(
            "Malformed response from server", status_code=response.status_code
        ) from exc


class AuthorityClient:
    """Calls to the authority's unauthenticated ``/auth/*`` endpoints.

    Bearer-authenticated endpoints go through ``AuthenticatedClient`` and
    reuse :func:`decode_response`; this class never attaches credentials.
    """

    def __init__(self, base_url: str, http: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = http

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _post(
        self, path: str, body: Dict[str, Any], *, params: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        try:
            return await self.http.post(
                self.url(path), json=body, params=params, headers=correlation_headers()
            )
        except httpx.TransportError as exc:
            logger.warning(
                "authority_transport_error",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise TransportFailure(f"Could not reach authority: {type(exc).__name__}") from exc

    async def login_with_password(self, request: PasswordLoginRequest) -> LoginResponse:
        response = await self._post("/auth/login", request.to_body())
        return decode_response(response, LoginResponse, fallback="Login failed")

    async def login_with_pin(self, request: PinLoginRequest) -> LoginResponse:
        response = await self._post("/auth/login", request.to_body())
        return decode_response(response, LoginResponse, fallback="Login failed")

    async def refresh(self, refresh_token: str) -> RefreshResponse:
        body = RefreshRequest(refresh_token=refresh_token).to_body()
        response = await self._post("/auth/refresh", body)
        return decode_response(response, RefreshResponse, fallback="Refresh failed")

    async def logout(self, refresh_token: str) -> None:
        body = RefreshRequest(refresh_token=refresh_token).to_body()
        response = await self._post("/auth/logout", body)
        raise_for_error(response, fallback="Logout failed")

    async def register(self, request: RegisterRequest) -> None:
        response = await self._post("/auth/register", request.to_body())
        raise_for_error(response, fallback="Registration failed")

    async def verify_email(self, token: str) -> None:
        response = await self._post("/auth/verify-email", {"token": token})
        raise_for_error(response, fallback="Email verification failed")

    async def forgot_password(self, request: ForgotPasswordRequest) -> None:
        response = await self._post("/auth/forgot-password", request.to_body())
        raise_for_error(response, fallback="Password reset request failed")

    async def reset_password(self, request: ResetPasswordRequest) -> None:
        response = await self._post("/auth/reset-password", request.to_body())
        raise_for_error(response, fallback="Password reset failed")

    async def request_pin_reset(self, request: PinResetRequest) -> None:
        response = await self._post(
            "/auth/reset-pin", request.to_body(), params={"action": "request"}
        )
        raise_for_error(response, fallback="PIN reset request failed")

    async def validate_pin_reset(self, request: PinResetValidateRequest) -> str:
        response = await self._post(
            "/auth/reset-pin", request.to_body(), params={"action": "validate"}
        )
        parsed = decode_response(
            response, PinResetValidateResponse, fallback="Invalid or expired reset token"
        )
        return parsed.username

    async def reset_pin(self, request: PinResetConfirmRequest) -> None:
        response = await self._post(
            "/auth/reset-pin", request.to_body(), params={"action": "reset"}
        )
        raise_for_error(response, fallback="PIN reset failed")
