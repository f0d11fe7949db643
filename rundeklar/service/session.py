from __future__ import annotations

import dataclasses
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from rundeklar.api.schemas import (
    ChangePasswordRequest,
    ChangePinRequest,
    ForgotPasswordRequest,
    LoginResponse,
    MeResponse,
    PasswordLoginRequest,
    PinLoginRequest,
    PinResetConfirmRequest,
    PinResetRequest,
    PinResetValidateRequest,
    ProfileResponse,
    RegisterRequest,
    ResetPasswordRequest,
    TwoFactorConfirmResponse,
    TwoFactorSetupResponse,
    UpdateProfileRequest,
)
from rundeklar.logging import get_logger, set_correlation_id
from rundeklar.service.authority import AuthorityClient, decode_response, raise_for_error
from rundeklar.service.errors import (
    AuthError,
    SecondFactorRequired,
    SessionTerminated,
    TransportFailure,
    ValidationFailure,
)
from rundeklar.service.http import AuthenticatedClient
from rundeklar.service.refresh import RefreshCoordinator, RefreshEvent
from rundeklar.service.scheduler import ActivityKind, RefreshScheduler
from rundeklar.service.signals import Observable, Unsubscribe
from rundeklar.service.tenant import TenantBinding
from rundeklar.storage.models import Principal, SessionState, TwoFactorSetup
from rundeklar.storage.token_store import TokenStore

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

_ACTIVE_STATES = (SessionState.AUTHENTICATED, SessionState.REFRESHING)


def _build_request(model: Type[M], **data: Any) -> M:
    """Validate a request body locally; bad input never reaches the network."""
    try:
        return model(**data)
    except PydanticValidationError as exc:
        field_errors: Dict[str, str] = {}
        for error in exc.errors():
            field = ".".join(str(part) for part in error.get("loc", ())) or "__root__"
            message = error.get("msg", "Invalid value")
            if message.startswith("Value error, "):
                message = message[len("Value error, "):]
            field_errors.setdefault(field, message)
        first = next(iter(field_errors.values()), "Invalid input")
        raise ValidationFailure(first, field_errors=field_errors) from exc


def _principal_from(club: Dict[str, Any], status_code: Optional[int] = None) -> Principal:
    try:
        return Principal.from_payload(club)
    except (KeyError, TypeError, ValueError) as exc:
        raise TransportFailure(
            "Malformed response from server", status_code=status_code
        ) from exc


class SessionManager:
    """Public surface of the session: login, logout, self-query and account flows.

    ``state`` and ``principal`` are observables; consumers subscribe to
    them instead of polling. Operations that reach the authority raise
    :class:`~rundeklar.service.errors.AuthError` subclasses; optional side
    paths (logout notification, scheduled refreshes) log and continue.
    """

    def __init__(
        self,
        *,
        store: TokenStore,
        authority: AuthorityClient,
        fetch: AuthenticatedClient,
        coordinator: RefreshCoordinator,
        scheduler: RefreshScheduler,
        binding: TenantBinding,
        development_mode: bool = False,
    ) -> None:
        self.store = store
        self.authority = authority
        self.fetch = fetch
        self.coordinator = coordinator
        self.scheduler = scheduler
        self.binding = binding
        self.development_mode = development_mode
        self.state: Observable[SessionState] = Observable(
            "session_state", SessionState.INITIALIZING
        )
        self.principal: Observable[Optional[Principal]] = Observable("session_principal", None)
        self._who_am_i_done = False
        self._unsubscribers: List[Unsubscribe] = [
            coordinator.invalidated.subscribe(self._on_invalidated),
            coordinator.events.subscribe(self._on_refresh_event),
        ]

    # -- observation --------------------------------------------------------

    @property
    def is_authenticated(self) -> bool:
        return self.state.value in _ACTIVE_STATES and self.principal.value is not None

    @property
    def tenant_id(self) -> str:
        return self.binding.tenant_id

    def subscribe(
        self, listener: Callable[[Optional[Principal]], None], *, replay: bool = False
    ) -> Unsubscribe:
        """Subscribe to "current principal or None" changes."""
        return self.principal.subscribe(listener, replay=replay)

    def record_activity(self, kind: ActivityKind = ActivityKind.POINTER_DOWN) -> bool:
        return self.scheduler.record_activity(kind)

    # -- state transitions --------------------------------------------------

    def _enter_authenticated(self, principal: Principal) -> None:
        # Login replaces the principal wholesale, even with an equal one
        self.principal.set(principal, force=True)
        self.state.set(SessionState.AUTHENTICATED)
        # A different principal may be replacing the current one
        self.scheduler.stop()
        self.scheduler.start(principal)

    def _terminate(self, reason: str) -> None:
        self.scheduler.stop()
        was_active = self.state.value in _ACTIVE_STATES
        self.principal.set(None)
        if was_active:
            self.state.set(SessionState.TERMINATED)
            logger.info("session_terminated", reason=reason)
        self.state.set(SessionState.ANONYMOUS)

    def _on_invalidated(self, reason: str) -> None:
        self._terminate(reason)

    def _on_refresh_event(self, event: RefreshEvent) -> None:
        current = self.state.value
        if event.phase == "started" and current is SessionState.AUTHENTICATED:
            self.state.set(SessionState.REFRESHING)
        elif event.phase == "finished" and current is SessionState.REFRESHING:
            # Permanent failure already moved the state through _on_invalidated
            self.state.set(SessionState.AUTHENTICATED)

    def _establish(self, result: LoginResponse, *, method: str) -> Principal:
        principal = _principal_from(result.club)
        self.coordinator.reset()
        self.store.set_pair(result.access_token, result.refresh_token)
        self._enter_authenticated(principal)
        logger.info(
            "auth_login_succeeded",
            method=method,
            principal_id=principal.id,
            role=principal.role,
            tenant_id=self.binding.tenant_id,
        )
        return principal

    # -- startup ------------------------------------------------------------

    async def who_am_i(self) -> Optional[Principal]:
        """Resolve the principal behind the stored credentials, once per manager."""
        if self._who_am_i_done:
            return self.principal.value
        self._who_am_i_done = True
        set_correlation_id()

        if not self.store.get_access():
            if self.development_mode:
                logger.debug("auth_whoami_skipped", reason="no_access_token")
            self._terminate("no_credentials")
            return None

        try:
            response = await self.fetch.get(self.authority.url("/auth/me"))
            parsed = decode_response(response, MeResponse, fallback="Not authenticated")
            principal = _principal_from(parsed.club, response.status_code)
        except AuthError as exc:
            logger.warning(
                "auth_whoami_failed",
                status_code=exc.status_code,
                error_code=exc.error_code,
                error=str(exc),
            )
            if exc.status_code in (401, 403):
                self.store.clear_pair()
            self._terminate("whoami_failed")
            return None

        self._enter_authenticated(principal)
        logger.info("auth_whoami_succeeded", principal_id=principal.id, role=principal.role)
        return principal

    # -- login / logout -----------------------------------------------------

    async def login_with_password(
        self, email: str, password: str, second_factor: Optional[str] = None
    ) -> Principal:
        set_correlation_id()
        request = _build_request(
            PasswordLoginRequest,
            email=email.strip(),
            password=password,
            tenant_id=self.binding.tenant_id,
            totp_code=(second_factor or "").strip() or None,
        )
        try:
            result = await self.authority.login_with_password(request)
        except SecondFactorRequired:
            logger.info("auth_login_second_factor_required", email=request.email)
            raise
        except AuthError as exc:
            logger.warning(
                "auth_login_failed",
                method="password",
                status_code=exc.status_code,
                error_code=exc.error_code,
            )
            raise
        return self._establish(result, method="password")

    async def login_with_short_secret(self, username: str, secret: str) -> Principal:
        set_correlation_id()
        request = _build_request(
            PinLoginRequest,
            username=username,
            pin=secret,
            tenant_id=self.binding.tenant_id,
        )
        try:
            result = await self.authority.login_with_pin(request)
        except AuthError as exc:
            logger.warning(
                "auth_login_failed",
                method="pin",
                status_code=exc.status_code,
                error_code=exc.error_code,
            )
            raise
        return self._establish(result, method="pin")

    async def register(self, email: str, password: str) -> None:
        set_correlation_id()
        request = _build_request(
            RegisterRequest,
            email=email.strip(),
            password=password,
            tenant_id=self.binding.tenant_id,
        )
        await self.authority.register(request)
        logger.info("auth_registered", email=request.email, tenant_id=self.binding.tenant_id)

    async def logout(self) -> None:
        """End the session locally and ask the authority to revoke the refresh token.

        Local state is cleared before the network call, so a concurrent or
        repeated logout finds nothing left to revoke.
        """
        set_correlation_id()
        self.scheduler.stop()
        self.coordinator.reset()
        refresh_token = self.store.get_refresh()
        if refresh_token or self.store.get_access():
            self.store.clear_pair()
        self._terminate("logout")

        if not refresh_token:
            return
        try:
            await self.authority.logout(refresh_token)
        except AuthError as exc:
            logger.warning(
                "auth_logout_notify_failed",
                status_code=exc.status_code,
                error_code=exc.error_code,
                error=str(exc),
            )
        else:
            logger.info("auth_logout_notified")

    # -- bearer calls -------------------------------------------------------

    async def _bearer(
        self,
        path: str,
        model: Optional[Type[M]] = None,
        *,
        body: Optional[Dict[str, Any]] = None,
        fallback: str = "Request failed",
    ) -> Optional[M]:
        response = await self.fetch.post(self.authority.url(path), json=body or {})
        if response.status_code == 401 and not self.store.get_access():
            raise SessionTerminated("Session has ended", status_code=401)
        if model is None:
            raise_for_error(response, fallback=fallback)
            return None
        return decode_response(response, model, fallback=fallback)

    def _replace_principal(self, **changes: Any) -> None:
        current = self.principal.value
        if current is not None:
            self.principal.set(dataclasses.replace(current, **changes))

    async def request_two_factor_setup(self) -> TwoFactorSetup:
        set_correlation_id()
        parsed = await self._bearer(
            "/auth/setup-2fa", TwoFactorSetupResponse, fallback="Failed to set up 2FA"
        )
        logger.info("auth_2fa_setup_requested")
        return TwoFactorSetup(qr_code=parsed.qr_code, secret=parsed.secret)

    async def confirm_two_factor_setup(self, code: str) -> List[str]:
        set_correlation_id()
        parsed = await self._bearer(
            "/auth/verify-2fa-setup",
            TwoFactorConfirmResponse,
            body={"code": code.strip()},
            fallback="Invalid 2FA code",
        )
        self._replace_principal(two_factor_enabled=True)
        logger.info("auth_2fa_enabled", backup_code_count=len(parsed.backup_codes))
        return list(parsed.backup_codes)

    async def disable_two_factor(self, password: str) -> None:
        set_correlation_id()
        await self._bearer(
            "/auth/disable-2fa", body={"password": password}, fallback="Failed to disable 2FA"
        )
        self._replace_principal(two_factor_enabled=False)
        logger.info("auth_2fa_disabled")

    async def change_password(self, current_password: str, new_password: str) -> None:
        set_correlation_id()
        request = _build_request(
            ChangePasswordRequest,
            current_password=current_password,
            new_password=new_password,
        )
        await self._bearer(
            "/auth/change-password", body=request.to_body(), fallback="Failed to change password"
        )
        logger.info("auth_password_changed")

    async def change_pin(self, current_pin: str, new_pin: str) -> None:
        set_correlation_id()
        request = _build_request(ChangePinRequest, current_pin=current_pin, new_pin=new_pin)
        await self._bearer("/auth/change-pin", body=request.to_body(), fallback="Failed to change PIN")
        logger.info("auth_pin_changed")

    async def update_profile(self, email: Optional[str] = None) -> Optional[Principal]:
        set_correlation_id()
        request = _build_request(UpdateProfileRequest, email=email.strip() if email else None)
        parsed = await self._bearer(
            "/auth/update-profile",
            ProfileResponse,
            body=request.to_body(),
            fallback="Failed to update profile",
        )
        if parsed.club:
            self.principal.set(_principal_from(parsed.club))
        logger.info("auth_profile_updated", replaced=bool(parsed.club))
        return self.principal.value

    # -- unauthenticated account flows ---------------------------------------

    async def verify_email(self, token: str) -> None:
        set_correlation_id()
        await self.authority.verify_email(token)
        logger.info("auth_email_verified")

    async def forgot_password(self, email: str) -> None:
        set_correlation_id()
        request = _build_request(
            ForgotPasswordRequest, email=email.strip(), tenant_id=self.binding.tenant_id
        )
        await self.authority.forgot_password(request)
        logger.info("auth_password_reset_requested", email=request.email)

    async def reset_password(self, token: str, password: str) -> None:
        set_correlation_id()
        request = _build_request(ResetPasswordRequest, token=token, password=password)
        await self.authority.reset_password(request)
        logger.info("auth_password_reset")

    async def request_pin_reset(self, email: str, username: str) -> None:
        set_correlation_id()
        request = _build_request(
            PinResetRequest,
            email=email.strip(),
            username=username,
            tenant_id=self.binding.tenant_id,
        )
        await self.authority.request_pin_reset(request)
        logger.info("auth_pin_reset_requested", username=request.username)

    async def validate_pin_reset(self, token: str, tenant_id: Optional[str] = None) -> str:
        """Return the username a PIN-reset token was issued for."""
        set_correlation_id()
        request = _build_request(
            PinResetValidateRequest, token=token, tenant_id=tenant_id or self.binding.tenant_id
        )
        return await self.authority.validate_pin_reset(request)

    async def reset_pin(self, token: str, pin: str, tenant_id: Optional[str] = None) -> None:
        set_correlation_id()
        request = _build_request(
            PinResetConfirmRequest,
            token=token,
            pin=pin,
            tenant_id=tenant_id or self.binding.tenant_id,
        )
        await self.authority.reset_pin(request)
        logger.info("auth_pin_reset")

    # -- teardown -------------------------------------------------------------

    async def aclose(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self.scheduler.aclose()
        await self.coordinator.aclose()
