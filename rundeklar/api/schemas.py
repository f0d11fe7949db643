from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Short secrets are exactly six ASCII digits
PIN_PATTERN = re.compile(r"^[0-9]{6}$")


def normalize_username(value: str) -> str:
    return (value or "").strip().lower()


def _validate_pin(value: str) -> str:
    if not PIN_PATTERN.match(value or ""):
        raise ValueError("PIN must be exactly 6 digits")
    return value


class _CamelModel(BaseModel):
    """Request bodies go over the wire with the authority's camelCase keys."""

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# -- requests --------------------------------------------------------------


class PasswordLoginRequest(_CamelModel):
    email: str
    password: str
    tenant_id: str = Field(alias="tenantId")
    totp_code: Optional[str] = Field(default=None, alias="totpCode", max_length=16)


class PinLoginRequest(_CamelModel):
    username: str
    pin: str
    tenant_id: str = Field(alias="tenantId")

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        normalized = normalize_username(value)
        if not normalized:
            raise ValueError("username is required")
        return normalized

    @field_validator("pin")
    @classmethod
    def _check_pin(cls, value: str) -> str:
        return _validate_pin(value)


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(alias="refreshToken")


class RegisterRequest(_CamelModel):
    email: str
    password: str
    tenant_id: str = Field(alias="tenantId")


class ForgotPasswordRequest(_CamelModel):
    email: str
    tenant_id: str = Field(alias="tenantId")


class ResetPasswordRequest(_CamelModel):
    token: str
    password: str


class PinResetRequest(_CamelModel):
    email: str
    username: str
    tenant_id: str = Field(alias="tenantId")

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return normalize_username(value)


class PinResetValidateRequest(_CamelModel):
    token: str
    tenant_id: str = Field(alias="tenantId")


class PinResetConfirmRequest(_CamelModel):
    token: str
    pin: str
    tenant_id: str = Field(alias="tenantId")

    @field_validator("pin")
    @classmethod
    def _check_pin(cls, value: str) -> str:
        return _validate_pin(value)


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(alias="currentPassword")
    new_password: str = Field(alias="newPassword")


class ChangePinRequest(_CamelModel):
    current_pin: str = Field(alias="currentPIN")
    new_pin: str = Field(alias="newPIN")

    @field_validator("current_pin", "new_pin")
    @classmethod
    def _check_pin(cls, value: str) -> str:
        return _validate_pin(value)


class UpdateProfileRequest(_CamelModel):
    email: Optional[str] = None


# -- responses -------------------------------------------------------------


class ErrorBody(BaseModel):
    """Failure body: ``{ error, detail?, fieldErrors? }``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    error: Optional[str] = None
    message: Optional[str] = None
    detail: Optional[Any] = None
    field_errors: Optional[Dict[str, Any]] = Field(default=None, alias="fieldErrors")
    requires_2fa: bool = Field(default=False, alias="requires2FA")

    @property
    def display_message(self) -> Optional[str]:
        return self.error or self.message


class LoginResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    access_token: str = Field(alias="accessToken", min_length=1)
    refresh_token: str = Field(alias="refreshToken", min_length=1)
    club: Dict[str, Any]


class RefreshResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    access_token: str = Field(alias="accessToken", min_length=1)
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


class MeResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    club: Dict[str, Any]


class ProfileResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: Optional[str] = None
    club: Optional[Dict[str, Any]] = None


class PinResetValidateResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: str


class TwoFactorSetupResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    qr_code: str = Field(alias="qrCode")
    secret: str


class TwoFactorConfirmResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    backup_codes: List[str] = Field(alias="backupCodes")
