from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

# Reserved tenant identifiers
DEFAULT_TENANT = "default"
DEMO_TENANT = "demo"
MARKETING_TENANT = "marketing"
RESERVED_TENANTS = frozenset({DEFAULT_TENANT, DEMO_TENANT, MARKETING_TENANT})


class Role(str, Enum):
    COACH = "coach"
    ADMIN = "admin"
    SYSTEM_ADMIN = "system-admin"


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class CredentialPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class Principal:
    """Identifying projection of the authenticated club or coach."""

    id: str
    email: str
    role: str
    tenant_id: str
    username: Optional[str] = None
    email_verified: bool = False
    two_factor_enabled: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Principal":
        """Build from the authority's ``club`` object (camelCase keys)."""
        username = payload.get("username")
        return cls(
            id=str(payload["id"]),
            email=str(payload.get("email") or ""),
            role=str(payload.get("role") or ""),
            tenant_id=str(payload.get("tenantId") or payload.get("tenant_id") or ""),
            username=str(username) if username else None,
            email_verified=bool(payload.get("emailVerified", False)),
            two_factor_enabled=bool(payload.get("twoFactorEnabled", False)),
        )


@dataclass(frozen=True)
class TwoFactorSetup:
    qr_code: str
    secret: str
