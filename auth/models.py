"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores and the session coordinator do the work.

Identity classes:
  admin -- platform administrators. No tenant. Capability: is_manager.
  user  -- company-affiliated end users. Tenant: company_id. Capability: role.

The capability is a tagged variant (AdminCapability | UserCapability) so the
session coordinator can be written once and parameterized by IdentityKind.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Union


class IdentityKind(str, Enum):
    admin = "admin"
    user = "user"


@dataclass(frozen=True)
class AdminCapability:
    is_manager: bool = False


@dataclass(frozen=True)
class UserCapability:
    role: str  # "manager" or "regular"
    company_id: int
    is_super_user: bool = False


Capability = Union[AdminCapability, UserCapability]


@dataclass
class Identity:
    """A credentialed principal of either class.

    password_hash is the bcrypt hash; it never leaves the store/verifier
    layer -- projection() omits it. wrong_attempts is tracked for the user
    class but no lockout is wired to it.
    """

    kind: IdentityKind
    email: str
    id: int | None = None
    password_hash: str | None = None
    first_name: str = ""
    last_name: str = ""
    is_manager: bool = False
    role: str | None = None
    is_super_user: bool = False
    company_id: int | None = None
    is_blocked: bool = False
    wrong_attempts: int = 0
    created_at: str | None = None
    last_login: str | None = None

    @property
    def capability(self) -> Capability:
        if self.kind is IdentityKind.admin:
            return AdminCapability(is_manager=self.is_manager)
        return UserCapability(
            role=self.role or "regular",
            company_id=self.company_id,
            is_super_user=self.is_super_user,
        )

    @property
    def cache_key(self) -> str:
        return f"{self.kind.value}:{self.id}"

    def projection(self) -> dict:
        """Non-secret snapshot used for the identity cache and API responses."""
        data = {
            "id": self.id,
            "kind": self.kind.value,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_blocked": self.is_blocked,
        }
        if self.kind is IdentityKind.admin:
            data["is_manager"] = self.is_manager
        else:
            data["role"] = self.role or "regular"
            data["is_super_user"] = self.is_super_user
            data["company_id"] = self.company_id
        return data


@dataclass(frozen=True)
class AccessClaims:
    """Verified claims from an access token."""

    identity_id: int
    kind: IdentityKind
    capability: Capability
    expires_at: datetime


@dataclass
class RefreshTokenRecord:
    """A ledger row. token_hash is bcrypt(secret); the secret itself is never stored.

    Live iff not revoked and expires_at is in the future.
    """

    id: str
    owner_id: int
    token_hash: str
    expires_at: datetime
    created_at: datetime
    revoked: bool = False

    def is_live(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass
class OtpChallenge:
    """The single password-reset challenge for an identity."""

    identity_id: int
    code_hash: str
    expires_at: datetime
    created_at: datetime
    verified: bool = False
