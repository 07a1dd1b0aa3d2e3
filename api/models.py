"""
API request and response models for the SessionGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from auth.models import IdentityKind

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: format only. Deliverability is proven by the OTP flow.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
OTP_PATTERN = r"^\d{4,10}$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=254)
    password: str = Field(min_length=8, max_length=200)
    remember: bool = False


class SendOtpRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=254)


class VerifyOtpRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=254)
    otp_code: str = Field(pattern=OTP_PATTERN)


class ResetPasswordRequest(BaseModel):
    """Request body for PUT /reset-password.

    Both password fields must match; the check runs after field validation so
    the length constraints report first.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=254)
    new_password: str = Field(min_length=8, max_length=200)
    confirm_new_password: str = Field(min_length=8, max_length=200)

    @model_validator(mode="after")
    def passwords_match(self) -> "ResetPasswordRequest":
        if self.new_password != self.confirm_new_password:
            raise ValueError("new_password and confirm_new_password do not match")
        return self


class BlockRequest(BaseModel):
    """Request body for PATCH /api/v1/admin/auth/identities/{id}/block."""

    kind: IdentityKind
    is_blocked: bool


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SuccessResponse(BaseModel):
    """Envelope returned by every successful auth endpoint."""

    success: bool = True
    message: str
    data: Optional[Any] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
