"""
API request and response models for the userapi REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Request fields default to "" so a body with missing keys still reaches the
lifecycle engine and fails its shape validation as "invalid credentials",
the same way an empty string would.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignUpRequest(BaseModel):
    """Request body for POST /api/v1/user."""

    user_name: str = Field(default="", max_length=255)
    email: str = Field(default="", max_length=320)
    password: str = Field(default="", max_length=255)


class SignInRequest(BaseModel):
    """Request body for POST /api/v1/user/auth."""

    email: str = Field(default="", max_length=320)
    password: str = Field(default="", max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    """Uniform response envelope for every endpoint, success or error.

    message is omitted from the JSON when None (serialize with
    model_dump(exclude_none=True)).
    """

    model_config = ConfigDict(frozen=True)

    result: Literal["ok", "error"]
    message: Optional[str] = None
    code: int


class MeResponse(BaseModel):
    """Response for GET /api/v1/user/me."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_name: str
    email: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
