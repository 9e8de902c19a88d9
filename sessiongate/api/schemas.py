from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "validation_error",
        "conflict",
        "unavailable",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class TokenRequest(BaseModel):
    """Body of ``POST <auth_path>``.

    Fields are optional at the schema level so that a missing one yields the
    gateway's own 400 message rather than a generic validation error.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    provider: Optional[str] = Field(None, max_length=64)
    appid: Optional[str] = Field(
        None, validation_alias=AliasChoices("appid", "tenantId", "tenant_id")
    )
    token: Optional[str] = Field(None, max_length=8192)
    session_mode: bool = Field(
        True,
        validation_alias=AliasChoices("sessionMode", "session_mode", "isMetaLogin"),
        description="When false the token is minted without a ledger row (diagnostics only)",
    )

    @field_validator("session_mode", mode="before")
    @classmethod
    def _null_session_mode_is_tracked(cls, value: Any) -> Any:
        return True if value is None else value


class JWTBody(BaseModel):
    access_token: str
    refresh: int
    expires: int


class UserSnapshot(BaseModel):
    id: str
    appid: str
    identifier: str
    email: Optional[str] = None
    name: Optional[str] = None
    active: bool = True


class TokenResponse(BaseModel):
    jwt: JWTBody
    user: UserSnapshot


class PrincipalResponse(BaseModel):
    user: UserSnapshot
    tenant_identifier: str
    not_before: int
    expires: int
