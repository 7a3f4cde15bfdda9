"""
API request and response models for FarmAssist REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (firstName, isVerified, ...). Request models accept
either camelCase or snake_case; responses are dumped by alias.

Request models ignore unknown fields, so a registration or profile update that
smuggles "role", "isVerified" or "email" simply loses those keys.
"""

from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from auth.models import User
from auth.tokens import MAX_PASSWORD_BYTES


def _fits_bcrypt(value: str) -> str:
    # Measured after markup escaping, which turns each "<" or ">" into 4 bytes.
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return value


Password = Annotated[str, Field(min_length=6, max_length=128), AfterValidator(_fits_bcrypt)]

_SINGLE_LINE = r"^[^\r\n]*$"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Request body for POST /api/auth/register."""

    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    password: Password
    phone: str = Field(min_length=6, max_length=50)
    location: str = Field(default="", max_length=255)


class LoginRequest(_CamelModel):
    email: EmailStr
    password: Password


class ForgotPasswordRequest(_CamelModel):
    email: EmailStr


class ResetPasswordRequest(_CamelModel):
    password: Password


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: Password


class ProfileUpdate(_CamelModel):
    """Fields a user may change on their own profile. Everything else is dropped."""

    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, min_length=6, max_length=50)
    location: Optional[str] = Field(default=None, max_length=255)


class RoleUpdate(_CamelModel):
    # Checked against Role in the handler so the client gets one readable message.
    role: str


class ContactRequest(_CamelModel):
    # name and subject end up in mail headers, so no line breaks.
    name: str = Field(min_length=1, max_length=100, pattern=_SINGLE_LINE)
    email: EmailStr
    subject: str = Field(default="", max_length=200, pattern=_SINGLE_LINE)
    message: str = Field(min_length=1, max_length=5000)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserOut(_CamelModel):
    """Public projection of a User. Never carries hashes or tokens."""

    id: int
    first_name: str
    last_name: str
    email: str
    phone: str
    location: str
    role: str
    is_verified: bool
    last_login: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            phone=user.phone,
            location=user.location,
            role=user.role.value,
            is_verified=user.is_verified,
            last_login=user.last_login,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


def user_payload(user: User) -> dict[str, Any]:
    return UserOut.from_user(user).model_dump(by_alias=True)


class Pagination(BaseModel):
    current: int
    pages: int
    total: int


class FieldError(BaseModel):
    field: str
    message: str


class ErrorResponse(BaseModel):
    """Uniform error envelope. `error` is only populated outside production."""

    success: bool = False
    message: str
    error: Optional[Any] = None
    errors: Optional[list[FieldError]] = None


class HealthResponse(BaseModel):
    status: str = "OK"
    message: str = "FarmAssist API is running"
    timestamp: str
