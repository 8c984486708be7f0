import re
from datetime import date

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from studybuddy.schemas.common import UTCDateTime

_NON_DIGITS = re.compile(r"\D")


def format_phone_number(raw: str | None) -> str | None:
    """Normalise a phone number to E.164, assuming US numbers when no country code.

    Blank or too-short input becomes ``None``.
    """
    if raw is None:
        return None
    digits = _NON_DIGITS.sub("", raw)
    if len(digits) < 10:
        return None
    if len(digits) == 10 and not digits.startswith("1"):
        digits = f"1{digits}"
    return f"+{digits}"


class SignupIn(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    date_of_birth: date
    phone_number: str | None = None

    @field_validator("first_name", "last_name")
    @classmethod
    def strip_names(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name cannot be blank")
        return value

    @field_validator("phone_number")
    @classmethod
    def normalise_phone(cls, value: str | None) -> str | None:
        return format_phone_number(value)


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class CheckEmailIn(BaseModel):
    email: EmailStr


class CheckEmailOut(BaseModel):
    exists: bool


class UserOut(BaseModel):
    user_id: str
    email: EmailStr
    first_name: str
    last_name: str
    date_of_birth: date | None = None
    phone_number: str | None = None
    is_super_admin: bool = False
    created_at: UTCDateTime | None = None
    updated_at: UTCDateTime | None = None

    model_config = ConfigDict(
        from_attributes=True,
    )

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email

    @property
    def role(self) -> str:
        return "super_admin" if self.is_super_admin else "user"


class AuthOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut


class VerifyOut(BaseModel):
    valid: bool
    user: UserOut
