"""
User Profile Model.

Canonical user record exposed by the auth client.  The backend speaks
French field names (``prenom``, ``nom``, ``tel``) and Mongo-style ids
(``_id``); aliases accept those on input while the Python side only
ever sees the English attribute names.
"""

from __future__ import annotations

from typing import Optional, Union

from pydantic import AliasChoices, BaseModel, Field, field_validator

from authclient.models.enums import UserRole


class UserProfile(BaseModel):
    """Represents a user account as returned by the auth API.

    Every field is optional because the backend returns partial records
    depending on the endpoint (registration echoes a subset, get-by-id
    returns everything).
    """

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("_id", "id"))
    first_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("prenom", "first_name", "firstName"),
    )
    last_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("nom", "last_name", "lastName"),
    )
    email: Optional[str] = None
    phone: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("tel", "phone", "phoneNumber"),
    )
    # ISO date string ("2000-01-01T00:00:00.000Z"); kept as text because the
    # backend is inconsistent about the time component.
    birth_date: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("age", "birth_date", "birthDate"),
    )
    role: Optional[Union[UserRole, str]] = None
    email_verified: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("emailVerified", "email_verified"),
    )
    is_verified: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("isVerified", "is_verified"),
    )
    verification_code: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("verificationCode", "verification_code"),
    )
    code_expires_at: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("codeExpiresAt", "code_expires_at"),
    )

    model_config = {"extra": "ignore", "populate_by_name": True, "from_attributes": True}

    @field_validator("id", "phone", "verification_code", mode="before")
    @classmethod
    def _stringify(cls, value: object) -> Optional[str]:
        """Numbers arrive where strings are expected (phone, OTP codes)."""
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(int(value)) if float(value).is_integer() else str(value)
        return str(value)

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, value: object) -> Optional[Union[UserRole, str]]:
        if value is None:
            return None
        text = str(value).strip()
        try:
            return UserRole(text.lower())
        except ValueError:
            return text or None

    @property
    def full_name(self) -> str:
        """Display name, falling back to the email local part."""
        parts = [p for p in (self.first_name, self.last_name) if p]
        if parts:
            return " ".join(parts)
        return self.email.split("@")[0] if self.email else ""

    def mark_verified(self) -> "UserProfile":
        """Return a copy flagged verified with the one-time code fields cleared."""
        return self.model_copy(update={
            "is_verified": True,
            "email_verified": True,
            "verification_code": None,
            "code_expires_at": None,
        })
