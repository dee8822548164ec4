"""Pydantic models for request validation and responses."""
import re
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

PHONE_PATTERN = re.compile(r'^\+?[\d\s\-\(\)]+$')
SETTING_KEY_PATTERN = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')


class CastVoteRequest(BaseModel):
    """Vote submission request model."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={"example": {"candidateId": 3}}
    )

    candidate_id: int = Field(..., alias="candidateId", gt=0, description="Chosen candidate ID")


class CandidateCreate(BaseModel):
    """Candidate creation request model."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=2, max_length=100)
    party: str = Field(..., min_length=2, max_length=50)
    position: str = Field(..., min_length=2, max_length=50)
    bio: str = Field(default="", max_length=1000)
    image_url: Optional[str] = Field(default=None, alias="imageUrl")

    @field_validator("name", "party", "position", "bio")
    @classmethod
    def strip_text(cls, v):
        return v.strip()

    @field_validator("image_url")
    @classmethod
    def validate_image_url(cls, v):
        """Validate image URL is http(s)."""
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not re.match(r'^https?://\S+$', v):
            raise ValueError("Image URL must be valid")
        return v


class CandidateUpdate(CandidateCreate):
    """Candidate update request model; vote counts are not writable."""
    pass


class VoterRegistration(BaseModel):
    """Voter registration request model."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "name": "Jane Voter",
                "email": "jane@example.com",
                "voterId": "VTR12345",
                "phone": "+1 555 0100"
            }
        }
    )

    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    voter_code: str = Field(..., alias="voterId", min_length=5, max_length=20)
    phone: str

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        """Validate phone contains only digits and separators."""
        v = v.strip()
        if not PHONE_PATTERN.match(v):
            raise ValueError("Please provide a valid phone number")
        return v


class VoterUpdate(BaseModel):
    """Admin voter update model; the has-voted flag is not writable."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    is_admin: Optional[bool] = Field(default=None, alias="isAdmin")

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not PHONE_PATTERN.match(v):
            raise ValueError("Please provide a valid phone number")
        return v


class SettingCreate(BaseModel):
    """Setting creation request model."""

    key: str = Field(..., min_length=1, max_length=50)
    value: Any = None
    description: str = Field(default="", max_length=200)

    @field_validator("key")
    @classmethod
    def validate_key(cls, v):
        """Validate key is an identifier."""
        v = v.strip()
        if not SETTING_KEY_PATTERN.match(v):
            raise ValueError(
                "Key must be alphanumeric with underscores, starting with letter or underscore"
            )
        return v


class SettingUpdate(BaseModel):
    """Single setting update request model."""

    value: Any = Field(..., description="New value")


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str = Field(..., description="Overall health status")
    services: Dict[str, str] = Field(..., description="Individual service statuses")
    timestamp: datetime = Field(..., description="Health check timestamp")
