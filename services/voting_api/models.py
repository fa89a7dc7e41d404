"""Pydantic models for request/response validation."""
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Project(BaseModel):
    """Votable project as stored in the document store (vote records excluded)."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        json_schema_extra={
            "example": {
                "_id": 1,
                "name": "Alpha",
                "cat": 2,
                "summary": "Solar powered irrigation",
                "members": ["Ana", "Bruno"]
            }
        }
    )

    id: int = Field(..., alias="_id", description="Project identifier")
    name: str = Field(..., description="Project name")
    cat: int = Field(default=0, description="Category")
    summary: str = Field(default="", description="Short description")
    members: list[str] = Field(default_factory=list, description="Team members")


class VoteRecord(BaseModel):
    """Vote entry appended to a project's `votes` list."""

    model_config = ConfigDict(populate_by_name=True)

    ip: str
    user_agent: str = Field(default="", alias="userAgent")
    time: str = Field(default_factory=lambda: get_current_timestamp())

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


class VoteTally(BaseModel):
    """Capped vote total for one project."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        json_schema_extra={
            "example": {"_id": 1, "name": "Alpha", "totalVotes": 13}
        }
    )

    id: int = Field(..., alias="_id", description="Project identifier")
    name: Optional[str] = Field(default=None, description="Project name")
    total_votes: int = Field(..., alias="totalVotes", description="Sum of per-IP capped votes")


class VoteRequest(BaseModel):
    """Vote submission body."""

    captcha_response: Optional[str] = Field(
        default=None,
        alias="captchaResponse",
        description="Token returned by the captcha widget"
    )

    @field_validator("captcha_response", mode="before")
    @classmethod
    def validate_captcha_response(cls, v):
        """Treat any falsy token as missing."""
        if not v:
            return None
        if not isinstance(v, str):
            raise ValueError("captchaResponse must be a string")
        return v


class VotingStatus(BaseModel):
    """Voting window status."""

    status: Literal["OPEN", "CLOSED"]
    remaining_time: Optional[int] = Field(
        default=None,
        alias="remainingTime",
        description="Milliseconds until voting closes (only while open)"
    )

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {"status": "OPEN", "remainingTime": 86400000}
        }
    )

    @classmethod
    def from_remaining(cls, remaining: int) -> "VotingStatus":
        if remaining > 0:
            return cls(status="OPEN", remaining_time=remaining)
        return cls(status="CLOSED")

    def to_response(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error message")


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Health check timestamp"
    )


def get_current_timestamp() -> str:
    """
    Get current UTC timestamp in ISO format.

    Returns:
        str: ISO format timestamp with millisecond precision and Z suffix
    """
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
