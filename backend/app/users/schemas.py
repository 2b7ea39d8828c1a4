"""User entity and request bodies."""
from typing import Optional

from pydantic import BaseModel, Field


class User(BaseModel):
    """A chat user, mirrored from the owning client's identity provider.

    Attributes:
        id: Store-assigned identifier.
        userId: Identifier in the client's own system (unique).
        name: Display name.
        username: Unique handle.
        picture: Avatar URL.
        level: Client-defined level/tier.
    """
    id: Optional[str] = None
    userId: str = ""
    name: str = ""
    username: str = ""
    picture: str = ""
    level: int = 0


class CreateUserRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    picture: str = ""
    level: int = Field(default=0, ge=0)


class UpdateUserRequest(BaseModel):
    name: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    picture: str = ""
    level: int = Field(default=0, ge=0)
