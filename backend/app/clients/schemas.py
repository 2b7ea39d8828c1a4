"""Client entity and admin request bodies."""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ClientStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Client(BaseModel):
    """An external application allowed to use the chat service.

    ``clientKey`` is the tenant secret presented on every call;
    ``authEndpoint`` is where end-user bearer tokens are exchanged for a user.
    """
    id: Optional[str] = None
    name: str
    description: str = ""
    clientKey: str
    status: ClientStatus = ClientStatus.ACTIVE
    authEndpoint: str
    createdTimestamp: int = 0
    updatedTimestamp: int = 0


class CreateClientRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    clientKey: str = Field(..., min_length=1)
    authEndpoint: str = Field(..., pattern=r"^https?://")


class UpdateClientRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    clientKey: str = Field(..., min_length=1)
    authEndpoint: str = Field(..., pattern=r"^https?://")
    status: ClientStatus
