"""Request authentication dependencies.

Headers:
    X-Client-Key   tenant authentication (every non-admin endpoint)
    Authorization  ``Bearer <token>`` end-user authentication
    X-API-Key      administrative endpoints, compared in constant time
"""
import hmac
from typing import Optional

from fastapi import Depends, Header

from app.clients.schemas import Client
from app.common.errors import UnauthorizedError
from app.services import Services, get_services
from app.users.schemas import User


def bearer_token(authorization: Optional[str]) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` value."""
    if not authorization:
        return ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


async def require_client(
    x_client_key: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> Client:
    return await services.clients.validate_key(x_client_key)


async def require_user(
    client: Client = Depends(require_client),
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> User:
    return await services.auth.authenticate(client.id, bearer_token(authorization))


async def require_admin(
    x_api_key: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> None:
    expected = services.settings.secrets.admin.api_key
    # an unset admin key locks the admin surface
    if not expected or not x_api_key:
        raise UnauthorizedError("Invalid API key")
    if not hmac.compare_digest(x_api_key.encode(), expected.encode()):
        raise UnauthorizedError("Invalid API key")
