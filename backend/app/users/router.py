"""User endpoints: the caller's own profile plus admin CRUD."""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.auth.dependencies import require_admin, require_user
from app.common.errors import NotFoundError
from app.common.schemas import Pagination, envelope, page_params, paginated
from app.services import Services, get_services

from .schemas import CreateUserRequest, UpdateUserRequest, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["users"])


@router.get("/users/me")
async def get_me(user: User = Depends(require_user)) -> JSONResponse:
    return JSONResponse(envelope(200, user.model_dump(mode="json")))


@router.put("/users/me")
async def update_me(
    body: UpdateUserRequest,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> JSONResponse:
    updated = await services.users.update(user.id, body)
    return JSONResponse(envelope(200, updated.model_dump(mode="json"), "Profile updated"))


# =============================================================================
# Admin
# =============================================================================


@router.get("/admin/users", dependencies=[Depends(require_admin)])
async def list_users(
    pag: Pagination = Depends(page_params),
    services: Services = Depends(get_services),
) -> JSONResponse:
    users, total = await services.users.list(pag)
    return JSONResponse(envelope(200, paginated(users, total, pag)))


@router.post("/admin/users", status_code=201, dependencies=[Depends(require_admin)])
async def create_user(body: CreateUserRequest, services: Services = Depends(get_services)) -> JSONResponse:
    user = await services.users.create(body)
    logger.info("[users] Created %s (userId=%s)", user.id, user.userId)
    return JSONResponse(envelope(201, user.model_dump(mode="json"), "User created"), status_code=201)


@router.get("/admin/users/{user_id}", dependencies=[Depends(require_admin)])
async def get_user(user_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    user = await services.users.get(user_id)
    if user is None:
        raise NotFoundError("User")
    return JSONResponse(envelope(200, user.model_dump(mode="json")))


@router.put("/admin/users/{user_id}", dependencies=[Depends(require_admin)])
async def update_user(
    user_id: str,
    body: UpdateUserRequest,
    services: Services = Depends(get_services),
) -> JSONResponse:
    user = await services.users.update(user_id, body)
    return JSONResponse(envelope(200, user.model_dump(mode="json"), "User updated"))


@router.delete("/admin/users/{user_id}", dependencies=[Depends(require_admin)])
async def delete_user(user_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    await services.users.delete(user_id)
    return JSONResponse(envelope(200, message="User deleted"))
