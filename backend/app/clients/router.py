"""Client endpoints.

Endpoints:
    GET    /v1/clients/validate          - Resolve the X-Client-Key header
    GET    /v1/admin/clients             - List clients (X-API-Key)
    POST   /v1/admin/clients             - Register a client
    GET    /v1/admin/clients/{client_id} - Fetch one client
    PUT    /v1/admin/clients/{client_id} - Replace a client's settings
    DELETE /v1/admin/clients/{client_id} - Remove a client
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.auth.dependencies import require_admin, require_client
from app.common.errors import NotFoundError
from app.common.schemas import Pagination, envelope, page_params, paginated
from app.services import Services, get_services

from .schemas import Client, CreateClientRequest, UpdateClientRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["clients"])


@router.get("/clients/validate")
async def validate_client(client: Client = Depends(require_client)) -> JSONResponse:
    """Return the active client owning the presented X-Client-Key."""
    return JSONResponse(envelope(200, client.model_dump(mode="json")))


@router.get("/admin/clients", dependencies=[Depends(require_admin)])
async def list_clients(
    pag: Pagination = Depends(page_params),
    services: Services = Depends(get_services),
) -> JSONResponse:
    clients, total = await services.clients.list(pag)
    return JSONResponse(envelope(200, paginated(clients, total, pag)))


@router.post("/admin/clients", status_code=201, dependencies=[Depends(require_admin)])
async def create_client(
    body: CreateClientRequest,
    services: Services = Depends(get_services),
) -> JSONResponse:
    client = await services.clients.create(body)
    return JSONResponse(envelope(201, client.model_dump(mode="json"), "Client created"), status_code=201)


@router.get("/admin/clients/{client_id}", dependencies=[Depends(require_admin)])
async def get_client(client_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    client = await services.clients.get(client_id)
    if client is None:
        raise NotFoundError("Client")
    return JSONResponse(envelope(200, client.model_dump(mode="json")))


@router.put("/admin/clients/{client_id}", dependencies=[Depends(require_admin)])
async def update_client(
    client_id: str,
    body: UpdateClientRequest,
    services: Services = Depends(get_services),
) -> JSONResponse:
    client = await services.clients.update(client_id, body)
    logger.info("[clients] Updated %s (status=%s)", client_id, client.status.value)
    return JSONResponse(envelope(200, client.model_dump(mode="json"), "Client updated"))


@router.delete("/admin/clients/{client_id}", dependencies=[Depends(require_admin)])
async def delete_client(client_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    await services.clients.delete(client_id)
    return JSONResponse(envelope(200, message="Client deleted"))
