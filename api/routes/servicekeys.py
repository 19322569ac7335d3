"""
api/routes/servicekeys.py -- Service key management.

Routes (under /api):
  GET    /servicekeys           -- list keys (prefix only)
  POST   /servicekeys           -- create a key; the raw key is returned ONCE
  DELETE /servicekeys/{key_id}  -- revoke a key (204)

Callers authenticate with the raw key in the X-Service-Key header.
"""

from fastapi import APIRouter, Request, Response

from api.models import ServiceKeyCreate, ServiceKeyCreatedResponse, ServiceKeyResponse
from manager.manager import Manager

router = APIRouter()


@router.get("/servicekeys", response_model=list[ServiceKeyResponse])
def list_service_keys(request: Request) -> list[ServiceKeyResponse]:
    manager: Manager = request.app.state.manager
    return [ServiceKeyResponse.from_service_key(k) for k in manager.service_keys()]


@router.post("/servicekeys", response_model=ServiceKeyCreatedResponse, status_code=201)
def create_service_key(request: Request, body: ServiceKeyCreate) -> ServiceKeyCreatedResponse:
    manager: Manager = request.app.state.manager
    raw_key, key = manager.new_service_key(body.description)
    return ServiceKeyCreatedResponse(
        id=key.id,
        description=key.description,
        key_prefix=key.key_prefix,
        created_at=key.created_at,
        key=raw_key,
    )


@router.delete("/servicekeys/{key_id}", status_code=204)
def delete_service_key(request: Request, key_id: int) -> Response:
    manager: Manager = request.app.state.manager
    manager.delete_service_key(key_id)
    return Response(status_code=204)
