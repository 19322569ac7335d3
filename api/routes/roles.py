"""
api/routes/roles.py -- Read-only view of the built-in access levels.

Routes (under /api):
  GET /roles         -- every access level
  GET /roles/{name}  -- one access level, 404 role_not_found on a miss
"""

from fastapi import APIRouter, Request

from api.models import RoleResponse
from manager.manager import Manager

router = APIRouter()


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request) -> list[RoleResponse]:
    manager: Manager = request.app.state.manager
    return [RoleResponse.from_acl(acl) for acl in manager.roles()]


@router.get("/roles/{name}", response_model=RoleResponse)
def get_role(request: Request, name: str) -> RoleResponse:
    manager: Manager = request.app.state.manager
    return RoleResponse.from_acl(manager.role(name))
