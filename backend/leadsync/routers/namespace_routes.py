"""
Namespace management routes.
"""
from fastapi import APIRouter, HTTPException, Request, status
from typing import List

from leadsync.errors import NamespaceError
from leadsync.schemas.namespace import NamespaceCreate, NamespaceResponse, NamespaceUpdate


router = APIRouter(prefix="/api/v1/namespaces", tags=["Namespaces"])


def _registry(request: Request):
    return request.app.state.services.registry


@router.get("", response_model=List[NamespaceResponse])
async def list_namespaces(request: Request, include_inactive: bool = False):
    registry = _registry(request)
    handles = await registry.load()
    if not include_inactive:
        handles = registry.list_active()
    return [h.as_dict() for h in handles]


@router.post("", response_model=NamespaceResponse, status_code=status.HTTP_201_CREATED)
async def create_namespace(payload: NamespaceCreate, request: Request):
    try:
        handle = await _registry(request).register(payload.name, payload.keywords, payload.crm_config)
    except NamespaceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return handle.as_dict()


@router.patch("/{name}", response_model=NamespaceResponse)
async def update_namespace(name: str, payload: NamespaceUpdate, request: Request):
    registry = _registry(request)
    if registry.get(name) is None:
        await registry.load()
        if registry.get(name) is None:
            raise HTTPException(status_code=404, detail=f"Namespace '{name}' not found")

    try:
        handle = await registry.update(
            name,
            keywords=payload.keywords,
            crm_config=payload.crm_config,
            is_active=payload.is_active,
        )
    except NamespaceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return handle.as_dict()
