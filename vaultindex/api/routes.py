"""
Index Query Routes

Read-only endpoints over the committed snapshot. Nothing here writes to
the store or submits transactions.

- GET /api/index/height                               - Committed snapshot height
- GET /api/index/entities/{kind}/{id}                 - Any entity by kind and id
- GET /api/index/identities/{did}/roles               - Roles the DID currently holds
- GET /api/index/identities/{did}/authentications     - Authentication attempts, newest first
- GET /api/index/holders/{address}/documents          - Documents held by an address
- GET /api/index/trust/{credential_type}/{issuer}     - Trust decision for an issuer
- GET /api/index/status                               - Indexer scheduler status

Every response carries the snapshot height it was answered from.
"""

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from ..core.queries import IndexQueries, QueryResult, SnapshotHeight
from ..schemas.entities import EntityKind


router = APIRouter(prefix="/api/index", tags=["Index"])


# ============================================================
# Response Models
# ============================================================

class Height(BaseModel):
    sequence: int
    cursor_block: int
    cursor_log_index: int
    scanned_block: int


class IndexResponse(BaseModel):
    """Envelope for every query answer."""
    height: Height
    data: Any = None


def get_queries(request: Request) -> IndexQueries:
    return request.app.state.queries


def _respond(result: QueryResult) -> IndexResponse:
    value = result.value
    if isinstance(value, list):
        data = [item.to_record() for item in value]
    elif value is not None:
        data = value.to_record()
    else:
        data = None
    return IndexResponse(height=_height(result.height), data=data)


def _height(height: SnapshotHeight) -> Height:
    return Height(**height.to_dict())


# ============================================================
# Routes
# ============================================================

@router.get("/height", response_model=IndexResponse)
async def get_height(request: Request):
    height = get_queries(request).snapshot_height()
    return IndexResponse(height=_height(height), data=height.to_dict())


@router.get("/entities/{kind}/{entity_id}", response_model=IndexResponse)
async def get_entity(request: Request, kind: str, entity_id: str):
    try:
        entity_kind = EntityKind(kind)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown entity kind: {kind}")

    result = get_queries(request).get_entity(entity_kind, entity_id)
    if result.value is None:
        raise HTTPException(status_code=404, detail=f"{kind} {entity_id} not found")
    return _respond(result)


@router.get("/identities/{did}/roles", response_model=IndexResponse)
async def list_active_roles(request: Request, did: str):
    return _respond(get_queries(request).list_active_roles(did))


@router.get("/identities/{did}/authentications", response_model=IndexResponse)
async def get_authentication_history(
    request: Request,
    did: str,
    since: Optional[int] = Query(None, ge=0, description="Earliest timestamp (inclusive)"),
    until: Optional[int] = Query(None, ge=0, description="Latest timestamp (inclusive)"),
):
    if since is not None and until is not None and since > until:
        raise HTTPException(status_code=400, detail="since must not be after until")
    return _respond(get_queries(request).get_authentication_history(did, since, until))


@router.get("/holders/{address}/documents", response_model=IndexResponse)
async def list_documents_by_holder(request: Request, address: str):
    return _respond(get_queries(request).list_documents_by_holder(address))


@router.get("/trust/{credential_type}/{issuer}", response_model=IndexResponse)
async def get_trust_status(request: Request, credential_type: str, issuer: str):
    """Null data means no trust decision was ever recorded."""
    return _respond(get_queries(request).get_trust_status(credential_type, issuer))


@router.get("/status", response_model=IndexResponse)
async def get_status(request: Request):
    queries = get_queries(request)
    scheduler = getattr(request.app.state, "scheduler", None)
    status = scheduler.get_status() if scheduler is not None else {"running": False}
    return IndexResponse(height=_height(queries.snapshot_height()), data=status)
