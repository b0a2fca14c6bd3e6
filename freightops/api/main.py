from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from freightops.contracts.payloads import (
    AuditEntryOut,
    CatalogOut,
    CreateDocumentRequest,
    EdgeOut,
    EditDocumentRequest,
    ErrorOut,
    SideEffectOut,
    TransitionRequest,
    TransitionResponse,
)
from freightops.domain import catalog
from freightops.domain.capabilities import Actor
from freightops.domain.catalog import TransitionEdge
from freightops.domain.errors import StaleStateError, WorkflowError
from freightops.domain.states import DocumentType
from freightops.logging_setup import configure_logging
from freightops.services.workflow_service import WorkflowService, build_workflow_service


configure_logging()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    yield
    # Only close a service that was actually built.
    if get_service.cache_info().currsize:
        get_service().close()
        get_service.cache_clear()


app = FastAPI(title="FreightOps Document Workflow API", version="1.0.0", lifespan=lifespan)

STATUS_BY_ERROR_CODE = {
    "NoSuchTransition": 400,
    "CommentRequired": 400,
    "InsufficientCapability": 403,
    "SelfApprovalForbidden": 403,
    "DocumentNotFound": 404,
    "StaleState": 409,
    "DocumentNotEditable": 409,
    "PersistenceError": 503,
}


@lru_cache(maxsize=1)
def get_service() -> WorkflowService:
    return build_workflow_service()


def _actor(
    x_actor_id: str = Header(..., alias="X-Actor-ID"),
    x_effective_role: str = Header(..., alias="X-Effective-Role"),
    x_actor_flags: str | None = Header(default=None, alias="X-Actor-Flags"),
) -> Actor:
    if not x_actor_id.strip():
        raise HTTPException(status_code=401, detail="X-Actor-ID is required")
    flags = [f for f in (x_actor_flags or "").split(",") if f.strip()]
    return Actor.of(x_actor_id, x_effective_role, flags)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(_request: Request, exc: WorkflowError) -> JSONResponse:
    body = ErrorOut(
        error=exc.code,
        detail=exc.message,
        current_status=exc.current_status if isinstance(exc, StaleStateError) else None,
    )
    return JSONResponse(
        status_code=STATUS_BY_ERROR_CODE.get(exc.code, 500),
        content=body.model_dump(exclude_none=True),
    )


def _edge_out(edge: TransitionEdge) -> EdgeOut:
    return EdgeOut(
        edge_id=edge.edge_id,
        from_status=edge.from_status,
        to_status=edge.to_status,
        required_capability=edge.required_capability.value,
        requires_comment=edge.requires_comment,
        side_effects=[s.kind for s in edge.side_effects],
    )


@app.get("/health")
def health(service: WorkflowService = Depends(get_service)) -> dict[str, Any]:
    return {
        "status": "ok",
        "persistence": "supabase" if service.using_supabase else "memory",
        "warning": service.persistence_warning,
        "document_types": [t.value for t in DocumentType],
    }


@app.get("/catalog/{document_type}", response_model=CatalogOut)
def get_catalog(document_type: DocumentType) -> CatalogOut:
    spec = catalog.spec_for(document_type)
    return CatalogOut(
        document_type=spec.document_type.value,
        initial_status=spec.initial_status,
        statuses=sorted(spec.statuses),
        terminal_statuses=sorted(spec.terminal_statuses),
        edges=[_edge_out(e) for e in spec.edges],
    )


@app.post("/documents/{document_type}")
def create_document(
    document_type: DocumentType,
    payload: CreateDocumentRequest,
    actor: Actor = Depends(_actor),
    service: WorkflowService = Depends(get_service),
) -> dict[str, Any]:
    return service.create_document(document_type, actor, payload=payload.payload, document_id=payload.document_id)


@app.get("/documents/{document_type}/{document_id}")
def get_document(
    document_type: DocumentType,
    document_id: str,
    service: WorkflowService = Depends(get_service),
) -> dict[str, Any]:
    return service.get_document(document_type, document_id)


@app.patch("/documents/{document_type}/{document_id}")
def edit_document(
    document_type: DocumentType,
    document_id: str,
    payload: EditDocumentRequest,
    actor: Actor = Depends(_actor),
    service: WorkflowService = Depends(get_service),
) -> dict[str, Any]:
    return service.edit_document(document_type, document_id, actor, payload.fields)


@app.get("/documents/{document_type}/{document_id}/transitions", response_model=list[EdgeOut])
def available_transitions(
    document_type: DocumentType,
    document_id: str,
    actor: Actor = Depends(_actor),
    service: WorkflowService = Depends(get_service),
) -> list[EdgeOut]:
    return [_edge_out(e) for e in service.available_transitions(document_type, document_id, actor)]


@app.post("/documents/{document_type}/{document_id}/transitions", response_model=TransitionResponse)
def transition(
    document_type: DocumentType,
    document_id: str,
    payload: TransitionRequest,
    actor: Actor = Depends(_actor),
    service: WorkflowService = Depends(get_service),
) -> TransitionResponse:
    outcome = service.transition(document_type, document_id, payload.expected_from, payload.to, actor, payload.comment)
    return TransitionResponse(
        document_id=document_id,
        new_status=outcome.new_status,
        side_effects=[
            SideEffectOut(dedup_key=o.dedup_key, kind=o.kind, status=o.status, error=o.error)
            for o in outcome.side_effects
        ],
    )


@app.get("/documents/{document_type}/{document_id}/history", response_model=list[AuditEntryOut])
def history(
    document_type: DocumentType,
    document_id: str,
    service: WorkflowService = Depends(get_service),
) -> list[AuditEntryOut]:
    return [
        AuditEntryOut(
            document_type=e.document_type,
            document_id=e.document_id,
            actor_id=e.actor_id,
            action=e.action.value,
            from_status=e.from_status,
            to_status=e.to_status,
            comment=e.comment,
            timestamp=e.timestamp,
            seq=e.seq,
        )
        for e in service.history(document_type, document_id)
    ]
