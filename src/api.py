"""
api.py

REST API layer for the Work Breakdown Structure (WBS) Hierarchy Engine.

Framework : FastAPI
Auth      : Performed upstream.  The authentication collaborator forwards the
            resolved caller in trusted headers:
                X-Actor-Id      – user id (required)
                X-Actor-Role    – ADMIN | MANAGER | anything else
                X-Company-Code  – company scope of the caller
            The get_current_actor dependency turns them into an Actor that
            every endpoint passes to its use case command.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /projects                          — project registration & summary
  │   ├── /{project_id}/wbs              — WBS tree view
  │   │   ├── /import                    — bulk import of a flat candidate list
  │   │   ├── /generate                  — AI-assisted import
  │   │   └── /structure                 — bulk reparent / reorder
  │   └── /{project_id}/items            — single work item create
  └── /items/{item_id}                   — work item update & delete

Error handling
--------------
  NotFoundError      → 404
  ForbiddenError     → 403
  ValidationError    → 422
  ApplicationError   → 422
  GeneratorError     → 502
  StorageError       → 503
  Unhandled          → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>" }

Running
-------
  See main.py; it wires the store and the use case collaborators into the
  dependencies declared below before serving the app.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Path, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

from application import (
    # Exceptions
    ApplicationError,
    ForbiddenError,
    GeneratorError,
    NotFoundError,
    StorageError,
    ValidationError,
    # Collaborators
    AbstractCandidateGenerator,
    AbstractUnitOfWork,
    # Use-case commands
    ApplyStructureCommand,
    CreateProjectCommand,
    CreateWorkItemCommand,
    DeleteWorkItemCommand,
    GenerateWbsCommand,
    ImportHierarchyCommand,
    UpdateWorkItemCommand,
    # Use-case classes
    ApplyStructureUseCase,
    CreateProjectUseCase,
    CreateWorkItemUseCase,
    DeleteProjectUseCase,
    DeleteWorkItemUseCase,
    GenerateWbsUseCase,
    GetProjectUseCase,
    GetWbsTreeUseCase,
    ImportHierarchyUseCase,
    UpdateWorkItemUseCase,
)
from model import (
    Actor,
    ActorRole,
    CandidateItem,
    ItemId,
    ProjectId,
    ProjectType,
    StructureDirective,
    WorkItemStatus,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title="WBS Hierarchy Engine API",
    version="1.0.0",
    description=(
        "REST API for managing a project's work breakdown structure: bulk "
        "import of flat (human- or AI-produced) item lists, tree views, bulk "
        "reparent/reorder, and completion tracking."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ForbiddenError)
async def forbidden_handler(request, exc: ForbiddenError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(GeneratorError)
async def generator_error_handler(request, exc: GeneratorError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(StorageError)
async def storage_error_handler(request, exc: StorageError):
    logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Overridden by the composition root with the configured store."""
    raise RuntimeError("No unit of work configured; override get_uow (see main.py).")


def get_import_use_case() -> ImportHierarchyUseCase:
    return ImportHierarchyUseCase()


def get_structure_use_case() -> ApplyStructureUseCase:
    return ApplyStructureUseCase()


def get_candidate_generator() -> Optional[AbstractCandidateGenerator]:
    return None


def get_current_actor(
    x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    x_actor_role: Optional[str] = Header(default=None, alias="X-Actor-Role"),
    x_company_code: Optional[str] = Header(default=None, alias="X-Company-Code"),
) -> Actor:
    """Build the Actor forwarded by the authentication collaborator."""
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id header.",
        )
    try:
        role = ActorRole((x_actor_role or "").strip().upper())
    except ValueError:
        role = ActorRole.USER
    return Actor(id=x_actor_id, role=role, company_code=x_company_code or None)


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

def _check_enum(enum_cls, v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    valid = {e.value for e in enum_cls}
    if v not in valid:
        raise ValueError(f"must be one of: {sorted(valid)}")
    return v


# ---------------------------------------------------------------------------
# Project schemas
# ---------------------------------------------------------------------------

class CreateProjectRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    type: str = Field(default=ProjectType.NEW.value, description="One of: NEW, ADD, COMPLETE, FAIL")
    company_code: Optional[str] = Field(default=None, max_length=64)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        return _check_enum(ProjectType, v)


# ---------------------------------------------------------------------------
# Hierarchy schemas
# ---------------------------------------------------------------------------

class CandidateItemRequest(BaseModel):
    content: str
    deadline: Optional[date] = None
    parent_ref: Optional[int] = Field(
        default=None,
        description="1-based position of the parent item in this same list, or null.",
    )
    order: Optional[int] = Field(default=None, description="Sibling rank; defaults to 0.")


class ImportHierarchyRequest(BaseModel):
    items: List[CandidateItemRequest]


class GenerateWbsRequest(BaseModel):
    description: str = Field(..., min_length=1, max_length=20000)


class StructureDirectiveRequest(BaseModel):
    id: int
    parent_id: Optional[int] = None
    order: int = Field(default=0, ge=0)


class ApplyStructureRequest(BaseModel):
    structure: List[StructureDirectiveRequest]


# ---------------------------------------------------------------------------
# Work item schemas
# ---------------------------------------------------------------------------

class CreateWorkItemRequest(BaseModel):
    content: str = Field(..., min_length=1)
    deadline: Optional[date] = None
    status: str = Field(default=WorkItemStatus.TODO.value, description="One of: TODO, IN_PROGRESS, DONE")
    progress: int = Field(default=0, ge=0, le=100)
    parent_id: Optional[int] = None
    order: int = Field(default=0, ge=0)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        return _check_enum(WorkItemStatus, v)


class UpdateWorkItemRequest(BaseModel):
    content: Optional[str] = Field(default=None, min_length=1)
    deadline: Optional[date] = Field(default=None, description="Send null to clear the deadline.")
    status: Optional[str] = Field(default=None, description="One of: TODO, IN_PROGRESS, DONE")
    progress: Optional[int] = Field(default=None, ge=0, le=100)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        return _check_enum(WorkItemStatus, v)


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

project_router = APIRouter(prefix="/projects", tags=["Projects"])


@project_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a project",
)
def create_project(
    body: CreateProjectRequest,
    actor: Actor = Depends(get_current_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """The caller becomes the project's author."""
    cmd = CreateProjectCommand(
        name=body.name,
        actor=actor,
        type=ProjectType(body.type),
        company_code=body.company_code,
    )
    result = CreateProjectUseCase().execute(cmd, uow)
    return _ok(result)


@project_router.get(
    "/{project_id}",
    summary="Get a project with its work item summary",
)
def get_project(
    project_id: int = Path(...),
    actor: Actor = Depends(get_current_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = GetProjectUseCase().execute(ProjectId(project_id), actor, uow)
    return _ok(result)


@project_router.delete(
    "/{project_id}",
    summary="Remove a project and all of its work items",
)
def delete_project(
    project_id: int = Path(...),
    actor: Actor = Depends(get_current_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = DeleteProjectUseCase().execute(ProjectId(project_id), actor, uow)
    return _ok(result)


# ---------------------------------------------------------------------------
# WBS
# ---------------------------------------------------------------------------

wbs_router = APIRouter(prefix="/projects/{project_id}/wbs", tags=["WBS"])


@wbs_router.get(
    "",
    summary="Get the project's work breakdown as an ordered forest",
)
def get_wbs(
    project_id: int = Path(...),
    actor: Actor = Depends(get_current_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = GetWbsTreeUseCase().execute(ProjectId(project_id), actor, uow)
    return _ok(result)


@wbs_router.post(
    "/import",
    status_code=status.HTTP_201_CREATED,
    summary="Import a flat, ordered list of work items as a tree",
)
def import_wbs(
    body: ImportHierarchyRequest,
    project_id: int = Path(...),
    actor: Actor = Depends(get_current_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
    use_case: ImportHierarchyUseCase = Depends(get_import_use_case),
):
    """
    `parent_ref` is the 1-based position of the parent inside the same list.
    All items are created in one transaction; an item whose parent cannot be
    resolved is created as a root.
    """
    cmd = ImportHierarchyCommand(
        project_id=ProjectId(project_id),
        actor=actor,
        candidates=[
            CandidateItem(
                content=i.content,
                deadline=i.deadline,
                parent_ref=i.parent_ref,
                order=i.order,
            )
            for i in body.items
        ],
    )
    result = use_case.execute(cmd, uow)
    return _ok(result)


@wbs_router.post(
    "/generate",
    status_code=status.HTTP_201_CREATED,
    summary="Generate a work breakdown from a description with AI and import it",
)
def generate_wbs(
    body: GenerateWbsRequest,
    project_id: int = Path(...),
    actor: Actor = Depends(get_current_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
    importer: ImportHierarchyUseCase = Depends(get_import_use_case),
    generator: Optional[AbstractCandidateGenerator] = Depends(get_candidate_generator),
):
    cmd = GenerateWbsCommand(
        project_id=ProjectId(project_id),
        actor=actor,
        description=body.description,
    )
    result = GenerateWbsUseCase(generator, importer).execute(cmd, uow)
    return _ok(result)


@wbs_router.patch(
    "/structure",
    summary="Reparent / reorder work items in one transaction",
)
def update_structure(
    body: ApplyStructureRequest,
    project_id: int = Path(...),
    actor: Actor = Depends(get_current_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
    use_case: ApplyStructureUseCase = Depends(get_structure_use_case),
):
    """Directives naming items of other projects are ignored."""
    cmd = ApplyStructureCommand(
        project_id=ProjectId(project_id),
        directives=[
            StructureDirective(
                id=ItemId(d.id),
                parent_id=ItemId(d.parent_id) if d.parent_id is not None else None,
                order=d.order,
            )
            for d in body.structure
        ],
        actor=actor,
    )
    result = use_case.execute(cmd, uow)
    return _ok(result)


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------

item_router = APIRouter(tags=["Work Items"])


@item_router.post(
    "/projects/{project_id}/items",
    status_code=status.HTTP_201_CREATED,
    summary="Add a single work item",
)
def create_item(
    body: CreateWorkItemRequest,
    project_id: int = Path(...),
    actor: Actor = Depends(get_current_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = CreateWorkItemCommand(
        project_id=ProjectId(project_id),
        actor=actor,
        content=body.content,
        deadline=body.deadline,
        status=WorkItemStatus(body.status),
        progress=body.progress,
        parent_id=ItemId(body.parent_id) if body.parent_id is not None else None,
        order=body.order,
    )
    result = CreateWorkItemUseCase().execute(cmd, uow)
    return _ok(result)


@item_router.patch(
    "/items/{item_id}",
    summary="Update a work item; status/progress changes run the completion cascade",
)
def update_item(
    body: UpdateWorkItemRequest,
    item_id: int = Path(...),
    actor: Actor = Depends(get_current_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpdateWorkItemCommand(
        item_id=ItemId(item_id),
        actor=actor,
        content=body.content,
        deadline=body.deadline,
        status=WorkItemStatus(body.status) if body.status is not None else None,
        progress=body.progress,
        clear_deadline="deadline" in body.model_fields_set and body.deadline is None,
    )
    result = UpdateWorkItemUseCase().execute(cmd, uow)
    return _ok(result)


@item_router.delete(
    "/items/{item_id}",
    summary="Delete a work item and its whole subtree",
)
def delete_item(
    item_id: int = Path(...),
    actor: Actor = Depends(get_current_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = DeleteWorkItemUseCase().execute(
        DeleteWorkItemCommand(item_id=ItemId(item_id), actor=actor), uow
    )
    return _ok(result)


# ---------------------------------------------------------------------------
# Register routers
# ---------------------------------------------------------------------------

api_v1.include_router(project_router)
api_v1.include_router(wbs_router)
api_v1.include_router(item_router)

app.include_router(api_v1)


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# MCP Server: exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()


# ===========================================================================
# OPENAPI CUSTOMISATION: tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Projects",
        "description": (
            "Minimal project registration.  The registering user becomes the "
            "project's author; deleting a project removes all of its work items."
        ),
    },
    {
        "name": "WBS",
        "description": (
            "The project's work breakdown structure: tree view, bulk import of "
            "flat lists whose items reference their parent by list position, "
            "AI-assisted generation, and transactional reparent/reorder."
        ),
    },
    {
        "name": "Work Items",
        "description": (
            "Single work item create, update and delete.  Status or progress "
            "updates set the completion timestamp and promote the project to "
            "COMPLETE once every item is done."
        ),
    },
]

app.openapi_tags = tags_metadata
