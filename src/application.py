"""
application.py

Application layer for the Work Breakdown Structure (WBS) Hierarchy Engine.

Overview
--------
The application layer sits between the presentation layer (API) and the
domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data the
     presentation layer needs — no raw domain objects are leaked upward.
  2. Declaring abstract Repository interfaces so that the application layer
     remains fully persistence-agnostic (implementations live in
     infrastructure.py).
  3. Declaring the UnitOfWork abstraction so that every write of one use case
     is wrapped in one atomic transaction.
  4. Implementing Use Case handlers — one class per operation — that
     orchestrate service calls and repository reads/writes in the correct
     order.

Structure
---------
DTOs
    ProjectDTO, WorkItemDTO, WorkItemNodeDTO
    ImportResultDTO, StructureResultDTO, WorkItemUpdateDTO, DeleteResultDTO

Repository interfaces
    AbstractProjectRepository
    AbstractWorkItemRepository

Unit of Work
    AbstractUnitOfWork

Collaborators
    AbstractCandidateGenerator

Use Cases
    --- Projects ---
    CreateProjectUseCase
    GetProjectUseCase
    DeleteProjectUseCase

    --- Hierarchy ---
    ImportHierarchyUseCase
    GenerateWbsUseCase
    GetWbsTreeUseCase
    ApplyStructureUseCase

    --- Work items ---
    CreateWorkItemUseCase
    UpdateWorkItemUseCase
    DeleteWorkItemUseCase
    CompletionCascade

Design notes
------------
- Use cases return DTOs only; no domain objects cross the application
  boundary.
- Each use case receives a UnitOfWork in execute().  Collaborators that do
  not change per request (services, the candidate generator) are passed to
  the use case's constructor by the composition root.
- All timestamps flowing out are ISO-8601 strings (UTC).
- Service-level ValueError / PermissionError are translated into the error
  taxonomy below.
"""

from __future__ import annotations

import abc
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from model import (
    Actor,
    CandidateItem,
    ItemId,
    Project,
    ProjectId,
    ProjectType,
    StructureDirective,
    TransientId,
    TreeNode,
    WorkItem,
    WorkItemStatus,
)
from service import (
    UNRESOLVED,
    CompletionService,
    HierarchyService,
    IdentifierMapper,
    StructureService,
    TreeProjector,
    require_project_access,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested project or work item does not exist."""


class ForbiddenError(ApplicationError):
    """Raised when the actor lacks the required role, ownership or company scope."""


class ValidationError(ApplicationError):
    """Raised on missing or malformed input, including rejected structure batches."""


class StorageError(ApplicationError):
    """Raised when the underlying store fails; the transaction has been rolled back."""


class GeneratorError(ApplicationError):
    """Raised when the candidate generator is unavailable or returns unusable output."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

@dataclass
class ProjectDTO:
    id: int
    name: str
    author_id: str
    company_code: Optional[str]
    type: str
    item_count: int
    done_count: int
    progress: int
    created_at: str
    updated_at: str


@dataclass
class WorkItemDTO:
    id: int
    project_id: int
    content: str
    deadline: Optional[str]
    status: str
    progress: int
    parent_id: Optional[int]
    order: int
    author_id: str
    registered_at: str
    completed_at: Optional[str]


@dataclass
class WorkItemNodeDTO:
    """A work item row in the WBS view, containing its ordered child rows."""
    id: int
    content: str
    deadline: Optional[str]
    status: str
    progress: int
    parent_id: Optional[int]
    order: int
    author_id: str
    registered_at: str
    completed_at: Optional[str]
    children: List["WorkItemNodeDTO"] = field(default_factory=list)


@dataclass
class ImportResultDTO:
    project_id: int
    created_count: int
    # Positions (1-based) of candidates whose parent could not be resolved.
    demoted_to_root: List[int]


@dataclass
class StructureResultDTO:
    project_id: int
    applied_count: int
    ignored_count: int


@dataclass
class WorkItemUpdateDTO:
    item: WorkItemDTO
    cascade_triggered: bool
    project_completed: Optional[bool]
    cascade_error: Optional[str]


@dataclass
class DeleteResultDTO:
    deleted_count: int


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def project(p: Project, items: List[WorkItem]) -> ProjectDTO:
        done = sum(1 for i in items if CompletionService.is_item_complete(i.status, i.progress))
        progress = round(sum(i.progress for i in items) / len(items)) if items else 0
        return ProjectDTO(
            id=p.id,
            name=p.name,
            author_id=p.author_id,
            company_code=p.company_code,
            type=p.type.value,
            item_count=len(items),
            done_count=done,
            progress=progress,
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def work_item(i: WorkItem) -> WorkItemDTO:
        return WorkItemDTO(
            id=i.id,
            project_id=i.project_id,
            content=i.content,
            deadline=_fmt_date(i.deadline),
            status=i.status.value,
            progress=i.progress,
            parent_id=i.parent_id,
            order=i.order,
            author_id=i.author_id,
            registered_at=_fmt(i.registered_at),
            completed_at=_fmt(i.completed_at),
        )

    @staticmethod
    def node(n: TreeNode) -> WorkItemNodeDTO:
        i = n.item
        return WorkItemNodeDTO(
            id=i.id,
            content=i.content,
            deadline=_fmt_date(i.deadline),
            status=i.status.value,
            progress=i.progress,
            parent_id=i.parent_id,
            order=i.order,
            author_id=i.author_id,
            registered_at=_fmt(i.registered_at),
            completed_at=_fmt(i.completed_at),
            children=[_Assembler.node(c) for c in n.children],
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractProjectRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, project_id: ProjectId) -> Optional[Project]: ...
    @abc.abstractmethod
    def add(self, project: Project) -> ProjectId: ...
    @abc.abstractmethod
    def update(self, project: Project) -> None: ...
    @abc.abstractmethod
    def delete(self, project_id: ProjectId) -> None: ...


class AbstractWorkItemRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, item_id: ItemId) -> Optional[WorkItem]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: ProjectId) -> List[WorkItem]: ...
    @abc.abstractmethod
    def count_for_project(self, project_id: ProjectId, completed_only: bool = False) -> int:
        """Count the project's rows; with completed_only, those that are DONE or at 100%."""
    @abc.abstractmethod
    def add(self, item: WorkItem) -> ItemId:
        """Insert a new row and return the identifier the store generated for it."""
    @abc.abstractmethod
    def update(self, item: WorkItem) -> None: ...
    @abc.abstractmethod
    def update_structure(
        self,
        project_id: ProjectId,
        item_id: ItemId,
        parent_id: Optional[ItemId],
        order: int,
    ) -> bool:
        """Set parent and order of one row, scoped by id AND project; True if a row matched."""
    @abc.abstractmethod
    def delete(self, item_id: ItemId) -> None: ...
    @abc.abstractmethod
    def delete_for_project(self, project_id: ProjectId) -> int: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.work_items.add(item)
            uow.commit()

    Entering the block begins a transaction.  Leaving it with an exception
    rolls the transaction back; leaving it normally commits whatever has not
    been committed yet.  A unit of work may be entered again after the block
    ends to start a new transaction.
    """
    projects: AbstractProjectRepository
    work_items: AbstractWorkItemRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        self.begin()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def begin(self) -> None: ...

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# COLLABORATORS
# ===========================================================================

class AbstractCandidateGenerator(abc.ABC):
    """Produces an ordered candidate list from a free-text project description."""

    @abc.abstractmethod
    def generate(self, description: str) -> List[CandidateItem]: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_projector = TreeProjector()
_completion_svc = CompletionService()


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_project_or_raise(uow: AbstractUnitOfWork, project_id: ProjectId) -> Project:
    project = uow.projects.get(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.")
    return project


def _get_item_or_raise(uow: AbstractUnitOfWork, item_id: ItemId) -> WorkItem:
    item = uow.work_items.get(item_id)
    if item is None:
        raise NotFoundError(f"Work item {item_id} not found.")
    return item


def _authorize(project: Project, actor: Actor) -> None:
    try:
        require_project_access(project, actor)
    except PermissionError as exc:
        raise ForbiddenError(str(exc)) from exc


# ===========================================================================
# USE CASES: PROJECTS
# ===========================================================================

@dataclass
class CreateProjectCommand:
    name: str
    actor: Actor
    type: ProjectType = ProjectType.NEW
    company_code: Optional[str] = None


class CreateProjectUseCase:
    """
    Register a project so its work breakdown can be managed.  The actor
    becomes the project's author; the company scope defaults to the actor's.
    """

    def execute(self, cmd: CreateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        if not cmd.name or not cmd.name.strip():
            raise ValidationError("Project name is required.")
        with uow:
            project = Project(
                name=cmd.name.strip(),
                author_id=cmd.actor.id,
                company_code=cmd.company_code or cmd.actor.company_code,
                type=cmd.type,
            )
            project.id = uow.projects.add(project)
            uow.commit()
            return _Assembler.project(project, [])


class GetProjectUseCase:
    def execute(
        self, project_id: ProjectId, actor: Actor, uow: AbstractUnitOfWork
    ) -> ProjectDTO:
        with uow:
            project = _get_project_or_raise(uow, project_id)
            _authorize(project, actor)
            items = uow.work_items.list_for_project(project_id)
            return _Assembler.project(project, items)


class DeleteProjectUseCase:
    """Remove a project together with every one of its work items."""

    def execute(
        self, project_id: ProjectId, actor: Actor, uow: AbstractUnitOfWork
    ) -> DeleteResultDTO:
        with uow:
            project = _get_project_or_raise(uow, project_id)
            _authorize(project, actor)
            deleted = uow.work_items.delete_for_project(project_id)
            uow.projects.delete(project_id)
            uow.commit()
        logger.info("Deleted project %s with %d work items.", project_id, deleted)
        return DeleteResultDTO(deleted_count=deleted)


# ===========================================================================
# USE CASES: HIERARCHY
# ===========================================================================

@dataclass
class ImportHierarchyCommand:
    project_id: ProjectId
    actor: Actor
    candidates: List[CandidateItem]


class ImportHierarchyUseCase:
    """
    Persist a flat candidate batch as a tree with real identifiers.

    Candidate positions (1-based) are the batch's transient ids; `parent_ref`
    values point at them.  Rows are inserted in the order chosen by the
    HierarchyService, and each inserted row's generated id is recorded in an
    IdentifierMapper so that later rows can resolve their parents.  A parent
    that cannot be resolved when its child is inserted (dangling, self or
    cyclic reference, or listed too late) does not abort the import: the
    child is created as a root and a warning is logged.

    All inserts run in one transaction; any failure leaves the project's
    work items exactly as they were.
    """

    def __init__(self, hierarchy: Optional[HierarchyService] = None) -> None:
        self._hierarchy = hierarchy or HierarchyService()

    def execute(self, cmd: ImportHierarchyCommand, uow: AbstractUnitOfWork) -> ImportResultDTO:
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            _authorize(project, cmd.actor)
            try:
                self._hierarchy.validate_candidates(cmd.candidates)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc

            mapper = IdentifierMapper()
            demoted: List[int] = []
            for transient_id in self._hierarchy.insertion_order(cmd.candidates):
                candidate = cmd.candidates[transient_id - 1]
                ref = candidate.parent_ref
                parent_id = mapper.resolve(TransientId(ref) if ref is not None else None)
                if parent_id is UNRESOLVED:
                    logger.warning(
                        "Import into project %s: item %d references parent %s, "
                        "which is not available; creating it as a root.",
                        cmd.project_id, transient_id, ref,
                    )
                    demoted.append(transient_id)
                    parent_id = None
                item = self._hierarchy.build_item(
                    project_id=cmd.project_id,
                    candidate=candidate,
                    parent_id=parent_id,
                    author_id=cmd.actor.id,
                )
                item_id = uow.work_items.add(item)
                mapper.record(transient_id, item_id)
                logger.debug("Item %d stored as %s (parent %s).", transient_id, item_id, parent_id)
            uow.commit()

        logger.info(
            "Imported %d work items into project %s (%s ordering, %d demoted).",
            len(mapper), cmd.project_id, self._hierarchy.ordering, len(demoted),
        )
        return ImportResultDTO(
            project_id=cmd.project_id,
            created_count=len(mapper),
            demoted_to_root=sorted(demoted),
        )


@dataclass
class GenerateWbsCommand:
    project_id: ProjectId
    actor: Actor
    description: str


class GenerateWbsUseCase:
    """
    Ask the candidate generator for a work breakdown of a free-text
    description and import the result.
    """

    def __init__(
        self,
        generator: Optional[AbstractCandidateGenerator],
        importer: Optional[ImportHierarchyUseCase] = None,
    ) -> None:
        self._generator = generator
        self._importer = importer or ImportHierarchyUseCase()

    def execute(self, cmd: GenerateWbsCommand, uow: AbstractUnitOfWork) -> ImportResultDTO:
        if not cmd.description or not cmd.description.strip():
            raise ValidationError("A project description is required.")
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            _authorize(project, cmd.actor)
        if self._generator is None:
            raise GeneratorError("No candidate generator is configured.")

        candidates = self._generator.generate(cmd.description)
        if not candidates:
            raise GeneratorError("The candidate generator returned no work items.")
        return self._importer.execute(
            ImportHierarchyCommand(
                project_id=cmd.project_id,
                actor=cmd.actor,
                candidates=candidates,
            ),
            uow,
        )


class GetWbsTreeUseCase:
    def execute(
        self, project_id: ProjectId, actor: Actor, uow: AbstractUnitOfWork
    ) -> List[WorkItemNodeDTO]:
        with uow:
            project = _get_project_or_raise(uow, project_id)
            _authorize(project, actor)
            items = uow.work_items.list_for_project(project_id)
        return [_Assembler.node(n) for n in _projector.project(items)]


@dataclass
class ApplyStructureCommand:
    project_id: ProjectId
    directives: List[StructureDirective]
    # None when the caller has already authorized the change.
    actor: Optional[Actor] = None


class ApplyStructureUseCase:
    """
    Apply a batch of reparent / reorder directives in one transaction.

    Updates are scoped by item id AND project id, so a directive naming an
    item of another project is a silent no-op.  With validation enabled the
    batch is checked against the project's current rows first (parents must
    exist in the project, no cycles) and rejected as a whole on any problem.
    """

    def __init__(
        self, structure: Optional[StructureService] = None, validate: bool = True
    ) -> None:
        self._structure = structure or StructureService()
        self._validate = validate

    def execute(self, cmd: ApplyStructureCommand, uow: AbstractUnitOfWork) -> StructureResultDTO:
        # Sibling rank is checked even when structure validation is off.
        for d in cmd.directives:
            if d.order < 0:
                raise ValidationError(f"Work item {d.id}: order must be non-negative.")
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            if cmd.actor is not None:
                _authorize(project, cmd.actor)
            if self._validate:
                items = uow.work_items.list_for_project(cmd.project_id)
                directives = self._structure.applicable(items, cmd.directives)
                try:
                    self._structure.validate(items, directives)
                except ValueError as exc:
                    raise ValidationError(str(exc)) from exc
            else:
                directives = list(cmd.directives)

            applied = 0
            for d in directives:
                if uow.work_items.update_structure(cmd.project_id, d.id, d.parent_id, d.order):
                    applied += 1
            uow.commit()

        logger.info(
            "Applied %d of %d structure directives to project %s.",
            applied, len(cmd.directives), cmd.project_id,
        )
        return StructureResultDTO(
            project_id=cmd.project_id,
            applied_count=applied,
            ignored_count=len(cmd.directives) - applied,
        )


# ===========================================================================
# USE CASES: WORK ITEMS
# ===========================================================================

class CompletionCascade:
    """
    Promote a project to COMPLETE once every one of its work items is done
    (status DONE or progress 100, the same rule that sets completed_at).

    Runs in its own transaction after the triggering item update has been
    committed.  The transition is one-directional: a project that is already
    COMPLETE is never moved back, whatever its items look like now.
    """

    def run(self, project_id: ProjectId, uow: AbstractUnitOfWork) -> bool:
        """Return True if the project is COMPLETE afterwards."""
        with uow:
            project = _get_project_or_raise(uow, project_id)
            if project.type == ProjectType.COMPLETE:
                return True
            total = uow.work_items.count_for_project(project_id)
            done = uow.work_items.count_for_project(project_id, completed_only=True)
            if not _completion_svc.project_is_complete(total, done):
                return False
            project.type = ProjectType.COMPLETE
            project.updated_at = datetime.now(timezone.utc)
            uow.projects.update(project)
            uow.commit()
        logger.info("Project %s completed: all %d work items are done.", project_id, total)
        return True


@dataclass
class CreateWorkItemCommand:
    project_id: ProjectId
    actor: Actor
    content: str
    deadline: Optional[date] = None
    status: WorkItemStatus = WorkItemStatus.TODO
    progress: int = 0
    parent_id: Optional[ItemId] = None
    order: int = 0


class CreateWorkItemUseCase:
    def execute(self, cmd: CreateWorkItemCommand, uow: AbstractUnitOfWork) -> WorkItemDTO:
        if not cmd.content or not cmd.content.strip():
            raise ValidationError("content is required.")
        if cmd.order < 0:
            raise ValidationError("order must be non-negative.")
        try:
            _completion_svc.validate_progress(cmd.progress)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            _authorize(project, cmd.actor)
            if cmd.parent_id is not None:
                parent = uow.work_items.get(cmd.parent_id)
                if parent is None or parent.project_id != cmd.project_id:
                    raise ValidationError(
                        f"Parent {cmd.parent_id} is not an item of project {cmd.project_id}."
                    )
            item = WorkItem(
                project_id=cmd.project_id,
                content=cmd.content.strip(),
                deadline=cmd.deadline,
                status=cmd.status,
                progress=cmd.progress,
                parent_id=cmd.parent_id,
                order=cmd.order,
                author_id=cmd.actor.id,
                completed_at=_completion_svc.derive_completed_at(cmd.status, cmd.progress),
            )
            item.id = uow.work_items.add(item)
            uow.commit()
            return _Assembler.work_item(item)


@dataclass
class UpdateWorkItemCommand:
    item_id: ItemId
    actor: Actor
    content: Optional[str] = None
    deadline: Optional[date] = None
    status: Optional[WorkItemStatus] = None
    progress: Optional[int] = None
    # An explicit null deadline from the caller; a plain None leaves it as is.
    clear_deadline: bool = False


class UpdateWorkItemUseCase:
    """
    Update a work item and, when its status or progress changed, run the
    completion cascade.

    The item update commits first.  The cascade is a best-effort follow-up:
    if it fails the error is logged and reported in the result, and the
    item update stays committed.
    """

    def __init__(self, cascade: Optional[CompletionCascade] = None) -> None:
        self._cascade = cascade or CompletionCascade()

    def execute(self, cmd: UpdateWorkItemCommand, uow: AbstractUnitOfWork) -> WorkItemUpdateDTO:
        with uow:
            item = _get_item_or_raise(uow, cmd.item_id)
            if cmd.actor.id != item.author_id:
                _authorize(_get_project_or_raise(uow, item.project_id), cmd.actor)
            try:
                changed = _completion_svc.apply_update(
                    item,
                    content=cmd.content,
                    deadline=cmd.deadline,
                    status=cmd.status,
                    progress=cmd.progress,
                    clear_deadline=cmd.clear_deadline,
                )
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.work_items.update(item)
            uow.commit()

        result = WorkItemUpdateDTO(
            item=_Assembler.work_item(item),
            cascade_triggered=changed,
            project_completed=None,
            cascade_error=None,
        )
        if changed:
            try:
                result.project_completed = self._cascade.run(item.project_id, uow)
            except Exception as exc:
                logger.exception(
                    "Completion cascade failed for project %s after updating item %s.",
                    item.project_id, item.id,
                )
                result.cascade_error = str(exc) or exc.__class__.__name__
        return result


@dataclass
class DeleteWorkItemCommand:
    item_id: ItemId
    actor: Actor


class DeleteWorkItemUseCase:
    """Delete a work item together with its whole subtree."""

    def execute(self, cmd: DeleteWorkItemCommand, uow: AbstractUnitOfWork) -> DeleteResultDTO:
        with uow:
            item = _get_item_or_raise(uow, cmd.item_id)
            if cmd.actor.id != item.author_id:
                _authorize(_get_project_or_raise(uow, item.project_id), cmd.actor)

            children: Dict[ItemId, List[ItemId]] = {}
            for other in uow.work_items.list_for_project(item.project_id):
                if other.parent_id is not None:
                    children.setdefault(other.parent_id, []).append(other.id)

            subtree: List[ItemId] = []
            queue = deque([item.id])
            seen = set()
            while queue:
                current = queue.popleft()
                if current in seen:
                    continue
                seen.add(current)
                subtree.append(current)
                queue.extend(children.get(current, []))

            # Leaves first so no row is left pointing at a deleted parent.
            for item_id in reversed(subtree):
                uow.work_items.delete(item_id)
            uow.commit()
        return DeleteResultDTO(deleted_count=len(subtree))
