"""
model.py

Domain models for the Work Breakdown Structure (WBS) Hierarchy Engine.

Entities
--------
- Project
- WorkItem
- Actor
- CandidateItem      (import-only, never persisted)
- StructureDirective (reparent / reorder instruction)
- TreeNode           (presentation wrapper produced by the tree projector)

All models use Python dataclasses for clean, framework-agnostic definitions.
Identifiers are store-assigned integers.  Transient identifiers used during a
bulk import are typed separately so they can never be mistaken for persisted
ones.  Timestamps are always stored in UTC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, NewType, Optional


ProjectId = NewType("ProjectId", int)
ItemId = NewType("ItemId", int)

# 1-based position of a candidate inside one import batch.
TransientId = NewType("TransientId", int)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class WorkItemStatus(str, Enum):
    """Lifecycle status of a single work item."""
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class ProjectType(str, Enum):
    """
    Classification of a project.

    NEW       – Greenfield project.
    ADD       – Additional work on an existing delivery.
    COMPLETE  – Terminal value; set by the completion cascade once every
                work item is done (status DONE or progress 100) and never
                reverted by it.
    FAIL      – Abandoned project.
    """
    NEW = "NEW"
    ADD = "ADD"
    COMPLETE = "COMPLETE"
    FAIL = "FAIL"


class ActorRole(str, Enum):
    """Role resolved by the authentication collaborator."""
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    USER = "USER"


# ---------------------------------------------------------------------------
# Core entities
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Actor:
    """The already-authenticated caller of an operation."""
    id: str
    role: ActorRole = ActorRole.USER
    company_code: Optional[str] = None


@dataclass
class Project:
    """
    Owner of a WBS forest.

    Only the fields the hierarchy engine reads or writes are modelled here;
    everything else about a project belongs to ordinary CRUD.
    """
    id: Optional[ProjectId] = None          # assigned by the store on insert
    name: str = ""
    author_id: str = ""
    company_code: Optional[str] = None
    type: ProjectType = ProjectType.NEW
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class WorkItem:
    """
    A single persisted node of a project's WBS.

    `parent_id` is either None (the item is a root) or the id of another
    WorkItem of the same project.  `order` ranks siblings and is not required
    to be unique.  `completed_at` is derived from `status` / `progress` and is
    never set independently.
    """
    id: Optional[ItemId] = None             # assigned by the store on insert
    project_id: ProjectId = ProjectId(0)    # FK → Project.id, immutable
    content: str = ""
    deadline: Optional[date] = None
    status: WorkItemStatus = WorkItemStatus.TODO
    progress: int = 0                       # 0 – 100
    parent_id: Optional[ItemId] = None      # FK → WorkItem.id (same project)
    order: int = 0
    author_id: str = ""
    registered_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Transient / value objects
# ---------------------------------------------------------------------------


@dataclass
class CandidateItem:
    """
    One entry of a flat, externally produced import batch.

    `parent_ref` is the 1-based position of another candidate in the same
    batch, or None for a root.
    """
    content: str
    deadline: Optional[date] = None
    parent_ref: Optional[int] = None
    order: Optional[int] = None


@dataclass
class StructureDirective:
    """Move item `id` under `parent_id` (None = root) at sibling rank `order`."""
    id: ItemId
    parent_id: Optional[ItemId]
    order: int


@dataclass
class TreeNode:
    """A WorkItem together with its ordered children."""
    item: WorkItem
    children: List["TreeNode"] = field(default_factory=list)
