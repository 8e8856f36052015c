"""
service.py

Service layer for the Work Breakdown Structure (WBS) Hierarchy Engine.

Responsibilities
----------------
Each service encapsulates the pure business logic of one part of the engine.
Services receive and return domain model instances (from model.py).
No persistence is handled here — use cases in application.py load and store
models through a Unit of Work and call into these services in between.

Services
--------
- IdentifierMapper     – transient (import-local) id → persisted id table
- TreeProjector        – flat persisted rows → ordered forest
- HierarchyService     – candidate validation and insertion ordering for imports
- StructureService     – validation of reparent / reorder batches
- CompletionService    – derived completion timestamp and project completion rule

Design notes
------------
- Business rule violations raise ValueError with a descriptive message.
- Access violations raise PermissionError (see require_project_access).
- UTC datetimes are used throughout.
"""

from __future__ import annotations

import heapq
import logging
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Union

from model import (
    Actor,
    ActorRole,
    CandidateItem,
    ItemId,
    Project,
    ProjectId,
    StructureDirective,
    TransientId,
    TreeNode,
    WorkItem,
    WorkItemStatus,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def require_project_access(project: Project, actor: Actor) -> None:
    """
    Raise PermissionError unless the actor may change the project's WBS.

    Allowed: administrators, the project's author, and managers whose
    company scope matches the project's.
    """
    if actor.role == ActorRole.ADMIN:
        return
    if actor.id == project.author_id:
        return
    if (
        actor.role == ActorRole.MANAGER
        and actor.company_code is not None
        and actor.company_code == project.company_code
    ):
        return
    raise PermissionError(
        f"Actor {actor.id} may not modify the work breakdown of project {project.id}."
    )


# ---------------------------------------------------------------------------
# IdentifierMapper
# ---------------------------------------------------------------------------

class _Unresolved:
    def __repr__(self) -> str:
        return "UNRESOLVED"

    def __bool__(self) -> bool:
        return False


UNRESOLVED = _Unresolved()


class IdentifierMapper:
    """
    Bidirectional table between transient and persisted identifiers.

    Populated incrementally while one import inserts its rows.  The "no
    parent" sentinel (None) always maps to None.  Looking up a transient id
    that has not been recorded yet returns UNRESOLVED rather than raising;
    the caller decides the fallback.
    """

    def __init__(self) -> None:
        self._forward: Dict[Optional[TransientId], Optional[ItemId]] = {None: None}
        self._reverse: Dict[ItemId, TransientId] = {}

    def record(self, transient_id: TransientId, item_id: ItemId) -> None:
        if transient_id in self._forward:
            raise ValueError(f"Transient id {transient_id} is already mapped.")
        self._forward[transient_id] = item_id
        self._reverse[item_id] = transient_id

    def resolve(
        self, transient_id: Optional[TransientId]
    ) -> Union[Optional[ItemId], _Unresolved]:
        return self._forward.get(transient_id, UNRESOLVED)

    def transient_for(self, item_id: ItemId) -> Optional[TransientId]:
        return self._reverse.get(item_id)

    def __contains__(self, transient_id: object) -> bool:
        return transient_id in self._forward

    def __len__(self) -> int:
        # The sentinel is not a recorded mapping.
        return len(self._forward) - 1


# ---------------------------------------------------------------------------
# TreeProjector
# ---------------------------------------------------------------------------

class TreeProjector:
    """
    Rebuilds the ordered forest of a project from its flat rows.

    Pure and restartable: no state is kept between calls, and projecting the
    same rows twice gives identical forests, including sibling order.
    """

    def project(self, items: Sequence[WorkItem]) -> List[TreeNode]:
        """
        Attach every item to its parent when the parent is part of `items`;
        otherwise the item becomes a root.  Siblings and roots are sorted by
        `order` with ties kept in input order.

        A parent link that would close a cycle is dropped and the item becomes
        a root, so every input item appears exactly once in the output.
        """
        nodes: Dict[ItemId, TreeNode] = {}
        for item in items:
            nodes[item.id] = TreeNode(item=item)

        # Effective parent links, filled in input order.
        parents: Dict[ItemId, Optional[ItemId]] = {
            item.id: item.parent_id for item in items
        }
        roots: List[TreeNode] = []
        for item in items:
            node = nodes[item.id]
            parent_id = item.parent_id
            if parent_id is None or parent_id not in nodes:
                parents[item.id] = None
                roots.append(node)
                continue
            if _closes_cycle(item.id, parent_id, parents):
                logger.warning(
                    "Work item %s is part of a parent cycle; projecting it as a root.",
                    item.id,
                )
                parents[item.id] = None
                roots.append(node)
                continue
            nodes[parent_id].children.append(node)

        return self._sorted(roots)

    def _sorted(self, siblings: List[TreeNode]) -> List[TreeNode]:
        ordered = sorted(siblings, key=lambda n: n.item.order)
        for node in ordered:
            node.children = self._sorted(node.children)
        return ordered

    @staticmethod
    def flatten(forest: Iterable[TreeNode]) -> List[WorkItem]:
        """Pre-order walk of a forest back into flat rows."""
        out: List[WorkItem] = []
        stack = list(reversed(list(forest)))
        while stack:
            node = stack.pop()
            out.append(node.item)
            stack.extend(reversed(node.children))
        return out


def _closes_cycle(
    item_id: ItemId,
    parent_id: Optional[ItemId],
    parents: Dict[ItemId, Optional[ItemId]],
) -> bool:
    """True if walking up from `parent_id` reaches `item_id`."""
    seen: Set[ItemId] = set()
    current = parent_id
    while current is not None and current not in seen:
        if current == item_id:
            return True
        seen.add(current)
        current = parents.get(current)
    return False


# ---------------------------------------------------------------------------
# HierarchyService
# ---------------------------------------------------------------------------

def two_bucket_order(candidates: Sequence[CandidateItem]) -> List[TransientId]:
    """
    Candidates without a parent first, then the rest, each group in its
    original order.  Only correct when the batch already lists every parent
    before its descendants; anything else is left to the root fallback.
    """
    roots = [TransientId(i) for i, c in enumerate(candidates, start=1) if c.parent_ref is None]
    rest = [TransientId(i) for i, c in enumerate(candidates, start=1) if c.parent_ref is not None]
    return roots + rest


def topological_order(candidates: Sequence[CandidateItem]) -> List[TransientId]:
    """
    Every candidate after its referenced parent, preferring lower positions.

    References that point outside the batch or at the candidate itself are
    treated as absent.  Candidates caught in a reference cycle cannot be
    ordered and are appended in their original order.
    """
    n = len(candidates)
    children: Dict[int, List[int]] = {}
    indegree = [0] * (n + 1)
    for position, candidate in enumerate(candidates, start=1):
        ref = candidate.parent_ref
        if ref is not None and 1 <= ref <= n and ref != position:
            children.setdefault(ref, []).append(position)
            indegree[position] = 1

    ready = [p for p in range(1, n + 1) if indegree[p] == 0]
    heapq.heapify(ready)
    ordered: List[TransientId] = []
    while ready:
        position = heapq.heappop(ready)
        ordered.append(TransientId(position))
        for child in children.get(position, []):
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, child)

    if len(ordered) < n:
        placed = set(ordered)
        ordered.extend(TransientId(p) for p in range(1, n + 1) if p not in placed)
    return ordered


ORDERING_STRATEGIES: Dict[str, Callable[[Sequence[CandidateItem]], List[TransientId]]] = {
    "two_bucket": two_bucket_order,
    "topological": topological_order,
}


class HierarchyService:
    """
    Validates import batches and decides the order their rows are inserted in.
    """

    def __init__(self, ordering: str = "two_bucket") -> None:
        try:
            self._order = ORDERING_STRATEGIES[ordering]
        except KeyError:
            raise ValueError(
                f"Unknown import ordering '{ordering}'. "
                f"Expected one of: {sorted(ORDERING_STRATEGIES)}."
            ) from None
        self.ordering = ordering

    def validate_candidates(self, candidates: Sequence[CandidateItem]) -> None:
        """
        Structural checks only; the meaning of content and deadlines is not
        judged here.

        Business rules enforced:
        - The batch is non-empty.
        - Every candidate has non-blank `content`.
        - `parent_ref` is an integer or None.
        - `order`, when present, is a non-negative integer.
        """
        if not candidates:
            raise ValueError("At least one work item is required.")
        for position, candidate in enumerate(candidates, start=1):
            if not isinstance(candidate.content, str) or not candidate.content.strip():
                raise ValueError(f"Item {position}: content is required.")
            ref = candidate.parent_ref
            if ref is not None and (isinstance(ref, bool) or not isinstance(ref, int)):
                raise ValueError(f"Item {position}: parent_ref must be an integer or null.")
            order = candidate.order
            if order is not None and (
                isinstance(order, bool) or not isinstance(order, int) or order < 0
            ):
                raise ValueError(f"Item {position}: order must be a non-negative integer.")
            if candidate.deadline is not None and not isinstance(candidate.deadline, date):
                raise ValueError(f"Item {position}: deadline must be a date or null.")

    def insertion_order(self, candidates: Sequence[CandidateItem]) -> List[TransientId]:
        return self._order(candidates)

    def build_item(
        self,
        project_id: ProjectId,
        candidate: CandidateItem,
        parent_id: Optional[ItemId],
        author_id: str,
    ) -> WorkItem:
        """Create a fresh TODO WorkItem (unsaved) for one candidate."""
        return WorkItem(
            project_id=project_id,
            content=candidate.content.strip(),
            deadline=candidate.deadline,
            status=WorkItemStatus.TODO,
            progress=0,
            parent_id=parent_id,
            order=candidate.order if candidate.order is not None else 0,
            author_id=author_id,
            registered_at=_utcnow(),
            completed_at=None,
        )


# ---------------------------------------------------------------------------
# StructureService
# ---------------------------------------------------------------------------

class StructureService:
    """
    Checks a batch of reparent / reorder directives against the project's
    current rows before anything is written.
    """

    def applicable(
        self, items: Sequence[WorkItem], directives: Sequence[StructureDirective]
    ) -> List[StructureDirective]:
        """Directives that name an item of this project; the rest are no-ops."""
        known = {item.id for item in items}
        return [d for d in directives if d.id in known]

    def validate(
        self, items: Sequence[WorkItem], directives: Sequence[StructureDirective]
    ) -> None:
        """
        Raise ValueError if applying `directives` would break the forest.

        Business rules enforced:
        - Each item is named at most once per batch.
        - `order` is non-negative.
        - `parent_id` is None or an item of the same project.
        - The resulting parent links contain no cycle.
        """
        known = {item.id for item in items}
        seen: Set[ItemId] = set()
        for d in directives:
            if d.id in seen:
                raise ValueError(f"Work item {d.id} appears more than once in the batch.")
            seen.add(d.id)
            if d.order < 0:
                raise ValueError(f"Work item {d.id}: order must be non-negative.")
            if d.parent_id is not None and d.parent_id not in known:
                raise ValueError(
                    f"Work item {d.id}: parent {d.parent_id} is not an item of this project."
                )

        parents: Dict[ItemId, Optional[ItemId]] = {item.id: item.parent_id for item in items}
        for d in directives:
            parents[d.id] = d.parent_id
        for item_id in parents:
            if _closes_cycle(item_id, parents[item_id], parents):
                raise ValueError(f"Work item {item_id} would become its own ancestor.")


# ---------------------------------------------------------------------------
# CompletionService
# ---------------------------------------------------------------------------

class CompletionService:
    """
    Derived completion state of work items and projects.
    """

    @staticmethod
    def is_item_complete(status: WorkItemStatus, progress: int) -> bool:
        return status == WorkItemStatus.DONE or progress == 100

    def derive_completed_at(
        self, status: WorkItemStatus, progress: int, now: Optional[datetime] = None
    ) -> Optional[datetime]:
        if self.is_item_complete(status, progress):
            return now or _utcnow()
        return None

    @staticmethod
    def validate_progress(progress: int) -> None:
        if isinstance(progress, bool) or not isinstance(progress, int):
            raise ValueError("progress must be an integer.")
        if not 0 <= progress <= 100:
            raise ValueError("progress must be between 0 and 100.")

    def apply_update(
        self,
        item: WorkItem,
        content: Optional[str] = None,
        deadline: Optional[date] = None,
        status: Optional[WorkItemStatus] = None,
        progress: Optional[int] = None,
        clear_deadline: bool = False,
    ) -> bool:
        """
        Apply field-level updates to a work item.

        Returns True when `status` or `progress` was supplied; in that case
        `completed_at` has been recomputed and the caller must run the
        project completion cascade.
        """
        if content is not None:
            if not content.strip():
                raise ValueError("content must not be blank.")
            item.content = content.strip()
        if clear_deadline:
            item.deadline = None
        elif deadline is not None:
            item.deadline = deadline
        if progress is not None:
            self.validate_progress(progress)
        if status is None and progress is None:
            return False
        if status is not None:
            item.status = status
        if progress is not None:
            item.progress = progress
        item.completed_at = self.derive_completed_at(item.status, item.progress)
        return True

    @staticmethod
    def project_is_complete(total: int, done: int) -> bool:
        return total > 0 and done == total
