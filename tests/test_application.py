"""
Use case tests against the in-memory store.

Tests cover:
- Bulk hierarchy import: ordering, parent resolution, root demotion, atomicity
- WBS tree reads
- Structure batches: scoping, validation, permissive mode
- Work item create / update / delete and the completion cascade
- Project registration, summary and removal
- AI-assisted import through a candidate generator
- Authorization
"""

import logging
from datetime import date

import pytest

from application import (
    AbstractCandidateGenerator,
    ApplyStructureCommand,
    ApplyStructureUseCase,
    CompletionCascade,
    CreateProjectCommand,
    CreateProjectUseCase,
    CreateWorkItemCommand,
    CreateWorkItemUseCase,
    DeleteProjectUseCase,
    DeleteWorkItemCommand,
    DeleteWorkItemUseCase,
    ForbiddenError,
    GenerateWbsCommand,
    GenerateWbsUseCase,
    GeneratorError,
    GetProjectUseCase,
    GetWbsTreeUseCase,
    ImportHierarchyCommand,
    ImportHierarchyUseCase,
    NotFoundError,
    StorageError,
    UpdateWorkItemCommand,
    UpdateWorkItemUseCase,
    ValidationError,
)
from infrastructure import InMemoryUnitOfWork
from model import (
    CandidateItem,
    ProjectType,
    StructureDirective,
    WorkItemStatus,
)
from service import HierarchyService


ABC = [
    CandidateItem("A", parent_ref=None, order=0),
    CandidateItem("B", parent_ref=1, order=0),
    CandidateItem("C", parent_ref=1, order=1),
]


def _import(uow, project_id, actor, candidates, ordering="two_bucket"):
    use_case = ImportHierarchyUseCase(HierarchyService(ordering=ordering))
    return use_case.execute(
        ImportHierarchyCommand(project_id=project_id, actor=actor, candidates=candidates), uow
    )


def _tree(uow, project_id, actor):
    return GetWbsTreeUseCase().execute(project_id, actor, uow)


def _by_content(forest):
    out = {}
    stack = list(forest)
    while stack:
        node = stack.pop()
        out[node.content] = node
        stack.extend(node.children)
    return out


class _FailingWorkItems:
    """Delegates to the real repository but fails the Nth insert."""

    def __init__(self, inner, fail_on):
        self._inner = inner
        self._fail_on = fail_on
        self.adds = 0

    def add(self, item):
        self.adds += 1
        if self.adds == self._fail_on:
            raise StorageError("insert failed")
        return self._inner.add(item)

    def __getattr__(self, name):
        return getattr(self._inner, name)


class FailingUnitOfWork(InMemoryUnitOfWork):
    def __init__(self, db, fail_on):
        super().__init__(db)
        self._fail_on = fail_on

    def begin(self):
        super().begin()
        self.work_items = _FailingWorkItems(self.work_items, self._fail_on)


class _StaticGenerator(AbstractCandidateGenerator):
    def __init__(self, candidates):
        self.candidates = candidates
        self.descriptions = []

    def generate(self, description):
        self.descriptions.append(description)
        return list(self.candidates)


class _BrokenCascade(CompletionCascade):
    def run(self, project_id, uow):
        raise StorageError("projects table is locked")


# ---------------------------------------------------------------------------
# Hierarchy import
# ---------------------------------------------------------------------------

class TestImportHierarchy:
    def test_root_with_ordered_children(self, uow, project, author):
        result = _import(uow, project.id, author, ABC)
        assert result.created_count == 3
        assert result.demoted_to_root == []

        forest = _tree(uow, project.id, author)
        assert [n.content for n in forest] == ["A"]
        assert [c.content for c in forest[0].children] == ["B", "C"]
        assert all(c.parent_id == forest[0].id for c in forest[0].children)

    def test_children_follow_order_not_list_position(self, uow, project, author):
        candidates = [
            CandidateItem("root"),
            CandidateItem("second", parent_ref=1, order=5),
            CandidateItem("first", parent_ref=1, order=1),
        ]
        _import(uow, project.id, author, candidates)
        forest = _tree(uow, project.id, author)
        assert [c.content for c in forest[0].children] == ["first", "second"]

    def test_forward_reference_is_demoted_with_warning(self, uow, project, author, caplog):
        candidates = [
            CandidateItem("A"),
            CandidateItem("B", parent_ref=3),
            CandidateItem("C", parent_ref=1),
        ]
        with caplog.at_level(logging.WARNING, logger="application"):
            result = _import(uow, project.id, author, candidates)

        assert result.created_count == 3
        assert result.demoted_to_root == [2]
        assert "creating it as a root" in caplog.text
        nodes = _by_content(_tree(uow, project.id, author))
        assert nodes["B"].parent_id is None
        assert nodes["C"].parent_id == nodes["A"].id

    def test_topological_ordering_resolves_forward_reference(self, uow, project, author):
        candidates = [
            CandidateItem("A"),
            CandidateItem("B", parent_ref=3),
            CandidateItem("C", parent_ref=1),
        ]
        result = _import(uow, project.id, author, candidates, ordering="topological")
        assert result.demoted_to_root == []
        nodes = _by_content(_tree(uow, project.id, author))
        assert nodes["B"].parent_id == nodes["C"].id

    def test_dangling_and_self_references_become_roots(self, uow, project, author):
        candidates = [CandidateItem("A", parent_ref=9), CandidateItem("B", parent_ref=2)]
        result = _import(uow, project.id, author, candidates, ordering="topological")
        assert result.created_count == 2
        assert result.demoted_to_root == [1, 2]
        assert {n.content for n in _tree(uow, project.id, author)} == {"A", "B"}

    def test_imported_items_start_untouched(self, uow, project, author):
        _import(uow, project.id, author, [CandidateItem("A", deadline=date(2026, 12, 1))])
        node = _tree(uow, project.id, author)[0]
        assert node.status == WorkItemStatus.TODO.value
        assert node.progress == 0
        assert node.completed_at is None
        assert node.order == 0
        assert node.author_id == author.id
        assert node.deadline == "2026-12-01"

    def test_failed_insert_leaves_project_unchanged(self, db, uow, project, author):
        _import(uow, project.id, author, [CandidateItem("existing")])
        before = {k: v for k, v in db.work_items.items()}

        failing = FailingUnitOfWork(db, fail_on=3)
        with pytest.raises(StorageError):
            _import(failing, project.id, author, ABC + [CandidateItem("D", parent_ref=2)])

        assert db.work_items == before
        assert [n.content for n in _tree(uow, project.id, author)] == ["existing"]

    def test_empty_batch_rejected(self, uow, project, author):
        with pytest.raises(ValidationError):
            _import(uow, project.id, author, [])

    def test_unknown_project(self, uow, author):
        with pytest.raises(NotFoundError):
            _import(uow, 404, author, ABC)

    def test_outsider_forbidden(self, uow, project, outsider):
        with pytest.raises(ForbiddenError):
            _import(uow, project.id, outsider, ABC)

    def test_manager_of_same_company_and_admin_allowed(self, uow, project, manager, admin):
        assert _import(uow, project.id, manager, ABC).created_count == 3
        assert _import(uow, project.id, admin, ABC).created_count == 3


# ---------------------------------------------------------------------------
# Structure batches
# ---------------------------------------------------------------------------

class TestApplyStructure:
    def _setup(self, uow, project, author):
        _import(uow, project.id, author, ABC)
        return _by_content(_tree(uow, project.id, author))

    def test_reparent_and_reorder(self, uow, project, author):
        nodes = self._setup(uow, project, author)
        a, b, c = nodes["A"].id, nodes["B"].id, nodes["C"].id

        result = ApplyStructureUseCase().execute(
            ApplyStructureCommand(
                project_id=project.id,
                directives=[StructureDirective(c, None, 0), StructureDirective(a, None, 1),
                            StructureDirective(b, c, 0)],
                actor=author,
            ),
            uow,
        )
        assert result.applied_count == 3
        forest = _tree(uow, project.id, author)
        assert [n.content for n in forest] == ["C", "A"]
        assert [ch.content for ch in forest[0].children] == ["B"]

    def test_items_of_other_projects_are_untouched(self, uow, project, author):
        nodes = self._setup(uow, project, author)
        other = CreateProjectUseCase().execute(
            CreateProjectCommand(name="Other", actor=author), uow
        )
        _import(uow, other.id, author, [CandidateItem("X"), CandidateItem("Y", parent_ref=1)])
        foreign = _by_content(_tree(uow, other.id, author))["Y"]

        result = ApplyStructureUseCase().execute(
            ApplyStructureCommand(
                project_id=project.id,
                directives=[StructureDirective(foreign.id, None, 9),
                            StructureDirective(nodes["C"].id, None, 2)],
                actor=author,
            ),
            uow,
        )
        assert result.applied_count == 1
        assert result.ignored_count == 1
        assert _by_content(_tree(uow, other.id, author))["Y"].parent_id == foreign.parent_id

    def test_cycle_rejects_whole_batch(self, uow, project, author):
        nodes = self._setup(uow, project, author)
        with pytest.raises(ValidationError):
            ApplyStructureUseCase().execute(
                ApplyStructureCommand(
                    project_id=project.id,
                    directives=[StructureDirective(nodes["C"].id, None, 7),
                                StructureDirective(nodes["A"].id, nodes["B"].id, 0)],
                    actor=author,
                ),
                uow,
            )
        after = _by_content(_tree(uow, project.id, author))
        assert after["C"].parent_id == nodes["A"].id
        assert after["C"].order == 1

    def test_parent_from_other_project_rejected(self, uow, project, author):
        nodes = self._setup(uow, project, author)
        other = CreateProjectUseCase().execute(
            CreateProjectCommand(name="Other", actor=author), uow
        )
        _import(uow, other.id, author, [CandidateItem("X")])
        x = _tree(uow, other.id, author)[0]
        with pytest.raises(ValidationError):
            ApplyStructureUseCase().execute(
                ApplyStructureCommand(
                    project_id=project.id,
                    directives=[StructureDirective(nodes["B"].id, x.id, 0)],
                    actor=author,
                ),
                uow,
            )

    def test_permissive_mode_applies_unchecked(self, uow, project, author):
        nodes = self._setup(uow, project, author)
        result = ApplyStructureUseCase(validate=False).execute(
            ApplyStructureCommand(
                project_id=project.id,
                directives=[StructureDirective(nodes["A"].id, nodes["B"].id, 0)],
            ),
            uow,
        )
        assert result.applied_count == 1
        # The projection still shows every item despite the cycle.
        assert set(_by_content(_tree(uow, project.id, author))) == {"A", "B", "C"}

    def test_permissive_mode_still_rejects_negative_order(self, uow, project, author):
        nodes = self._setup(uow, project, author)
        with pytest.raises(ValidationError, match="non-negative"):
            ApplyStructureUseCase(validate=False).execute(
                ApplyStructureCommand(
                    project_id=project.id,
                    directives=[StructureDirective(nodes["C"].id, None, 0),
                                StructureDirective(nodes["B"].id, None, -5)],
                ),
                uow,
            )
        after = _by_content(_tree(uow, project.id, author))
        assert all(node.order >= 0 for node in after.values())
        assert after["C"].parent_id == nodes["A"].id

    def test_outsider_forbidden(self, uow, project, author, outsider):
        nodes = self._setup(uow, project, author)
        with pytest.raises(ForbiddenError):
            ApplyStructureUseCase().execute(
                ApplyStructureCommand(
                    project_id=project.id,
                    directives=[StructureDirective(nodes["B"].id, None, 0)],
                    actor=outsider,
                ),
                uow,
            )


# ---------------------------------------------------------------------------
# Work items and the completion cascade
# ---------------------------------------------------------------------------

class TestCompletionCascade:
    def _only_item(self, uow, project, author):
        _import(uow, project.id, author, [CandidateItem("only")])
        return _tree(uow, project.id, author)[0]

    def _update(self, uow, item_id, actor, **fields):
        return UpdateWorkItemUseCase().execute(
            UpdateWorkItemCommand(item_id=item_id, actor=actor, **fields), uow
        )

    def test_full_progress_completes_project_and_stays_complete(self, uow, project, author):
        item = self._only_item(uow, project, author)

        result = self._update(uow, item.id, author, progress=100)
        assert result.cascade_triggered is True
        assert result.project_completed is True
        assert result.item.completed_at is not None
        assert GetProjectUseCase().execute(project.id, author, uow).type == "COMPLETE"

        result = self._update(uow, item.id, author, progress=50)
        assert result.item.completed_at is None
        assert GetProjectUseCase().execute(project.id, author, uow).type == "COMPLETE"

    def test_project_waits_for_every_item(self, uow, project, author):
        _import(uow, project.id, author, ABC)
        nodes = _by_content(_tree(uow, project.id, author))

        for name in ("A", "B"):
            result = self._update(uow, nodes[name].id, author, status=WorkItemStatus.DONE)
            assert result.project_completed is False
        assert GetProjectUseCase().execute(project.id, author, uow).type == "NEW"

        result = self._update(uow, nodes["C"].id, author, status=WorkItemStatus.DONE)
        assert result.project_completed is True

    def test_content_only_update_skips_cascade(self, uow, project, author):
        item = self._only_item(uow, project, author)
        result = self._update(uow, item.id, author, content="renamed")
        assert result.cascade_triggered is False
        assert result.project_completed is None
        assert result.item.content == "renamed"

    def test_cascade_failure_keeps_item_update(self, uow, project, author, caplog):
        item = self._only_item(uow, project, author)
        use_case = UpdateWorkItemUseCase(cascade=_BrokenCascade())

        result = use_case.execute(
            UpdateWorkItemCommand(item_id=item.id, actor=author, status=WorkItemStatus.DONE), uow
        )
        assert result.cascade_error == "projects table is locked"
        assert result.project_completed is None
        assert _tree(uow, project.id, author)[0].status == "DONE"
        assert "Completion cascade failed" in caplog.text

    def test_invalid_progress_rejected(self, uow, project, author):
        item = self._only_item(uow, project, author)
        with pytest.raises(ValidationError):
            self._update(uow, item.id, author, progress=150)

    def test_outsider_cannot_update(self, uow, project, author, outsider):
        item = self._only_item(uow, project, author)
        with pytest.raises(ForbiddenError):
            self._update(uow, item.id, outsider, progress=10)

    def test_unknown_item(self, uow, author):
        with pytest.raises(NotFoundError):
            self._update(uow, 12345, author, progress=10)


class TestWorkItemCrud:
    def test_create_derives_completed_at(self, uow, project, author):
        done = CreateWorkItemUseCase().execute(
            CreateWorkItemCommand(
                project_id=project.id, actor=author, content="ship", status=WorkItemStatus.DONE
            ),
            uow,
        )
        open_item = CreateWorkItemUseCase().execute(
            CreateWorkItemCommand(
                project_id=project.id, actor=author, content="plan", parent_id=done.id, order=2
            ),
            uow,
        )
        assert done.completed_at is not None
        assert open_item.completed_at is None
        assert open_item.parent_id == done.id

    def test_create_with_parent_of_other_project_rejected(self, uow, project, author):
        other = CreateProjectUseCase().execute(
            CreateProjectCommand(name="Other", actor=author), uow
        )
        foreign = CreateWorkItemUseCase().execute(
            CreateWorkItemCommand(project_id=other.id, actor=author, content="x"), uow
        )
        with pytest.raises(ValidationError):
            CreateWorkItemUseCase().execute(
                CreateWorkItemCommand(
                    project_id=project.id, actor=author, content="y", parent_id=foreign.id
                ),
                uow,
            )

    def test_delete_removes_subtree(self, uow, project, author):
        _import(
            uow,
            project.id,
            author,
            ABC + [CandidateItem("D", parent_ref=2), CandidateItem("E")],
        )
        nodes = _by_content(_tree(uow, project.id, author))

        result = DeleteWorkItemUseCase().execute(
            DeleteWorkItemCommand(item_id=nodes["A"].id, actor=author), uow
        )
        assert result.deleted_count == 4
        assert [n.content for n in _tree(uow, project.id, author)] == ["E"]


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

class TestProjects:
    def test_create_defaults_company_to_actor(self, project, author):
        assert project.author_id == author.id
        assert project.company_code == "ACME"
        assert project.type == ProjectType.NEW.value
        assert project.item_count == 0

    def test_blank_name_rejected(self, uow, author):
        with pytest.raises(ValidationError):
            CreateProjectUseCase().execute(CreateProjectCommand(name="  ", actor=author), uow)

    def test_summary_counts(self, uow, project, author):
        _import(uow, project.id, author, ABC)
        nodes = _by_content(_tree(uow, project.id, author))
        UpdateWorkItemUseCase().execute(
            UpdateWorkItemCommand(item_id=nodes["B"].id, actor=author, progress=100), uow
        )
        UpdateWorkItemUseCase().execute(
            UpdateWorkItemCommand(item_id=nodes["C"].id, actor=author, progress=50), uow
        )
        summary = GetProjectUseCase().execute(project.id, author, uow)
        assert summary.item_count == 3
        assert summary.done_count == 1
        assert summary.progress == 50

    def test_delete_removes_items(self, db, uow, project, author):
        _import(uow, project.id, author, ABC)
        result = DeleteProjectUseCase().execute(project.id, author, uow)
        assert result.deleted_count == 3
        assert db.work_items == {}
        with pytest.raises(NotFoundError):
            GetProjectUseCase().execute(project.id, author, uow)

    def test_outsider_cannot_read(self, uow, project, outsider):
        with pytest.raises(ForbiddenError):
            GetProjectUseCase().execute(project.id, outsider, uow)


# ---------------------------------------------------------------------------
# AI-assisted import
# ---------------------------------------------------------------------------

class TestGenerateWbs:
    def test_generated_candidates_are_imported(self, uow, project, author):
        generator = _StaticGenerator(ABC)
        result = GenerateWbsUseCase(generator).execute(
            GenerateWbsCommand(project_id=project.id, actor=author, description="Build a site"),
            uow,
        )
        assert result.created_count == 3
        assert generator.descriptions == ["Build a site"]

    def test_missing_generator(self, uow, project, author):
        with pytest.raises(GeneratorError):
            GenerateWbsUseCase(None).execute(
                GenerateWbsCommand(project_id=project.id, actor=author, description="x"), uow
            )

    def test_empty_answer(self, uow, project, author):
        with pytest.raises(GeneratorError):
            GenerateWbsUseCase(_StaticGenerator([])).execute(
                GenerateWbsCommand(project_id=project.id, actor=author, description="x"), uow
            )

    def test_outsider_never_reaches_generator(self, uow, project, outsider):
        generator = _StaticGenerator(ABC)
        with pytest.raises(ForbiddenError):
            GenerateWbsUseCase(generator).execute(
                GenerateWbsCommand(project_id=project.id, actor=outsider, description="x"), uow
            )
        assert generator.descriptions == []
