"""
infrastructure.py

Implementations of the repository interfaces and the Unit of Work.

Two back ends are provided:

- InMemoryUnitOfWork — plain Python dicts keyed by integer id.  Suitable for
  local development, demos and tests without a database.  Transactions are
  real: each one works on a private copy of the tables that is published on
  commit and discarded on rollback, and transactions on the same database
  run one at a time.

- SqlAlchemyUnitOfWork — SQLAlchemy Core tables on any database SQLAlchemy
  supports (SQLite, PostgreSQL, ...).  One connection and one database
  transaction per unit of work.

Pick one at the composition root (main.py) and hand it to the API through
the get_uow dependency:

    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(engine)

Nothing in service.py, application.py or api.py needs to change.
"""

from __future__ import annotations

import copy
import functools
import itertools
import logging
import threading
from datetime import timezone
from typing import Dict, Iterator, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from application import (
    AbstractProjectRepository,
    AbstractUnitOfWork,
    AbstractWorkItemRepository,
    StorageError,
)
from model import (
    ItemId,
    Project,
    ProjectId,
    ProjectType,
    WorkItem,
    WorkItemStatus,
)

logger = logging.getLogger(__name__)


# ===========================================================================
# IN-MEMORY BACK END
# ===========================================================================

class _Store(dict):
    """
    A plain dict with typed get/save/delete helpers.

    Objects are copied on the way in and on the way out, so a caller holding
    a loaded object cannot change stored state without calling save.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.closed = False

    def _check_open(self) -> None:
        if self.closed:
            raise StorageError("The transaction is no longer active.")

    def fetch(self, key: int):
        self._check_open()
        obj = self.get(key)
        return copy.copy(obj) if obj is not None else None

    def put(self, obj) -> None:
        self._check_open()
        self[obj.id] = copy.copy(obj)

    def remove(self, key: int) -> None:
        self._check_open()
        self.pop(key, None)

    def all(self) -> list:
        self._check_open()
        return [copy.copy(obj) for obj in self.values()]


class InMemoryDatabase:
    """
    Committed state shared by every InMemoryUnitOfWork created on it.
    Persists for the lifetime of the object; create one per process at the
    composition root.
    """

    def __init__(self):
        self.projects: Dict[int, Project] = {}
        self.work_items: Dict[int, WorkItem] = {}
        self._sequences: Dict[str, Iterator[int]] = {
            "projects": itertools.count(1),
            "work_items": itertools.count(1),
        }
        # Held for the duration of each transaction.  Not re-entrant: a second
        # unit of work opened in the same thread blocks instead of racing.
        self.lock = threading.Lock()

    def next_id(self, table: str) -> int:
        # Like a database sequence, ids consumed by a rolled-back
        # transaction are not reused.
        return next(self._sequences[table])


class InMemoryProjectRepository(AbstractProjectRepository):
    def __init__(self, store: _Store, db: InMemoryDatabase):
        self._s = store
        self._db = db

    def get(self, project_id):        return self._s.fetch(project_id)
    def update(self, project):        self._s.put(project)
    def delete(self, project_id):     self._s.remove(project_id)

    def add(self, project):
        stored = copy.copy(project)
        stored.id = ProjectId(self._db.next_id("projects"))
        self._s.put(stored)
        return stored.id


class InMemoryWorkItemRepository(AbstractWorkItemRepository):
    def __init__(self, store: _Store, db: InMemoryDatabase):
        self._s = store
        self._db = db

    def get(self, item_id):           return self._s.fetch(item_id)
    def update(self, item):           self._s.put(item)
    def delete(self, item_id):        self._s.remove(item_id)

    def list_for_project(self, project_id):
        return sorted(
            (i for i in self._s.all() if i.project_id == project_id),
            key=lambda i: i.id,
        )

    def count_for_project(self, project_id, completed_only=False):
        return sum(
            1 for i in self._s.all()
            if i.project_id == project_id
            and (not completed_only or i.status == WorkItemStatus.DONE or i.progress == 100)
        )

    def add(self, item):
        stored = copy.copy(item)
        stored.id = ItemId(self._db.next_id("work_items"))
        self._s.put(stored)
        return stored.id

    def update_structure(self, project_id, item_id, parent_id, order):
        item = self._s.fetch(item_id)
        if item is None or item.project_id != project_id:
            return False
        item.parent_id = parent_id
        item.order = order
        self._s.put(item)
        return True

    def delete_for_project(self, project_id):
        doomed = [i.id for i in self._s.all() if i.project_id == project_id]
        for item_id in doomed:
            self._s.remove(item_id)
        return len(doomed)


class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps the in-memory repositories in a transaction.

    begin() takes the database lock and copies the committed tables;
    repositories then read and write the copies.  commit() publishes the
    copies as the new committed state; rollback() throws them away.
    """

    def __init__(self, db: InMemoryDatabase):
        self._db = db
        self._projects: Optional[_Store] = None
        self._work_items: Optional[_Store] = None

    @property
    def active(self) -> bool:
        return self._projects is not None

    def begin(self) -> None:
        if self.active:
            raise StorageError("A transaction is already active on this unit of work.")
        self._db.lock.acquire()
        self._projects = _Store(self._db.projects)
        self._work_items = _Store(self._db.work_items)
        self.projects = InMemoryProjectRepository(self._projects, self._db)
        self.work_items = InMemoryWorkItemRepository(self._work_items, self._db)

    def commit(self) -> None:
        if not self.active:
            return
        self._db.projects = dict(self._projects)
        self._db.work_items = dict(self._work_items)
        self._end()

    def rollback(self) -> None:
        if not self.active:
            return
        logger.warning("Rolling back in-memory transaction.")
        self._end()

    def _end(self) -> None:
        self._projects.closed = True
        self._work_items.closed = True
        self._projects = None
        self._work_items = None
        self._db.lock.release()


# ===========================================================================
# SQLALCHEMY BACK END
# ===========================================================================

metadata = MetaData()

projects_table = Table(
    "projects",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(200), nullable=False),
    Column("author_id", String(64), nullable=False),
    Column("company_code", String(64), nullable=True),
    Column("type", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

work_items_table = Table(
    "work_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "project_id",
        Integer,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("content", Text, nullable=False),
    Column("deadline", Date, nullable=True),
    Column("status", String(16), nullable=False),
    Column("progress", Integer, nullable=False, default=0),
    Column("parent_id", Integer, ForeignKey("work_items.id"), nullable=True, index=True),
    Column("order", Integer, nullable=False, default=0),
    Column("author_id", String(64), nullable=False),
    Column("registered_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    CheckConstraint("progress >= 0 AND progress <= 100", name="ck_work_items_progress"),
)

_order_col = work_items_table.c["order"]


def create_sql_engine(url: str) -> Engine:
    """
    Build an engine for `url` and make sure the schema exists.

    In-memory SQLite gets a single shared connection so every unit of work
    sees the same database; SQLite connections get foreign keys switched on.
    """
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    metadata.create_all(engine)
    return engine


def _translate_errors(method):
    """Re-raise database failures as StorageError."""

    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error("Storage failure in %s: %s", method.__qualname__, exc)
            raise StorageError(f"Storage failure: {exc.__class__.__name__}") from exc

    return wrapper


def _utc(dt):
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _project_from_row(row) -> Project:
    return Project(
        id=ProjectId(row.id),
        name=row.name,
        author_id=row.author_id,
        company_code=row.company_code,
        type=ProjectType(row.type),
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _work_item_from_row(row) -> WorkItem:
    m = row._mapping
    return WorkItem(
        id=ItemId(m["id"]),
        project_id=ProjectId(m["project_id"]),
        content=m["content"],
        deadline=m["deadline"],
        status=WorkItemStatus(m["status"]),
        progress=m["progress"],
        parent_id=ItemId(m["parent_id"]) if m["parent_id"] is not None else None,
        order=m["order"],
        author_id=m["author_id"],
        registered_at=_utc(m["registered_at"]),
        completed_at=_utc(m["completed_at"]),
    )


def _work_item_values(item: WorkItem) -> dict:
    return {
        "project_id": item.project_id,
        "content": item.content,
        "deadline": item.deadline,
        "status": item.status.value,
        "progress": item.progress,
        "parent_id": item.parent_id,
        "order": item.order,
        "author_id": item.author_id,
        "registered_at": item.registered_at,
        "completed_at": item.completed_at,
    }


class SqlProjectRepository(AbstractProjectRepository):
    def __init__(self, conn: Connection):
        self._conn = conn

    @_translate_errors
    def get(self, project_id):
        row = self._conn.execute(
            select(projects_table).where(projects_table.c.id == project_id)
        ).first()
        return _project_from_row(row) if row is not None else None

    @_translate_errors
    def add(self, project):
        result = self._conn.execute(
            insert(projects_table).values(
                name=project.name,
                author_id=project.author_id,
                company_code=project.company_code,
                type=project.type.value,
                created_at=project.created_at,
                updated_at=project.updated_at,
            )
        )
        return ProjectId(result.inserted_primary_key[0])

    @_translate_errors
    def update(self, project):
        self._conn.execute(
            update(projects_table)
            .where(projects_table.c.id == project.id)
            .values(
                name=project.name,
                company_code=project.company_code,
                type=project.type.value,
                updated_at=project.updated_at,
            )
        )

    @_translate_errors
    def delete(self, project_id):
        self._conn.execute(delete(projects_table).where(projects_table.c.id == project_id))


class SqlWorkItemRepository(AbstractWorkItemRepository):
    def __init__(self, conn: Connection):
        self._conn = conn

    @_translate_errors
    def get(self, item_id):
        row = self._conn.execute(
            select(work_items_table).where(work_items_table.c.id == item_id)
        ).first()
        return _work_item_from_row(row) if row is not None else None

    @_translate_errors
    def list_for_project(self, project_id):
        rows = self._conn.execute(
            select(work_items_table)
            .where(work_items_table.c.project_id == project_id)
            .order_by(work_items_table.c.id)
        )
        return [_work_item_from_row(r) for r in rows]

    @_translate_errors
    def count_for_project(self, project_id, completed_only=False):
        query = select(func.count()).select_from(work_items_table).where(
            work_items_table.c.project_id == project_id
        )
        if completed_only:
            query = query.where(
                or_(
                    work_items_table.c.status == WorkItemStatus.DONE.value,
                    work_items_table.c.progress == 100,
                )
            )
        return self._conn.execute(query).scalar_one()

    @_translate_errors
    def add(self, item):
        result = self._conn.execute(
            insert(work_items_table).values(**_work_item_values(item))
        )
        return ItemId(result.inserted_primary_key[0])

    @_translate_errors
    def update(self, item):
        self._conn.execute(
            update(work_items_table)
            .where(work_items_table.c.id == item.id)
            .values(**_work_item_values(item))
        )

    @_translate_errors
    def update_structure(self, project_id, item_id, parent_id, order):
        result = self._conn.execute(
            update(work_items_table)
            .where(work_items_table.c.id == item_id)
            .where(work_items_table.c.project_id == project_id)
            .values({work_items_table.c.parent_id: parent_id, _order_col: order})
        )
        return result.rowcount > 0

    @_translate_errors
    def delete(self, item_id):
        self._conn.execute(delete(work_items_table).where(work_items_table.c.id == item_id))

    @_translate_errors
    def delete_for_project(self, project_id):
        result = self._conn.execute(
            delete(work_items_table).where(work_items_table.c.project_id == project_id)
        )
        return result.rowcount


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    """One connection and one database transaction per `with uow:` block."""

    def __init__(self, engine: Engine):
        self._engine = engine
        self._conn: Optional[Connection] = None
        self._txn = None

    @_translate_errors
    def begin(self) -> None:
        if self._conn is not None:
            raise StorageError("A transaction is already active on this unit of work.")
        self._conn = self._engine.connect()
        self._txn = self._conn.begin()
        self.projects = SqlProjectRepository(self._conn)
        self.work_items = SqlWorkItemRepository(self._conn)

    def commit(self) -> None:
        if self._txn is None:
            return
        try:
            self._txn.commit()
        except SQLAlchemyError as exc:
            logger.error("Commit failed: %s", exc)
            raise StorageError(f"Commit failed: {exc.__class__.__name__}") from exc
        finally:
            self._close()

    def rollback(self) -> None:
        if self._txn is None:
            return
        logger.warning("Rolling back database transaction.")
        try:
            self._txn.rollback()
        except SQLAlchemyError:
            logger.exception("Rollback failed.")
        finally:
            self._close()

    def _close(self) -> None:
        conn = self._conn
        self._txn = None
        self._conn = None
        if conn is not None:
            conn.close()
