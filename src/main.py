"""
main.py

Entry point for the WBS Hierarchy Engine API.

Reads settings from the environment (see config.py), wires the configured
store and the use case collaborators into the FastAPI app and starts uvicorn.

Usage
-----
    # Option 1 — run directly
    python main.py

    # Option 2 — run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

    # Option 3 — persist to SQLite instead of the in-memory store
    WBS_DATABASE_URL=sqlite:///wbs.db uvicorn main:app --port 8000

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl, always sending X-Actor-Id)
---------------------------------------------------------------------------
1.  POST  /api/v1/projects                      — register a project, copy its "id"
2.  POST  /api/v1/projects/{id}/wbs/import      — import a flat list, e.g.
        {"items": [{"content": "A"},
                   {"content": "B", "parent_ref": 1, "order": 0},
                   {"content": "C", "parent_ref": 1, "order": 1}]}
3.  GET   /api/v1/projects/{id}/wbs             — view the tree
4.  PATCH /api/v1/projects/{id}/wbs/structure   — reparent / reorder items
5.  PATCH /api/v1/items/{item_id}               — set progress to 100 on every item
6.  GET   /api/v1/projects/{id}                 — the project is now COMPLETE

Environment
-----------
    WBS_DATABASE_URL        SQLAlchemy URL; empty selects the in-memory store
    WBS_IMPORT_ORDERING     two_bucket (default) | topological
    WBS_VALIDATE_STRUCTURE  true (default) | false
    WBS_LOG_LEVEL           INFO (default)
    WBS_HOST / WBS_PORT     bind address for `python main.py`
    OPENAI_API_KEY          enables POST /wbs/generate
    WBS_OPENAI_MODEL        gpt-4o-mini (default)
"""

import logging

import uvicorn

from api import (
    app,
    get_candidate_generator,
    get_import_use_case,
    get_structure_use_case,
    get_uow,
)
from application import ApplyStructureUseCase, ImportHierarchyUseCase
from config import Settings
from generator import OpenAICandidateGenerator
from infrastructure import (
    InMemoryDatabase,
    InMemoryUnitOfWork,
    SqlAlchemyUnitOfWork,
    create_sql_engine,
)
from service import HierarchyService, StructureService

settings = Settings.from_env()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# ---------------------------------------------------------------------------

if settings.database_url:
    engine = create_sql_engine(settings.database_url)
    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(engine)
    logger.info("Using SQL store at %s", engine.url.render_as_string(hide_password=True))
else:
    database = InMemoryDatabase()
    app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork(database)
    logger.info("Using in-memory store; data is lost on restart.")


# ---------------------------------------------------------------------------
# Use case collaborators
# ---------------------------------------------------------------------------

importer = ImportHierarchyUseCase(HierarchyService(ordering=settings.import_ordering))
structure = ApplyStructureUseCase(StructureService(), validate=settings.validate_structure)
generator = (
    OpenAICandidateGenerator(settings.openai_api_key, model=settings.openai_model)
    if settings.openai_api_key
    else None
)
if generator is None:
    logger.info("OPENAI_API_KEY is not set; WBS generation is disabled.")

app.dependency_overrides[get_import_use_case] = lambda: importer
app.dependency_overrides[get_structure_use_case] = lambda: structure
app.dependency_overrides[get_candidate_generator] = lambda: generator


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=True,          # auto-reload on file changes during development
        log_level=settings.log_level.lower(),
    )
