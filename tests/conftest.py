"""Shared fixtures: a fresh in-memory store, actors and a seeded project."""

import pytest

from application import CreateProjectCommand, CreateProjectUseCase
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork
from model import Actor, ActorRole


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def uow(db):
    return InMemoryUnitOfWork(db)


@pytest.fixture
def author():
    return Actor(id="author-1", role=ActorRole.USER, company_code="ACME")


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=ActorRole.ADMIN)


@pytest.fixture
def manager():
    return Actor(id="manager-1", role=ActorRole.MANAGER, company_code="ACME")


@pytest.fixture
def outsider():
    return Actor(id="outsider-1", role=ActorRole.USER, company_code="OTHER")


@pytest.fixture
def project(uow, author):
    """A NEW project authored by `author` in company ACME."""
    return CreateProjectUseCase().execute(
        CreateProjectCommand(name="Website relaunch", actor=author), uow
    )
