"""Tests for environment-driven settings."""

import os

import pytest

from config import Settings

_VARS = (
    "WBS_DATABASE_URL",
    "WBS_IMPORT_ORDERING",
    "WBS_VALIDATE_STRUCTURE",
    "WBS_LOG_LEVEL",
    "WBS_HOST",
    "WBS_PORT",
    "OPENAI_API_KEY",
    "WBS_OPENAI_MODEL",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    # load_dotenv writes to os.environ directly; give each test a private copy.
    environ = {k: v for k, v in os.environ.items() if k not in _VARS}
    monkeypatch.setattr(os, "environ", environ)
    return tmp_path


def test_defaults(clean_env):
    settings = Settings.from_env(env_file=str(clean_env / "missing.env"))
    assert settings.database_url == ""
    assert settings.import_ordering == "two_bucket"
    assert settings.validate_structure is True
    assert settings.openai_api_key is None
    assert settings.port == 8000


def test_env_file_values(clean_env):
    env_file = clean_env / ".env"
    env_file.write_text(
        "WBS_IMPORT_ORDERING=Topological\n"
        "WBS_VALIDATE_STRUCTURE=off\n"
        "WBS_DATABASE_URL=sqlite:///wbs.db\n"
    )

    settings = Settings.from_env(env_file=str(env_file))
    assert settings.import_ordering == "topological"
    assert settings.validate_structure is False
    assert settings.database_url == "sqlite:///wbs.db"


def test_environment_wins_over_file(clean_env, monkeypatch):
    env_file = clean_env / ".env"
    env_file.write_text("WBS_LOG_LEVEL=debug\n")
    monkeypatch.setenv("WBS_LOG_LEVEL", "warning")
    assert Settings.from_env(env_file=str(env_file)).log_level == "WARNING"


def test_bad_boolean(clean_env, monkeypatch):
    monkeypatch.setenv("WBS_VALIDATE_STRUCTURE", "maybe")
    with pytest.raises(ValueError):
        Settings.from_env(env_file=str(clean_env / "missing.env"))
