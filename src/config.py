"""
config.py

Runtime settings for the WBS service.

Values come from environment variables; a `.env` file in the working
directory is loaded first if present.  Variables already set in the
environment win over the file.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}.")


@dataclass
class Settings:
    database_url: str = ""                  # empty selects the in-memory store
    import_ordering: str = "two_bucket"     # or "topological"
    validate_structure: bool = True
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        load_dotenv(env_file, override=False)
        settings = cls(
            database_url=os.getenv("WBS_DATABASE_URL", "").strip(),
            import_ordering=os.getenv("WBS_IMPORT_ORDERING", "two_bucket").strip().lower(),
            validate_structure=_env_bool("WBS_VALIDATE_STRUCTURE", True),
            log_level=os.getenv("WBS_LOG_LEVEL", "INFO").strip().upper(),
            host=os.getenv("WBS_HOST", "127.0.0.1"),
            port=int(os.getenv("WBS_PORT", "8000")),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("WBS_OPENAI_MODEL", "gpt-4o-mini"),
        )
        logger.debug(
            "Loaded settings: store=%s ordering=%s validate_structure=%s",
            settings.database_url or "memory",
            settings.import_ordering,
            settings.validate_structure,
        )
        return settings
