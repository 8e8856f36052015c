"""
generator.py

OpenAI-backed candidate generator: turns a free-text project description
into an ordered, flat list of CandidateItem for ImportHierarchyUseCase.

The model is asked for a single JSON object

    {"items": [{"content": "...", "deadline": "YYYY-MM-DD" | null,
                "parent_ref": <1-based position> | null, "order": <int>}]}

Only the shape of the answer is checked here.  Parent references are
resolved (or demoted) by the importer like any other batch.
"""

import json
import logging
from datetime import date
from typing import Any, List, Optional

from openai import OpenAI, OpenAIError

from application import AbstractCandidateGenerator, GeneratorError
from model import CandidateItem

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a proficient project manager. Break the user's project description "
    "down into a work breakdown structure. Return a single JSON object with one "
    'key, "items": an array of objects with the keys "content" (short summary '
    'of the work), "deadline" (YYYY-MM-DD, or null when none is stated), '
    '"parent_ref" (the 1-based position in this same array of the parent item, '
    'or null for a top-level item) and "order" (0-based rank among siblings). '
    "List every parent before its children. If the description is in Korean, "
    "write the content in Korean."
)


def _parse_deadline(value: Any, position: int) -> Optional[date]:
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        logger.warning("Generated item %d has an unreadable deadline %r; dropping it.", position, value)
        return None


def _parse_int(value: Any, name: str, position: int) -> Optional[int]:
    """Accept ints and digit-only strings; anything else is dropped with a warning."""
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    logger.warning("Generated item %d has an unusable %s %r; dropping it.", position, name, value)
    return None


def parse_candidates(payload: str) -> List[CandidateItem]:
    """Convert the model's JSON answer into candidates, or raise GeneratorError."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise GeneratorError("The generator returned malformed JSON.") from exc

    raw_items = data.get("items") if isinstance(data, dict) else None
    if not isinstance(raw_items, list):
        raise GeneratorError('The generator answer has no "items" array.')

    candidates: List[CandidateItem] = []
    for position, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict) or not str(raw.get("content") or "").strip():
            raise GeneratorError(f"Generated item {position} has no content.")
        parent_ref = _parse_int(raw.get("parent_ref"), "parent_ref", position)
        order = _parse_int(raw.get("order"), "order", position)
        if order is not None and order < 0:
            logger.warning("Generated item %d has a negative order %d; dropping it.", position, order)
            order = None
        candidates.append(
            CandidateItem(
                content=str(raw["content"]).strip(),
                deadline=_parse_deadline(raw.get("deadline"), position),
                parent_ref=parent_ref,
                order=order,
            )
        )
    return candidates


class OpenAICandidateGenerator(AbstractCandidateGenerator):
    def __init__(self, api_key: str, model: str = "gpt-4o-mini", client: Optional[OpenAI] = None):
        self.model = model
        self._client = client or OpenAI(api_key=api_key)

    def generate(self, description: str) -> List[CandidateItem]:
        try:
            completion = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": description},
                ],
                response_format={"type": "json_object"},
            )
        except OpenAIError as exc:
            logger.error("OpenAI request failed: %s", exc)
            raise GeneratorError("The AI work breakdown request failed.") from exc

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise GeneratorError("The generator returned an empty answer.")
        candidates = parse_candidates(content)
        logger.info("Generated %d candidate work items.", len(candidates))
        return candidates
