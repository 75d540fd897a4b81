"""
Luna Assessment — Static Data Catalog

Question pools, prescreening questions, and narrative template strings live
as JSON files under ``app/data``.  Each file is read and parsed once per
process; callers receive the cached structure and must treat it as
read-only.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger("luna.catalog")

DATA_DIR = Path(__file__).resolve().parent.parent / "data"


@lru_cache(maxsize=None)
def load_data_file(name: str) -> Any:
    """Parse ``app/data/<name>`` and cache the result."""
    path = DATA_DIR / name
    with path.open(encoding="utf-8") as fh:
        data = json.load(fh)
    logger.info("catalog_loaded", file=name)
    return data


def question_pools() -> dict[str, Any]:
    return load_data_file("question_pools.json")


def narrative_templates() -> dict[str, Any]:
    return load_data_file("narrative_templates.json")


def prescreening_catalog() -> list[dict[str, Any]]:
    return load_data_file("prescreening_questions.json")
