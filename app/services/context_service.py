"""
Luna Assessment — Context Derivation

Maps the raw prescreening answers of both partners into a single
``NormalizedContext``.  This is the one place where defaults are applied:
every downstream component (question selection, scoring, narrative) may
assume each field is populated.

Resolution rule per fact: partner 1's answer is authoritative; partner 2's
answer is consulted only when partner 1 left the field blank.  Values that
cannot be interpreted fall back to the documented default rather than
raising.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import Any, TypeVar

import structlog

from app.schemas.prescreening import (
    DEFAULT_FOCUS_AREAS,
    DEFAULT_PRIORITY,
    DEPTH_RANGES,
    FOCUS_AREAS,
    PRIORITIES,
    AssessmentDepth,
    CouplePrescreening,
    LivingSituation,
    NormalizedContext,
    QuestionRange,
    RelationshipLength,
    WantsChildren,
)
from app.services.catalog import prescreening_catalog

logger = structlog.get_logger("luna.context_service")

E = TypeVar("E", bound=Enum)

_TRUE_STRINGS = {"true", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "no", "n", "0"}


# ──────────────────────────────────────────────────────────────────────────────
# Coercion helpers
# ──────────────────────────────────────────────────────────────────────────────

def _is_absent(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return False


def _pick(p1: Mapping[str, Any], p2: Mapping[str, Any], key: str) -> Any:
    value = p1.get(key)
    if _is_absent(value):
        value = p2.get(key)
    return None if _is_absent(value) else value


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return False


def _coerce_enum(enum_cls: type[E], value: Any, default: E) -> E:
    if value is None:
        return default
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, Enum):
        value = value.value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        logger.debug("prescreening_value_unrecognised", field=enum_cls.__name__, value=str(value))
        return default


def _coerce_focus_areas(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        candidates = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        candidates = list(value)
    else:
        candidates = []

    areas: list[str] = []
    for candidate in candidates:
        area = str(candidate).strip().lower()
        if area in FOCUS_AREAS and area not in areas:
            areas.append(area)
    return tuple(areas) or DEFAULT_FOCUS_AREAS


def _coerce_priority(value: Any) -> str:
    if value is None:
        return DEFAULT_PRIORITY
    priority = str(value).strip().lower()
    return priority if priority in PRIORITIES else DEFAULT_PRIORITY


def _partner_records(prescreening: Any) -> tuple[Mapping[str, Any], Mapping[str, Any]]:
    if isinstance(prescreening, CouplePrescreening):
        return prescreening.partner1, prescreening.partner2
    if isinstance(prescreening, Mapping):
        p1 = prescreening.get("partner1")
        p2 = prescreening.get("partner2")
        return (
            p1 if isinstance(p1, Mapping) else {},
            p2 if isinstance(p2, Mapping) else {},
        )
    return {}, {}


# ──────────────────────────────────────────────────────────────────────────────
# Public API
# ──────────────────────────────────────────────────────────────────────────────

def derive_context(prescreening: CouplePrescreening | Mapping[str, Any] | None) -> NormalizedContext:
    """Normalise both partners' prescreening answers.

    Never raises.  ``prescreening`` may be a ``CouplePrescreening``, a plain
    ``{"partner1": {...}, "partner2": {...}}`` mapping, or ``None``.
    """
    p1, p2 = _partner_records(prescreening)

    has_children = _coerce_bool(_pick(p1, p2, "has_children"))
    wants_children = _coerce_enum(
        WantsChildren, _pick(p1, p2, "wants_children"), WantsChildren.UNSET
    )
    if has_children:
        # Only meaningful for couples without children.
        wants_children = WantsChildren.UNSET

    return NormalizedContext(
        relationship_length=_coerce_enum(
            RelationshipLength,
            _pick(p1, p2, "relationship_length"),
            RelationshipLength.UNKNOWN,
        ),
        is_married=_coerce_bool(_pick(p1, p2, "is_married")),
        has_children=has_children,
        owns_home=_coerce_bool(_pick(p1, p2, "owns_home")),
        wants_children=wants_children,
        living_situation=_coerce_enum(
            LivingSituation,
            _pick(p1, p2, "living_situation"),
            LivingSituation.UNKNOWN,
        ),
        focus_areas=_coerce_focus_areas(_pick(p1, p2, "focus_areas")),
        current_priority=_coerce_priority(_pick(p1, p2, "current_priority")),
        assessment_depth=_coerce_enum(
            AssessmentDepth,
            _pick(p1, p2, "assessment_depth"),
            AssessmentDepth.STANDARD,
        ),
    )


def question_range(depth: AssessmentDepth | str | None) -> QuestionRange:
    """Return the ``[min, max]`` question count and fallback target for a depth."""
    return DEPTH_RANGES[_coerce_enum(AssessmentDepth, depth, AssessmentDepth.STANDARD)]


def _dependency_met(depends_on: Mapping[str, Any] | None, answers: Mapping[str, Any]) -> bool:
    if not depends_on:
        return True
    answer = answers.get(depends_on["question_id"])
    expected = depends_on["value"]
    if isinstance(expected, bool):
        return not _is_absent(answer) and _coerce_bool(answer) == expected
    return answer == expected


def visible_prescreening_questions(answers: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
    """Prescreening questions that apply given one partner's answers so far."""
    answers = answers or {}
    return [
        question
        for question in prescreening_catalog()
        if _dependency_met(question.get("depends_on"), answers)
    ]


def is_prescreening_complete(answers: Mapping[str, Any] | None) -> bool:
    """True when every visible question has an answer.

    Multiselect questions need a non-empty list.  A boolean ``False`` counts
    as an answer.
    """
    if not answers:
        return False
    for question in visible_prescreening_questions(answers):
        answer = answers.get(question["id"])
        if question["type"] == "multiselect":
            if not isinstance(answer, (list, tuple)) or not answer:
                return False
        elif _is_absent(answer):
            return False
    return True
