"""
Luna Assessment — Deterministic Question Pools

Pre-authored questions keyed by priority, by focus area, and a short list
of conditional questions that only apply to certain couples.  The pool is
the sole question source whenever the LLM is unavailable or returns nothing
usable, and it tops up LLM sets that come back short.

Selection is fully deterministic: identical context in, identical ordered
question list out.  Pool order in ``app/data/question_pools.json`` is the
draw order.

Draw order for a target count T (from the assessment depth):
  (a) ceil(T/2) from the priority pool
  (b) ceil(3T / 10n) from each of the n focus-area pools
  (c) 2 from each foundational pool while still below T
  (d) conditional questions that match the couple, while below the maximum
  (e) remaining focus pools, then other priority pools, while below T

Every draw skips ids and question texts already selected, and entries whose
topics are suppressed for this couple.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from app.schemas.prescreening import (
    FOCUS_AREAS,
    PRIORITIES,
    LivingSituation,
    NormalizedContext,
    WantsChildren,
)
from app.schemas.question import IMPORTANCE_WEIGHTS, Importance, Question
from app.services.catalog import question_pools

logger = structlog.get_logger("luna.question_pool")

FOUNDATIONAL_AREAS: tuple[str, ...] = ("communication", "values", "lifestyle", "finances")
FOUNDATIONAL_DRAW = 2
FALLBACK_PRIORITY = "just_exploring"

# Predicates naming when a conditional question is relevant.
CONDITIONS: dict[str, Callable[[NormalizedContext], bool]] = {
    "not_married": lambda ctx: not ctx.is_married,
    "open_to_children": lambda ctx: (
        not ctx.has_children and ctx.wants_children != WantsChildren.NO
    ),
    "long_distance": lambda ctx: ctx.living_situation == LivingSituation.LONG_DISTANCE,
    "living_apart": lambda ctx: ctx.living_situation == LivingSituation.SEPARATE,
    "owns_home": lambda ctx: ctx.owns_home,
    "has_children": lambda ctx: ctx.has_children,
    "wants_children_soon": lambda ctx: ctx.wants_children == WantsChildren.YES_SOON,
}

# Topics that must never be asked of a couple matching the predicate.
SUPPRESSIONS: dict[str, Callable[[NormalizedContext], bool]] = {
    "marriage_timeline": lambda ctx: ctx.is_married,
    "wants_children": lambda ctx: ctx.has_children or ctx.wants_children == WantsChildren.NO,
    "parenting": lambda ctx: not ctx.has_children and ctx.wants_children == WantsChildren.NO,
    "home_purchase": lambda ctx: ctx.owns_home,
    "move_in_together": lambda ctx: ctx.living_situation == LivingSituation.TOGETHER,
}


@dataclass(frozen=True)
class PoolEntry:
    question: Question
    topics: frozenset[str] = frozenset()
    when: Optional[str] = None

    def is_suppressed(self, context: NormalizedContext) -> bool:
        return any(
            SUPPRESSIONS[topic](context)
            for topic in self.topics
            if topic in SUPPRESSIONS
        )

    def applies_to(self, context: NormalizedContext) -> bool:
        if self.when is None:
            return True
        condition = CONDITIONS.get(self.when)
        return condition is not None and condition(context)


def _entry_from_data(raw: dict[str, Any]) -> PoolEntry:
    importance = Importance(raw.get("importance", Importance.NORMAL.value))
    question = Question(
        id=raw["id"],
        category=raw.get("category", "general"),
        importance=importance,
        importance_weight=IMPORTANCE_WEIGHTS[importance],
        question=raw["question"],
        options=raw["options"],
    )
    return PoolEntry(
        question=question,
        topics=frozenset(raw.get("topics", ())),
        when=raw.get("when"),
    )


class _Selection:
    """Accumulates an ordered, duplicate-free question list for one couple."""

    def __init__(self, context: NormalizedContext, limit: int) -> None:
        self.context = context
        self.limit = limit
        self.questions: list[Question] = []
        self._ids: set[str] = set()
        self._texts: set[str] = set()

    def __len__(self) -> int:
        return len(self.questions)

    def can_take(self, entry: PoolEntry) -> bool:
        q = entry.question
        return (
            q.id not in self._ids
            and q.question not in self._texts
            and entry.applies_to(self.context)
            and not entry.is_suppressed(self.context)
        )

    def take(self, entries: Iterable[PoolEntry], count: int) -> int:
        added = 0
        for entry in entries:
            if added >= count or len(self.questions) >= self.limit:
                break
            if not self.can_take(entry):
                continue
            self.questions.append(entry.question)
            self._ids.add(entry.question.id)
            self._texts.add(entry.question.question)
            added += 1
        return added


class QuestionPool:
    """Static question pools plus the deterministic selection algorithm."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        data = data if data is not None else question_pools()
        self._priority: dict[str, list[PoolEntry]] = {
            name: [_entry_from_data(raw) for raw in entries]
            for name, entries in data.get("priority", {}).items()
        }
        self._focus: dict[str, list[PoolEntry]] = {
            name: [_entry_from_data(raw) for raw in entries]
            for name, entries in data.get("focus", {}).items()
        }
        self._conditional: list[PoolEntry] = [
            _entry_from_data(raw) for raw in data.get("conditional", [])
        ]
        unknown = {e.when for e in self._conditional if e.when not in CONDITIONS}
        if unknown:
            raise ValueError(f"Unknown conditional question predicates: {sorted(unknown)}")

    # ── Pool access ───────────────────────────────────────────────────────

    def priority_pool(self, priority: str) -> list[PoolEntry]:
        if priority in self._priority:
            return self._priority[priority]
        return self._priority.get(FALLBACK_PRIORITY, [])

    def focus_pool(self, area: str) -> list[PoolEntry]:
        return self._focus.get(area, [])

    @property
    def conditional_entries(self) -> list[PoolEntry]:
        return list(self._conditional)

    # ── Selection ─────────────────────────────────────────────────────────

    def select(self, context: NormalizedContext) -> list[Question]:
        """Build the fallback question set for ``context``.

        Parameters
        ----------
        context:
            Normalised couple context; its depth fixes the target and the
            maximum set size.

        Returns
        -------
        list[Question]
            Between ``min`` and ``max`` questions whenever the pools hold
            enough applicable entries.  A shorter set is logged and returned
            as-is.
        """
        bounds = context.question_range
        target = bounds.target
        selection = _Selection(context, limit=bounds.max)

        # (a) priority pool
        selection.take(self.priority_pool(context.current_priority), -(-target // 2))

        # (b) focus-area pools
        per_area = -(-(3 * target) // (10 * len(context.focus_areas)))
        for area in context.focus_areas:
            selection.take(self.focus_pool(area), per_area)

        # (c) foundational pools
        for area in FOUNDATIONAL_AREAS:
            if len(selection) >= target:
                break
            selection.take(self.focus_pool(area), FOUNDATIONAL_DRAW)

        # (d) conditional questions for this couple's situation
        for entry in self._conditional:
            if len(selection) >= bounds.max:
                break
            selection.take([entry], 1)

        # (e) escalate through the remaining pools
        for pool in self._escalation_pools(context):
            if len(selection) >= target:
                break
            selection.take(pool, target - len(selection))

        if len(selection) < bounds.min:
            logger.warning(
                "question_set_below_minimum",
                source="pool",
                count=len(selection),
                minimum=bounds.min,
                priority=context.current_priority,
            )

        logger.info(
            "pool_selection_complete",
            count=len(selection),
            target=target,
            priority=context.current_priority,
            focus_areas=list(context.focus_areas),
            depth=context.assessment_depth.value,
        )
        return selection.questions

    def _escalation_pools(self, context: NormalizedContext) -> Iterable[list[PoolEntry]]:
        for area in FOCUS_AREAS:
            yield self.focus_pool(area)
        for priority in PRIORITIES:
            if priority != context.current_priority:
                yield self.priority_pool(priority)
