# adaptive_dread/logic/adaptation_rules.py

"""
Adaptation rules: a conjunction of ``metric op threshold`` clauses mapped to
named adjustments, gated by a cooldown.

Conditions are parsed once, when the rule is configured. A clause that fails
to parse is kept as an invalid clause and always evaluates to False, so a
broken rule never fires.
"""

from __future__ import annotations

import logging
import math
import operator
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from adaptive_dread.errors import InvalidRuleCondition

logger = logging.getLogger(__name__)


class Comparator(str, Enum):
    LT = "<"
    GT = ">"
    LE = "<="
    GE = ">="

    @property
    def fn(self) -> Callable[[float, float], bool]:
        return _COMPARATOR_FNS[self]


_COMPARATOR_FNS = {
    Comparator.LT: operator.lt,
    Comparator.GT: operator.gt,
    Comparator.LE: operator.le,
    Comparator.GE: operator.ge,
}


@dataclass(frozen=True)
class Clause:
    metric_id: str
    comparator: Comparator
    threshold: float

    def evaluate(self, metrics: Mapping[str, float]) -> bool:
        value = metrics.get(self.metric_id)
        if value is None:
            return False
        return self.comparator.fn(value, self.threshold)

    def __str__(self) -> str:
        return f"{self.metric_id} {self.comparator.value} {self.threshold}"


@dataclass(frozen=True)
class InvalidClause:
    """Placeholder for a clause that failed to parse; never satisfied."""
    source: str
    reason: str

    metric_id = None

    def evaluate(self, metrics: Mapping[str, float]) -> bool:
        return False

    def __str__(self) -> str:
        return f"<invalid {self.source!r}: {self.reason}>"


ConditionClause = Union[Clause, InvalidClause]


@dataclass(frozen=True)
class RuleCondition:
    clauses: Tuple[ConditionClause, ...]

    @property
    def is_valid(self) -> bool:
        return all(isinstance(c, Clause) for c in self.clauses)

    @property
    def metric_ids(self) -> List[str]:
        return [c.metric_id for c in self.clauses if isinstance(c, Clause)]

    def evaluate(self, metrics: Mapping[str, float]) -> bool:
        if not self.clauses:
            return False
        return all(clause.evaluate(metrics) for clause in self.clauses)

    def __str__(self) -> str:
        return " && ".join(str(c) for c in self.clauses)


def parse_clause(text: str) -> Clause:
    """Parse one ``metric op threshold`` clause; raises InvalidRuleCondition."""
    parts = text.strip().split()
    if len(parts) != 3:
        raise InvalidRuleCondition(text, "expected 'metric op threshold'")
    metric_id, op, raw_threshold = parts
    try:
        comparator = Comparator(op)
    except ValueError:
        raise InvalidRuleCondition(text, f"unsupported comparator {op!r}") from None
    try:
        threshold = float(raw_threshold)
    except ValueError:
        raise InvalidRuleCondition(text, f"threshold {raw_threshold!r} is not a number") from None
    if not math.isfinite(threshold):
        raise InvalidRuleCondition(text, "threshold must be finite")
    return Clause(metric_id, comparator, threshold)


def parse_condition(condition: Union[str, Sequence[Tuple[str, str, float]]]) -> RuleCondition:
    """
    Build a RuleCondition from ``"a < 0.6 && b > 0.7"`` or from a list of
    ``(metric_id, op, threshold)`` tuples. Malformed clauses are kept as
    InvalidClause entries.
    """
    clauses: List[ConditionClause] = []

    if isinstance(condition, str):
        for piece in condition.split("&&"):
            if not piece.strip():
                clauses.append(InvalidClause(piece, "empty clause"))
                continue
            try:
                clauses.append(parse_clause(piece))
            except InvalidRuleCondition as e:
                logger.warning(str(e))
                clauses.append(InvalidClause(piece.strip(), e.reason))
        return RuleCondition(tuple(clauses))

    for item in condition or ():
        try:
            metric_id, op, threshold = item
            clauses.append(parse_clause(f"{metric_id} {op} {float(threshold)}"))
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid rule clause {item!r}: {e}")
            clauses.append(InvalidClause(repr(item), str(e)))
        except InvalidRuleCondition as e:
            logger.warning(str(e))
            clauses.append(InvalidClause(repr(item), e.reason))
    return RuleCondition(tuple(clauses))


@dataclass
class AdaptationRule:
    id: str
    condition: RuleCondition
    required_metrics: Tuple[str, ...]
    adjustments: Dict[str, float]
    cooldown: float
    is_active: bool = True
    last_triggered: Optional[float] = None
    trigger_count: int = 0

    @classmethod
    def build(
        cls,
        rule_id: str,
        condition: Union[str, Sequence[Tuple[str, str, float]]],
        adjustments: Mapping[str, float],
        *,
        cooldown: float,
        required_metrics: Optional[Iterable[str]] = None,
        is_active: bool = True,
    ) -> "AdaptationRule":
        parsed = parse_condition(condition)
        required = tuple(required_metrics) if required_metrics is not None else tuple(parsed.metric_ids)
        return cls(
            id=rule_id,
            condition=parsed,
            required_metrics=required,
            adjustments=dict(adjustments),
            cooldown=float(cooldown),
            is_active=is_active,
        )

    def cooldown_elapsed(self, now: float) -> bool:
        return self.last_triggered is None or (now - self.last_triggered) >= self.cooldown

    def should_trigger(self, metrics: Mapping[str, float], now: float) -> bool:
        if not self.is_active or not self.cooldown_elapsed(now):
            return False
        if any(metric_id not in metrics for metric_id in self.required_metrics):
            return False
        return self.condition.evaluate(metrics)

    def mark_triggered(self, now: float) -> None:
        self.last_triggered = now
        self.trigger_count += 1


def default_rules() -> List[AdaptationRule]:
    return [
        AdaptationRule.build(
            "intensity_adjustment",
            "horror_effectiveness < 0.6 && psychological_impact > 0.7",
            {"content_intensity": 0.2, "psychological_depth": 0.1},
            cooldown=60.0,
        ),
        AdaptationRule.build(
            "personal_enhancement",
            "personal_resonance < 0.5 && narrative_coherence > 0.7",
            {"personal_context_weight": 0.3, "emotional_specificity": 0.2},
            cooldown=120.0,
        ),
    ]
