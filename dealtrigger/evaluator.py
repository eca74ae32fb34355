from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .conditions import (
    FIRST_CLASS_FACTS,
    Comparison,
    ConditionParser,
    Conjunction,
    Disjunction,
    Literal,
    Predicate,
)
from .errors import ParseError
from .logging_config import DATA_QUALITY_LOGGER_NAME
from .models import Deal, FactRecord


_LOGGER = logging.getLogger("dealtrigger.evaluator")
_DATA_QUALITY_LOGGER = logging.getLogger(DATA_QUALITY_LOGGER_NAME)


@dataclass(frozen=True)
class DealEvaluationResult:
    outcome: str
    condition_met: bool
    decision_reason: str
    signature: str | None = None
    metrics: dict[str, Any] = field(default_factory=dict)


def _fact_value(fact: FactRecord, name: str) -> int | None:
    if name in FIRST_CLASS_FACTS:
        if name == "is_home":
            return 1 if fact.is_home else 0
        if name == "team_score":
            return fact.team_score
        if name == "opponent_score":
            return fact.opponent_score
        return fact.margin
    value = fact.counted_stats.get(name)
    if value is None:
        return None
    return int(value)


def _compare(operator: str, observed: int, threshold: int) -> bool:
    if operator == ">=":
        return observed >= threshold
    if operator == ">":
        return observed > threshold
    if operator == "<=":
        return observed <= threshold
    if operator == "<":
        return observed < threshold
    if operator == "==":
        return observed == threshold
    return False


def _evaluate_node(node: Predicate, fact: FactRecord, missing: list[str]) -> bool:
    if isinstance(node, Literal):
        return bool(node.value)
    if isinstance(node, Comparison):
        if not fact.is_complete:
            return False
        observed = _fact_value(fact, node.fact)
        if observed is None:
            missing.append(node.fact)
            return False
        return _compare(node.operator, observed, node.threshold)
    if isinstance(node, Conjunction):
        if not node.children:
            return False
        results = [_evaluate_node(child, fact, missing) for child in node.children]
        return all(results)
    if isinstance(node, Disjunction):
        results = [_evaluate_node(child, fact, missing) for child in node.children]
        return any(results)
    return False


def evaluate_with_details(predicate: Predicate, fact: FactRecord) -> tuple[bool, list[str]]:
    """Evaluate ``predicate`` and also return the stat names missing from ``fact``."""
    missing: list[str] = []
    passed = _evaluate_node(predicate, fact, missing)
    if missing:
        _DATA_QUALITY_LOGGER.warning(
            "missing counted stats game_id=%s stats=%s available=%s",
            fact.game_id,
            sorted(set(missing)),
            sorted(fact.counted_stats),
        )
    return passed, sorted(set(missing))


def evaluate(predicate: Predicate, fact: FactRecord) -> bool:
    passed, _ = evaluate_with_details(predicate, fact)
    return passed


def evaluate_deal(deal: Deal, fact: FactRecord, *, parser: ConditionParser) -> DealEvaluationResult:
    if deal.status != "PUBLISHED":
        return DealEvaluationResult(
            outcome="deal_not_published",
            condition_met=False,
            decision_reason=f"deal_status:{deal.status}",
        )
    if not deal.condition_string.strip():
        return DealEvaluationResult(
            outcome="no_condition",
            condition_met=False,
            decision_reason="no_condition_configured",
        )

    try:
        condition = parser.compile(deal.condition_string)
    except ParseError as exc:
        _LOGGER.error(
            "published deal condition failed to parse deal_id=%s token=%r error=%s",
            deal.deal_id,
            exc.token,
            exc,
        )
        return DealEvaluationResult(
            outcome="condition_invalid",
            condition_met=False,
            decision_reason="condition_invalid",
            metrics={"error": str(exc), "token": exc.token},
        )

    metrics: dict[str, Any] = {
        "normalized": condition.normalized,
        "team_score": fact.team_score,
        "opponent_score": fact.opponent_score,
        "is_home": fact.is_home,
    }
    if not fact.is_complete:
        return DealEvaluationResult(
            outcome="game_incomplete",
            condition_met=False,
            decision_reason="game_incomplete",
            signature=condition.signature,
            metrics=metrics,
        )

    passed, missing = evaluate_with_details(condition.predicate, fact)
    if missing:
        metrics["missing_stats"] = missing
    _LOGGER.info(
        "deal evaluate deal_id=%s game_id=%s condition=%r condition_met=%s missing_stats=%s",
        deal.deal_id,
        fact.game_id,
        condition.normalized,
        passed,
        missing,
    )
    return DealEvaluationResult(
        outcome="evaluated",
        condition_met=passed,
        decision_reason="conditions_met" if passed else "conditions_not_met",
        signature=condition.signature,
        metrics=metrics,
    )
