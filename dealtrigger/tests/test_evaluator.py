from __future__ import annotations

import logging

import pytest

from dealtrigger.conditions import Comparison, ConditionParser, Conjunction, Disjunction, Literal, parse
from dealtrigger.evaluator import evaluate, evaluate_deal, evaluate_with_details
from dealtrigger.logging_config import DATA_QUALITY_LOGGER_NAME
from dealtrigger.models import Deal, FactRecord


def _fact(**kwargs: object) -> FactRecord:
    payload: dict[str, object] = {"gameId": "game-42"}
    payload.update(kwargs)
    return FactRecord.model_validate(payload)


def test_home_win_true_for_completed_home_win() -> None:
    fact = _fact(isHome=True, isComplete=True, teamScore=5, opponentScore=2)
    assert evaluate(parse("home win"), fact) is True


def test_home_win_false_for_away_win() -> None:
    fact = _fact(isHome=False, isComplete=True, teamScore=5, opponentScore=2)
    assert evaluate(parse("home win"), fact) is False


def test_strikeout_threshold() -> None:
    predicate = parse("7+ strikeouts")
    assert evaluate(predicate, _fact(isComplete=True, countedStats={"strikeouts": 9})) is True
    assert evaluate(predicate, _fact(isComplete=True, countedStats={"strikeouts": 6})) is False


def test_home_win_and_runs() -> None:
    predicate = parse("home win and 6+ runs")
    base = {"isHome": True, "isComplete": True, "teamScore": 6, "opponentScore": 4}
    assert evaluate(predicate, _fact(**base, countedStats={"runs": 6})) is True
    assert evaluate(predicate, _fact(**base, countedStats={"runs": 5})) is False


def test_incomplete_game_never_matches() -> None:
    fact = _fact(isHome=True, isComplete=False, teamScore=9, opponentScore=0, countedStats={"strikeouts": 12})
    assert evaluate(parse("home win"), fact) is False
    assert evaluate(parse("7+ strikeouts"), fact) is False
    assert evaluate(parse("home game or 7+ strikeouts"), fact) is False


def test_tie_is_not_a_win() -> None:
    fact = _fact(isComplete=True, teamScore=3, opponentScore=3)
    assert evaluate(parse("win"), fact) is False


def test_first_class_facts_resolve_without_counted_stats() -> None:
    fact = _fact(isHome=False, isComplete=True, teamScore=8, opponentScore=2)
    assert evaluate(parse("margin >= 6"), fact) is True
    assert evaluate(parse("team score > 7"), fact) is True
    assert evaluate(parse("runs allowed <= 2"), fact) is True
    assert evaluate(parse("away game"), fact) is True


def test_camel_case_stat_keys_are_normalized() -> None:
    fact = _fact(isComplete=True, countedStats={"stolenBases": 2, "homeRuns": None})
    assert fact.counted_stats == {"stolen_bases": 2}
    assert evaluate(parse("stolen base"), fact) is True


def test_missing_stat_is_false_and_logged(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger(DATA_QUALITY_LOGGER_NAME)
    logger.addHandler(caplog.handler)
    try:
        with caplog.at_level(logging.WARNING, logger=DATA_QUALITY_LOGGER_NAME):
            passed, missing = evaluate_with_details(
                parse("home run or win"),
                _fact(isComplete=True, teamScore=1, opponentScore=2),
            )
    finally:
        logger.removeHandler(caplog.handler)
    assert passed is False
    assert missing == ["home_runs"]
    assert any("home_runs" in record.getMessage() for record in caplog.records)


def test_literal_and_degenerate_nodes() -> None:
    fact = _fact(isComplete=True)
    assert evaluate(Literal(False), fact) is False
    assert evaluate(Literal(True), fact) is True
    assert evaluate(Conjunction(()), fact) is False
    assert evaluate(Disjunction(()), fact) is False
    assert evaluate(Comparison("margin", "!=", 0), fact) is False


def test_evaluate_deal_outcomes() -> None:
    parser = ConditionParser()
    fact = _fact(isHome=True, isComplete=True, teamScore=5, opponentScore=2)

    met = evaluate_deal(Deal(deal_id="deal-1", condition_string="home win"), fact, parser=parser)
    assert met.outcome == "evaluated"
    assert met.condition_met is True
    assert met.signature == parser.compile("home win").signature

    not_met = evaluate_deal(Deal(deal_id="deal-2", condition_string="away win"), fact, parser=parser)
    assert not_met.outcome == "evaluated"
    assert not_met.condition_met is False
    assert not_met.decision_reason == "conditions_not_met"

    draft = evaluate_deal(
        Deal(deal_id="deal-3", condition_string="home win", status="draft"), fact, parser=parser
    )
    assert draft.outcome == "deal_not_published"

    blank = evaluate_deal(Deal(deal_id="deal-4", condition_string="  "), fact, parser=parser)
    assert blank.outcome == "no_condition"

    invalid = evaluate_deal(Deal(deal_id="deal-5", condition_string="win by a mile"), fact, parser=parser)
    assert invalid.outcome == "condition_invalid"
    assert invalid.condition_met is False
    assert invalid.metrics["token"] == "by"


def test_evaluate_deal_incomplete_game() -> None:
    result = evaluate_deal(
        Deal(deal_id="deal-1", condition_string="home win"),
        _fact(isHome=True, isComplete=False, teamScore=5, opponentScore=2),
        parser=ConditionParser(),
    )
    assert result.outcome == "game_incomplete"
    assert result.condition_met is False
