from __future__ import annotations

from datetime import datetime, timezone

import pytest

from dealtrigger.authz import Principal, Role
from dealtrigger.conditions import ConditionParser
from dealtrigger.models import ActivationEvent, Deal, FactRecord
from dealtrigger.processor import GameProcessor, LoggingNotifier
from dealtrigger.store import ActivationStore


UTC = timezone.utc
T0 = datetime(2026, 5, 1, 22, 0, 0, tzinfo=UTC)
ADMIN = Principal("admin-1", Role.ADMIN)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[ActivationEvent] = []

    def publish(self, event: ActivationEvent) -> None:
        self.events.append(event)


class FailingNotifier:
    def publish(self, event: ActivationEvent) -> None:
        raise RuntimeError("smtp down")


def _home_win_fact(*, complete: bool = True) -> FactRecord:
    return FactRecord(
        game_id="game-42",
        is_home=True,
        is_complete=complete,
        team_score=6,
        opponent_score=4,
        counted_stats={"runs": 6, "strikeouts": 11},
    )


def _deals() -> list[Deal]:
    return [
        Deal(deal_id="deal-win", condition_string="home win"),
        Deal(deal_id="deal-ks", condition_string="12+ strikeouts"),
        Deal(deal_id="deal-draft", condition_string="home win", status="DRAFT"),
        Deal(deal_id="deal-blank", condition_string=""),
        Deal(deal_id="deal-bad", condition_string="win by a mile"),
        Deal(deal_id="deal-runs", condition_string="home win and 6+ runs", ttl_seconds=600),
    ]


def test_process_game_outcomes_and_single_notification(store: ActivationStore) -> None:
    notifier = RecordingNotifier()
    processor = GameProcessor(store, parser=ConditionParser(), notifier=notifier)

    first = processor.process_game(_home_win_fact(), _deals(), now=T0)
    outcomes = {item.deal_id: item.outcome for item in first.outcomes}
    assert outcomes == {
        "deal-win": "triggered",
        "deal-ks": "not_triggered",
        "deal-draft": "deal_not_published",
        "deal-blank": "no_condition",
        "deal-bad": "condition_invalid",
        "deal-runs": "triggered",
    }
    assert first.triggered == 2
    assert first.notified == 2
    runs_event = next(event for event in notifier.events if event.deal_id == "deal-runs")
    assert (runs_event.expires_at - runs_event.triggered_at).total_seconds() == 600

    replay = processor.process_game(_home_win_fact(), _deals(), now=T0)
    assert {item.deal_id: item.outcome for item in replay.outcomes}["deal-win"] == "already_handled"
    assert replay.notified == 0
    assert len(notifier.events) == 2


def test_incomplete_game_triggers_nothing(store: ActivationStore) -> None:
    notifier = RecordingNotifier()
    processor = GameProcessor(store, notifier=notifier)
    result = processor.process_game(_home_win_fact(complete=False), _deals(), now=T0)
    assert result.triggered == 0
    assert notifier.events == []
    assert store.stats()["total"] == 0


def test_notifier_failure_keeps_activation(store: ActivationStore) -> None:
    processor = GameProcessor(store, notifier=FailingNotifier())
    result = processor.process_game(_home_win_fact(), [Deal(deal_id="deal-win", condition_string="home win")], now=T0)
    assert result.triggered == 1
    assert result.notified == 0
    assert store.list_for_deal("deal-win")[0].status == "TRIGGERED"


def test_reserve_mode_leaves_pending(store: ActivationStore) -> None:
    notifier = RecordingNotifier()
    processor = GameProcessor(store, notifier=notifier, auto_trigger=False)
    result = processor.process_game(_home_win_fact(), [Deal(deal_id="deal-win", condition_string="home win")], now=T0)
    assert result.outcomes[0].outcome == "reserved"
    assert result.outcomes[0].activation.status == "PENDING"
    assert notifier.events == []


def test_logging_notifier_logs_event(caplog: pytest.LogCaptureFixture) -> None:
    event = ActivationEvent(
        deal_id="deal-1",
        game_id="game-42",
        activation_key="validation:" + "0" * 32,
        triggered_at=T0,
        expires_at=T0,
    )
    with caplog.at_level("INFO", logger="dealtrigger.notifier"):
        LoggingNotifier().publish(event)
    assert any("deal_id=deal-1" in record.getMessage() for record in caplog.records)


def test_force_trigger_of_reserved_deal_notifies_once(store: ActivationStore) -> None:
    notifier = RecordingNotifier()
    processor = GameProcessor(store, notifier=notifier, auto_trigger=False)
    reserved = processor.process_game(_home_win_fact(), [Deal(deal_id="deal-win", condition_string="home win")], now=T0)
    assert reserved.outcomes[0].outcome == "reserved"
    assert notifier.events == []

    forced = processor.force_trigger(ADMIN, "deal-win", "game-42", reason="approved", now=T0)
    assert forced.created is True
    assert forced.activation.status == "TRIGGERED"
    assert [event.activation_key for event in notifier.events] == [forced.activation.activation_key]

    repeat = processor.force_trigger(ADMIN, "deal-win", "game-42", now=T0)
    assert repeat.created is False
    assert len(notifier.events) == 1


def test_force_trigger_without_reservation_notifies(store: ActivationStore) -> None:
    notifier = RecordingNotifier()
    processor = GameProcessor(store, notifier=notifier)
    forced = processor.force_trigger(ADMIN, "deal-7", "game-9", 60, now=T0)
    assert forced.created is True
    assert len(notifier.events) == 1
    assert (notifier.events[0].expires_at - notifier.events[0].triggered_at).total_seconds() == 60
