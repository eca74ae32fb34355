from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Protocol

from .authz import Principal
from .conditions import ConditionParser, build_parser_from_config
from .config import AppConfig, load_app_config
from .errors import StorageUnavailableError
from .evaluator import evaluate_deal
from .keys import key_for, key_for_notification
from .models import (
    ActivationEvent,
    ActivationResult,
    Deal,
    DealOutcomeOut,
    FactRecord,
    GameProcessOut,
)
from .store import ActivationStore

_LOGGER = logging.getLogger("dealtrigger.processor")


class Notifier(Protocol):
    def publish(self, event: ActivationEvent) -> None:
        ...


class LoggingNotifier:
    """Notifier that only records activation events in the log."""

    def __init__(
        self,
        logger: logging.Logger | None = None,
        *,
        recipient_id: str = "subscribers",
        channel: str = "log",
    ) -> None:
        self._logger = logger or logging.getLogger("dealtrigger.notifier")
        self._recipient_id = recipient_id
        self._channel = channel

    def publish(self, event: ActivationEvent) -> None:
        self._logger.info(
            "activation event deal_id=%s game_id=%s key=%s notification_key=%s triggered_at=%s expires_at=%s",
            event.deal_id,
            event.game_id,
            event.activation_key,
            key_for_notification(event.activation_key, self._recipient_id, self._channel),
            event.triggered_at.isoformat(),
            event.expires_at.isoformat(),
        )


class GameProcessor:
    """Runs every candidate deal for one finished game through parse, evaluate and activate.

    Only the caller whose insert actually created the activation publishes an
    event, so a game replayed any number of times notifies once per deal.
    """

    def __init__(
        self,
        store: ActivationStore,
        *,
        parser: ConditionParser | None = None,
        notifier: Notifier | None = None,
        auto_trigger: bool = True,
    ) -> None:
        self._store = store
        self._parser = parser or ConditionParser()
        self._notifier = notifier or LoggingNotifier()
        self._auto_trigger = auto_trigger

    @property
    def parser(self) -> ConditionParser:
        return self._parser

    @property
    def store(self) -> ActivationStore:
        return self._store

    def _activate(self, deal: Deal, fact: FactRecord, signature: str, now: datetime | None) -> ActivationResult:
        activation_key = key_for(deal.deal_id, fact.game_id, signature)
        if self._auto_trigger:
            return self._store.try_activate(
                activation_key,
                deal.deal_id,
                fact.game_id,
                deal.ttl_seconds,
                condition_signature=signature,
                now=now,
            )
        return self._store.reserve(
            activation_key,
            deal.deal_id,
            fact.game_id,
            deal.ttl_seconds,
            condition_signature=signature,
            now=now,
        )

    def _notify(self, result: ActivationResult) -> bool:
        activation = result.activation
        if activation.triggered_at is None or activation.expires_at is None:
            return False
        event = ActivationEvent(
            deal_id=activation.deal_id,
            game_id=activation.game_id,
            activation_key=activation.activation_key,
            triggered_at=activation.triggered_at,
            expires_at=activation.expires_at,
        )
        try:
            self._notifier.publish(event)
        except Exception:
            # The activation is committed; a failed publish must not undo it.
            _LOGGER.exception(
                "notifier publish failed key=%s deal_id=%s game_id=%s",
                event.activation_key,
                event.deal_id,
                event.game_id,
            )
            return False
        return True

    def process_deal(self, deal: Deal, fact: FactRecord, *, now: datetime | None = None) -> tuple[DealOutcomeOut, bool]:
        evaluation = evaluate_deal(deal, fact, parser=self._parser)
        if evaluation.outcome != "evaluated":
            if evaluation.outcome in {"deal_not_published", "no_condition"}:
                _LOGGER.info(
                    "deal skipped deal_id=%s game_id=%s reason=%s",
                    deal.deal_id,
                    fact.game_id,
                    evaluation.decision_reason,
                )
            return (
                DealOutcomeOut(
                    deal_id=deal.deal_id,
                    outcome=evaluation.outcome,
                    decision_reason=evaluation.decision_reason,
                ),
                False,
            )
        if not evaluation.condition_met:
            return (
                DealOutcomeOut(
                    deal_id=deal.deal_id,
                    outcome="not_triggered",
                    decision_reason=evaluation.decision_reason,
                ),
                False,
            )

        result = self._activate(deal, fact, evaluation.signature or "", now)
        if not result.created:
            outcome = "already_handled"
        elif self._auto_trigger:
            outcome = "triggered"
        else:
            outcome = "reserved"
        notified = False
        if result.created and result.activation.status == "TRIGGERED":
            notified = self._notify(result)
        return (
            DealOutcomeOut(
                deal_id=deal.deal_id,
                outcome=outcome,
                decision_reason=evaluation.decision_reason,
                activation_key=result.activation.activation_key,
                activation=result.activation,
            ),
            notified,
        )

    def force_trigger(
        self,
        principal: Principal,
        deal_id: str,
        game_id: str,
        ttl_seconds: int | None = None,
        *,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> ActivationResult:
        result = self._store.force_trigger(principal, deal_id, game_id, ttl_seconds, reason=reason, now=now)
        notified = False
        if result.created and result.activation.status == "TRIGGERED":
            notified = self._notify(result)
        _LOGGER.info(
            "manual trigger deal_id=%s game_id=%s actor=%s created=%s notified=%s",
            deal_id,
            game_id,
            principal.principal_id,
            result.created,
            notified,
        )
        return result

    def process_game(
        self,
        fact: FactRecord,
        deals: Iterable[Deal],
        *,
        now: datetime | None = None,
    ) -> GameProcessOut:
        outcomes: list[DealOutcomeOut] = []
        notified = 0
        for deal in deals:
            try:
                outcome, published = self.process_deal(deal, fact, now=now)
            except StorageUnavailableError:
                _LOGGER.error(
                    "activation store unavailable deal_id=%s game_id=%s",
                    deal.deal_id,
                    fact.game_id,
                )
                raise
            outcomes.append(outcome)
            if published:
                notified += 1

        triggered = sum(1 for item in outcomes if item.outcome == "triggered")
        _LOGGER.info(
            "game processed game_id=%s deals=%s triggered=%s notified=%s",
            fact.game_id,
            len(outcomes),
            triggered,
            notified,
        )
        return GameProcessOut(
            game_id=fact.game_id,
            outcomes=outcomes,
            triggered=triggered,
            notified=notified,
        )


def build_processor_from_config(
    store: ActivationStore,
    *,
    notifier: Notifier | None = None,
    config: AppConfig | None = None,
) -> GameProcessor:
    cfg = config or load_app_config()
    return GameProcessor(
        store,
        parser=build_parser_from_config(cfg),
        notifier=notifier,
        auto_trigger=cfg.activation.auto_trigger,
    )
