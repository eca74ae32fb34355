from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .config import MAX_ACTIVATION_TTL_SECONDS

DealStatus = Literal["DRAFT", "PUBLISHED", "RETIRED"]
ActivationStatus = Literal["PENDING", "TRIGGERED", "EXPIRED", "REVERSED"]
ReviewOutcome = Literal["APPROVED", "REJECTED", "NEEDS_INFO"]
DealOutcome = Literal[
    "triggered",
    "already_handled",
    "reserved",
    "not_triggered",
    "game_incomplete",
    "condition_invalid",
    "deal_not_published",
    "no_condition",
]

TERMINAL_ACTIVATION_STATUSES: set[str] = {"EXPIRED", "REVERSED"}

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_stat_key(value: str) -> str:
    text = _CAMEL_BOUNDARY.sub("_", str(value).strip())
    return text.lower().replace("-", "_").replace(" ", "_")


class FactRecord(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    game_id: str
    is_home: bool = False
    is_complete: bool = False
    team_score: int = 0
    opponent_score: int = 0
    counted_stats: dict[str, int] = Field(default_factory=dict)

    @field_validator("game_id")
    @classmethod
    def validate_game_id(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("game_id cannot be empty")
        return v

    @field_validator("counted_stats", mode="before")
    @classmethod
    def normalize_counted_stats(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, dict):
            return value
        return {normalize_stat_key(key): stat for key, stat in value.items() if stat is not None}

    @property
    def margin(self) -> int:
        return self.team_score - self.opponent_score


class Deal(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    deal_id: str
    restaurant_id: str | None = None
    condition_string: str = ""
    team_id: str | None = None
    status: DealStatus = "PUBLISHED"
    ttl_seconds: int | None = Field(default=None, ge=0, le=MAX_ACTIVATION_TTL_SECONDS)

    @field_validator("deal_id")
    @classmethod
    def validate_deal_id(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("deal_id cannot be empty")
        return v

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class Activation(BaseModel):
    activation_key: str
    deal_id: str
    game_id: str
    condition_signature: str | None = None
    status: ActivationStatus
    ttl_seconds: int
    triggered_at: datetime | None = None
    expires_at: datetime | None = None
    reversed_at: datetime | None = None
    reversed_by: str | None = None
    reversal_reason: str | None = None
    triggered_by: str | None = None
    created_at: datetime
    updated_at: datetime
    version: int = 1

    @model_validator(mode="after")
    def validate_window(self) -> "Activation":
        if self.triggered_at is not None and self.expires_at is not None:
            if self.expires_at < self.triggered_at:
                raise ValueError("expires_at must not precede triggered_at")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ACTIVATION_STATUSES


class ActivationResult(BaseModel):
    created: bool
    activation: Activation


class ActivationEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    deal_id: str
    game_id: str
    activation_key: str
    triggered_at: datetime
    expires_at: datetime


class ActivationAuditEvent(BaseModel):
    activation_key: str
    timestamp: datetime
    event_type: str
    actor: str | None = None
    detail: str = ""


class ReviewRecord(BaseModel):
    activation_key: str
    reviewer_id: str
    outcome: ReviewOutcome
    note: str | None = None
    reviewed_at: datetime


class ConditionParseIn(BaseModel):
    condition: str


class ConditionParseOut(BaseModel):
    source: str
    normalized: str
    signature: str
    predicate: dict[str, Any]


class GameProcessIn(BaseModel):
    fact: FactRecord
    deals: list[Deal] = Field(default_factory=list)


class DealOutcomeOut(BaseModel):
    deal_id: str
    outcome: DealOutcome
    decision_reason: str
    activation_key: str | None = None
    activation: Activation | None = None


class GameProcessOut(BaseModel):
    game_id: str
    outcomes: list[DealOutcomeOut]
    triggered: int
    notified: int


class ReverseIn(BaseModel):
    reason: str

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("reason cannot be empty")
        return v


class ForceTriggerIn(BaseModel):
    deal_id: str
    game_id: str
    ttl_seconds: int | None = Field(default=None, ge=0, le=MAX_ACTIVATION_TTL_SECONDS)
    reason: str | None = None


class ReviewIn(BaseModel):
    outcome: ReviewOutcome
    note: str | None = None


class SweepOut(BaseModel):
    expired: int
    swept_at: datetime
