from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .authz import Permission, Principal, parse_permissions, parse_role, require_permission
from .errors import (
    ActivationNotFoundError,
    InvalidTransitionError,
    ParseError,
    PermissionDeniedError,
    StorageUnavailableError,
)
from .models import (
    Activation,
    ActivationAuditEvent,
    ActivationResult,
    ConditionParseIn,
    ConditionParseOut,
    ForceTriggerIn,
    GameProcessIn,
    GameProcessOut,
    ReverseIn,
    ReviewIn,
    ReviewRecord,
    SweepOut,
)
from .processor import GameProcessor
from .store import ActivationStore, utcnow

router = APIRouter(prefix="/v1", tags=["dealtrigger"])
_LOGGER = logging.getLogger("dealtrigger.api")


def get_store(request: Request) -> ActivationStore:
    return request.app.state.store


def get_processor(request: Request) -> GameProcessor:
    return request.app.state.processor


def get_principal(
    x_principal_id: str | None = Header(default=None),
    x_principal_role: str | None = Header(default=None),
    x_principal_permissions: str | None = Header(default=None),
) -> Principal:
    principal_id = (x_principal_id or "").strip()
    if not principal_id or not (x_principal_role or "").strip():
        raise HTTPException(status_code=401, detail="principal headers required")
    try:
        role = parse_role(x_principal_role or "")
        explicit = parse_permissions(
            item for item in (x_principal_permissions or "").split(",") if item.strip()
        )
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return Principal(principal_id=principal_id, role=role, explicit_permissions=explicit)


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/conditions/parse", response_model=ConditionParseOut)
def parse_condition(
    payload: ConditionParseIn,
    principal: Principal = Depends(get_principal),
    processor: GameProcessor = Depends(get_processor),
) -> ConditionParseOut:
    require_permission(principal, Permission.PROMOTIONS_WRITE)
    condition = processor.parser.compile(payload.condition)
    return ConditionParseOut(
        source=condition.source,
        normalized=condition.normalized,
        signature=condition.signature,
        predicate=condition.predicate.to_dict(),
    )


@router.post("/games/process", response_model=GameProcessOut)
def process_game(
    payload: GameProcessIn,
    principal: Principal = Depends(get_principal),
    processor: GameProcessor = Depends(get_processor),
) -> GameProcessOut:
    require_permission(principal, Permission.VALIDATION_EXECUTE)
    return processor.process_game(payload.fact, payload.deals)


@router.get("/activations", response_model=list[Activation])
def list_active_activations(
    principal: Principal = Depends(get_principal),
    store: ActivationStore = Depends(get_store),
) -> list[Activation]:
    require_permission(principal, Permission.PROMOTIONS_READ)
    return store.list_active()


@router.post("/activations/force-trigger", response_model=ActivationResult)
def force_trigger(
    payload: ForceTriggerIn,
    principal: Principal = Depends(get_principal),
    processor: GameProcessor = Depends(get_processor),
) -> ActivationResult:
    return processor.force_trigger(
        principal,
        payload.deal_id,
        payload.game_id,
        payload.ttl_seconds,
        reason=payload.reason,
    )


@router.post("/activations/sweep", response_model=SweepOut)
def sweep_expired(
    principal: Principal = Depends(get_principal),
    store: ActivationStore = Depends(get_store),
) -> SweepOut:
    require_permission(principal, Permission.SYSTEM_MANAGE)
    now = utcnow().replace(microsecond=0)
    return SweepOut(expired=store.sweep_expired(now=now), swept_at=now)


@router.get("/activations/{activation_key}", response_model=Activation)
def get_activation(
    activation_key: str,
    principal: Principal = Depends(get_principal),
    store: ActivationStore = Depends(get_store),
) -> Activation:
    return store.read_activation(principal, activation_key)


@router.get("/activations/{activation_key}/events", response_model=list[ActivationAuditEvent])
def activation_events(
    activation_key: str,
    principal: Principal = Depends(get_principal),
    store: ActivationStore = Depends(get_store),
) -> list[ActivationAuditEvent]:
    return store.read_events(principal, activation_key)


@router.post("/activations/{activation_key}/reverse", response_model=Activation)
def reverse_activation(
    activation_key: str,
    payload: ReverseIn,
    principal: Principal = Depends(get_principal),
    store: ActivationStore = Depends(get_store),
) -> Activation:
    return store.reverse(principal, activation_key, payload.reason)


@router.post("/activations/{activation_key}/reviews", response_model=ReviewRecord)
def review_activation(
    activation_key: str,
    payload: ReviewIn,
    principal: Principal = Depends(get_principal),
    store: ActivationStore = Depends(get_store),
) -> ReviewRecord:
    return store.record_review(principal, activation_key, payload.outcome, payload.note)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PermissionDeniedError)
    def _permission_denied(request: Request, exc: PermissionDeniedError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": str(exc), "permission": exc.permission})

    @app.exception_handler(ActivationNotFoundError)
    def _not_found(request: Request, exc: ActivationNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    def _invalid_transition(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "from_status": exc.from_status, "to_status": exc.to_status},
        )

    @app.exception_handler(ParseError)
    def _parse_error(request: Request, exc: ParseError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc), "token": exc.token})

    @app.exception_handler(StorageUnavailableError)
    def _storage_unavailable(request: Request, exc: StorageUnavailableError) -> JSONResponse:
        _LOGGER.error("storage unavailable path=%s error=%s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "activation store unavailable"})
