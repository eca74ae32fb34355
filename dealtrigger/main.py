from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import register_error_handlers, router as v1_router
from .logging_config import configure_data_quality_logging, configure_logging
from .processor import GameProcessor, build_processor_from_config
from .runtime_paths import ensure_runtime_dirs
from .store import ActivationStore
from .worker import ExpirationSweeper, build_sweeper_from_config


def create_app(
    store: ActivationStore | None = None,
    processor: GameProcessor | None = None,
    sweeper: ExpirationSweeper | None = None,
) -> FastAPI:
    ensure_runtime_dirs()
    log_path = configure_logging()
    configure_data_quality_logging()

    activation_store = store or ActivationStore()
    game_processor = processor or build_processor_from_config(activation_store)
    expiration_sweeper = sweeper or build_sweeper_from_config(activation_store)

    app = FastAPI(
        title="Deal Trigger API",
        version="0.1.0",
        description="Condition evaluation and at-most-once deal activation.",
    )
    app.state.store = activation_store
    app.state.processor = game_processor
    app.state.sweeper = expiration_sweeper

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(v1_router)
    register_error_handlers(app)

    @app.on_event("startup")
    def on_startup() -> None:
        expiration_sweeper.start_if_enabled()
        logging.getLogger("").info(
            "Deal trigger API startup complete; logs=%s db=%s",
            log_path,
            activation_store.db_path,
        )

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        expiration_sweeper.stop()

    return app


app = create_app()
