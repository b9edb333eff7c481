"""
Agora — wiring entrypoint.

Builds the configured ledger store and the item lifecycle controller:
1. Configures structured logging
2. Connects the reference ledger or the remote gateway
3. Hands both to the controller the presentation layer talks to

The presentation layer itself lives outside this package.
"""

from __future__ import annotations

import logging

import structlog

from agora.config import AgoraSettings, settings
from agora.governance.controller import ItemLifecycleController
from agora.ledger.rejections import get_catalog
from agora.ledger.store import ParticipationStore
from agora.participation.schema import ItemKind

logger = logging.getLogger(__name__)


def configure_logging(config: AgoraSettings = settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(level=logging.getLevelName(config.log_level))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_store(config: AgoraSettings = settings) -> ParticipationStore:
    """Instantiate the ledger backend named by ``config.ledger_backend``."""
    log = structlog.get_logger()

    if config.ledger_backend == "sql":
        from agora.ledger.service import LedgerParticipationStore

        store = LedgerParticipationStore(config.database_url)
        store.initialize()
    elif config.ledger_backend == "gateway":
        from agora.integrations.gateway_client import GatewayParticipationStore

        store = GatewayParticipationStore(
            base_url=config.gateway_url,
            timeout=config.gateway_timeout_seconds,
            receipt_poll_interval=config.gateway_receipt_poll_seconds,
            capabilities=config.gateway_capabilities,
        )
    else:
        raise ValueError(f"Unknown ledger backend {config.ledger_backend!r}")

    log.info(
        "agora.orchestrator.store_ready",
        backend=config.ledger_backend,
        capabilities=sorted(c.value for c in store.capabilities),
    )
    return store


def build_controller(
    config: AgoraSettings = settings,
    store: ParticipationStore | None = None,
) -> ItemLifecycleController:
    """Wire a controller to ``store``, or to the configured backend."""
    log = structlog.get_logger()
    if store is None:
        store = build_store(config)

    controller = ItemLifecycleController(
        store,
        catalog=get_catalog(config.rejection_catalog_version),
        confirmation_timeout=config.confirmation_timeout_seconds,
        explorer_tx_url=config.explorer_tx_url,
        default_durations={
            ItemKind.PETITION: config.default_petition_duration_seconds,
            ItemKind.POLL: config.default_poll_duration_seconds,
        },
    )
    log.info(
        "agora.orchestrator.controller_ready",
        catalog=controller.catalog.version,
        confirmation_timeout=controller.confirmation_timeout,
    )
    return controller
