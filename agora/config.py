"""Agora — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class AgoraSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Ledger backend ─────────────────────────────────────────
    ledger_backend: str = "sql"  # "sql" | "gateway"

    # ── Reference ledger (SQLAlchemy) ──────────────────────────
    database_url: str = "sqlite:///agora_ledger.db"

    # ── Remote ledger gateway ──────────────────────────────────
    gateway_url: str = "http://localhost:8545"
    gateway_timeout_seconds: float = 30.0
    gateway_receipt_poll_seconds: float = 2.0
    gateway_capabilities: list[str] = ["visibility", "explicit_close"]

    # ── Participation ──────────────────────────────────────────
    confirmation_timeout_seconds: float = 120.0
    rejection_catalog_version: str = "v1"
    default_petition_duration_seconds: int = 7 * 24 * 60 * 60
    default_poll_duration_seconds: int = 60 * 60
    explorer_tx_url: str = "https://testnet.hashscan.io/transaction/"

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = AgoraSettings()
