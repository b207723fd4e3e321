"""
Agent Configuration — process-wide settings for the trading agent.

The settings manage:
  - Gateway access (base URL, auth token, timeouts)
  - Local persistence (data directory for memory + trade history)
  - Notification sink credentials (Telegram)
  - Strategy profile selection (exit rules are loaded from profiles.yaml)

Decision, signal and exit thresholds are NOT environment settings — they live
in ``workflows.updown.params`` as typed parameter sets.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """Agent-wide settings, read from ``RPOLY_*`` env vars and ``.env`` files."""

    model_config = SettingsConfigDict(
        env_prefix="RPOLY_",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Runtime ──────────────────────────────────────────────────────
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    json_logs: bool = False
    poll_interval_sec: float = 3.0
    max_consecutive_errors: int = 10
    error_pause_sec: float = 30.0

    # ── Gateway ──────────────────────────────────────────────────────
    api_base: str = "http://localhost:3001"
    auth_token: str = ""
    request_timeout_sec: float = 10.0

    # ── Persistence ──────────────────────────────────────────────────
    data_dir: str = "data"
    state_namespace: str = "updown"

    # ── Notifications ────────────────────────────────────────────────
    tg_bot_token: str = ""
    tg_chat_id: str = ""

    # ── Strategy ─────────────────────────────────────────────────────
    strategy_profile: str = ""
    profiles_path: str = ""
    edge_report_every: int = 25
    status_report_sec: float = 300.0

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.tg_bot_token and self.tg_chat_id)


@lru_cache
def get_settings() -> AgentSettings:
    """Singleton accessor — parsed once, cached forever."""
    return AgentSettings()
