"""Configuration management for the Jarvis webhook assistant"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import ConfigError
from .state_paths import resolve_state_dir

STORAGE_BACKENDS = ("sqlite", "memory")


@dataclass
class Config:
    """Configuration for the gateway and the reminder scheduler"""

    # Telegram settings
    bot_token: str
    public_url: str
    debug_key: str

    # Generation service settings
    llm_api_url: str
    llm_api_key: str
    llm_model: str
    llm_timeout: float
    llm_max_attempts: int

    # State and storage
    state_dir: Path
    storage_backend: str
    pending_ttl_seconds: int

    # Reminder scheduler
    reminder_poll_interval: float
    reminder_batch_size: int

    # Inbound guards
    dedup_capacity: int
    rate_limit_ms: int

    # Chat
    history_turns: int

    # Server
    host: str
    port: int
    log_level: str

    @property
    def durable(self) -> bool:
        return self.storage_backend == "sqlite"

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables"""

        def require(name: str) -> str:
            value = os.getenv(name, "").strip()
            if not value:
                raise ConfigError(f"{name} environment variable is required")
            return value

        def parse_int(name: str, default: int) -> int:
            raw = os.getenv(name)
            if raw is None or not raw.strip():
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigError(f"{name} must be an integer, got {raw!r}")

        def parse_float(name: str, default: float) -> float:
            raw = os.getenv(name)
            if raw is None or not raw.strip():
                return default
            try:
                return float(raw)
            except ValueError:
                raise ConfigError(f"{name} must be a number, got {raw!r}")

        # Telegram settings
        bot_token = require("BOT_TOKEN")
        public_url = os.getenv("PUBLIC_URL", "").strip().rstrip("/")
        debug_key = os.getenv("DEBUG_KEY", "").strip()

        # Generation service settings
        llm_api_key = require("LLM_API_KEY")
        llm_api_url = os.getenv("LLM_API_URL", "https://api.openai.com").strip().rstrip("/")
        llm_model = os.getenv("LLM_MODEL", "gpt-4.1-mini")
        llm_timeout = parse_float("LLM_TIMEOUT", 10.0)
        llm_max_attempts = parse_int("LLM_MAX_ATTEMPTS", 2)

        # State and storage
        state_dir = resolve_state_dir()
        storage_backend = os.getenv("STORAGE_BACKEND", "sqlite").strip().lower()
        pending_ttl_seconds = parse_int("PENDING_TTL_SECONDS", 30 * 60)

        reminder_poll_interval = parse_float("REMINDER_POLL_INTERVAL", 1.0)
        reminder_batch_size = parse_int("REMINDER_BATCH_SIZE", 50)

        dedup_capacity = parse_int("DEDUP_CAPACITY", 700)
        rate_limit_ms = parse_int("RATE_LIMIT_MS", 0)
        history_turns = parse_int("HISTORY_TURNS", 8)

        host = os.getenv("JARVIS_HOST", "0.0.0.0")
        port = parse_int("JARVIS_PORT", parse_int("PORT", 3000))
        log_level = os.getenv("LOG_LEVEL", "INFO")

        config = cls(
            bot_token=bot_token,
            public_url=public_url,
            debug_key=debug_key,
            llm_api_url=llm_api_url,
            llm_api_key=llm_api_key,
            llm_model=llm_model,
            llm_timeout=llm_timeout,
            llm_max_attempts=llm_max_attempts,
            state_dir=state_dir,
            storage_backend=storage_backend,
            pending_ttl_seconds=pending_ttl_seconds,
            reminder_poll_interval=reminder_poll_interval,
            reminder_batch_size=reminder_batch_size,
            dedup_capacity=dedup_capacity,
            rate_limit_ms=rate_limit_ms,
            history_turns=history_turns,
            host=host,
            port=port,
            log_level=log_level,
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration"""
        if not self.llm_api_url.startswith("http"):
            raise ConfigError(f"Invalid LLM_API_URL: {self.llm_api_url}")

        if self.public_url and not self.public_url.startswith("https://"):
            raise ConfigError(f"PUBLIC_URL must be an https URL: {self.public_url}")

        if self.storage_backend not in STORAGE_BACKENDS:
            raise ConfigError(
                f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}, "
                f"got {self.storage_backend!r}"
            )

        if self.llm_timeout <= 0:
            raise ConfigError("LLM_TIMEOUT must be positive")
        if self.llm_max_attempts < 1:
            raise ConfigError("LLM_MAX_ATTEMPTS must be at least 1")
        if self.pending_ttl_seconds <= 0:
            raise ConfigError("PENDING_TTL_SECONDS must be positive")
        if self.reminder_poll_interval <= 0:
            raise ConfigError("REMINDER_POLL_INTERVAL must be positive")
        if self.reminder_batch_size < 0:
            raise ConfigError("REMINDER_BATCH_SIZE must be >= 0 (0 means uncapped)")
        if self.dedup_capacity < 1:
            raise ConfigError("DEDUP_CAPACITY must be at least 1")

    def webhook_url(self) -> Optional[str]:
        if not self.public_url:
            return None
        return f"{self.public_url}/telegram"
