"""Environment validation helpers for Jarvis bootstrap scripts."""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import dotenv_values


REQUIRED_ENV_KEYS = ("BOT_TOKEN", "LLM_API_KEY")
OPTIONAL_ENV_KEYS = ("LLM_API_URL", "PUBLIC_URL", "STORAGE_BACKEND")
PLACEHOLDER_VALUES = {
    "your_bot_token_here",
    "your_api_key_here",
    "YOUR_API_KEY_HERE",
    "YOUR_KEY_HERE",
}


@dataclass
class EnvValidationResult:
    """Structured result for environment validation."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def load_env_file(path: Path) -> dict[str, str]:
    """Load a .env file into a dict without mutating os.environ."""
    return {
        key: value
        for key, value in dotenv_values(path).items()
        if value is not None
    }


def validate_env_values(env: Mapping[str, str]) -> EnvValidationResult:
    """Validate required env vars and basic URL/backend constraints."""
    result = EnvValidationResult()

    for key in REQUIRED_ENV_KEYS:
        value = env.get(key, "").strip()
        if not value or value in PLACEHOLDER_VALUES:
            result.errors.append(
                f"{key} is required. Set it in .env (see .env.example)."
            )

    llm_url = env.get("LLM_API_URL", "").strip()
    if llm_url:
        if not llm_url.startswith("http"):
            result.errors.append("LLM_API_URL must start with http or https.")
    else:
        result.warnings.append(
            "LLM_API_URL not set; defaulting to https://api.openai.com."
        )

    public_url = env.get("PUBLIC_URL", "").strip()
    if public_url:
        if not public_url.startswith("https://"):
            result.errors.append("PUBLIC_URL must be an https URL (Telegram requirement).")
    else:
        result.warnings.append(
            "PUBLIC_URL not set; the webhook will not be registered at startup."
        )

    backend = env.get("STORAGE_BACKEND", "sqlite").strip().lower()
    if backend == "memory":
        result.warnings.append(
            "STORAGE_BACKEND=memory is NOT durable: pending drafts and reminders "
            "are lost on restart."
        )
    elif backend != "sqlite":
        result.errors.append("STORAGE_BACKEND must be 'sqlite' or 'memory'.")

    return result


def validate_env_file(path: Path) -> EnvValidationResult:
    """Load and validate a .env file."""
    env = load_env_file(path)
    return validate_env_values(env)


def _print_messages(result: EnvValidationResult) -> None:
    for error in result.errors:
        print(f"ERROR: {error}", file=sys.stderr)
    for warning in result.warnings:
        print(f"WARN: {warning}", file=sys.stderr)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Validate Jarvis .env configuration.")
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to .env file (default: .env)",
    )
    args = parser.parse_args(argv)

    env_path = Path(args.env_file).expanduser()
    if not env_path.exists():
        print(
            f"ERROR: .env file not found at {env_path}. "
            "Run: cp .env.example .env",
            file=sys.stderr,
        )
        return 1

    result = validate_env_file(env_path)
    _print_messages(result)

    if result.errors:
        return 1

    print("Environment validation OK.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
