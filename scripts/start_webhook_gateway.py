#!/usr/bin/env python3
"""
Jarvis Webhook Gateway - Telegram webhook server with notes and reminders.

Usage:
    python scripts/start_webhook_gateway.py

Environment Variables:
    BOT_TOKEN        - Telegram bot token (required)
    LLM_API_KEY      - Generation service API key (required)
    LLM_API_URL      - OpenAI-compatible base URL (default: https://api.openai.com)
    LLM_MODEL        - Model name (default: gpt-4.1-mini)
    PUBLIC_URL       - Public https base URL; the webhook is set to PUBLIC_URL/telegram
    STORAGE_BACKEND  - sqlite (default) or memory (not durable)
    JARVIS_HOST      - Host to bind to (default: 0.0.0.0)
    JARVIS_PORT      - Port to listen on (default: 3000)
    LOG_LEVEL        - Logging level (default: INFO)

Example curl commands:
    curl -s http://127.0.0.1:3000/health | jq
    curl -s -X POST http://127.0.0.1:3000/cron/reminders | jq
"""

import os
import socket
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def check_port_available(host: str, port: int) -> bool:
    """Check if a port is available for binding."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(1)
    try:
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


def main() -> int:
    """Start the Jarvis webhook gateway."""
    import uvicorn

    from agent_logging import setup_logging, setup_root_logging
    from jarvis_orchestrator.errors import ConfigError
    from jarvis_gateway.server import app, get_config

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_file = setup_root_logging(log_level)
    logger = setup_logging("webhook_gateway", log_level=log_level)

    try:
        config = get_config()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        logger.error("Check your .env file, e.g. with: python -m jarvis_orchestrator.env_validation")
        return 1

    if not check_port_available(config.host, config.port):
        logger.error(f"Port {config.port} is already in use")
        logger.error(f"To find what's using the port: lsof -iTCP:{config.port} -sTCP:LISTEN -n -P")
        logger.error("To use a different port: export JARVIS_PORT=3001")
        return 1

    logger.info("=" * 60)
    logger.info("Jarvis Webhook Gateway")
    logger.info("=" * 60)
    logger.info(f"Server:   http://{config.host}:{config.port}")
    logger.info(f"Webhook:  {config.webhook_url() or '(PUBLIC_URL not set)'}")
    logger.info(f"Storage:  {config.storage_backend} (durable={config.durable})")
    logger.info(f"Log file: {log_file}")
    logger.info("=" * 60)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=log_level.lower(),
        access_log=True,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
