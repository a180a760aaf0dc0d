"""Jarvis webhook gateway - FastAPI server for Telegram updates and reminders."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
ROOT_DIR = Path(__file__).resolve().parents[1]
load_dotenv(dotenv_path=ROOT_DIR / ".env")

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from jarvis_orchestrator.config import Config
from jarvis_orchestrator.notifications import TelegramPublisher
from jarvis_orchestrator.reminders import DueQueue, InMemoryReminderStore, ReminderScheduler, ReminderStore
from jarvis_orchestrator.state_paths import (
    CHAT_MEMORY_DB,
    NOTES_DB,
    PENDING_ACTIONS_DB,
    REMINDERS_DB,
    resolve_db_path,
)
from storage.chat_memory import ChatMemoryStore
from storage.notes_store import NoteStore

from .conversation import ConversationController
from .dispatcher import UpdateDispatcher
from .idempotency import DeliveryDeduplicator
from .llm_client import GenerationClient
from .models import CronResult, DebugState, DebugWebhook, HealthResponse, TelegramUpdate, WebhookAck
from .pending_actions import InMemoryPendingActionStore, PendingActionStore, PendingStateStore
from .rate_limiter import UserRateLimiter
from .telegram_client import TelegramAPIError, TelegramClient

logger = logging.getLogger(__name__)

# Paths that must always answer 200 so Telegram and cron never retry.
ALWAYS_OK_PATHS = ("/telegram", "/cron/reminders")

# Global instances, created lazily
_config: Config | None = None
_telegram_client: TelegramClient | None = None
_generation_client: GenerationClient | None = None
_publisher: TelegramPublisher | None = None
_pending_store: PendingStateStore | None = None
_reminder_store: DueQueue | None = None
_note_store: NoteStore | None = None
_memory_store: ChatMemoryStore | None = None
_deduplicator: DeliveryDeduplicator | None = None
_dispatcher: UpdateDispatcher | None = None
_scheduler: ReminderScheduler | None = None


def get_config() -> Config:
    """Get or load the gateway configuration. Raises ConfigError if incomplete."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def get_telegram_client() -> TelegramClient:
    global _telegram_client
    if _telegram_client is None:
        _telegram_client = TelegramClient(get_config().bot_token)
    return _telegram_client


def get_generation_client() -> GenerationClient:
    global _generation_client
    if _generation_client is None:
        config = get_config()
        _generation_client = GenerationClient(
            base_url=config.llm_api_url,
            model=config.llm_model,
            api_key=config.llm_api_key,
            timeout=config.llm_timeout,
        )
    return _generation_client


def _db_path(filename: str) -> Path:
    config = get_config()
    if not config.durable:
        return Path(":memory:")
    return resolve_db_path(filename, config.state_dir)


def get_pending_store() -> PendingStateStore:
    global _pending_store
    if _pending_store is None:
        config = get_config()
        if config.durable:
            _pending_store = PendingActionStore(
                _db_path(PENDING_ACTIONS_DB), ttl_seconds=config.pending_ttl_seconds
            )
        else:
            _pending_store = InMemoryPendingActionStore(ttl_seconds=config.pending_ttl_seconds)
    return _pending_store


def get_reminder_store() -> DueQueue:
    global _reminder_store
    if _reminder_store is None:
        if get_config().durable:
            _reminder_store = ReminderStore(_db_path(REMINDERS_DB))
        else:
            _reminder_store = InMemoryReminderStore()
    return _reminder_store


def get_note_store() -> NoteStore:
    global _note_store
    if _note_store is None:
        _note_store = NoteStore(_db_path(NOTES_DB))
    return _note_store


def get_memory_store() -> ChatMemoryStore:
    """Get or initialize the chat memory store."""
    global _memory_store
    if _memory_store is None:
        _memory_store = ChatMemoryStore(_db_path(CHAT_MEMORY_DB), max_turns=get_config().history_turns)
    return _memory_store


def get_deduplicator() -> DeliveryDeduplicator:
    global _deduplicator
    if _deduplicator is None:
        _deduplicator = DeliveryDeduplicator(capacity=get_config().dedup_capacity)
    return _deduplicator


def get_dispatcher() -> UpdateDispatcher:
    """Get or create the update dispatcher with all of its collaborators."""
    global _dispatcher
    if _dispatcher is None:
        config = get_config()
        telegram = get_telegram_client()
        controller = ConversationController(
            pending_store=get_pending_store(),
            note_store=get_note_store(),
            reminder_store=get_reminder_store(),
            generation_client=get_generation_client(),
            chat_memory=get_memory_store(),
            generation_attempts=config.llm_max_attempts,
            typing_fn=telegram.send_chat_action,
        )
        _dispatcher = UpdateDispatcher(
            controller=controller,
            telegram=telegram,
            deduplicator=get_deduplicator(),
            rate_limiter=UserRateLimiter(config.rate_limit_ms),
        )
    return _dispatcher


def get_scheduler() -> ReminderScheduler:
    """Get or create the reminder scheduler (not started)."""
    global _scheduler, _publisher
    if _scheduler is None:
        config = get_config()
        _publisher = TelegramPublisher(config.bot_token)
        _scheduler = ReminderScheduler(
            store=get_reminder_store(),
            publish_fn=_publisher.publish,
            interval_seconds=config.reminder_poll_interval,
            batch_size=config.reminder_batch_size,
            housekeeping_fn=get_pending_store().cleanup_expired,
        )
    return _scheduler


async def shutdown_components() -> None:
    """Stop the scheduler and release every client and store."""
    global _config, _telegram_client, _generation_client, _publisher
    global _pending_store, _reminder_store, _note_store, _memory_store
    global _deduplicator, _dispatcher, _scheduler

    if _scheduler is not None:
        _scheduler.stop()
        if _scheduler.is_alive():
            _scheduler.join(timeout=5)
    if _telegram_client is not None:
        await _telegram_client.close()
    if _generation_client is not None:
        await _generation_client.close()
    if _publisher is not None:
        _publisher.close()
    for store in (_pending_store, _reminder_store, _note_store, _memory_store):
        if store is not None:
            store.close()

    _config = _telegram_client = _generation_client = _publisher = None
    _pending_store = _reminder_store = _note_store = _memory_store = None
    _deduplicator = _dispatcher = _scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Jarvis webhook gateway starting up...")
    config = get_config()
    logger.info(f"Gateway config: host={config.host}, port={config.port}")
    logger.info(f"LLM backend: {config.llm_api_url}, model={config.llm_model}")
    if config.durable:
        logger.info(f"Storage: sqlite under {config.state_dir}")
    else:
        logger.warning(
            "Storage: memory. Pending drafts and reminders are NOT durable "
            "and will be lost on restart"
        )

    get_dispatcher()
    get_scheduler().start()

    webhook_url = config.webhook_url()
    if webhook_url:
        try:
            await get_telegram_client().set_webhook(webhook_url)
        except TelegramAPIError as e:
            logger.error(f"Failed to set webhook {webhook_url}: {e}")
    else:
        logger.info("PUBLIC_URL not set, leaving the Telegram webhook unchanged")

    yield

    await shutdown_components()
    logger.info("Jarvis webhook gateway shut down.")


app = FastAPI(
    title="Jarvis Webhook Gateway",
    description="Telegram webhook assistant with notes and reminders",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}: {exc}")
    if request.url.path in ALWAYS_OK_PATHS:
        return JSONResponse(status_code=200, content={"ok": True})
    return JSONResponse(status_code=500, content={"ok": False, "error": "internal_error"})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.detail})


def _require_debug_key(key: Optional[str]) -> None:
    expected = get_config().debug_key
    if expected and key != expected:
        raise HTTPException(status_code=403, detail="forbidden")


# Endpoints
@app.post("/telegram", response_model=WebhookAck)
async def telegram_webhook(request: Request, background_tasks: BackgroundTasks):
    """Acknowledge immediately; the update is processed after the response."""
    try:
        payload = await request.json()
        update = TelegramUpdate.model_validate(payload)
    except (ValueError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable webhook payload: {e}")
        return WebhookAck()

    try:
        dispatcher = get_dispatcher()
    except Exception as e:
        logger.exception(f"Gateway not ready, dropping update {update.update_id}: {e}")
        return WebhookAck()

    background_tasks.add_task(dispatcher.handle_update, update)
    return WebhookAck()


@app.api_route("/cron/reminders", methods=["GET", "POST"], response_model=CronResult)
def cron_reminders():
    """Run one scheduler poll synchronously (for externally triggered deployments)."""
    try:
        scheduler = get_scheduler()
        sent = scheduler.run_once()
        scheduler.run_housekeeping()
    except Exception as e:
        logger.exception(f"Reminder cron poll failed: {e}")
        return CronResult(ok=True, sent=0, error=str(e))
    return CronResult(ok=True, sent=sent)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    config = get_config()
    return HealthResponse(status="ok", storage=config.storage_backend, durable=config.durable)


@app.get("/debug/state", response_model=DebugState)
async def debug_state(key: Optional[str] = None):
    _require_debug_key(key)
    config = get_config()
    return DebugState(
        storage=config.storage_backend,
        durable=config.durable,
        pending_reminders=get_reminder_store().count(),
        dedup_window=len(get_deduplicator()),
        scheduler_running=_scheduler is not None and _scheduler.is_alive(),
    )


@app.get("/debug/webhook", response_model=DebugWebhook)
async def debug_webhook(key: Optional[str] = None):
    _require_debug_key(key)
    try:
        info = await get_telegram_client().get_webhook_info()
    except TelegramAPIError as e:
        return DebugWebhook(ok=False, error=str(e))
    return DebugWebhook(ok=True, result=info)


if __name__ == "__main__":
    import uvicorn

    from agent_logging import setup_root_logging

    config = get_config()
    setup_root_logging(config.log_level)
    uvicorn.run(
        "jarvis_gateway.server:app",
        host=config.host,
        port=config.port,
        reload=False,
    )
