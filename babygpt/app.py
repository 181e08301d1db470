from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx
from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from .canonical_bank import CanonicalAnswerBank
from .composer import AnswerComposer
from .config import Settings, load_settings
from .delivery import DeliveryManager
from .gemini_client import GeminiClient
from .intent_resolver import IntentResolver
from .judge import ArbitrationJudge
from .link_curator import LinkCurator
from .models import Update
from .reference_data import ReferenceDataClient
from .router import ConversationRouter
from .session_store import SessionStore
from .telegram import WEBHOOK_PATH, TelegramChannel

BASE_DIR = Path(__file__).resolve().parent

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)
else:
    load_dotenv()

logger = logging.getLogger("babygpt.app")


def configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    logging.getLogger("babygpt").setLevel(level)


def build_router(settings: Settings, http_client: httpx.AsyncClient) -> ConversationRouter:
    """Purpose: Construct the conversation core from settings.
    Inputs/Outputs: Inputs are Settings and a shared httpx client; output is a router.
    Side Effects / State: Configures the Gemini SDK and loads the canonical bank.
    Dependencies: Every core component.
    Failure Modes: Missing GEMINI_API_KEY or TELEGRAM_BOT_TOKEN raises ValueError;
        a missing canonical bank file raises FileNotFoundError.
    If Removed: The webhook has no router to hand updates to.
    Testing Notes: Tests build routers directly with fakes instead.
    """
    gemini = GeminiClient(settings)
    bank = CanonicalAnswerBank.from_file(settings.canonical_path)
    sessions = SessionStore(max_sessions=settings.max_sessions)
    resolver = IntentResolver(
        sessions.view(),
        gemini=gemini,
        prompts_dir=settings.prompts_dir,
        classifier_enabled=settings.llm_classifier_enabled,
        model=settings.gemini_model,
    )
    delivery = DeliveryManager(
        http_client,
        base_delay_ms=settings.delivery_base_delay_ms,
        max_delay_ms=settings.delivery_max_delay_ms,
        max_retries=settings.delivery_max_retries,
    )
    reference_data = None
    if settings.reference_data_enabled:
        reference_data = ReferenceDataClient(
            http_client, settings.reference_data_url, timeout=settings.reference_data_timeout
        )
    return ConversationRouter(
        sessions=sessions,
        resolver=resolver,
        bank=bank,
        composer=AnswerComposer(gemini, settings.prompts_dir, model=settings.gemini_model),
        judge=ArbitrationJudge(gemini, settings.prompts_dir, model=settings.gemini_model_judge),
        curator=LinkCurator(bank),
        channel=TelegramChannel(settings.telegram_bot_token, delivery),
        reference_data=reference_data,
    )


def create_app(router: Optional[ConversationRouter] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Purpose: Create the FastAPI application exposing the webhook and health endpoints.
    Inputs/Outputs: Optional prebuilt router and settings; returns a FastAPI app.
    Side Effects / State: On startup (without an injected router) builds the core,
        opens the shared httpx client and registers the webhook when PUBLIC_URL is set.
    Dependencies: build_router, TelegramChannel.set_webhook.
    Failure Modes: Startup errors propagate and stop the server.
    If Removed: The bot cannot receive updates.
    Testing Notes: Inject a fake router and post an update with TestClient.
    """
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if app.state.router is not None:
            yield
            return
        async with httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0)) as http_client:
            app.state.router = build_router(settings, http_client)
            logger.info("BabyGPT router ready model=%s", settings.gemini_model)
            if settings.public_url:
                await app.state.router.channel.set_webhook(settings.public_url)
            else:
                logger.warning("PUBLIC_URL missing; webhook not configured")
            yield

    app = FastAPI(title="BabyGPT Telegram Bot", lifespan=lifespan)
    app.state.router = router

    @app.post(WEBHOOK_PATH)
    async def telegram_webhook(request: Request, background_tasks: BackgroundTasks) -> dict:
        """Acknowledge immediately; the update is processed after the response is sent."""
        try:
            update = Update.model_validate(await request.json())
        except (ValueError, ValidationError) as exc:
            logger.warning("malformed update ignored: %s", exc)
            return {"ok": True}
        if app.state.router is None:
            logger.error("update=%s received before router was ready", update.update_id)
            return {"ok": True}
        background_tasks.add_task(app.state.router.handle_update, update)
        return {"ok": True}

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        return "ok"

    return app


app = create_app()
