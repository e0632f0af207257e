"""Speak for Me application entry point: Slack Bolt + FastAPI.

Architecture:
- FastAPI for health, metrics and the Slack events endpoint
- Slack Bolt for Slack events via HTTP or Socket Mode
- Async SQLAlchemy for persistence
- In-process generation queue and APScheduler hygiene jobs
"""

from __future__ import annotations

import os
import ssl
from contextlib import asynccontextmanager
from typing import Any

import certifi
import structlog
from fastapi import FastAPI, Request
from slack_bolt.adapter.fastapi.async_handler import AsyncSlackRequestHandler
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp
from slack_sdk.web.async_client import AsyncWebClient

from speakforme import __version__
from speakforme.actionables.store import ActionableStore
from speakforme.config import settings
from speakforme.core.background import get_background_tasks
from speakforme.db.session import close_db
from speakforme.escalation.monitor import EscalationMonitor, SlackAdminNotifier
from speakforme.generation.client import HttpSuggestionGenerator
from speakforme.jobs.scheduler import HygieneScheduler
from speakforme.observability.logging import configure_logging
from speakforme.observability.stats import get_pipeline_stats
from speakforme.pipeline.orchestrator import SuggestionPipeline
from speakforme.pipeline.queue import GenerationQueue
from speakforme.slack.delivery import SlackSuggestionDeliverer
from speakforme.slack.handlers import register_handlers
from speakforme.surveys.eligibility import SurveyService
from speakforme.triggers.classifier import TriggerClassifier

os.environ.setdefault("SSL_CERT_FILE", certifi.where())
_ssl_ctx = ssl.create_default_context(cafile=certifi.where())

configure_logging()
logger = structlog.get_logger()


# ═══════════════════════════════════════════════════════════════════════════════
# SLACK BOLT APP + PIPELINE
# ═══════════════════════════════════════════════════════════════════════════════

slack_client = AsyncWebClient(token=settings.slack_bot_token, ssl=_ssl_ctx)

bolt = AsyncApp(
    token=settings.slack_bot_token,
    signing_secret=settings.slack_signing_secret,
    process_before_response=True,
    client=slack_client,
)

generator = HttpSuggestionGenerator()
queue = GenerationQueue()
scheduler = HygieneScheduler()

pipeline = SuggestionPipeline(
    generator,
    SlackSuggestionDeliverer(slack_client),
    classifier=TriggerClassifier(slack_client=slack_client),
    queue=queue,
    # Sentiment analysis and actionable detection are external services;
    # escalation and actionable scans stay off until one is wired in.
    escalation=EscalationMonitor(notifier=SlackAdminNotifier(slack_client)),
    actionables=ActionableStore(),
)

register_handlers(bolt, pipeline, surveys=SurveyService())


# ═══════════════════════════════════════════════════════════════════════════════
# FASTAPI APP
# ═══════════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("app_starting", env=settings.env, version=__version__)
    await queue.start()
    scheduler.start()

    yield

    logger.info("app_shutting_down")
    scheduler.stop()
    await queue.stop()
    await get_background_tasks().drain(timeout=10.0)
    await generator.close()
    await close_db()


api = FastAPI(
    title="Speak for Me",
    version=__version__,
    description="Ephemeral reply suggestions for Slack",
    lifespan=lifespan,
)

handler = AsyncSlackRequestHandler(bolt)


@api.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "service": "speakforme"}


@api.get("/metrics")
async def metrics_endpoint() -> dict[str, Any]:
    """Live pipeline statistics: outcome counters, latency histograms, queue depth."""
    snap = await get_pipeline_stats().snapshot()
    snap["queue"] = queue.metrics
    snap["background_tasks"] = {
        "pending": get_background_tasks().pending,
        "failed": get_background_tasks().failed,
    }
    return snap


@api.post("/slack/events")
async def slack_events(req: Request) -> Any:
    """Slack events endpoint for HTTP mode."""
    return await handler.handle(req)


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def main() -> None:
    """Run with Socket Mode (development)."""
    import asyncio

    async def _run() -> None:
        await queue.start()
        scheduler.start()
        socket_handler = AsyncSocketModeHandler(bolt, settings.slack_app_token)
        try:
            await socket_handler.start_async()
        finally:
            scheduler.stop()
            await queue.stop()
            await get_background_tasks().drain(timeout=10.0)
            await generator.close()
            await close_db()

    logger.info("starting_speakforme", mode="socket_mode", pid=os.getpid())
    asyncio.run(_run())


if __name__ == "__main__":
    main()
