"""HTTP client for the suggestion generation service.

The model call itself lives behind ``settings.generation_service_url``.
This client posts the generation job payload and maps the response into
a GenerationResult. Retries belong to the pipeline, not to this client:
every failure surfaces as GenerationError.
"""

from __future__ import annotations

import time
from typing import Any

import certifi
import httpx
import structlog

from speakforme.config import settings
from speakforme.core.errors import GenerationError
from speakforme.core.types import GenerationResult, SuggestionRequest

logger = structlog.get_logger()


class HttpSuggestionGenerator:
    """Posts generation jobs to the generation service."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        key = api_key if api_key is not None else settings.generation_api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"

        self._client = httpx.AsyncClient(
            base_url=base_url or settings.generation_service_url,
            headers=headers,
            verify=certifi.where(),
            timeout=httpx.Timeout(
                connect=5.0,
                read=settings.generation_timeout_s,
                write=5.0,
                pool=15.0,
            ),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def generate(
        self,
        request: SuggestionRequest,
        enrichment: list[str],
        avoid_topics: list[str] | None = None,
    ) -> GenerationResult:
        payload: dict[str, Any] = request.to_job()
        payload["enrichment"] = list(enrichment)
        if avoid_topics:
            payload["avoidTopics"] = list(avoid_topics)

        t0 = time.monotonic()
        try:
            response = await self._client.post("/v1/suggestions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "generation_request_failed",
                status_code=e.response.status_code,
                response=e.response.text[:500],
            )
            raise GenerationError(f"Generation failed: {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise GenerationError(f"Generation error: {e}") from e

        text = (data.get("suggestionText") or "").strip()
        if not text:
            raise GenerationError("Generation service returned an empty suggestion")

        elapsed = round((time.monotonic() - t0) * 1000)
        result = GenerationResult(
            suggestion_text=text,
            processing_time_ms=int(data.get("processingTimeMs") or elapsed),
            tokens_used=data.get("tokensUsed"),
        )
        logger.info(
            "generation_success",
            llm_ms=elapsed,
            content_length=len(text),
            tokens_used=result.tokens_used,
        )
        return result
