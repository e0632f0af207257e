"""Generation service client tests (httpx.MockTransport)."""

from __future__ import annotations

import json
import uuid

import httpx
import pytest

from speakforme.core.errors import GenerationError
from speakforme.core.types import SuggestionRequest, TriggerType
from speakforme.generation.client import HttpSuggestionGenerator

REQUEST = SuggestionRequest(
    workspace_id=uuid.uuid4(),
    user_id="UA",
    channel_id="C1",
    message_ts="1700000000.000100",
    trigger_type=TriggerType.DM,
    trigger_message_text="Can you send the contract?",
)


def _generator(handler) -> HttpSuggestionGenerator:
    return HttpSuggestionGenerator(
        base_url="http://generation.test", api_key="k", transport=httpx.MockTransport(handler)
    )


class TestGenerate:
    async def test_payload_and_result(self):
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json={"suggestionText": " Sure thing. ", "processingTimeMs": 640, "tokensUsed": 210}
            )

        generator = _generator(handler)
        result = await generator.generate(REQUEST, ["kb snippet"], avoid_topics=["refund"])
        await generator.close()

        assert seen["path"] == "/v1/suggestions"
        assert seen["auth"] == "Bearer k"
        assert seen["body"]["triggeredBy"] == "dm"
        assert seen["body"]["enrichment"] == ["kb snippet"]
        assert seen["body"]["avoidTopics"] == ["refund"]
        assert result.suggestion_text == "Sure thing."
        assert result.processing_time_ms == 640
        assert result.tokens_used == 210

    async def test_no_avoid_topics_key_when_empty(self):
        bodies: list = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"suggestionText": "ok"})

        generator = _generator(handler)
        await generator.generate(REQUEST, [])
        await generator.close()
        assert "avoidTopics" not in bodies[0]

    async def test_http_error(self):
        generator = _generator(lambda request: httpx.Response(503, text="overloaded"))
        with pytest.raises(GenerationError, match="503"):
            await generator.generate(REQUEST, [])
        await generator.close()

    async def test_empty_text(self):
        generator = _generator(lambda request: httpx.Response(200, json={"suggestionText": "  "}))
        with pytest.raises(GenerationError):
            await generator.generate(REQUEST, [])
        await generator.close()

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        generator = _generator(handler)
        with pytest.raises(GenerationError):
            await generator.generate(REQUEST, [])
        await generator.close()
