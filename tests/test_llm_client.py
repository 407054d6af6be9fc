"""Tests for the Ollama client.

HTTP is mocked with httpx.MockTransport; no server is contacted.
"""

import json
from collections.abc import Callable

import httpx
import pytest

from notetriage.classifier.llm_client import OllamaClient, normalize_model_name
from notetriage.config_schema import OllamaConfig
from notetriage.core.errors import (
    InferenceError,
    InferenceTimeoutError,
    InferenceUnavailableError,
    OutputParseError,
)

BASE_URL = "http://ollama.test:11434"

GOOD_RESPONSE = json.dumps(
    {
        "type": "decision",
        "intent": "architecture",
        "confidence": 0.88,
        "confidenceDetail": {"structural": 0.9, "semantic": 0.85, "reasoning": 0.8},
        "decayProfile": "stable",
        "reasoning": "Adopted SQLite as the storage layer",
    }
)


def _client(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> OllamaClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaClient(base_url=BASE_URL, model="qwen2.5:3b", http_client=http_client, **kwargs)


def _generate_handler(response_text: str, captured: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={"response": response_text, "prompt_eval_count": 321, "eval_count": 54},
        )

    return handler


class TestNormalizeModelName:
    def test_untagged_means_latest(self) -> None:
        assert normalize_model_name("Llama3") == "llama3:latest"

    def test_tagged_unchanged(self) -> None:
        assert normalize_model_name("qwen2.5:3b") == "qwen2.5:3b"


class TestHealth:
    """Tests for check_health and is_available."""

    @pytest.mark.asyncio
    async def test_model_installed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": [{"name": "qwen2.5:3b"}, {"name": "llama3:latest"}]})

        client = _client(handler)
        health = await client.check_health()

        assert health.available is True
        assert health.model_loaded is True
        assert health.installed_models == ["qwen2.5:3b", "llama3:latest"]
        assert await client.is_available() is True

    @pytest.mark.asyncio
    async def test_model_missing(self) -> None:
        client = _client(lambda request: httpx.Response(200, json={"models": [{"name": "llama3"}]}))
        health = await client.check_health()

        assert health.available is True
        assert health.model_loaded is False
        assert "ollama pull qwen2.5:3b" in health.message
        assert await client.is_available() is False

    @pytest.mark.asyncio
    async def test_untagged_installed_model_matches_latest(self) -> None:
        http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"models": [{"name": "llama3:latest"}]})
            )
        )
        client = OllamaClient(base_url=BASE_URL, model="llama3", http_client=http_client)
        assert (await client.check_health()).model_loaded is True

    @pytest.mark.asyncio
    async def test_server_unreachable_never_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        health = await _client(handler).check_health()

        assert health.available is False
        assert "ollama serve" in health.message

    @pytest.mark.asyncio
    async def test_error_status(self) -> None:
        health = await _client(lambda request: httpx.Response(500)).check_health()
        assert health.available is False
        assert "500" in health.message

    @pytest.mark.asyncio
    async def test_malformed_tags_body(self) -> None:
        health = await _client(lambda request: httpx.Response(200, text="not json")).check_health()
        assert health.available is True
        assert health.installed_models == []


class TestClassify:
    """Tests for classify()."""

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        captured: list[dict] = []
        client = _client(_generate_handler(GOOD_RESPONSE, captured), temperature=0.2)

        classification = await client.classify("Storage", "We adopted SQLite.", seed=7)

        assert classification.result.note_type == "decision"
        assert classification.result.confidence == 0.88
        assert classification.result.confidence_detail.semantic == 0.85
        assert classification.model == "qwen2.5:3b"
        assert classification.prompt_tokens == 321
        assert classification.completion_tokens == 54
        assert classification.seed == 7
        assert classification.context_truncated is False

        payload = captured[0]
        assert payload["model"] == "qwen2.5:3b"
        assert payload["stream"] is False
        assert payload["options"]["seed"] == 7
        assert payload["options"]["temperature"] == 0.2
        assert "We adopted SQLite." in payload["prompt"]

    @pytest.mark.asyncio
    async def test_model_override_and_few_shot(self) -> None:
        captured: list[dict] = []
        client = _client(_generate_handler(GOOD_RESPONSE, captured))

        classification = await client.classify(
            "T", "body", few_shot_section="## Reference examples\n", model="llama3"
        )

        assert classification.model == "llama3"
        assert captured[0]["model"] == "llama3"
        assert "## Reference examples" in captured[0]["prompt"]

    @pytest.mark.asyncio
    async def test_truncation_reported(self) -> None:
        client = _client(_generate_handler(GOOD_RESPONSE), context_limit=200)
        classification = await client.classify("T", "z" * 500)
        assert classification.context_truncated is True

    @pytest.mark.asyncio
    async def test_repairs_fenced_output(self) -> None:
        client = _client(_generate_handler(f"```json\n{GOOD_RESPONSE}\n```"))
        classification = await client.classify("T", "body")
        assert classification.result.note_type == "decision"

    @pytest.mark.asyncio
    async def test_unparseable_output_raises(self) -> None:
        client = _client(_generate_handler("Sorry, I cannot help with that."))
        with pytest.raises(OutputParseError):
            await client.classify("T", "body")

    @pytest.mark.asyncio
    async def test_connect_error_is_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(InferenceUnavailableError):
            await _client(handler).classify("T", "body")

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(InferenceTimeoutError):
            await _client(handler).classify("T", "body")

    @pytest.mark.asyncio
    async def test_http_error_status(self) -> None:
        client = _client(lambda request: httpx.Response(404, json={"error": "model not found"}))
        with pytest.raises(InferenceError) as exc_info:
            await client.classify("T", "body")
        assert exc_info.value.status_code == 404
        assert not isinstance(exc_info.value, InferenceUnavailableError)

    @pytest.mark.asyncio
    async def test_missing_response_field(self) -> None:
        client = _client(lambda request: httpx.Response(200, json={"done": True}))
        with pytest.raises(InferenceError):
            await client.classify("T", "body")


class TestLifecycle:
    def test_from_config(self) -> None:
        config = OllamaConfig(base_url="http://localhost:11434/", model="llama3", context_limit=900)
        client = OllamaClient.from_config(config)
        assert client.base_url == "http://localhost:11434"
        assert client.model == "llama3"
        assert client.context_limit == 900

    @pytest.mark.asyncio
    async def test_aclose_leaves_injected_client_open(self) -> None:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        client = OllamaClient(http_client=http_client)
        await client.aclose()
        assert http_client.is_closed is False
        await http_client.aclose()
