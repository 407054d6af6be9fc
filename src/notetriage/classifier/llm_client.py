"""Ollama client for LLM note classification.

Talks to a local Ollama server over its REST API:
- POST /api/generate with a non-streaming request per note
- GET /api/tags for health and model availability

Error handling strategy:
- Connection refused / DNS failure: InferenceUnavailableError (callers fall
  back to the rule classifier)
- Timeout: InferenceTimeoutError
- Non-2xx status or malformed response envelope: InferenceError
- Model text that cannot be repaired into JSON: OutputParseError

Usage:
    from notetriage.classifier.llm_client import OllamaClient

    client = OllamaClient.from_config(config.ollama)
    health = await client.check_health()
    if health.available and health.model_loaded:
        classification = await client.classify(title, content, few_shot_section)
    await client.aclose()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from notetriage.classifier.prompts import build_inference_prompt
from notetriage.classifier.repair import parse_output
from notetriage.classifier.taxonomy import InferenceResult
from notetriage.core.errors import (
    InferenceError,
    InferenceTimeoutError,
    InferenceUnavailableError,
)
from notetriage.core.logging import get_logger

if TYPE_CHECKING:
    from notetriage.config_schema import OllamaConfig

logger = get_logger(__name__)

INFERENCE_VERSION = "2025.01"
DEFAULT_SEED = 42
DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "qwen2.5:3b"


def normalize_model_name(name: str) -> str:
    """Normalize a model name for comparison; untagged names mean ':latest'."""
    name = name.strip().lower()
    if ":" not in name:
        return f"{name}:latest"
    return name


@dataclass(frozen=True, slots=True)
class LLMClassification:
    """A validated LLM classification plus request metadata."""

    result: InferenceResult
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    context_truncated: bool = False
    seed: int = DEFAULT_SEED
    inference_version: str = INFERENCE_VERSION


@dataclass
class OllamaHealth:
    """Server reachability and model availability."""

    available: bool = False
    model_loaded: bool = False
    model: str = DEFAULT_MODEL
    message: str = ""
    installed_models: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "model_loaded": self.model_loaded,
            "model": self.model,
            "message": self.message,
            "installed_models": list(self.installed_models),
        }


class OllamaClient:
    """Async client for an Ollama-compatible inference server.

    Attributes:
        base_url: Server root URL without trailing slash
        model: Default model name
        context_limit: Maximum note body length sent in the prompt
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout_seconds: float = 60.0,
        health_timeout_seconds: float = 5.0,
        temperature: float = 0.3,
        num_predict: int = 1000,
        num_ctx: int = 8192,
        context_limit: int = 4000,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Ollama server URL
            model: Default model for classify()
            timeout_seconds: Timeout for generate requests
            health_timeout_seconds: Timeout for the tags request
            temperature: Sampling temperature
            num_predict: Output token cap
            num_ctx: Context window size requested from the server
            context_limit: Note body character limit in the prompt
            http_client: Optional preconfigured client (not closed by aclose)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.health_timeout_seconds = health_timeout_seconds
        self.temperature = temperature
        self.num_predict = num_predict
        self.num_ctx = num_ctx
        self.context_limit = context_limit

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    @classmethod
    def from_config(
        cls, config: OllamaConfig, http_client: httpx.AsyncClient | None = None
    ) -> OllamaClient:
        return cls(
            base_url=config.base_url,
            model=config.model,
            timeout_seconds=config.timeout_seconds,
            health_timeout_seconds=config.health_timeout_seconds,
            temperature=config.temperature,
            num_predict=config.num_predict,
            num_ctx=config.num_ctx,
            context_limit=config.context_limit,
            http_client=http_client,
        )

    def apply_config(self, config: OllamaConfig) -> None:
        """Adopt reloaded settings. Takes effect on the next request."""
        self.base_url = config.base_url.rstrip("/")
        self.model = config.model
        self.timeout_seconds = config.timeout_seconds
        self.health_timeout_seconds = config.health_timeout_seconds
        self.temperature = config.temperature
        self.num_predict = config.num_predict
        self.num_ctx = config.num_ctx
        self.context_limit = config.context_limit

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def check_health(self) -> OllamaHealth:
        """Check server reachability and whether the configured model is installed.

        Never raises; failures are reported through the returned status.
        """
        health = OllamaHealth(model=self.model)

        try:
            response = await self._client.get(
                f"{self.base_url}/api/tags", timeout=self.health_timeout_seconds
            )
        except httpx.TimeoutException:
            health.message = "Cannot reach the Ollama server (timed out). Start it with: ollama serve"
            logger.warning("ollama_health_timeout", base_url=self.base_url)
            return health
        except httpx.HTTPError as e:
            health.message = "Cannot reach the Ollama server. Start it with: ollama serve"
            logger.warning("ollama_health_unreachable", base_url=self.base_url, error=str(e))
            return health

        if response.is_error:
            health.message = f"Ollama server error: {response.status_code} {response.reason_phrase}"
            logger.warning("ollama_health_error_status", status_code=response.status_code)
            return health

        health.available = True

        try:
            data = response.json()
        except ValueError:
            data = {}
        models = (data.get("models") or []) if isinstance(data, dict) else []
        health.installed_models = [
            m["name"] for m in models if isinstance(m, dict) and isinstance(m.get("name"), str)
        ]

        target = normalize_model_name(self.model)
        if any(normalize_model_name(name) == target for name in health.installed_models):
            health.model_loaded = True
            health.message = f"Ollama ready ({self.model})"
        else:
            installed = ", ".join(health.installed_models) or "none"
            health.message = (
                f"Model '{self.model}' not found. Installed models: {installed}. "
                f"Install with: ollama pull {self.model}"
            )
            logger.warning("ollama_model_missing", model=self.model, installed=installed)

        return health

    async def is_available(self) -> bool:
        health = await self.check_health()
        return health.available and health.model_loaded

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    async def _generate(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(
                f"{self.base_url}/api/generate",
                json=payload,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error("ollama_timeout", model=payload["model"], error=str(e))
            raise InferenceTimeoutError(f"Ollama request timed out: {e}") from e
        except httpx.ConnectError as e:
            logger.error("ollama_unreachable", base_url=self.base_url, error=str(e))
            raise InferenceUnavailableError(f"Ollama server unreachable: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error("ollama_http_error", status_code=status, model=payload["model"])
            raise InferenceError(f"Ollama API error: {status}", status_code=status) from e
        except httpx.HTTPError as e:
            logger.error("ollama_request_failed", error=str(e))
            raise InferenceError(f"Ollama request failed: {e}") from e

        try:
            envelope = response.json()
        except ValueError as e:
            raise InferenceError(f"Invalid Ollama response body: {e}") from e

        if not isinstance(envelope, dict) or not isinstance(envelope.get("response"), str):
            raise InferenceError("Invalid Ollama response: missing 'response' text")
        return envelope

    async def classify(
        self,
        title: str,
        content: str,
        few_shot_section: str = "",
        model: str | None = None,
        seed: int = DEFAULT_SEED,
    ) -> LLMClassification:
        """Classify one note.

        Args:
            title: Note title
            content: Note body (truncated to context_limit in the prompt)
            few_shot_section: Preformatted examples, or ""
            model: Model override (default: the client's model)
            seed: Sampling seed for reproducibility

        Returns:
            LLMClassification with the validated result and token counts

        Raises:
            InferenceUnavailableError: If the server cannot be reached
            InferenceTimeoutError: If the request times out
            InferenceError: On HTTP errors or a malformed envelope
            OutputParseError: If the model text cannot be parsed
        """
        model = model or self.model
        prompt, truncated = build_inference_prompt(
            title, content, few_shot_section, context_limit=self.context_limit
        )

        envelope = await self._generate(
            {
                "model": model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": self.temperature,
                    "seed": seed,
                    "num_predict": self.num_predict,
                    "num_ctx": self.num_ctx,
                },
            }
        )

        output = parse_output(envelope["response"]).unwrap()
        classification = LLMClassification(
            result=output.to_inference_result(),
            model=model,
            prompt_tokens=int(envelope.get("prompt_eval_count") or 0),
            completion_tokens=int(envelope.get("eval_count") or 0),
            context_truncated=truncated,
            seed=seed,
        )

        logger.info(
            "ollama_classification_success",
            model=model,
            note_type=classification.result.note_type,
            confidence=classification.result.confidence,
            prompt_tokens=classification.prompt_tokens,
            completion_tokens=classification.completion_tokens,
        )
        return classification
