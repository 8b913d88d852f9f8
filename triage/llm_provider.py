from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol, runtime_checkable

import requests

from triage.config import TriageSettings
from triage.errors import (
    InvalidModelOutputError,
    MalformedResponseError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from triage.metrics import record_provider_request, record_provider_retry, record_provider_timeout


logger = logging.getLogger("model-client")


@runtime_checkable
class EmbeddingClient(Protocol):
    def embed(self, text: str) -> list[float]: ...


@runtime_checkable
class GenerationClient(Protocol):
    def generate(self, prompt: str) -> str: ...

    def generate_json(self, prompt: str) -> dict: ...


class _HttpModelClient:
    """
    Shared transport for the Ollama-compatible endpoints.

    One POST per attempt with a caller-enforced timeout. A timeout is handled
    exactly like an unreachable server. Retries (if configured) only cover
    transport failures; a bad payload is never retried because the same prompt
    tends to produce the same bad payload.
    """

    name = "http"

    def __init__(self, settings: TriageSettings, model_name: str, timeout_seconds: int):
        self.base_url = settings.llm_base_url.rstrip("/")
        self.model_name = model_name
        self.timeout_seconds = max(1, int(timeout_seconds))
        self.max_retries = max(0, int(settings.max_retries))
        self.retry_backoff_seconds = max(0.0, float(settings.retry_backoff_seconds))

    def health_check(self) -> bool:
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=min(5, self.timeout_seconds))
            return bool(response.ok)
        except requests.exceptions.RequestException:
            return False

    def _post(self, operation: str, path: str, payload: dict) -> dict:
        url = f"{self.base_url}{path}"
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            t0 = time.perf_counter()
            outcome = "ok"
            try:
                response = requests.post(url, json=payload, timeout=self.timeout_seconds)
                response.raise_for_status()
                try:
                    data = response.json()
                except ValueError as exc:
                    outcome = "response_error"
                    raise MalformedResponseError(f"Model server returned non-JSON body: {exc}") from exc
                if not isinstance(data, dict):
                    outcome = "response_error"
                    raise MalformedResponseError("Model server returned a non-object payload")
                return data
            except requests.exceptions.Timeout as exc:
                outcome = "timeout"
                last_error = exc
                record_provider_timeout(self.name, operation, self.model_name)
            except requests.exceptions.RequestException as exc:
                outcome = "unavailable"
                last_error = exc
            finally:
                duration_ms = (time.perf_counter() - t0) * 1000.0
                logger.info(
                    "provider_request provider=%s model=%s operation=%s attempt=%s outcome=%s duration_ms=%.2f",
                    self.name,
                    self.model_name,
                    operation,
                    attempt + 1,
                    outcome,
                    duration_ms,
                )
                record_provider_request(self.name, operation, self.model_name, outcome, duration_ms)

            if attempt < self.max_retries:
                record_provider_retry(self.name, operation, self.model_name)
                time.sleep((attempt + 1) * self.retry_backoff_seconds)

        if isinstance(last_error, requests.exceptions.Timeout):
            raise UpstreamTimeoutError(f"Model server timed out: {last_error}") from last_error
        raise UpstreamUnavailableError(f"Model server unavailable: {last_error}") from last_error


class HttpEmbeddingClient(_HttpModelClient):
    def __init__(self, settings: TriageSettings):
        super().__init__(settings, settings.embedding_model, settings.embed_timeout_seconds)

    def embed(self, text: str) -> list[float]:
        data = self._post("embed", "/api/embeddings", {"model": self.model_name, "prompt": text})
        vector = data.get("embedding")
        if not isinstance(vector, list) or not vector:
            raise MalformedResponseError("Embedding response lacks a non-empty 'embedding' list")
        try:
            return [float(x) for x in vector]
        except (TypeError, ValueError) as exc:
            raise MalformedResponseError(f"Embedding contains non-numeric values: {exc}") from exc


class HttpGenerationClient(_HttpModelClient):
    def __init__(self, settings: TriageSettings):
        super().__init__(settings, settings.generation_model, settings.generate_timeout_seconds)

    def _chat(self, operation: str, prompt: str, json_mode: bool) -> str:
        payload: dict[str, Any] = {
            "model": self.model_name,
            "messages": [{"role": "user", "content": prompt}],
            "stream": False,
        }
        if json_mode:
            payload["format"] = "json"
        data = self._post(operation, "/api/chat", payload)
        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise MalformedResponseError("Chat response lacks 'message.content'")
        return content

    def generate(self, prompt: str) -> str:
        return self._chat("generate", prompt, json_mode=False).strip()

    def generate_json(self, prompt: str) -> dict:
        """
        Ask for a single JSON object and parse it.

        Anything other than one object (prose, a list, truncated JSON) raises
        InvalidModelOutputError. Callers validate the fields themselves.
        """
        content = self._chat("generate_json", prompt, json_mode=True)
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise InvalidModelOutputError(f"Model output is not valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise InvalidModelOutputError("Model output is not a JSON object")
        return parsed


def is_retryable(exc: BaseException) -> bool:
    """Only an unreachable or slow model server is worth retrying."""
    return isinstance(exc, UpstreamUnavailableError)
