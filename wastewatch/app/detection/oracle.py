from __future__ import annotations

import json
import os
from typing import Any, Optional

import httpx

from wastewatch.app.detection.classification import Label, RetailLabel, SubscriptionLabel
from wastewatch.app.detection.errors import OracleUnavailable

DEFAULT_OLLAMA_MODEL = "llama3.2"

_PROMPT = (
    "You classify bank transaction merchants.\n"
    "Merchant: {merchant}\n"
    "Category: {category}\n"
    "Is this merchant a recurring subscription service (streaming, software, "
    "memberships, utilities, insurance) or a retail/one-off merchant "
    "(restaurants, groceries, shops, gas)?\n"
    'Answer with JSON only: {{"is_subscription": true|false, "confidence": 0.0-1.0}}'
)


def ollama_is_configured() -> bool:
    return bool(os.getenv("OLLAMA_HOST"))


def _build_httpx_client(base_url: str, timeout: float) -> httpx.Client:
    return httpx.Client(base_url=base_url, timeout=timeout)


def parse_label(text: str) -> Label:
    """Parse the model's JSON answer. Tolerates prose around the object."""
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise OracleUnavailable(f"no JSON object in oracle response: {text[:80]!r}")
    try:
        payload = json.loads(text[start:end + 1])
    except ValueError as exc:
        raise OracleUnavailable(f"malformed oracle response: {exc}") from exc

    is_subscription = payload.get("is_subscription")
    if not isinstance(is_subscription, bool):
        raise OracleUnavailable("oracle response missing is_subscription")
    try:
        confidence = float(payload.get("confidence", 0.0))
    except (TypeError, ValueError) as exc:
        raise OracleUnavailable("oracle confidence is not a number") from exc
    confidence = min(max(confidence, 0.0), 1.0)
    return SubscriptionLabel(confidence) if is_subscription else RetailLabel(confidence)


class OllamaOracle:
    """Merchant classifier backed by an Ollama /api/generate endpoint."""

    def __init__(
        self,
        *,
        host: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[Any] = None,
    ):
        self.host = (host or os.getenv("OLLAMA_HOST") or "http://localhost:11434").rstrip("/")
        self.model = model or os.getenv("OLLAMA_MODEL") or DEFAULT_OLLAMA_MODEL
        self._client = client or _build_httpx_client(self.host, timeout)

    def classify(self, merchant: str, category_hint: Optional[str] = None) -> Label:
        payload = {
            "model": self.model,
            "prompt": _PROMPT.format(merchant=merchant, category=category_hint or "unknown"),
            "stream": False,
            "format": "json",
        }
        try:
            response = self._client.post("/api/generate", json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise OracleUnavailable(f"ollama request failed: {exc}") from exc
        except ValueError as exc:
            raise OracleUnavailable("ollama returned non-JSON body") from exc
        return parse_label(str(body.get("response", "")))

    def close(self) -> None:
        self._client.close()


def oracle_from_env(timeout: float = 10.0) -> Optional[OllamaOracle]:
    if not ollama_is_configured():
        return None
    return OllamaOracle(timeout=timeout)
