"""Bounded-retry completion requests against the Anthropic Messages API."""
from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from consensus_extractor.config import ServiceConfig
from consensus_extractor.contracts import Sample

LOGGER = logging.getLogger(__name__)

API_KEY_ENV_VAR = "ANTHROPIC_API_KEY"


@dataclass
class _SimpleHTTPResponse:
    """Minimal HTTP response wrapper with JSON helpers."""

    status_code: int
    _content: bytes

    def json(self) -> Any:
        """Parse the response body as JSON."""

        return json.loads(self.text)

    @property
    def text(self) -> str:
        """Return the decoded text body."""

        return self._content.decode("utf-8", errors="replace")


@runtime_checkable
class _HTTPClient(Protocol):
    """Protocol for the minimal HTTP client used by the requester."""

    def post(self, path: str, *, headers: Dict[str, str], json: Dict[str, Any]) -> _SimpleHTTPResponse:
        """Send a POST request and return a simplified response."""

    def close(self) -> None:
        """Close any underlying resources."""


class _HTTPXClientWrapper:
    """Wrap an httpx.Client to satisfy the _HTTPClient protocol."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(base_url=base_url, timeout=timeout_seconds, transport=transport)

    def post(self, path: str, *, headers: Dict[str, str], json: Dict[str, Any]) -> _SimpleHTTPResponse:
        response = self._client.post(path, headers=headers, json=json)
        return _SimpleHTTPResponse(status_code=response.status_code, _content=response.content)

    def close(self) -> None:
        self._client.close()


class _TransientResponseError(RuntimeError):
    """Raised when a successful status carries an unreadable body."""


_HTTPPostCallable = Callable[[str, Dict[str, Any], Dict[str, str]], Any]


class SampleRequester:
    """Request prefill continuations and convert failures into absent samples."""

    _ENDPOINT = "/v1/messages"

    def __init__(
        self,
        *,
        settings: ServiceConfig,
        api_key: Optional[str] = None,
        client: Optional[_HTTPClient] = None,
        http_post: Optional[_HTTPPostCallable] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialise the requester with configuration and networking hooks."""

        if client is not None and http_post is not None:
            raise ValueError("Provide either a client or http_post, not both")
        resolved_key = api_key or os.getenv(API_KEY_ENV_VAR)
        if not resolved_key:
            raise RuntimeError(f"Anthropic API key must be provided via argument or {API_KEY_ENV_VAR}")
        self._settings = settings
        self._http_post = http_post
        self._sleep = sleep
        self._retry_statuses = set(settings.retry_statuses)

        self._client: Optional[_HTTPClient]
        self._owns_client = False
        if http_post is None:
            if client is None:
                self._client = _HTTPXClientWrapper(settings.api_base, settings.timeout_seconds)
                self._owns_client = True
            else:
                self._client = client
        else:
            self._client = None

        self._base_headers = {
            "x-api-key": resolved_key,
            "anthropic-version": settings.api_version,
            "content-type": "application/json",
        }

    def close(self) -> None:
        """Close underlying HTTP resources if this instance owns them."""

        if self._owns_client and self._client is not None:
            self._client.close()

    def __enter__(self) -> "SampleRequester":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def fetch_batch(
        self,
        prefill: str,
        num_requests: int,
        max_tokens: int,
        *,
        model: Optional[str] = None,
    ) -> List[Sample]:
        """Issue ``num_requests`` requests one after another, in request order."""

        if num_requests < 1:
            raise ValueError("num_requests must be positive")
        samples: List[Sample] = []
        for index in range(num_requests):
            LOGGER.debug("Request %s/%s (%s tokens)", index + 1, num_requests, max_tokens)
            samples.append(self.request(prefill, max_tokens, model=model))
        return samples

    def request(self, prefill: str, max_tokens: int, *, model: Optional[str] = None) -> Sample:
        """Return one continuation of ``prefill``, or an absent sample on failure.

        Args:
            prefill: Text the assistant turn starts with; trailing whitespace is
                stripped because the API rejects it.
            max_tokens: Positive token budget for the continuation.
            model: Optional model identifier overriding the configured one.

        Returns:
            Sample: The completion and response id, or ``Sample.absent()`` once
                retries are exhausted or the service rejects the request.
        """

        if max_tokens < 1:
            raise ValueError("max_tokens must be positive")
        payload = self._build_payload(prefill, max_tokens, model or self._settings.model)
        response_payload = self._post_with_retries(payload)
        if response_payload is None:
            return Sample.absent()
        return self._parse_response(response_payload)

    def _build_payload(self, prefill: str, max_tokens: int, model: str) -> Dict[str, Any]:
        """Construct the Messages API payload with an assistant prefill."""

        messages: List[Dict[str, Any]] = [
            {"role": "user", "content": self._settings.user_prompt},
        ]
        trimmed_prefill = prefill.rstrip()
        if trimmed_prefill:
            messages.append(
                {
                    "role": "assistant",
                    "content": [
                        {
                            "type": "text",
                            "text": trimmed_prefill,
                            "cache_control": {"type": "ephemeral"},
                        }
                    ],
                }
            )
        return {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": self._settings.temperature,
            "top_k": self._settings.top_k,
            "messages": messages,
        }

    def _post_with_retries(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Send the payload, retrying transient failures with exponential backoff."""

        max_attempts = self._settings.max_attempts
        for attempt in range(max_attempts):
            start = time.perf_counter()
            try:
                response = self._dispatch_request(payload)
                if response.status_code < 400:
                    return self._decode_success(response)
            except Exception as exc:  # noqa: BLE001 - every transport failure is retried
                elapsed = time.perf_counter() - start
                if attempt + 1 >= max_attempts:
                    LOGGER.error(
                        "Request failed after %s attempts (%.2fs): %s",
                        max_attempts,
                        elapsed,
                        exc,
                    )
                    return None
                self._backoff(attempt, f"{exc.__class__.__name__}: {exc}")
                continue
            elapsed = time.perf_counter() - start
            message = self._extract_error_message(response)
            if response.status_code not in self._retry_statuses:
                LOGGER.error(
                    "Request rejected with status %s after %.2fs: %s",
                    response.status_code,
                    elapsed,
                    message,
                )
                return None
            if attempt + 1 >= max_attempts:
                LOGGER.error(
                    "Request failed after %s attempts with status %s: %s",
                    max_attempts,
                    response.status_code,
                    message,
                )
                return None
            self._backoff(attempt, f"status {response.status_code}: {message}")
        return None

    def _backoff(self, attempt: int, reason: str) -> None:
        delay = min(
            self._settings.backoff_initial_seconds * (2**attempt),
            self._settings.backoff_max_seconds,
        )
        LOGGER.warning("API error, retrying in %.1fs (attempt %s): %s", delay, attempt + 1, reason)
        self._sleep(delay)

    def _decode_success(self, response: _SimpleHTTPResponse) -> Dict[str, Any]:
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise _TransientResponseError("Response body was not valid JSON") from exc
        if not isinstance(payload, dict):
            raise _TransientResponseError("Response body was not a JSON object")
        return payload

    def _dispatch_request(self, payload: Dict[str, Any]) -> _SimpleHTTPResponse:
        """Dispatch the HTTP request via the configured client or hook."""

        headers = dict(self._base_headers)
        if self._http_post is not None:
            raw_response = self._http_post(self._ENDPOINT, payload, headers)
            return self._coerce_response(raw_response)
        if self._client is None:
            raise RuntimeError("No HTTP client configured for SampleRequester")
        response = self._client.post(self._ENDPOINT, headers=headers, json=payload)
        return self._coerce_response(response)

    @staticmethod
    def _coerce_response(response: Any) -> _SimpleHTTPResponse:
        """Convert httpx-like responses into ``_SimpleHTTPResponse``."""

        if isinstance(response, _SimpleHTTPResponse):
            return response
        status_code = int(getattr(response, "status_code", 0) or 0)
        content = getattr(response, "content", None)
        if isinstance(content, (bytes, bytearray)):
            return _SimpleHTTPResponse(status_code=status_code, _content=bytes(content))
        text = getattr(response, "text", "")
        if isinstance(text, bytes):
            return _SimpleHTTPResponse(status_code=status_code, _content=text)
        return _SimpleHTTPResponse(status_code=status_code, _content=str(text).encode("utf-8"))

    @staticmethod
    def _parse_response(payload: Dict[str, Any]) -> Sample:
        """Read the first text block; anything else yields an absent sample."""

        response_id = payload.get("id")
        response_id = str(response_id) if response_id else None
        blocks = payload.get("content")
        if not isinstance(blocks, list) or not blocks:
            LOGGER.warning("Response %s contained no content blocks", response_id)
            return Sample(content=None, response_id=response_id)
        first = blocks[0]
        if not isinstance(first, dict) or first.get("type") != "text":
            LOGGER.warning("Response %s did not start with a text block", response_id)
            return Sample(content=None, response_id=response_id)
        text = first.get("text")
        if not isinstance(text, str):
            return Sample(content=None, response_id=response_id)
        return Sample(content=text, response_id=response_id)

    @staticmethod
    def _extract_error_message(response: _SimpleHTTPResponse) -> str:
        """Extract an error message from a failed API response."""

        try:
            payload = response.json()
        except json.JSONDecodeError:
            return response.text
        if not isinstance(payload, dict):
            return response.text
        error = payload.get("error")
        if isinstance(error, dict) and "message" in error:
            return str(error["message"])
        return json.dumps(payload)


__all__ = ["API_KEY_ENV_VAR", "SampleRequester"]
