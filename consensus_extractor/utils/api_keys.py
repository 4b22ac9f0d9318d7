"""Helpers for checking Anthropic API keys with a minimal request."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import httpx

from consensus_extractor.config import parse_env_file

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.anthropic.com"
DEFAULT_API_VERSION = "2023-06-01"
DEFAULT_PROBE_MODEL = "claude-sonnet-4-20250514"
KEY_PREFIX = "sk-ant-"



@dataclass(frozen=True)
class APIKeyCheckResult:
    """Structured information about a single key probe."""

    masked: str
    valid: bool
    has_credits: bool
    status_code: Optional[int]
    detail: str
    model: Optional[str] = None

    @property
    def status(self) -> str:
        """Return the human-readable classification of the key."""

        if self.valid and self.has_credits:
            return "VALID"
        if self.valid:
            return "NO CREDITS"
        return "INVALID"


def mask_key(key: str) -> str:
    """Return a display-safe version of ``key``."""

    if len(key) < 20:
        return "***invalid***"
    return f"{key[:12]}...{key[-8:]}"


def discover_keys(arguments: Sequence[str], env_value: Optional[str], env_file: Optional[Path]) -> List[str]:
    """Collect candidate keys from arguments, the environment, then a ``.env`` file.

    The first source that yields keys wins; duplicates are removed in order.
    """

    if arguments:
        return list(dict.fromkeys(arg for arg in arguments if arg.startswith(KEY_PREFIX)))
    if env_value and env_value.startswith(KEY_PREFIX):
        return [env_value]
    if env_file is not None and env_file.exists():
        values = parse_env_file(env_file).values()
        return list(dict.fromkeys(value for value in values if value.startswith(KEY_PREFIX)))
    return []


def check_api_key(
    key: str,
    *,
    base_url: str = DEFAULT_API_BASE,
    api_version: str = DEFAULT_API_VERSION,
    model: str = DEFAULT_PROBE_MODEL,
    timeout: float = 30.0,
    client: Optional[httpx.Client] = None,
) -> APIKeyCheckResult:
    """Send a one-token request with ``key`` and classify the response.

    Args:
        key: API key to probe.
        base_url: Base URL of the Messages API.
        api_version: Value of the ``anthropic-version`` header.
        model: Model used for the probe request.
        timeout: Request timeout in seconds when creating an internal client.
        client: Optional pre-configured ``httpx.Client`` (useful for testing).

    Returns:
        APIKeyCheckResult: Whether the key authenticates and still has credits.
    """

    masked = mask_key(key)
    url = f"{base_url.rstrip('/')}/v1/messages"
    should_close = client is None
    session = client or httpx.Client(timeout=timeout)
    headers = {
        "x-api-key": key,
        "anthropic-version": api_version,
        "content-type": "application/json",
    }
    body = {"model": model, "max_tokens": 1, "messages": [{"role": "user", "content": "hi"}]}

    try:
        response = session.post(url, headers=headers, json=body)
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        error = payload.get("error")
        if isinstance(error, dict) or response.status_code >= 400:
            message = str(error.get("message", "")) if isinstance(error, dict) else response.text
            invalid_key = "invalid x-api-key" in message or response.status_code == httpx.codes.UNAUTHORIZED
            no_credits = "credit balance" in message
            logger.warning(
                "API key check returned an error",
                extra={"key": masked, "status_code": response.status_code, "error": message},
            )
            return APIKeyCheckResult(
                masked=masked,
                valid=not invalid_key,
                has_credits=not invalid_key and not no_credits,
                status_code=response.status_code,
                detail=message or f"Request returned {response.status_code}",
            )
        logger.info("API key check succeeded", extra={"key": masked, "model": payload.get("model")})
        return APIKeyCheckResult(
            masked=masked,
            valid=True,
            has_credits=True,
            status_code=response.status_code,
            detail="API key check succeeded",
            model=payload.get("model"),
        )
    except httpx.HTTPError as exc:
        logger.error("API key check request raised an error", extra={"key": masked, "error": str(exc)})
        return APIKeyCheckResult(
            masked=masked,
            valid=False,
            has_credits=False,
            status_code=None,
            detail=f"Request to {url} failed: {exc}",
        )
    finally:
        if should_close:
            session.close()


__all__ = ["APIKeyCheckResult", "check_api_key", "discover_keys", "mask_key"]
