"""Tests for the bounded-retry SampleRequester."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

import httpx
import pytest

from consensus_extractor.config import ServiceConfig, load_config
from consensus_extractor.contracts import Sample
from consensus_extractor.sampling import SampleRequester
import consensus_extractor.sampling.requester as requester_module


@dataclass
class _FakeResponse:
    """Simplified HTTP response used for testing."""

    status_code: int
    text: str


class _FakeHTTPClient:
    """Deterministic HTTP client for unit tests."""

    def __init__(self, responses: List[Any]) -> None:
        self._responses = responses
        self.calls: List[Tuple[str, Dict[str, Any], Dict[str, str]]] = []

    def post(self, path: str, payload: Dict[str, Any], headers: Dict[str, str]) -> _FakeResponse:
        if not self._responses:
            raise AssertionError("No more fake responses configured")
        self.calls.append((path, payload, headers))
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _message(text: str, response_id: str = "msg_01") -> _FakeResponse:
    body = {"id": response_id, "type": "message", "content": [{"type": "text", "text": text}]}
    return _FakeResponse(status_code=200, text=json.dumps(body))


@pytest.fixture(name="service_settings")
def fixture_service_settings() -> ServiceConfig:
    """Return service settings with fast, predictable backoff."""

    return load_config().service.model_copy(
        update={
            "max_attempts": 3,
            "backoff_initial_seconds": 0.5,
            "backoff_max_seconds": 10.0,
            "retry_statuses": [429, 529],
        }
    )


def test_request_builds_prefill_payload(service_settings: ServiceConfig) -> None:
    """The assistant prefill should be stripped of trailing whitespace."""

    client = _FakeHTTPClient([_message(" continued text")])
    requester = SampleRequester(settings=service_settings, http_post=client.post, api_key="test-key")

    sample = requester.request("Known fragment.  \n", 64)

    assert sample == Sample(content=" continued text", response_id="msg_01")
    path, payload, headers = client.calls[0]
    assert path == "/v1/messages"
    assert headers["x-api-key"] == "test-key"
    assert headers["anthropic-version"] == service_settings.api_version
    assert payload["max_tokens"] == 64
    assert payload["temperature"] == 0.0
    assert payload["top_k"] == 1
    assert payload["model"] == service_settings.model
    assert payload["messages"][0] == {"role": "user", "content": service_settings.user_prompt}
    prefill_block = payload["messages"][1]["content"][0]
    assert payload["messages"][1]["role"] == "assistant"
    assert prefill_block["text"] == "Known fragment."
    assert prefill_block["cache_control"] == {"type": "ephemeral"}


def test_empty_prefill_sends_only_the_instruction(service_settings: ServiceConfig) -> None:
    client = _FakeHTTPClient([_message("Start")])
    requester = SampleRequester(settings=service_settings, http_post=client.post, api_key="test-key")

    requester.request("   ", 10, model="other-model")

    payload = client.calls[0][1]
    assert len(payload["messages"]) == 1
    assert payload["model"] == "other-model"


def test_retryable_status_backs_off_exponentially(service_settings: ServiceConfig) -> None:
    """Retryable statuses should double the delay before each new attempt."""

    client = _FakeHTTPClient(
        [
            _FakeResponse(status_code=529, text=json.dumps({"error": {"message": "Overloaded"}})),
            _FakeResponse(status_code=429, text=json.dumps({"error": {"message": "Too Many"}})),
            _message("finally"),
        ]
    )
    sleeps: List[float] = []
    requester = SampleRequester(
        settings=service_settings,
        http_post=client.post,
        api_key="test-key",
        sleep=sleeps.append,
    )

    sample = requester.request("prefix", 32)

    assert sample.content == "finally"
    assert len(client.calls) == 3
    assert sleeps == [pytest.approx(0.5), pytest.approx(1.0)]


def test_exhausted_retries_return_absent_sample(service_settings: ServiceConfig) -> None:
    """A sample that keeps failing is a non-vote, never an exception."""

    client = _FakeHTTPClient(
        [
            httpx.ConnectError("connection refused"),
            httpx.ReadTimeout("timed out"),
            _FakeResponse(status_code=529, text="overloaded"),
        ]
    )
    sleeps: List[float] = []
    requester = SampleRequester(
        settings=service_settings,
        http_post=client.post,
        api_key="test-key",
        sleep=sleeps.append,
    )

    sample = requester.request("prefix", 32)

    assert sample == Sample.absent()
    assert not sample.is_valid
    assert len(client.calls) == 3
    assert sleeps == [pytest.approx(0.5), pytest.approx(1.0)]


def test_non_retryable_status_returns_absent_immediately(service_settings: ServiceConfig) -> None:
    client = _FakeHTTPClient(
        [_FakeResponse(status_code=401, text=json.dumps({"error": {"message": "invalid x-api-key"}}))]
    )
    sleeps: List[float] = []
    requester = SampleRequester(
        settings=service_settings,
        http_post=client.post,
        api_key="bad-key",
        sleep=sleeps.append,
    )

    assert requester.request("prefix", 32) == Sample.absent()
    assert len(client.calls) == 1
    assert sleeps == []


def test_invalid_json_success_is_retried(service_settings: ServiceConfig) -> None:
    client = _FakeHTTPClient([_FakeResponse(status_code=200, text="<html>"), _message("ok")])
    requester = SampleRequester(
        settings=service_settings,
        http_post=client.post,
        api_key="test-key",
        sleep=lambda _: None,
    )

    assert requester.request("prefix", 8).content == "ok"
    assert len(client.calls) == 2


def test_backoff_is_capped(service_settings: ServiceConfig) -> None:
    settings = service_settings.model_copy(
        update={"max_attempts": 4, "backoff_initial_seconds": 4.0, "backoff_max_seconds": 5.0}
    )
    client = _FakeHTTPClient([httpx.ConnectError("down")] * 4)
    sleeps: List[float] = []
    requester = SampleRequester(settings=settings, http_post=client.post, api_key="k", sleep=sleeps.append)

    requester.request("prefix", 8)

    assert sleeps == [4.0, 5.0, 5.0]


def test_non_text_block_yields_absent_content(service_settings: ServiceConfig) -> None:
    body = {"id": "msg_tool", "content": [{"type": "tool_use", "id": "t1", "name": "x", "input": {}}]}
    client = _FakeHTTPClient([_FakeResponse(status_code=200, text=json.dumps(body))])
    requester = SampleRequester(settings=service_settings, http_post=client.post, api_key="k")

    sample = requester.request("prefix", 8)

    assert sample.content is None
    assert sample.response_id == "msg_tool"


def test_empty_content_list_yields_absent_content(service_settings: ServiceConfig) -> None:
    body = {"id": "msg_empty", "content": []}
    client = _FakeHTTPClient([_FakeResponse(status_code=200, text=json.dumps(body))])
    requester = SampleRequester(settings=service_settings, http_post=client.post, api_key="k")

    assert requester.request("prefix", 8) == Sample(content=None, response_id="msg_empty")


def test_fetch_batch_is_sequential_and_ordered(service_settings: ServiceConfig) -> None:
    client = _FakeHTTPClient([_message(f"text {index}", f"msg_{index}") for index in range(4)])
    requester = SampleRequester(settings=service_settings, http_post=client.post, api_key="k")

    samples = requester.fetch_batch("prefix", 4, 16)

    assert [sample.response_id for sample in samples] == ["msg_0", "msg_1", "msg_2", "msg_3"]
    assert [sample.content for sample in samples] == ["text 0", "text 1", "text 2", "text 3"]


def test_requester_requires_api_key(monkeypatch, service_settings: ServiceConfig) -> None:
    """Instantiating the requester without an API key should fail fast."""

    monkeypatch.delenv(requester_module.API_KEY_ENV_VAR, raising=False)

    with pytest.raises(RuntimeError):
        SampleRequester(settings=service_settings, http_post=_FakeHTTPClient([]).post)


def test_requester_rejects_client_and_hook(service_settings: ServiceConfig) -> None:
    fake = _FakeHTTPClient([])
    with pytest.raises(ValueError):
        SampleRequester(settings=service_settings, client=fake, http_post=fake.post, api_key="k")


def test_httpx_client_wrapper_round_trip(service_settings: ServiceConfig) -> None:
    """The httpx-backed client should send JSON and read the Messages response."""

    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"id": "msg_http", "content": [{"type": "text", "text": "via httpx"}]},
        )

    client = requester_module._HTTPXClientWrapper(
        service_settings.api_base,
        service_settings.timeout_seconds,
        transport=httpx.MockTransport(handler),
    )
    with SampleRequester(settings=service_settings, client=client, api_key="k") as requester:
        sample = requester.request("prefix", 8)
    client.close()

    assert sample == Sample(content="via httpx", response_id="msg_http")
    assert seen[0].url.path == "/v1/messages"
    assert json.loads(seen[0].content)["max_tokens"] == 8
