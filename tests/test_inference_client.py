import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from metagen.errors import CreditsExhaustedError, InferenceError, RateLimitedError
from metagen.inference_client import InferenceClient, image_reference


def _status_error(status):
    request = httpx.Request("POST", "https://gateway.test/v1/chat/completions")
    return openai.APIStatusError(
        f"status {status}", response=httpx.Response(status, request=request), body=None)


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(
        message=SimpleNamespace(content=content, tool_calls=None))])


class _ScriptedOpenAI:
    """Mimics ``client.chat.completions.create`` with scripted outcomes"""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _client(outcomes, retry_attempts=2):
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    fake = _ScriptedOpenAI(outcomes)
    client = InferenceClient(client=fake, model="test-model",
                             retry_attempts=retry_attempts, retry_delay=1.0, sleep=sleep)
    return client, fake, sleeps


def test_returns_message_content():
    client, _, _ = _client([_completion('{"ok": true}')])
    assert asyncio.run(client.complete([])) == '{"ok": true}'


def test_rate_limit_is_not_retried():
    client, fake, sleeps = _client([_status_error(429)])
    with pytest.raises(RateLimitedError):
        asyncio.run(client.complete([]))
    assert fake.calls == 1
    assert sleeps == []


def test_payment_required_maps_to_credits_exhausted():
    client, fake, _ = _client([_status_error(402)])
    with pytest.raises(CreditsExhaustedError) as info:
        asyncio.run(client.complete([]))
    assert str(info.value) == "AI credits exhausted."
    assert fake.calls == 1


def test_server_errors_retry_with_backoff():
    client, fake, sleeps = _client([_status_error(503), _status_error(502), _completion("done")])
    assert asyncio.run(client.complete([])) == "done"
    assert fake.calls == 3
    assert sleeps == [1.0, 2.0]


def test_client_errors_fail_fast():
    client, fake, _ = _client([_status_error(400)])
    with pytest.raises(InferenceError) as info:
        asyncio.run(client.complete([]))
    assert info.value.status == 400
    assert info.value.retryable is False
    assert fake.calls == 1


def test_unconfigured_client_raises():
    client = InferenceClient(client=None, model="m")
    client.openai_client = None
    with pytest.raises(InferenceError):
        asyncio.run(client.complete([]))


def test_tool_call_arguments_preferred():
    call = SimpleNamespace(function=SimpleNamespace(arguments='{"results": []}'))
    completion = SimpleNamespace(choices=[SimpleNamespace(
        message=SimpleNamespace(content=None, tool_calls=[call]))])
    assert InferenceClient._extract_text(completion) == '{"results": []}'


def test_image_reference():
    assert image_reference("https://cdn.test/a.jpg") == "https://cdn.test/a.jpg"
    assert image_reference("file:///tmp/a.png", b"abc", "image/png") == \
        "data:image/png;base64,YWJj"
    with pytest.raises(InferenceError):
        image_reference("file:///tmp/a.png")
