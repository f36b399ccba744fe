"""
Tests for the chat-completions classifier and HTTP helpers.
"""

import time
from email.utils import formatdate

import pytest

from regwatch.audit.classifier import LLMClassifier, parse_verdict
from regwatch.errors import ClassifierError
from regwatch.infra.http import HttpClient, parse_retry_after


class StubHttp(HttpClient):
    """Returns canned responses instead of calling the API."""

    def __init__(self, *responses):
        super().__init__()
        self.responses = list(responses)
        self.requests = []

    async def post_json(self, url, data, **kwargs):
        self.requests.append((url, data))
        return self.responses.pop(0)


def completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def test_parse_plain_json():
    verdict = parse_verdict('{"isRelated": true, "confidence": 0.9, "category": "dermatology", "reason": "skin imaging"}')
    assert verdict.is_related is True
    assert verdict.confidence == 0.9
    assert verdict.category == "dermatology"
    assert verdict.reason == "skin imaging"


def test_parse_fenced_json_and_clamps_confidence():
    verdict = parse_verdict('```json\n{"isRelated": false, "confidence": 7}\n```')
    assert verdict.is_related is False
    assert verdict.confidence == 1.0
    assert verdict.category == ""


@pytest.mark.parametrize("content", [
    "not json at all",
    "[true, 0.5]",
    '{"confidence": 0.5}',
    '{"isRelated": "yes"}',
])
def test_parse_rejects_unusable_verdicts(content):
    with pytest.raises(ClassifierError):
        parse_verdict(content)


async def test_classify_posts_chat_completion():
    http = StubHttp(completion('{"isRelated": true, "confidence": 0.8, "category": "skin"}'))
    classifier = LLMClassifier("sk-test", "https://llm.example.com/v1/", "gpt-test",
                               topic="skin analyzers", http=http)

    verdict = await classifier.classify("Skin analyzer\nAcme Imaging Inc.")
    assert verdict.is_related is True

    url, payload = http.requests[0]
    assert url == "https://llm.example.com/v1/chat/completions"
    assert payload["model"] == "gpt-test"
    assert "skin analyzers" in payload["messages"][0]["content"]
    assert payload["messages"][1] == {"role": "user", "content": "Skin analyzer\nAcme Imaging Inc."}


@pytest.mark.parametrize("response", [{}, {"choices": []}, completion("")])
async def test_classify_bad_responses(response):
    classifier = LLMClassifier("sk-test", "https://llm.example.com/v1", "gpt-test", http=StubHttp(response))
    with pytest.raises(ClassifierError):
        await classifier.classify("text")


async def test_unconfigured_classifier_raises():
    http = StubHttp()
    classifier = LLMClassifier(None, "https://llm.example.com/v1", "gpt-test", http=http)
    assert not classifier.configured
    with pytest.raises(ClassifierError):
        await classifier.classify("text")
    assert http.requests == []


def test_parse_retry_after():
    assert parse_retry_after(None) is None
    assert parse_retry_after("12") == 12.0
    assert parse_retry_after("garbage") is None

    in_a_minute = formatdate(time.time() + 60, usegmt=True)
    assert 50 < parse_retry_after(in_a_minute) <= 60
    assert parse_retry_after(formatdate(time.time() - 60, usegmt=True)) == 0.0


def test_backoff_delay_is_bounded():
    client = HttpClient(base_delay=1.0, max_delay=5.0)
    assert 1.0 <= client._backoff_delay(1, RuntimeError()) <= 2.0
    assert 5.0 <= client._backoff_delay(10, RuntimeError()) <= 6.0
