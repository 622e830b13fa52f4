from __future__ import annotations

import asyncio
import json

import pytest

from civicsense.config import Settings
from civicsense.errors import InferenceUnavailableError
from civicsense.llm.client import JSON_MIME_TYPE, InferenceGateway, StubProvider, coalesce_history
from civicsense.llm.prompts import OUTPUT_CONTRACT
from civicsense.models.core import ChatMessage


class FakeResponse:
    def __init__(self, status_code: int, payload: dict):
        self.status_code = status_code
        self._payload = payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise RuntimeError(f"http {self.status_code}")

    def json(self) -> dict:
        return self._payload


class FakeRequests:
    def __init__(self, payload: dict | None = None, status_code: int = 200) -> None:
        self.calls: list[dict] = []
        self.payload = payload or {"choices": [{"message": {"content": "ok"}}]}
        self.status_code = status_code

    def post(self, url: str, *args, **kwargs) -> FakeResponse:
        self.calls.append({"url": url, "body": json.loads(kwargs.get("data") or "{}"), "params": kwargs.get("params")})
        return FakeResponse(self.status_code, self.payload)


def _generate(gateway: InferenceGateway, message: str = "hello", **kwargs):
    return asyncio.run(gateway.generate("Be brief.", [], message, **kwargs))


def test_stub_backend_never_calls_network(monkeypatch):
    fake_requests = FakeRequests()
    monkeypatch.setattr("civicsense.llm.client.requests", fake_requests)
    gateway = InferenceGateway(Settings(llm_backends="stub"))

    reply = _generate(gateway)

    assert fake_requests.calls == []
    assert reply.backend == "stub"
    assert reply.text.startswith("[stub]")


def test_missing_key_falls_through_to_next_backend(monkeypatch):
    fake_requests = FakeRequests()
    monkeypatch.setattr("civicsense.llm.client.requests", fake_requests)
    gateway = InferenceGateway(Settings(llm_backends="gemini,openrouter", gemini_api_key=None, openrouter_api_key="k"))

    reply = _generate(gateway)

    assert reply.backend == "openrouter"
    assert reply.text == "ok"
    assert len(fake_requests.calls) == 1
    assert fake_requests.calls[0]["url"].endswith("/chat/completions")


def test_every_backend_failing_raises(monkeypatch):
    monkeypatch.setattr("civicsense.llm.client.requests", FakeRequests(status_code=500))
    gateway = InferenceGateway(Settings(llm_backends="gemini,openrouter", gemini_api_key="g", openrouter_api_key="k"))

    with pytest.raises(InferenceUnavailableError) as excinfo:
        _generate(gateway)

    assert "gemini:error" in str(excinfo.value)
    assert "openrouter:error" in str(excinfo.value)


def test_stub_is_not_appended_automatically(monkeypatch):
    monkeypatch.setattr("civicsense.llm.client.requests", FakeRequests())
    gateway = InferenceGateway(Settings(llm_backends="openrouter", openrouter_api_key=None))

    assert gateway.order == ["openrouter"]
    with pytest.raises(InferenceUnavailableError):
        _generate(gateway)


def test_unknown_backend_names_are_skipped():
    gateway = InferenceGateway(Settings(llm_backends="mystery,stub"))

    assert gateway.order == ["stub"]


def test_empty_reply_counts_as_failure(monkeypatch):
    monkeypatch.setattr(
        "civicsense.llm.client.requests",
        FakeRequests({"choices": [{"message": {"content": "   "}}]}),
    )
    gateway = InferenceGateway(Settings(llm_backends="openrouter,stub", openrouter_api_key="k"))

    reply = _generate(gateway)

    assert reply.backend == "stub"


def test_gemini_body_starts_with_user_turn(monkeypatch):
    fake_requests = FakeRequests({"candidates": [{"content": {"parts": [{"text": "Sounds good!"}]}}]})
    monkeypatch.setattr("civicsense.llm.client.requests", fake_requests)
    gateway = InferenceGateway(Settings(llm_backends="gemini", gemini_api_key="g"))
    history = [ChatMessage(role="agent", text="Hi!"), ChatMessage(role="user", text="A park"), ChatMessage(role="agent", text="Nice")]

    reply = asyncio.run(gateway.generate("system rules", history, "With a pond"))

    body = fake_requests.calls[0]["body"]
    assert reply.text == "Sounds good!"
    assert [turn["role"] for turn in body["contents"]] == ["user", "model", "user"]
    assert body["systemInstruction"]["parts"][0]["text"] == "system rules"
    assert fake_requests.calls[0]["params"] == {"key": "g"}


def test_json_mode_reaches_each_backend(monkeypatch):
    fake_requests = FakeRequests({"message": {"content": '{"demand_weight": 6}'}})
    monkeypatch.setattr("civicsense.llm.client.requests", fake_requests)
    gateway = InferenceGateway(Settings(llm_backends="ollama"))

    reply = _generate(gateway, response_mime_type=JSON_MIME_TYPE)

    assert json.loads(reply.text) == {"demand_weight": 6}
    assert fake_requests.calls[0]["body"]["format"] == "json"
    assert fake_requests.calls[0]["body"]["stream"] is False


def test_coalesce_history_merges_and_drops_empty_turns():
    history = [
        ChatMessage(role="user", text="one"),
        ChatMessage(role="user", text="two"),
        ChatMessage(role="agent", text="  "),
        ChatMessage(role="agent", text="reply"),
    ]

    merged = coalesce_history(history)

    assert [(m.role, m.text) for m in merged] == [("user", "one\ntwo"), ("agent", "reply")]


def test_stub_interview_asks_for_missing_details():
    stub = StubProvider(Settings(llm_backends="stub"))

    text = stub.generate_text(OUTPUT_CONTRACT, [], "Maybe a bakery?")

    assert "building details" in text
    assert '"status": "DRAFT"' in text
