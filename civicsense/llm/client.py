from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod

import requests

from civicsense.config import Settings
from civicsense.errors import InferenceUnavailableError
from civicsense.llm.schemas import GatewayReply
from civicsense.models.core import ChatMessage

log = logging.getLogger(__name__)

JSON_MIME_TYPE = "application/json"


class ProviderUnavailableError(RuntimeError):
    pass


def coalesce_history(history: list[ChatMessage]) -> list[ChatMessage]:
    """Merge consecutive same-role turns and drop empty ones."""
    merged: list[ChatMessage] = []
    for message in history:
        text = message.text.strip()
        if not text:
            continue
        if merged and merged[-1].role == message.role:
            merged[-1] = ChatMessage(role=message.role, text=f"{merged[-1].text}\n{text}")
        else:
            merged.append(ChatMessage(role=message.role, text=text))
    return merged


class BaseProvider(ABC):
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.max_input_chars = settings.llm_max_input_chars

    def _truncate(self, text: str) -> str:
        return text[: self.max_input_chars]

    @abstractmethod
    def generate_json(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float = 0.0,
        timeout: float = 20.0,
    ) -> str:
        raise NotImplementedError

    @abstractmethod
    def generate_text(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float = 0.7,
        timeout: float = 20.0,
    ) -> str:
        raise NotImplementedError


class StubProvider(BaseProvider):
    """Offline scripted agent.

    Follows the interview protocol well enough to exercise every dialogue
    outcome without a model: rejects skyscrapers, asks for building details
    and a name, and validates once both are present.
    """

    IDEA_WORDS = (
        "library", "cafe", "café", "park", "garden", "market", "clinic", "school", "playground",
        "bakery", "gym", "plaza", "bookstore", "farm", "hub", "center", "centre", "shop",
    )
    DETAIL_WORDS = (
        "size", "story", "stories", "storey", "floor", "floors", "sq", "m2", "square", "feature",
        "rooftop", "seats", "wing", "room", "rooms", "large", "small",
    )
    REJECT_WORDS = ("skyscraper", "casino tower", "airport", "nuclear", "landfill")
    NAME_RE = re.compile(r"\b(?i:my name is|call me)\s+([A-Z][\w'-]*(?:\s+[A-Z][\w'-]*)?)")

    def generate_json(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float = 0.0,
        timeout: float = 20.0,
    ) -> str:
        del temperature, timeout
        prompt = f"{system_instruction}\n{message}".lower()
        if "demand_weight" in prompt:
            urgent = any(word in prompt for word in ("need", "urgent", "desperately", "missing", "no "))
            return json.dumps({"demand_weight": 7 if urgent else 5})
        if "toprecommendation" in prompt:
            return json.dumps(
                {
                    "topRecommendation": "LLM unavailable; review the pinned proposals directly.",
                    "communitySentiment": "Not analysed.",
                    "marketGaps": [],
                }
            )
        return json.dumps({})

    def generate_text(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float = 0.7,
        timeout: float = 20.0,
    ) -> str:
        del temperature, timeout
        if "map_action" not in system_instruction:
            return f"[stub] {self._truncate(message)[:80]}"
        return self._interview_turn(history, message)

    def _interview_turn(self, history: list[ChatMessage], message: str) -> str:
        user_texts = [m.text for m in history if m.role == "user"] + [message]
        latest = message.lower()
        conversation = " ".join(user_texts)
        lowered = conversation.lower()

        if any(word in latest for word in self.REJECT_WORDS):
            return self._reply(
                "I cannot approve this proposal. The street is too narrow for a building of that scale; "
                "it would block sunlight to the surrounding homes and overwhelm local traffic. "
                "Please suggest something that fits this context.",
                status="REJECTED",
            )

        idea = next((word for word in self.IDEA_WORDS if word in lowered), None)
        has_details = any(re.search(rf"\b{re.escape(word)}\b", lowered) for word in self.DETAIL_WORDS)
        name_match = self.NAME_RE.search(conversation)
        author = name_match.group(1).strip() if name_match else None

        if idea is None:
            return self._reply(
                "That's an interesting start, but I need more specifics. What exactly would you like to "
                "build here, and do you have any features in mind? Also, what is your name?"
            )
        if not has_details or author is None:
            missing = []
            if not has_details:
                missing.append("some building details (size, key features)")
            if author is None:
                missing.append("your name so we can credit you")
            return self._reply(f"A {idea} sounds promising! Before I can validate it, could you share {' and '.join(missing)}?")

        title = f"Community {idea.capitalize()}"
        description = " ".join(text.strip() for text in user_texts if text.strip())[:400]
        return self._reply(
            f"Thank you! A {idea} like this suits the area well. I'm approving your proposal with a strong feasibility score.",
            status="VALIDATED",
            map_action="SHOW_3D_SIMULATION",
            score=85,
            title=title,
            description=description,
            author=author,
        )

    @staticmethod
    def _reply(
        text: str,
        *,
        status: str = "DRAFT",
        map_action: str = "NONE",
        score: float = 0,
        title: str | None = None,
        description: str | None = None,
        author: str | None = None,
    ) -> str:
        payload = {
            "map_action": map_action,
            "feasibility_score": score,
            "status": status,
            "idea_title": title,
            "idea_description": description,
            "author": author,
        }
        return f"{text}\n```json\n{json.dumps(payload, indent=2)}\n```"


class GeminiProvider(BaseProvider):
    def _body(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float,
        response_mime_type: str | None,
    ) -> dict[str, object]:
        contents: list[dict[str, object]] = []
        for turn in history:
            if not contents and turn.role == "agent":
                # generateContent expects the conversation to open with a user turn.
                continue
            role = "model" if turn.role == "agent" else "user"
            contents.append({"role": role, "parts": [{"text": self._truncate(turn.text)}]})
        contents.append({"role": "user", "parts": [{"text": self._truncate(message)}]})
        config: dict[str, object] = {"temperature": temperature}
        if response_mime_type:
            config["responseMimeType"] = response_mime_type
        body: dict[str, object] = {"contents": contents, "generationConfig": config}
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": self._truncate(system_instruction)}]}
        return body

    def _post(self, body: dict[str, object], *, timeout: float) -> str:
        api_key = self.settings.gemini_api_key
        if not api_key:
            raise ProviderUnavailableError("gemini_missing_api_key")
        response = requests.post(
            f"{self.settings.gemini_base_url}/models/{self.settings.gemini_model}:generateContent",
            params={"key": api_key},
            headers={"Content-Type": "application/json"},
            data=json.dumps(body),
            timeout=timeout,
        )
        if response.status_code in {401, 403, 429} or response.status_code >= 500:
            raise ProviderUnavailableError(f"gemini_http_{response.status_code}")
        response.raise_for_status()
        parts = response.json()["candidates"][0]["content"]["parts"]
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text:
            raise ProviderUnavailableError("gemini_empty_response")
        return text.strip()

    def generate_json(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float = 0.0,
        timeout: float = 20.0,
    ) -> str:
        body = self._body(system_instruction, history, message, temperature=temperature, response_mime_type=JSON_MIME_TYPE)
        return self._post(body, timeout=timeout)

    def generate_text(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float = 0.7,
        timeout: float = 20.0,
    ) -> str:
        body = self._body(system_instruction, history, message, temperature=temperature, response_mime_type=None)
        return self._post(body, timeout=timeout)


def _chat_messages(
    provider: BaseProvider,
    system_instruction: str,
    history: list[ChatMessage],
    message: str,
) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if system_instruction:
        messages.append({"role": "system", "content": provider._truncate(system_instruction)})
    for turn in history:
        role = "assistant" if turn.role == "agent" else "user"
        messages.append({"role": role, "content": provider._truncate(turn.text)})
    messages.append({"role": "user", "content": provider._truncate(message)})
    return messages


class OpenRouterProvider(BaseProvider):
    def _headers(self) -> dict[str, str]:
        api_key = self.settings.openrouter_api_key
        if not api_key:
            raise ProviderUnavailableError("openrouter_missing_api_key")
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": "http://localhost",
            "X-Title": "civicsense",
        }

    def _extract_content(self, response) -> str:
        parsed = response.json()
        content = parsed["choices"][0]["message"]["content"]
        if not isinstance(content, str):
            raise ProviderUnavailableError("unexpected_chat_content_type")
        return content.strip()

    def _post_chat(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float,
        timeout: float,
        response_format: dict[str, str] | None = None,
    ) -> str:
        headers = self._headers()
        payload: dict[str, object] = {
            "model": self.settings.openrouter_model,
            "messages": _chat_messages(self, system_instruction, history, message),
            "temperature": temperature,
        }
        if response_format is not None:
            payload["response_format"] = response_format

        response = requests.post(
            f"{self.settings.openrouter_base_url}/chat/completions",
            headers=headers,
            data=json.dumps(payload),
            timeout=timeout,
        )
        if response.status_code in {401, 429} or response.status_code >= 500:
            raise ProviderUnavailableError(f"openrouter_http_{response.status_code}")
        response.raise_for_status()
        return self._extract_content(response)

    def generate_json(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float = 0.0,
        timeout: float = 20.0,
    ) -> str:
        return self._post_chat(
            system_instruction,
            history,
            message,
            temperature=temperature,
            timeout=timeout,
            response_format={"type": "json_object"},
        )

    def generate_text(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float = 0.7,
        timeout: float = 20.0,
    ) -> str:
        return self._post_chat(system_instruction, history, message, temperature=temperature, timeout=timeout)


class OllamaProvider(BaseProvider):
    def _chat(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float,
        timeout: float,
        json_mode: bool = False,
    ) -> str:
        payload: dict[str, object] = {
            "model": self.settings.ollama_model,
            "messages": _chat_messages(self, system_instruction, history, message),
            "stream": False,
            "options": {"temperature": temperature},
        }
        if json_mode:
            payload["format"] = "json"
        response = requests.post(
            f"{self.settings.ollama_base_url}/api/chat",
            headers={"Content-Type": "application/json"},
            data=json.dumps(payload),
            timeout=timeout,
        )
        response.raise_for_status()
        body = response.json()
        reply = body.get("message", {})
        content = reply.get("content") if isinstance(reply, dict) else None
        if not isinstance(content, str):
            raise ProviderUnavailableError("ollama_unexpected_response")
        return content.strip()

    def generate_json(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float = 0.0,
        timeout: float = 20.0,
    ) -> str:
        return self._chat(system_instruction, history, message, temperature=temperature, timeout=timeout, json_mode=True)

    def generate_text(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float = 0.7,
        timeout: float = 20.0,
    ) -> str:
        return self._chat(system_instruction, history, message, temperature=temperature, timeout=timeout)


class InferenceGateway:
    """Ordered backend chain behind a single ``generate`` call.

    Backends are tried in configured order under one shared time budget;
    the first non-empty reply wins. When every backend fails the call raises
    ``InferenceUnavailableError`` so callers can apply their own fallback.
    """

    def __init__(self, settings: Settings, providers: dict[str, BaseProvider] | None = None) -> None:
        self.settings = settings
        self._providers: dict[str, BaseProvider] = providers or {
            "gemini": GeminiProvider(settings),
            "openrouter": OpenRouterProvider(settings),
            "ollama": OllamaProvider(settings),
            "stub": StubProvider(settings),
        }
        self.order: list[str] = []
        for name in settings.backend_order:
            if name in self._providers:
                self.order.append(name)
            else:
                log.warning("inference_backend_unknown backend=%s", name)
        if not self.order:
            self.order = ["stub"] if "stub" in self._providers else list(self._providers)[:1]

    async def generate(
        self,
        system_instruction: str,
        history: list[ChatMessage],
        message: str,
        *,
        temperature: float = 0.7,
        response_mime_type: str | None = None,
    ) -> GatewayReply:
        turns = coalesce_history(history)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.llm_timeout_seconds
        failures: list[str] = []
        for backend in self.order:
            remaining = deadline - loop.time()
            if remaining <= 0:
                log.warning("inference_budget_exhausted skipped=%s", backend)
                failures.append(f"{backend}:budget")
                break
            provider = self._providers[backend]
            call = provider.generate_json if response_mime_type == JSON_MIME_TYPE else provider.generate_text
            try:
                text = await asyncio.wait_for(
                    asyncio.to_thread(
                        call,
                        system_instruction,
                        turns,
                        message,
                        temperature=temperature,
                        timeout=remaining,
                    ),
                    timeout=remaining,
                )
            except TimeoutError:
                log.warning("inference_backend_timeout backend=%s remaining_seconds=%.2f", backend, remaining)
                failures.append(f"{backend}:timeout")
                continue
            except Exception:
                log.warning("inference_backend_failed backend=%s", backend, exc_info=True)
                failures.append(f"{backend}:error")
                continue
            text = (text or "").strip()
            if not text:
                log.warning("inference_backend_empty backend=%s", backend)
                failures.append(f"{backend}:empty")
                continue
            log.debug("inference_ok backend=%s chars=%s", backend, len(text))
            return GatewayReply(text=text, backend=backend)
        raise InferenceUnavailableError(f"all inference backends failed: {', '.join(failures)}")
