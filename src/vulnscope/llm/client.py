from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from .. import net
from ..config import LlmConfig
from ..utils import log_event


class LLMError(Exception):
    pass


class ChatClient(Protocol):
    def complete(self, prompt: str, *, timeout: float) -> str:
        ...


class OpenAICompatibleClient:
    """Single-turn client for any ``/chat/completions`` endpoint."""

    def __init__(self, base_url: str, api_key: str, model: str, temperature: float = 0.2) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self._logger = logging.getLogger("vulnscope.llm")

    @classmethod
    def from_config(cls, config: LlmConfig) -> "OpenAICompatibleClient":
        return cls(config.base_url, config.api_key, config.model)

    def complete(self, prompt: str, *, timeout: float) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
        }
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        url = _join_url(self.base_url, "/chat/completions")
        try:
            response = net.http_post_json(url, payload, headers=headers, timeout=timeout)
        except net.NetworkError as exc:
            raise LLMError(str(exc)) from exc
        if response.status >= 400:
            raise LLMError(f"http_error {response.status}: {response.text()[:500]}")
        try:
            body = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise LLMError("invalid_json_response") from exc
        content = _read_openai(body)
        log_event(
            self._logger,
            logging.DEBUG,
            "llm_completed",
            model=self.model,
            prompt_chars=len(prompt),
            reply_chars=len(content),
        )
        return content


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise LLMError("openai_missing_choices")
    message = choices[0].get("message") or {}
    content = message.get("content")
    if not isinstance(content, str):
        raise LLMError("openai_missing_content")
    return content


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
