"""Vision oracle backed by a multimodal LLM through LiteLLM."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import litellm
from pydantic import BaseModel

from boundscout.vision.image import bytes_to_data_url

LOG = logging.getLogger(__name__)


class SupportsOracle(Protocol):
    """Protocol for a text-in/text-out vision oracle."""

    def ask(self, image_bytes: bytes, prompt: str) -> str:
        """Answer `prompt` about the encoded image."""
        ...


def _content_to_text(content: Any) -> str:
    """Best-effort normalization of provider content to a single text string."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    # Content blocks: [{"type": "text", "text": "..."}, ...]
    if isinstance(content, list):
        chunks = [
            item if isinstance(item, str) else item.get("text")
            for item in content
            if isinstance(item, (str, dict))
        ]
        return "\n".join(c for c in chunks if isinstance(c, str)).strip()
    if isinstance(content, dict) and isinstance(content.get("text"), str):
        return content["text"]
    return str(content)


def _response_to_dict(resp: Any) -> dict[str, Any]:
    """Normalize a LiteLLM response object to a plain dict."""
    if isinstance(resp, dict):
        return resp
    if isinstance(resp, BaseModel):
        return resp.model_dump()
    raise TypeError(f"Unsupported completion response type: {type(resp)!r}")


def _extract_choice_text(resp: dict[str, Any]) -> tuple[str, str]:
    """Return (text, finish_reason) from a Chat Completions payload."""
    choices = resp.get("choices") or []
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return "", ""
    c0 = choices[0]
    finish_reason = str(c0.get("finish_reason") or "")
    msg = c0.get("message")
    if isinstance(msg, dict) and "content" in msg:
        return _content_to_text(msg.get("content")).strip(), finish_reason
    return _content_to_text(c0.get("text")).strip(), finish_reason


def _extract_responses_text(resp: dict[str, Any]) -> tuple[str, str]:
    """Return (text, status) from a Responses API payload."""
    status = str(resp.get("status") or "")
    output_text = resp.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip(), status
    for item in resp.get("output") or []:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "message" and item.get("role") == "assistant":
            text = _content_to_text(item.get("content")).strip()
            if text:
                return text, status
    return "", status


@dataclass
class LiteLLMOracle:
    """Ask a vision model about one image per call.

    Attributes:
        model: Provider-prefixed LiteLLM model name (e.g. "openai/gpt-4o").
        temperature: Sampling temperature; low values keep answers stable across retries.
        max_tokens: Output token cap.
        timeout_s: Request timeout; a timeout surfaces as an exception like any
            other transport failure.
        detail: Image detail hint for providers that support it.
        api: "chat" for `litellm.completion`, "responses" for `litellm.responses`.
        verbose: Log the full answer text.
    """

    model: str
    temperature: float = 0.1
    max_tokens: int = 2000
    timeout_s: float | None = 60.0
    detail: str = "high"
    api: Literal["chat", "responses"] = "chat"
    verbose: bool = False

    def _ask_chat(self, data_url: str, prompt: str) -> tuple[str, str]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": data_url, "detail": self.detail}},
                    ],
                }
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if self.timeout_s is not None:
            kwargs["timeout"] = self.timeout_s
        resp = _response_to_dict(litellm.completion(**kwargs))
        return _extract_choice_text(resp)

    def _ask_responses(self, data_url: str, prompt: str) -> tuple[str, str]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "input": [
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": prompt},
                        {"type": "input_image", "image_url": data_url, "detail": self.detail},
                    ],
                }
            ],
            "temperature": self.temperature,
            "max_output_tokens": self.max_tokens,
        }
        if self.timeout_s is not None:
            kwargs["timeout"] = self.timeout_s
        resp = _response_to_dict(litellm.responses(**kwargs))  # type: ignore
        text, status = _extract_responses_text(resp)
        if not text:
            # Some providers still answer in Chat Completions shape.
            text, _ = _extract_choice_text(resp)
        return text, status

    def ask(self, image_bytes: bytes, prompt: str) -> str:
        """Send one image and prompt, returning the answer text.

        Raises:
            RuntimeError: If the model returns no text.
        """
        LOG.info("Oracle request: model=%s api=%s image=%s bytes", self.model, self.api, len(image_bytes))
        data_url = bytes_to_data_url(image_bytes)
        if self.api == "responses":
            text, status = self._ask_responses(data_url, prompt)
        else:
            text, status = self._ask_chat(data_url, prompt)
        LOG.info("Oracle response: status=%s chars=%s", status, len(text))
        if self.verbose:
            LOG.info("Oracle response content:\n%s", text)
        if not text:
            raise RuntimeError(
                f"Oracle returned empty content. model={self.model!r} status={status!r} "
                f"max_tokens={self.max_tokens}"
            )
        return text
