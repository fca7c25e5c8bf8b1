from __future__ import annotations

from typing import Any

import pytest
from PIL import Image
from pydantic import BaseModel

import boundscout.detectors.vlm_litellm as vlm
from boundscout.detectors.prompts import alignment_prompt, contextual_detection_prompt
from boundscout.detectors.vlm_litellm import LiteLLMOracle
from boundscout.vision.image import img_to_png_bytes
from boundscout.vision.types import DetectedElement, Point, Size


def _png() -> bytes:
    return img_to_png_bytes(Image.new("RGB", (8, 8), color=(10, 20, 30)))


def test_chat_api_sends_image_and_returns_text() -> None:
    seen: dict[str, Any] = {}

    def fake_completion(**kwargs: Any) -> dict[str, Any]:
        seen.update(kwargs)
        return {
            "choices": [
                {
                    "finish_reason": "stop",
                    "message": {"content": [{"type": "text", "text": "  <detected_buttons/>  "}]},
                }
            ]
        }

    old = vlm.litellm.completion
    vlm.litellm.completion = fake_completion  # type: ignore[assignment]
    try:
        text = LiteLLMOracle(model="openai/fake", max_tokens=123, timeout_s=5).ask(_png(), "find")
    finally:
        vlm.litellm.completion = old  # type: ignore[assignment]

    assert text == "<detected_buttons/>"
    assert seen["model"] == "openai/fake"
    assert seen["max_tokens"] == 123
    assert seen["timeout"] == 5
    content = seen["messages"][0]["content"]
    assert content[0] == {"type": "text", "text": "find"}
    assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")
    assert content[1]["image_url"]["detail"] == "high"


def test_responses_api_accepts_pydantic_payload() -> None:
    class _Resp(BaseModel):
        status: str
        output: list[dict[str, Any]]

    def fake_responses(**kwargs: Any) -> _Resp:
        assert kwargs["input"][0]["content"][1]["type"] == "input_image"
        return _Resp(
            status="completed",
            output=[
                {
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": "aligned: yes"}],
                }
            ],
        )

    old = vlm.litellm.responses
    vlm.litellm.responses = fake_responses  # type: ignore[assignment]
    try:
        text = LiteLLMOracle(model="openai/fake", api="responses").ask(_png(), "check")
    finally:
        vlm.litellm.responses = old  # type: ignore[assignment]

    assert text == "aligned: yes"


def test_empty_answer_raises() -> None:
    def fake_completion(**_: Any) -> dict[str, Any]:
        return {"choices": [{"finish_reason": "length", "message": {"content": None}}]}

    old = vlm.litellm.completion
    vlm.litellm.completion = fake_completion  # type: ignore[assignment]
    try:
        with pytest.raises(RuntimeError, match="empty content"):
            LiteLLMOracle(model="openai/fake").ask(_png(), "find")
    finally:
        vlm.litellm.completion = old  # type: ignore[assignment]


def test_prompts_name_the_element_and_the_attempt() -> None:
    el = DetectedElement(
        reference_name="login_button",
        center=Point(10, 10),
        size=Size(20, 10),
        description="Blue login button",
        confidence=64,
    )
    detect = contextual_detection_prompt(el)
    assert '"login_button"' in detect
    assert "Blue login button" in detect
    assert "64% confidence" in detect
    assert "<detected_buttons>" in detect

    first = alignment_prompt(el)
    assert "FOCUS: login_button" in first
    assert "<alignment_check>" in first
    assert "RETRY ATTEMPT" not in first
    assert "RETRY ATTEMPT 3" in alignment_prompt(el, attempt=3)
