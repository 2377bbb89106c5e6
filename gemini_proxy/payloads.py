from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from gemini_proxy.errors import InvalidRequestError

EXPECTED_SHAPE_MESSAGE = "Expected { messages: [{role, content}, ...] }"
KNOWN_AUTHORS = frozenset({"system", "assistant", "user"})


class PayloadShape(str, Enum):
    GENERATE_MESSAGE = "generateMessage"
    GENERATE_CONTENT = "generateContent"


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: str
    content: str

    @property
    def author(self) -> str:
        normalized = self.role.strip().lower()
        if normalized in KNOWN_AUTHORS:
            return normalized
        return "user"


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def parse_messages(body: Any) -> list[ChatMessage]:
    """Validate an inbound ``{"messages": [...]}`` object.

    Only presence is checked: roles outside the known set are kept as given
    and content is never inspected beyond being stringified.
    """
    raw_messages = body.get("messages") if isinstance(body, dict) else None
    if not isinstance(raw_messages, list) or not raw_messages:
        raise InvalidRequestError(EXPECTED_SHAPE_MESSAGE, received_body=body)

    messages: list[ChatMessage] = []
    for item in raw_messages:
        if not isinstance(item, dict) or "content" not in item:
            raise InvalidRequestError(EXPECTED_SHAPE_MESSAGE, received_body=body)
        role = _coerce_text(item.get("role")) or "user"
        messages.append(ChatMessage(role=role, content=_coerce_text(item["content"])))
    return messages


def build_generate_content_payload(messages: list[ChatMessage]) -> dict[str, Any]:
    combined = "\n\n".join(
        f"{message.role.upper()}: {message.content}" for message in messages
    )
    return {
        "contents": [
            {
                "role": "user",
                "parts": [{"text": combined}],
            }
        ]
    }


def build_generate_message_payload(messages: list[ChatMessage]) -> dict[str, Any]:
    return {
        "prompt": {
            "messages": [
                {
                    "author": message.author,
                    "content": [{"type": "text", "text": message.content}],
                }
                for message in messages
            ]
        }
    }


def build_payload(shape: PayloadShape, messages: list[ChatMessage]) -> dict[str, Any]:
    if shape == PayloadShape.GENERATE_CONTENT:
        return build_generate_content_payload(messages)
    return build_generate_message_payload(messages)


def infer_shape(url: str | None) -> PayloadShape | None:
    """Guess the payload shape from the method suffix of an upstream URL."""
    if not url:
        return None
    lowered = url.lower()
    if "generatecontent" in lowered:
        return PayloadShape.GENERATE_CONTENT
    if "generatemessage" in lowered:
        return PayloadShape.GENERATE_MESSAGE
    return None
