"""
Token Estimation

Token counts come from the backend when it reports them (OpenAI
`usage.completion_tokens`, Ollama `eval_count`). Otherwise they are
estimated as ceil(chars / 4) of the relevant text.

Response bodies arrive in three shapes:
- a single JSON document
- Ollama streaming: newline-delimited JSON objects
- OpenAI streaming: server-sent events, `data: {...}` lines ending in `data: [DONE]`
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import structlog

from ..core.task import USAGE_FIELDS

logger = structlog.get_logger()

CHARS_PER_TOKEN = 4
SSE_DONE = "[DONE]"


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _message_text(message: Any) -> str:
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    # Multi-part content: [{"type": "text", "text": "..."}]
    if isinstance(content, list):
        return "".join(
            part.get("text", "") for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
    return ""


def request_text(payload: Any) -> str:
    """Text a request asks the model to read."""
    if not isinstance(payload, dict):
        return ""

    messages = payload.get("messages")
    if isinstance(messages, list) and messages:
        return "".join(_message_text(m) for m in messages)

    prompt = payload.get("prompt")
    if isinstance(prompt, str) and prompt:
        return prompt
    if isinstance(prompt, list):
        return "".join(p for p in prompt if isinstance(p, str))

    value = payload.get("input")
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(v for v in value if isinstance(v, str))
    return ""


def estimate_input_tokens(payload: Any) -> int:
    return estimate_tokens(request_text(payload))


def parse_request_body(body: bytes) -> Optional[Dict[str, Any]]:
    if not body:
        return None
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def parse_response_body(body: bytes, content_type: str = "") -> List[Dict[str, Any]]:
    """Split a (possibly streamed) response body into JSON objects."""
    if not body:
        return []
    text = body.decode("utf-8", errors="replace").strip()
    if not text:
        return []

    if "text/event-stream" not in content_type and not text.startswith("data:"):
        try:
            document = json.loads(text)
            return [document] if isinstance(document, dict) else []
        except ValueError:
            pass

    chunks: List[Dict[str, Any]] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith("data:"):
            line = line[5:].strip()
            if line == SSE_DONE:
                break
        elif line.startswith(("event:", "id:", "retry:", ":")):
            continue
        try:
            chunk = json.loads(line)
        except ValueError:
            continue
        if isinstance(chunk, dict):
            chunks.append(chunk)
    return chunks


def _choice_text(choice: Any) -> str:
    if not isinstance(choice, dict):
        return ""
    # Streamed chat chunks carry `delta`, full responses carry `message`
    for key in ("message", "delta"):
        text = _message_text(choice.get(key))
        if text:
            return text
    text = choice.get("text")
    return text if isinstance(text, str) else ""


def response_text(chunks: Iterable[Dict[str, Any]]) -> str:
    """Text the model produced, joined across chunks."""
    parts: List[str] = []
    for chunk in chunks:
        choices = chunk.get("choices")
        if isinstance(choices, list):
            parts.extend(_choice_text(c) for c in choices)
            continue
        # Ollama generate / chat
        if isinstance(chunk.get("response"), str):
            parts.append(chunk["response"])
        else:
            parts.append(_message_text(chunk.get("message")))
    return "".join(parts)


@dataclass
class ResponseUsage:
    """Output token count and backend usage fields for one response."""
    output_tokens: int = 0
    prompt_tokens: Optional[int] = None
    durations: Dict[str, int] = field(default_factory=dict)

    def task_usage(self, input_tokens: int) -> Dict[str, int]:
        """Usage fields to record on the task."""
        usage = {name: 0 for name in USAGE_FIELDS}
        usage.update(self.durations)
        usage["prompt_eval_count"] = self.prompt_tokens if self.prompt_tokens is not None else input_tokens
        usage["eval_count"] = self.output_tokens
        return usage


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(0, int(value))


def extract_usage(chunks: List[Dict[str, Any]]) -> ResponseUsage:
    """Authoritative counts where reported, estimates otherwise."""
    completion_tokens: Optional[int] = None
    prompt_tokens: Optional[int] = None
    durations: Dict[str, int] = {}

    for chunk in chunks:
        usage = chunk.get("usage")
        if isinstance(usage, dict):
            value = _int_or_none(usage.get("completion_tokens"))
            if value is not None:
                completion_tokens = value
            value = _int_or_none(usage.get("prompt_tokens"))
            if value is not None:
                prompt_tokens = value

        # Ollama reports counts on the final chunk
        value = _int_or_none(chunk.get("eval_count"))
        if value is not None:
            completion_tokens = value
        value = _int_or_none(chunk.get("prompt_eval_count"))
        if value is not None:
            prompt_tokens = value
        for name in ("total_duration", "load_duration", "prompt_eval_duration", "eval_duration"):
            value = _int_or_none(chunk.get(name))
            if value is not None:
                durations[name] = value

    if completion_tokens is None:
        completion_tokens = estimate_tokens(response_text(chunks))

    return ResponseUsage(
        output_tokens=completion_tokens,
        prompt_tokens=prompt_tokens,
        durations=durations,
    )
