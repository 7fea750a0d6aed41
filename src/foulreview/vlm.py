from __future__ import annotations

from abc import ABC, abstractmethod
import base64
from dataclasses import dataclass
import json
import os
import re
from typing import Any, Mapping, Sequence
from urllib import error as url_error
from urllib import request as url_request


DEFAULT_ENDPOINT = "http://localhost:8000/v1/chat/completions"
DEFAULT_MODEL = "Qwen/Qwen2.5-VL-7B-Instruct"


@dataclass(slots=True)
class GenerationConfig:
    endpoint: str = DEFAULT_ENDPOINT
    model: str = DEFAULT_MODEL
    max_tokens: int = 4096
    timeout_sec: float = 180.0
    temperature: float = 0.0
    api_key: str | None = None

    def validate(self) -> None:
        if not self.endpoint.strip():
            raise ValueError("LLM endpoint cannot be empty")
        if not self.model.strip():
            raise ValueError("LLM model cannot be empty")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.timeout_sec <= 0:
            raise ValueError("timeout_sec must be > 0")

    @staticmethod
    def from_env(environ: Mapping[str, str] | None = None) -> "GenerationConfig":
        env = os.environ if environ is None else environ
        return GenerationConfig(
            endpoint=env.get("FOULREVIEW_LLM_ENDPOINT", DEFAULT_ENDPOINT),
            model=env.get("FOULREVIEW_LLM_MODEL", DEFAULT_MODEL),
            api_key=env.get("FOULREVIEW_API_KEY") or None,
        )


class GenerationRequestError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def client_fault(self) -> bool:
        return self.status is not None and 400 <= self.status < 500


class BaseGenerator(ABC):
    """Text generation over a prompt and zero or more images."""

    model_name: str

    @abstractmethod
    def generate(self, prompt: str, images: Sequence[bytes] = ()) -> str:
        raise NotImplementedError


def guess_image_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def image_bytes_to_data_url(data: bytes) -> str:
    b64 = base64.b64encode(data).decode("ascii")
    return f"data:{guess_image_mime(data)};base64,{b64}"


def extract_chat_completion_text(response_payload: Mapping[str, Any]) -> str:
    """
    Parse OpenAI-compatible chat completion payload text.
    """
    choices = response_payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, Mapping):
        return ""
    message = first.get("message")
    if not isinstance(message, Mapping):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        text_parts: list[str] = []
        for item in content:
            if not isinstance(item, Mapping):
                continue
            if item.get("type") == "text" and isinstance(item.get("text"), str):
                text_parts.append(item["text"].strip())
        return "\n".join(part for part in text_parts if part).strip()
    return ""


def post_chat_completion(
    *,
    endpoint: str,
    payload: Mapping[str, Any],
    timeout_sec: float,
    api_key: str | None = None,
) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    request = url_request.Request(
        endpoint,
        data=body,
        headers=headers,
        method="POST",
    )
    try:
        with url_request.urlopen(request, timeout=float(timeout_sec)) as response:
            raw = response.read().decode("utf-8")
    except url_error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise GenerationRequestError(
            f"LLM request failed with HTTP {exc.code}: {detail[:300]}",
            status=exc.code,
        ) from exc
    except Exception as exc:
        raise GenerationRequestError(f"LLM request failed: {exc}") from exc
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise GenerationRequestError(f"LLM returned non-JSON payload: {raw[:300]}") from exc
    if not isinstance(parsed, dict):
        raise GenerationRequestError("LLM returned an unexpected payload shape")
    return parsed


def build_chat_messages(prompt: str, images: Sequence[bytes]) -> list[dict[str, Any]]:
    if not images:
        return [{"role": "user", "content": prompt}]
    content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
    for image in images:
        content.append({"type": "image_url", "image_url": {"url": image_bytes_to_data_url(image)}})
    return [{"role": "user", "content": content}]


class ChatCompletionGenerator(BaseGenerator):
    def __init__(self, config: GenerationConfig) -> None:
        config.validate()
        self.config = config
        self.model_name = config.model

    def generate(self, prompt: str, images: Sequence[bytes] = ()) -> str:
        payload = {
            "model": self.config.model,
            "messages": build_chat_messages(prompt, images),
            "max_tokens": int(self.config.max_tokens),
            "temperature": float(self.config.temperature),
        }
        parsed = post_chat_completion(
            endpoint=self.config.endpoint,
            payload=payload,
            timeout_sec=self.config.timeout_sec,
            api_key=self.config.api_key,
        )
        return extract_chat_completion_text(parsed)


def extract_json_object_from_text(text: str) -> dict[str, Any]:
    direct = text.strip()
    if direct:
        try:
            parsed = json.loads(direct)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, flags=re.DOTALL | re.IGNORECASE)
    if fenced:
        try:
            parsed = json.loads(fenced.group(1))
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        candidate = text[start : end + 1]
        parsed = json.loads(candidate)
        if isinstance(parsed, dict):
            return parsed

    raise ValueError("Could not parse JSON object from model output")
