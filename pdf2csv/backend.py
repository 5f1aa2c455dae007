"""Model endpoints: OpenAI-compatible chat/batch API and Ollama chat.

Both backends expose ``complete(messages, ...) -> str`` returning the raw
model text. HTTP failures surface as ``HttpError`` so the retry layer can
tell rate limits and server errors from client errors.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Protocol

from .errors import ConfigurationError, HttpError
from .models import OllamaSettings
from .runtime import CancellationToken, raise_if_cancelled
from .utils import (
    APP_NAME,
    BATCH_COMPLETION_WINDOW,
    BATCH_ENDPOINT,
    DEFAULT_OLLAMA_BASE_URL,
    DEFAULT_OPENAI_BASE_URL,
)

log = logging.getLogger(__name__)

BACKEND_KINDS = ("openai", "ollama")
DEFAULT_TIMEOUT_S = 180.0
_DATA_URL_RE = re.compile(r"^data:[^;]+;base64,(.+)$", re.DOTALL)


@dataclass(frozen=True)
class BackendConfig:
    kind: str = "openai"
    base_url: str = ""
    api_key: str = ""
    model: str = ""
    timeout_s: float = DEFAULT_TIMEOUT_S
    ollama: OllamaSettings = field(default_factory=OllamaSettings)

    @property
    def resolved_base_url(self) -> str:
        base = self.base_url.strip() or (
            DEFAULT_OPENAI_BASE_URL if self.kind == "openai" else DEFAULT_OLLAMA_BASE_URL
        )
        return base.rstrip("/")

    def validate(self, *, require_model: bool = True) -> None:
        if self.kind not in BACKEND_KINDS:
            raise ConfigurationError(f"Unsupported backend kind: {self.kind!r}")
        if not self.resolved_base_url:
            raise ConfigurationError("Base URL is required.")
        if require_model and not self.model.strip():
            raise ConfigurationError("Model is required.")


class ChatBackend(Protocol):
    kind: str
    model: str

    def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        json_mode: bool = True,
        tool: Optional[dict[str, Any]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> str: ...


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------


def build_chat_completion_body(
    model: str,
    messages: list[dict[str, Any]],
    *,
    json_mode: bool = False,
) -> dict[str, Any]:
    body: dict[str, Any] = {"model": model, "messages": messages}
    if json_mode:
        body["response_format"] = {"type": "json_object"}
    return body


def parse_openai_content(data: Any) -> str:
    """Pull the assistant text out of a chat completion body."""
    choices = data.get("choices") if isinstance(data, dict) else None
    message = None
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
    content = message.get("content") if isinstance(message, dict) else None

    if isinstance(content, str):
        return content
    if isinstance(content, list):
        text = "".join(
            part["text"]
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
        if text:
            return text
    raise ValueError("OpenAI-compatible endpoint returned an unexpected response shape.")


def data_url_to_base64(url: str) -> Optional[str]:
    match = _DATA_URL_RE.match(url)
    return match.group(1) if match else None


def to_ollama_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Flatten OpenAI-style content parts into Ollama ``content`` + ``images``."""
    converted: list[dict[str, Any]] = []
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            converted.append({"role": message["role"], "content": content})
            continue

        texts: list[str] = []
        images: list[str] = []
        for part in content or []:
            if part.get("type") == "text" and str(part.get("text", "")).strip():
                texts.append(part["text"])
            elif part.get("type") == "image_url":
                encoded = data_url_to_base64(part.get("image_url", {}).get("url", ""))
                if encoded:
                    images.append(encoded)

        payload: dict[str, Any] = {
            "role": message["role"],
            "content": "\n".join(texts).strip() or "Analyze the provided page image.",
        }
        if images:
            payload["images"] = images
        converted.append(payload)
    return converted


def build_ollama_options(settings: OllamaSettings) -> dict[str, Any]:
    return {
        "temperature": settings.temperature,
        "top_p": settings.top_p,
        "top_k": settings.top_k,
        "min_p": settings.min_p,
        "repeat_penalty": settings.repeat_penalty,
        "num_ctx": settings.context_size,
    }


def _field(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def parse_ollama_content(data: Any) -> str:
    """Prefer native tool-call arguments, then message content, then ``response``."""
    message = _field(data, "message")
    tool_calls = _field(message, "tool_calls") or []
    if tool_calls:
        arguments = _field(_field(tool_calls[0], "function"), "arguments")
        if isinstance(arguments, str):
            return arguments
        if isinstance(arguments, dict):
            return json.dumps(arguments)

    content = _field(message, "content")
    if isinstance(content, str):
        return content
    fallback = _field(data, "response")
    if isinstance(fallback, str):
        return fallback
    raise ValueError("Ollama endpoint returned an unexpected response shape.")


def should_retry_without_tools(error: BaseException) -> bool:
    message = str(error).lower()
    return "tool" in message or "unsupported" in message or "unknown field" in message


# ---------------------------------------------------------------------------
# OpenAI-compatible
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def _openai_errors() -> Iterator[None]:
    import openai

    try:
        yield
    except openai.APIStatusError as exc:
        raise HttpError(
            exc.status_code,
            f"Request failed ({exc.status_code}): {str(exc.message)[:240]}",
        ) from exc


class OpenAIBackend:
    """Chat completions and batch jobs against an OpenAI-compatible API."""

    kind = "openai"

    def __init__(self, config: BackendConfig, client: Any = None) -> None:
        self.config = config
        self.model = config.model
        if client is None:
            from openai import OpenAI

            client = OpenAI(
                base_url=config.resolved_base_url,
                api_key=config.api_key.strip() or os.environ.get("OPENAI_API_KEY") or "EMPTY",
                timeout=config.timeout_s,
                max_retries=0,
            )
        self.client = client

    def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        json_mode: bool = True,
        tool: Optional[dict[str, Any]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> str:
        raise_if_cancelled(cancel)
        body = build_chat_completion_body(self.model, messages, json_mode=json_mode)
        with _openai_errors():
            response = self.client.chat.completions.create(**body)
        raise_if_cancelled(cancel)
        return parse_openai_content(response.model_dump())

    def list_models(self) -> list[str]:
        with _openai_errors():
            page = self.client.models.list()
        ids = sorted(item.id for item in page if getattr(item, "id", None))
        if not ids:
            raise ValueError("No models were returned by the endpoint. Enter a model ID manually.")
        return ids

    # -- batch API ----------------------------------------------------------

    def upload_batch_input(self, data: bytes, file_name: str) -> dict[str, Any]:
        with _openai_errors():
            uploaded = self.client.files.create(
                file=(file_name, data, "application/jsonl"),
                purpose="batch",
            )
        return uploaded.model_dump()

    def create_batch(
        self,
        input_file_id: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "input_file_id": input_file_id,
            "endpoint": BATCH_ENDPOINT,
            "completion_window": BATCH_COMPLETION_WINDOW,
        }
        if metadata:
            kwargs["metadata"] = metadata
        with _openai_errors():
            batch = self.client.batches.create(**kwargs)
        return batch.model_dump()

    def retrieve_batch(self, batch_id: str) -> dict[str, Any]:
        with _openai_errors():
            batch = self.client.batches.retrieve(batch_id)
        return batch.model_dump()

    def cancel_batch(self, batch_id: str) -> dict[str, Any]:
        with _openai_errors():
            batch = self.client.batches.cancel(batch_id)
        return batch.model_dump()

    def download_file_text(self, file_id: str) -> str:
        with _openai_errors():
            content = self.client.files.content(file_id)
        return content.text


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def _ollama_errors() -> Iterator[None]:
    import ollama

    try:
        yield
    except ollama.ResponseError as exc:
        status = exc.status_code if isinstance(exc.status_code, int) else 500
        raise HttpError(status, f"Request failed ({status}): {str(exc.error)[:240]}") from exc


class OllamaBackend:
    """Chat against a local or remote Ollama server."""

    kind = "ollama"

    def __init__(self, config: BackendConfig, client: Any = None) -> None:
        self.config = config
        self.model = config.model
        if client is None:
            from ollama import Client

            client = Client(host=config.resolved_base_url, timeout=config.timeout_s)
        self.client = client

    def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        json_mode: bool = True,
        tool: Optional[dict[str, Any]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> str:
        raise_if_cancelled(cancel)
        settings = self.config.ollama
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_ollama_messages(messages),
            "options": build_ollama_options(settings),
            "stream": False,
        }
        if json_mode:
            kwargs["format"] = "json"
        use_tools = settings.use_native_tool_calling and tool is not None
        if use_tools:
            kwargs["tools"] = [{"type": "function", "function": tool}]

        try:
            with _ollama_errors():
                response = self.client.chat(**kwargs)
        except Exception as exc:
            if not use_tools or not should_retry_without_tools(exc):
                raise
            log.info("Ollama rejected native tool calling (%s); retrying without tools", exc)
            kwargs.pop("tools", None)
            raise_if_cancelled(cancel)
            with _ollama_errors():
                response = self.client.chat(**kwargs)

        raise_if_cancelled(cancel)
        return parse_ollama_content(response)

    def list_models(self) -> list[str]:
        with _ollama_errors():
            listing = self.client.list()
        names = sorted(
            name
            for name in (
                _field(item, "model") or _field(item, "name")
                for item in (_field(listing, "models") or [])
            )
            if name
        )
        if not names:
            raise ValueError(
                "No Ollama models were returned by /api/tags. Enter a model name manually."
            )
        return names


def create_backend(config: BackendConfig, *, require_model: bool = True) -> ChatBackend:
    """Validate *config* and build the matching backend."""
    config.validate(require_model=require_model)
    if config.kind == "openai":
        return OpenAIBackend(config)
    return OllamaBackend(config)


def batch_metadata(model: str) -> dict[str, str]:
    return {"app": APP_NAME, "model": model}
