"""
Reasoning service adapter.

Talks to an OpenAI-compatible `/chat/completions` endpoint. Everything above
this module deals in plain `{"role", "content"}` turns; framing them into a
request body (system instruction, merged roles, inline images) happens here.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
from dotenv import find_dotenv, load_dotenv

from runtime_state import CollaboratorNotConfigured, _env_float, _first_env

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

logger = logging.getLogger(__name__)

TASK_NOTE_PREFIX = "[TASK NOTE] "
CONVERSATION_OPENER = "[Initializing conversation]"


@dataclass
class ImageInput:
    data: bytes
    mime_type: str = "image/png"

    def as_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass
class GenerationResult:
    text: str
    usage: Dict[str, Any] = field(default_factory=dict)


class ReasoningService(Protocol):
    async def generate(
        self,
        system_context: str,
        messages: List[Dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_output_tokens: int,
        images: Optional[List[ImageInput]] = None,
    ) -> GenerationResult:
        ...


class ReasoningServiceError(RuntimeError):
    """Transport-level or protocol-level failure talking to the model."""


def frame_messages(
    system_context: str, messages: List[Dict[str, str]]
) -> Tuple[str, List[Dict[str, str]]]:
    """
    Turn stream-shaped turns into a valid chat exchange.

    System turns are folded into the system instruction as task notes,
    consecutive turns of the same role are merged, and an exchange that
    would open with the assistant gets a synthetic user opener.
    """
    instruction = (system_context or "").strip()
    framed: List[Dict[str, str]] = []
    for message in messages:
        role = str(message.get("role") or "user")
        content = str(message.get("content") or "")
        if role == "system":
            instruction = f"{instruction}\n\n{TASK_NOTE_PREFIX}{content}".strip()
            continue
        if role not in {"user", "assistant"}:
            role = "user"
        if framed and framed[-1]["role"] == role:
            framed[-1]["content"] = f"{framed[-1]['content']}\n\n{content}"
            continue
        framed.append({"role": role, "content": content})

    if framed and framed[0]["role"] == "assistant":
        framed.insert(0, {"role": "user", "content": CONVERSATION_OPENER})
    if not framed:
        framed.append({"role": "user", "content": CONVERSATION_OPENER})
    return instruction, framed


def parse_json_object(raw_text: str) -> Optional[Dict[str, Any]]:
    """Best-effort JSON object extraction from a model reply."""
    candidate = (raw_text or "").strip()
    if not candidate:
        return None

    parse_candidates = [candidate]
    if candidate.startswith("```"):
        stripped = re.sub(r"^```(?:json)?\s*", "", candidate, flags=re.IGNORECASE)
        stripped = re.sub(r"\s*```$", "", stripped)
        parse_candidates.append(stripped.strip())

    start = candidate.find("{")
    end = candidate.rfind("}")
    if start >= 0 and end > start:
        parse_candidates.append(candidate[start : end + 1])

    for item in parse_candidates:
        try:
            parsed = json.loads(item)
        except (TypeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


class IdentityContext:
    """Core memory and directives flat files, read once and cached."""

    def __init__(
        self,
        core_memory_path: Optional[str] = None,
        directives_path: Optional[str] = None,
    ) -> None:
        self._core_memory_path = core_memory_path if core_memory_path is not None else _first_env(
            ["AGENT_CORE_MEMORY_PATH"]
        )
        self._directives_path = directives_path if directives_path is not None else _first_env(
            ["AGENT_DIRECTIVES_PATH"]
        )
        self._cached: Optional[str] = None

    @staticmethod
    def _read(path_value: str) -> str:
        if not path_value:
            return ""
        path = Path(path_value)
        try:
            return path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return ""
        except OSError as exc:
            logger.warning("Could not read identity file %s: %s", path, exc)
            return ""

    def system_instruction(self) -> str:
        if self._cached is None:
            parts = [
                self._read(self._core_memory_path),
                self._read(self._directives_path),
            ]
            self._cached = "\n\n".join(part for part in parts if part)
        return self._cached


class ReasoningClient:
    """Default ReasoningService over httpx."""

    def __init__(
        self,
        api_base: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        timeout_sec: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_base = self._normalize_chat_api_base(
            api_base if api_base is not None else _first_env(["LLM_API_BASE", "OPENAI_BASE_URL"])
        )
        self.api_key = api_key if api_key is not None else _first_env(["LLM_API_KEY", "OPENAI_API_KEY"])
        self._timeout_sec = (
            timeout_sec
            if timeout_sec is not None
            else _env_float("LLM_HTTP_TIMEOUT_SEC", 60.0, minimum=1.0)
        )
        self._transport = transport

    @staticmethod
    def _normalize_chat_api_base(base: str) -> str:
        normalized = (base or "").strip().rstrip("/")
        if not normalized:
            return ""
        lowered = normalized.lower()
        if lowered.endswith("/chat/completions"):
            return normalized[: -len("/chat/completions")]
        return normalized

    @staticmethod
    def _join_api_url(base: str, endpoint: str) -> str:
        return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"

    async def _post_json(
        self, endpoint: str, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        if not self.api_base:
            raise CollaboratorNotConfigured("reasoning service", ["LLM_API_BASE"])

        url = self._join_api_url(self.api_base, endpoint)
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            timeout = httpx.Timeout(self._timeout_sec)
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                parsed = response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            raise ReasoningServiceError(f"{type(exc).__name__}: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ReasoningServiceError("unexpected response shape")
        return parsed

    @staticmethod
    def _extract_chat_message_text(payload: Dict[str, Any]) -> str:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return ""
        first_choice = choices[0]
        if not isinstance(first_choice, dict):
            return ""
        message = first_choice.get("message")
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        if isinstance(content, str):
            return content.strip()
        if isinstance(content, list):
            parts: List[str] = []
            for item in content:
                if not isinstance(item, dict):
                    continue
                text_content = item.get("text")
                if isinstance(text_content, str) and text_content.strip():
                    parts.append(text_content.strip())
            return "\n".join(parts).strip()
        return ""

    @staticmethod
    def _build_chat_messages(
        system_context: str,
        messages: List[Dict[str, str]],
        images: Optional[List[ImageInput]],
    ) -> List[Dict[str, Any]]:
        instruction, framed = frame_messages(system_context, messages)
        body: List[Dict[str, Any]] = []
        if instruction:
            body.append({"role": "system", "content": instruction})
        body.extend(dict(item) for item in framed)

        if images:
            last_user = next(
                (item for item in reversed(body) if item["role"] == "user"), None
            )
            if last_user is not None:
                parts: List[Dict[str, Any]] = [
                    {"type": "text", "text": last_user["content"]}
                ]
                for image in images:
                    parts.append(
                        {"type": "image_url", "image_url": {"url": image.as_data_url()}}
                    )
                last_user["content"] = parts
        return body

    async def generate(
        self,
        system_context: str,
        messages: List[Dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_output_tokens: int,
        images: Optional[List[ImageInput]] = None,
    ) -> GenerationResult:
        if not model:
            raise CollaboratorNotConfigured("reasoning service", ["LLM_MODEL_NAME"])
        payload = {
            "model": model,
            "temperature": temperature,
            "max_tokens": max_output_tokens,
            "messages": self._build_chat_messages(system_context, messages, images),
        }
        response = await self._post_json("/chat/completions", payload)
        usage = response.get("usage")
        return GenerationResult(
            text=self._extract_chat_message_text(response),
            usage=usage if isinstance(usage, dict) else {},
        )
