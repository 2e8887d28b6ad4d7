"""Telegram Bot API gateway."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from runtime_state import CollaboratorNotConfigured, _env_float, _first_env

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org/bot{token}"

InboundHandler = Callable[[str], Awaitable[str]]


class TelegramGateway:
    """
    Two-way chat with a single allow-listed Telegram chat.

    Outbound: `send_message`. Inbound: `poll_updates` long-polls getUpdates;
    `run_inbound` loops forever handing allowed texts to a handler and
    sending back whatever it returns.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        chat_id: Optional[str] = None,
        *,
        poll_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.token = token if token is not None else _first_env(["TELEGRAM_BOT_TOKEN"])
        self.chat_id = chat_id if chat_id is not None else _first_env(["TELEGRAM_CHAT_ID"])
        self.poll_seconds = (
            poll_seconds
            if poll_seconds is not None
            else _env_float("TELEGRAM_POLL_SECONDS", 30.0, minimum=1.0)
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._last_update_id = 0

    @property
    def configured(self) -> bool:
        return bool(self.token and self.chat_id)

    def _require_config(self) -> None:
        missing = []
        if not self.token:
            missing.append("TELEGRAM_BOT_TOKEN")
        if not self.chat_id:
            missing.append("TELEGRAM_CHAT_ID")
        if missing:
            raise CollaboratorNotConfigured("telegram", missing)

    def _base_url(self) -> str:
        return TELEGRAM_API_BASE.format(token=self.token)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0), transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send_message(self, chat_id: Optional[str], text: str) -> Dict[str, Any]:
        self._require_config()
        url = f"{self._base_url()}/sendMessage"
        payload: Dict[str, Any] = {"chat_id": chat_id or self.chat_id, "text": text}
        resp = await self._get_client().post(url, json=payload)
        resp.raise_for_status()
        data: Dict[str, Any] = resp.json()
        return data

    async def poll_updates(self) -> List[str]:
        """New message texts from the allow-listed chat, oldest first."""
        self._require_config()
        url = f"{self._base_url()}/getUpdates"
        params: Dict[str, Any] = {"timeout": 0}
        if self._last_update_id:
            params["offset"] = self._last_update_id + 1

        resp = await self._get_client().get(url, params=params)
        resp.raise_for_status()
        updates: List[Dict[str, Any]] = resp.json().get("result", [])
        texts: List[str] = []
        for update in updates:
            if not isinstance(update, dict):
                continue
            update_id = update.get("update_id")
            if isinstance(update_id, int) and update_id > self._last_update_id:
                self._last_update_id = update_id
            message = update.get("message") or {}
            chat = message.get("chat") or {}
            sender_chat = str(chat.get("id", ""))
            if sender_chat != self.chat_id:
                logger.info("Ignored Telegram message from unauthorized chat %s", sender_chat)
                continue
            text = message.get("text")
            if text:
                texts.append(text)
        return texts

    async def run_inbound(self, handler: InboundHandler) -> None:
        """Poll until cancelled. Errors are logged and polling continues."""
        self._require_config()
        logger.info("Telegram polling started (every %.0fs)", self.poll_seconds)
        while True:
            try:
                for text in await self.poll_updates():
                    logger.info("Telegram message received: %s", text[:60])
                    try:
                        reply = await handler(text)
                    except Exception as exc:
                        logger.error("Telegram message handling failed: %s", exc)
                        reply = f"Error processing message: {exc}"
                    if reply:
                        await self.send_message(self.chat_id, reply)
            except httpx.HTTPError as exc:
                logger.error("Telegram polling error: %s", exc)
            except Exception as exc:
                logger.error("Telegram update handling failed: %s", exc, exc_info=True)
            await asyncio.sleep(self.poll_seconds)
