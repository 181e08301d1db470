"""Telegram Bot API adapter and inline keyboards."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .delivery import DeliveryManager, DeliveryState
from .flows import FLOW_CATALOG, MENU_FLOWS, Flow

logger = logging.getLogger("babygpt.telegram")

API_BASE = "https://api.telegram.org"
WEBHOOK_PATH = "/telegram/webhook"
ALLOWED_UPDATES = ["message", "callback_query", "edited_message"]
# Bot API description for a 400 caused by unbalanced Markdown markers.
ENTITY_PARSE_ERROR = "can't parse entities"

Keyboard = Dict[str, List[List[Dict[str, str]]]]


def main_menu_keyboard() -> Keyboard:
    return {
        "inline_keyboard": [
            [{"text": FLOW_CATALOG[flow].label, "callback_data": f"flow:{flow.value}"}] for flow in MENU_FLOWS
        ]
    }


def subtopic_keyboard(flow: Flow) -> Keyboard:
    """Chips for the flow's subtopics followed by a main-menu button."""
    spec = FLOW_CATALOG.get(flow)
    rows: List[List[Dict[str, str]]] = []
    if spec is not None:
        rows = [
            [{"text": subtopic.label, "callback_data": f"sub:{flow.value}:{subtopic.tag}"}]
            for subtopic in spec.subtopics
        ]
    rows.append([{"text": "⬅️ Main menu", "callback_data": "menu:main"}])
    return {"inline_keyboard": rows}


class TelegramChannel:
    def __init__(self, token: str, delivery: DeliveryManager, api_base: str = API_BASE) -> None:
        if not token:
            raise ValueError("TELEGRAM_BOT_TOKEN is required")
        self._token = token
        self._delivery = delivery
        self._api_base = api_base.rstrip("/")

    def endpoint(self, method: str) -> str:
        return f"{self._api_base}/bot{self._token}/{method}"

    async def send_message(
        self, chat_id: str, text: str, keyboard: Optional[Keyboard] = None
    ) -> Optional[Dict[str, Any]]:
        """Purpose: Post one reply to a chat through the retrying delivery manager.
        Inputs/Outputs: Inputs are chat id, Markdown text and optional inline keyboard;
            output is the Bot API acknowledgment or None when delivery failed.
        Side Effects / State: Outbound HTTP with retries.
        Dependencies: DeliveryManager.deliver.
        Failure Modes: Never raises for channel errors; None signals a dropped reply.
            A 400 for unparseable Markdown is resent once as plain text.
        If Removed: The router has no way to answer users.
        Testing Notes: Check the payload shape against a MockTransport.
        """
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "Markdown",
            "disable_web_page_preview": False,
        }
        if keyboard is not None:
            payload["reply_markup"] = keyboard
        report = await self._delivery.deliver(self.endpoint("sendMessage"), payload)
        if _is_entity_parse_error(report.outcome, report.status, report.error):
            logger.warning("chat=%s markdown rejected, resending as plain text", chat_id)
            plain = {key: value for key, value in payload.items() if key != "parse_mode"}
            report = await self._delivery.deliver(self.endpoint("sendMessage"), plain)
        if report.ack is None:
            logger.warning("chat=%s reply dropped outcome=%s", chat_id, report.outcome.value)
        return report.ack

    async def answer_callback_query(self, callback_query_id: str) -> Optional[Dict[str, Any]]:
        # Clears the spinner on the tapped button.
        return await self._delivery.send(
            self.endpoint("answerCallbackQuery"), {"callback_query_id": callback_query_id}
        )

    async def set_webhook(self, public_url: str) -> Optional[Dict[str, Any]]:
        payload = {"url": f"{public_url.rstrip('/')}{WEBHOOK_PATH}", "allowed_updates": ALLOWED_UPDATES}
        ack = await self._delivery.send(self.endpoint("setWebhook"), payload)
        logger.info("setWebhook url=%s ok=%s", payload["url"], bool(ack and ack.get("ok")))
        return ack


def _is_entity_parse_error(outcome: DeliveryState, status: Optional[int], error: str) -> bool:
    return outcome is DeliveryState.PERMANENT_FAILURE and status == 400 and ENTITY_PARSE_ERROR in error.lower()
