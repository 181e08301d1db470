import json

import httpx
import pytest

from babygpt.delivery import DeliveryManager
from babygpt.flows import Flow
from babygpt.telegram import TelegramChannel, main_menu_keyboard, subtopic_keyboard


def recording_client(requests, response=None):
    def handler(request):
        requests.append(request)
        return response or httpx.Response(200, json={"ok": True, "result": True})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestKeyboards:
    def test_main_menu(self):
        rows = main_menu_keyboard()["inline_keyboard"]
        assert [row[0]["callback_data"] for row in rows] == [
            "flow:cry",
            "flow:nutrition",
            "flow:caregiver",
            "flow:advice",
        ]

    def test_subtopic_chips_end_with_main_menu(self):
        rows = subtopic_keyboard(Flow.CAREGIVER)["inline_keyboard"]
        data = [row[0]["callback_data"] for row in rows]
        assert data == ["sub:caregiver:infantcare", "sub:caregiver:helper", "sub:caregiver:nanny", "menu:main"]


class TestTelegramChannel:
    def test_token_required(self):
        with pytest.raises(ValueError):
            TelegramChannel("", delivery=None)

    @pytest.mark.asyncio
    async def test_send_message_payload(self):
        requests = []
        async with recording_client(requests) as client:
            channel = TelegramChannel("TOKEN", DeliveryManager(client))
            ack = await channel.send_message("42", "*Hi*", main_menu_keyboard())
        assert ack["ok"] is True
        request = requests[0]
        assert request.url.path == "/botTOKEN/sendMessage"
        body = json.loads(request.content)
        assert body["chat_id"] == "42"
        assert body["parse_mode"] == "Markdown"
        assert body["disable_web_page_preview"] is False
        assert body["reply_markup"] == main_menu_keyboard()

    @pytest.mark.asyncio
    async def test_dropped_reply_returns_none(self):
        requests = []
        async with recording_client(requests, httpx.Response(403, json={"ok": False})) as client:
            channel = TelegramChannel("TOKEN", DeliveryManager(client))
            assert await channel.send_message("42", "hi") is None

    @pytest.mark.asyncio
    async def test_answer_callback_and_set_webhook(self):
        requests = []
        async with recording_client(requests) as client:
            channel = TelegramChannel("TOKEN", DeliveryManager(client), api_base="https://tg.example/")
            await channel.answer_callback_query("cb-1")
            await channel.set_webhook("https://bot.example.org/")
        assert str(requests[0].url) == "https://tg.example/botTOKEN/answerCallbackQuery"
        assert json.loads(requests[0].content) == {"callback_query_id": "cb-1"}
        webhook = json.loads(requests[1].content)
        assert webhook["url"] == "https://bot.example.org/telegram/webhook"
        assert "callback_query" in webhook["allowed_updates"]

    @pytest.mark.asyncio
    async def test_markdown_rejection_is_resent_as_plain_text(self):
        requests = []
        responses = [
            httpx.Response(
                400,
                json={
                    "ok": False,
                    "error_code": 400,
                    "description": "Bad Request: can't parse entities: Can't find end of the entity starting at byte offset 7",
                },
            ),
            httpx.Response(200, json={"ok": True, "result": {"message_id": 9}}),
        ]

        def handler(request):
            requests.append(request)
            return responses[len(requests) - 1]

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            channel = TelegramChannel("TOKEN", DeliveryManager(client))
            ack = await channel.send_message("42", "Use baby_wipes *gently", main_menu_keyboard())
        assert ack == {"ok": True, "result": {"message_id": 9}}
        assert len(requests) == 2
        first, second = (json.loads(request.content) for request in requests)
        assert first["parse_mode"] == "Markdown"
        assert "parse_mode" not in second
        assert second["text"] == "Use baby_wipes *gently"
        assert second["reply_markup"] == main_menu_keyboard()

    @pytest.mark.asyncio
    async def test_other_bad_requests_are_not_resent(self):
        requests = []
        response = httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"})
        async with recording_client(requests, response) as client:
            channel = TelegramChannel("TOKEN", DeliveryManager(client))
            assert await channel.send_message("42", "hi") is None
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_plain_text_resend_happens_once(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(400, json={"ok": False, "description": "Bad Request: can't parse entities"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            channel = TelegramChannel("TOKEN", DeliveryManager(client))
            assert await channel.send_message("42", "*") is None
        assert len(requests) == 2
