from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pytest

from babygpt.canonical_bank import CanonicalAnswerBank
from babygpt.composer import AnswerComposer
from babygpt.config import BASE_DIR
from babygpt.intent_resolver import IntentResolver
from babygpt.judge import ArbitrationJudge
from babygpt.link_curator import LinkCurator
from babygpt.models import Update
from babygpt.router import ConversationRouter
from babygpt.session_store import SessionStore

PROMPTS_DIR = BASE_DIR / "prompts"
CANONICAL_PATH = BASE_DIR / "resources" / "canonical.json"


class FakeGemini:
    """Stand-in for GeminiClient; queued replies are consumed in call order.

    A queued exception instance is raised instead of returned.
    """

    def __init__(self, replies: Optional[List[Any]] = None, default: str = "") -> None:
        self.replies = list(replies or [])
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *replies: Any) -> None:
        self.replies.extend(replies)

    async def generate_content(
        self,
        contents: list,
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
        temperature: float = 0.2,
        max_output_tokens: int = 2048,
        json_mode: bool = False,
    ) -> str:
        self.calls.append(
            {
                "contents": contents,
                "model": model,
                "system_instruction": system_instruction,
                "temperature": temperature,
                "json_mode": json_mode,
            }
        )
        if not self.replies:
            return self.default
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def user_text(self, index: int) -> str:
        return self.calls[index]["contents"][0]["parts"][0]["text"]


class SlowGemini(FakeGemini):
    """Records enter/exit events around a short await to expose interleaving."""

    def __init__(self, delay: float = 0.02) -> None:
        super().__init__(default="Take it one step at a time.")
        self.delay = delay
        self.events: List[str] = []

    async def generate_content(self, contents: list, **kwargs: Any) -> str:
        text = contents[0]["parts"][0]["text"]
        self.events.append(f"enter:{text}")
        await asyncio.sleep(self.delay)
        self.events.append(f"exit:{text}")
        return await super().generate_content(contents, **kwargs)


@dataclass
class SentMessage:
    chat_id: str
    text: str
    keyboard: Optional[Dict[str, Any]] = None


class RecordingChannel:
    """Collects outbound messages instead of calling the Bot API."""

    def __init__(self) -> None:
        self.sent: List[SentMessage] = []
        self.callback_acks: List[str] = []
        self.webhooks: List[str] = []

    async def send_message(self, chat_id: str, text: str, keyboard: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.sent.append(SentMessage(chat_id, text, keyboard))
        return {"ok": True}

    async def answer_callback_query(self, callback_query_id: str) -> Dict[str, Any]:
        self.callback_acks.append(callback_query_id)
        return {"ok": True}

    async def set_webhook(self, public_url: str) -> Dict[str, Any]:
        self.webhooks.append(public_url)
        return {"ok": True}


@dataclass
class RouterHarness:
    router: ConversationRouter
    sessions: SessionStore
    channel: RecordingChannel
    gemini: FakeGemini
    reference_data: Any = None

    @property
    def texts(self) -> List[str]:
        return [message.text for message in self.channel.sent]


def text_update(chat_id: int, text: str, update_id: int = 1) -> Update:
    return Update.model_validate(
        {"update_id": update_id, "message": {"message_id": update_id, "chat": {"id": chat_id}, "text": text}}
    )


def callback_update(chat_id: int, data: str, callback_id: str = "cb1", update_id: int = 1) -> Update:
    return Update.model_validate(
        {
            "update_id": update_id,
            "callback_query": {
                "id": callback_id,
                "data": data,
                "message": {"message_id": 10, "chat": {"id": chat_id}, "text": "menu"},
            },
        }
    )


@pytest.fixture(scope="session")
def bank() -> CanonicalAnswerBank:
    return CanonicalAnswerBank.from_file(CANONICAL_PATH)


@pytest.fixture
def make_router(bank):
    def factory(
        replies: Optional[List[Any]] = None,
        gemini: Optional[FakeGemini] = None,
        classifier_enabled: bool = False,
        reference_data: Any = None,
    ) -> RouterHarness:
        gemini = gemini or FakeGemini(replies)
        sessions = SessionStore()
        resolver = IntentResolver(
            sessions.view(),
            gemini=gemini,
            prompts_dir=PROMPTS_DIR,
            classifier_enabled=classifier_enabled,
        )
        channel = RecordingChannel()
        router = ConversationRouter(
            sessions=sessions,
            resolver=resolver,
            bank=bank,
            composer=AnswerComposer(gemini, PROMPTS_DIR),
            judge=ArbitrationJudge(gemini, PROMPTS_DIR),
            curator=LinkCurator(bank),
            channel=channel,
            reference_data=reference_data,
        )
        return RouterHarness(router, sessions, channel, gemini, reference_data)

    return factory
