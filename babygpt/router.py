"""Conversation router: per-turn orchestration and the only writer of sessions.

Role:
    Turns one inbound chat update into at most one outbound reply. It owns the
    SessionStore, serializes work per conversation, and hosts the top-level
    error handler so a failing conversation never escapes into the server.

Turn pipeline (steps skip once a reply has been fixed):
    Safety          -> emergency/off-limits short-circuit, no completion calls.
    Intent          -> flow + optional subtopic tag; persists explicit selections.
    Canonical       -> canonical answer and base-steps hint for (flow, tag).
    Compose         -> generated answer; quota exhaustion ends the turn.
    Arbitrate       -> canonical vs generated selection (fail-safe canonical).
    Reference data  -> optional nearby infantcare centres.
    Curate          -> allow-listed reference links, capped.
    Render          -> reply body with links and disclaimer.
"""

from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Pattern, Tuple

from .adk_runtime import AdkAgent, AdkStep
from .canonical_bank import CanonicalAnswer, CanonicalAnswerBank
from .composer import AnswerComposer, GeneratedAnswer
from .errors import QuotaExceeded
from .flows import FLOW_CATALOG, PSEUDO_FLOWS, Flow
from .intent_resolver import ExplicitAction, IntentResolver, Resolution
from .judge import ArbitrationJudge, Selection
from .link_curator import LinkCurator
from .models import CallbackQuery, Update
from .reference_data import INFANTCARE_DATASET_KEYWORD, ReferenceDataClient, ReferenceRecord
from .safety import EMERGENCY_REPLY, SafetyClass, classify, safety_reply
from .session_store import SessionStore
from .telegram import Keyboard, TelegramChannel, main_menu_keyboard, subtopic_keyboard
from .utils import normalize_text

logger = logging.getLogger("babygpt.router")

INTRO_TEXT = """👶 *Hi, I'm BabyGPT (Singapore Edition)!*
Your friendly companion for first-time parents of babies aged 0–3.

I can help with:
1️⃣ *Health & Development* — sleep/crying, feeding & nutrition, milestones
2️⃣ *Caregiving Support* — infantcare & nanny/helper info, and resolving conflicting advice
3️⃣ *Parental Wellbeing* — gentle pointers for self-care

I'm not a medical professional, but I'll summarise steps and include trusted SG resources like HealthHub, ECDA, MOM.

*What would you like help with today?* 👇"""

HELP_TEXT = (
    "Here's what I can help with:\n"
    "• Crying & sleep\n"
    "• Feeding & nutrition\n"
    "• Milestones\n"
    "• Caregivers (infantcare, helper, nanny)\n"
    "• Conflicting advice\n"
    "• Your own wellbeing\n\n"
    "Tap a topic below or just type your question. Send /start to begin again."
)

MAINTENANCE_REPLY = "⚠️ BabyGPT is temporarily unavailable for maintenance. Please try again a little later."
DISCLAIMER = "_Disclaimer: General info only. For emergencies, call 995._"
MAX_REFERENCE_RECORDS = 3

# Reply-keyboard label texts some clients send instead of callback data.
LABEL_ACTIONS: List[Tuple[Pattern[str], Flow]] = [
    (re.compile(r"^\s*(?:🍼\s*)?crying\s*/\s*sleep\s*$", re.IGNORECASE), Flow.CRY),
    (re.compile(r"^\s*(?:🥣\s*)?nutrition\s*$", re.IGNORECASE), Flow.NUTRITION),
    (re.compile(r"^\s*(?:👩‍🍼\s*)?caregiving\s*$", re.IGNORECASE), Flow.CAREGIVER),
    (re.compile(r"^\s*(?:🧭\s*)?conflicting\s*advice\s*$", re.IGNORECASE), Flow.ADVICE),
]

AREA_RE = re.compile(r"\b(?:in|at|near|around)\s+([a-z][a-z ]{2,30}?)\s*(?:area|estate)?[?.!]*$")


@dataclass(frozen=True)
class CallbackAction:
    """Parsed `namespace:value[:value2]` callback payload."""
    namespace: str
    value: str
    value2: Optional[str] = None

    @classmethod
    def parse(cls, data: Optional[str]) -> Optional["CallbackAction"]:
        if not data or ":" not in data:
            return None
        parts = data.split(":", 2)
        namespace, value = parts[0].strip(), parts[1].strip()
        if not namespace or not value:
            return None
        value2 = parts[2].strip() if len(parts) == 3 and parts[2].strip() else None
        return cls(namespace=namespace, value=value, value2=value2)


@dataclass
class TurnContext:
    """Mutable context passed through each turn step."""
    conversation_id: str
    text: str
    explicit_action: Optional[ExplicitAction] = None
    safety: SafetyClass = SafetyClass.NONE
    resolution: Optional[Resolution] = None
    canonical: Optional[CanonicalAnswer] = None
    hint: str = ""
    generated: Optional[GeneratedAnswer] = None
    selection: Optional[Selection] = None
    records: List[ReferenceRecord] = field(default_factory=list)
    links: List[str] = field(default_factory=list)
    reply_text: str = ""
    keyboard: Optional[Keyboard] = None
    route: str = ""
    done: bool = False
    resolved: bool = False

    def finish(self, text: str, route: str, resolved: bool = False, keyboard: Optional[Keyboard] = None) -> None:
        """Fix the reply and skip the remaining steps."""
        self.reply_text = text
        self.route = route
        self.resolved = resolved
        self.keyboard = keyboard if keyboard is not None else main_menu_keyboard()
        self.done = True


def _is_done(context: object) -> bool:
    return bool(getattr(context, "done", False))


def extract_area(text: str) -> Optional[str]:
    """Pull a place name from phrases like "infantcare in Tampines"."""
    match = AREA_RE.search(normalize_text(text))
    if not match:
        return None
    return match.group(1).strip() or None


def render_reply(
    answer_text: str,
    links: List[str],
    bank: CanonicalAnswerBank,
    helplines: Optional[List[str]] = None,
    records: Optional[List[ReferenceRecord]] = None,
) -> str:
    """Compose the final reply: answer, optional nearby centres, references, disclaimer."""
    sections = [answer_text.strip()]
    if records:
        lines = [f"• {record.name} ({record.address})" if record.address else f"• {record.name}" for record in records]
        sections.append("*Nearby centres:*\n" + "\n".join(lines))
    info_lines = []
    for url in links:
        title = bank.title_for(url)
        info_lines.append(f"• {title}: {url}" if title else f"• {url}")
    info_lines.extend(f"• {line}" for line in helplines or [])
    if info_lines:
        sections.append("*More information:*\n" + "\n".join(info_lines))
    sections.append(DISCLAIMER)
    return "\n\n".join(sections)


class ConversationRouter:
    def __init__(
        self,
        sessions: SessionStore,
        resolver: IntentResolver,
        bank: CanonicalAnswerBank,
        composer: AnswerComposer,
        judge: ArbitrationJudge,
        curator: LinkCurator,
        channel: TelegramChannel,
        reference_data: Optional[ReferenceDataClient] = None,
    ) -> None:
        """Purpose: Wire the turn pipeline around its collaborators.
        Inputs/Outputs: Inputs are the session store (writable), resolver, bank, composer,
            judge, curator, outbound channel and optional reference lookup; no return.
        Side Effects / State: Builds the AdkAgent step runner and the lock table.
        Dependencies: AdkAgent/AdkStep and the step methods on this class.
        Failure Modes: None at init.
        If Removed: Webhook updates have nowhere to go.
        Testing Notes: Build with fake completion client and recording channel.
        """
        self._sessions = sessions
        self._resolver = resolver
        self._bank = bank
        self._composer = composer
        self._judge = judge
        self._curator = curator
        self._channel = channel
        self._reference_data = reference_data
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._agent = AdkAgent(
            steps=[
                AdkStep("safety", self._step_safety),
                AdkStep("intent", self._step_intent, skip_if=_is_done),
                AdkStep("canonical_lookup", self._step_canonical_lookup, skip_if=_is_done),
                AdkStep("compose", self._step_compose, skip_if=_is_done),
                AdkStep("arbitrate", self._step_arbitrate, skip_if=_is_done),
                AdkStep("reference_data", self._step_reference_data, skip_if=_is_done),
                AdkStep("curate", self._step_curate, skip_if=_is_done),
                AdkStep("render", self._step_render, skip_if=_is_done),
            ]
        )

    @property
    def channel(self) -> TelegramChannel:
        return self._channel

    @property
    def step_names(self) -> List[str]:
        return self._agent.step_names

    async def handle_update(self, update: Update) -> None:
        """Purpose: Top-level handler for one chat platform update.
        Inputs/Outputs: Input is a parsed Update; no return value.
        Side Effects / State: Session writes and outbound messages.
        Dependencies: _handle_callback, _handle_text.
        Failure Modes: Every exception is logged with traceback and the update is
            dropped without a reply.
        If Removed: One bad update could crash the background task runner.
        Testing Notes: Make the completion client raise a generic error and check
            nothing is sent and nothing propagates.
        """
        logger.info("update=%s kind=%s", update.update_id, update.kind)
        try:
            if update.callback_query is not None:
                await self._handle_callback(update.callback_query)
                return
            message = update.message or update.edited_message
            if message is None or not message.text:
                return
            await self._handle_text(str(message.chat.id), message.text)
        except Exception:
            logger.exception("update=%s kind=%s handler error; update dropped", update.update_id, update.kind)

    @asynccontextmanager
    async def _conversation_lock(self, conversation_id: str) -> AsyncIterator[None]:
        # Serialize turns of one conversation; different conversations run concurrently.
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._lock_users[conversation_id] = self._lock_users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[conversation_id] -= 1
            if self._lock_users[conversation_id] == 0:
                self._lock_users.pop(conversation_id, None)
                self._locks.pop(conversation_id, None)

    async def _handle_callback(self, callback: CallbackQuery) -> None:
        await self._channel.answer_callback_query(callback.id)
        action = CallbackAction.parse(callback.data)
        if callback.message is None or action is None:
            logger.info("callback=%s ignored data=%r", callback.id, callback.data)
            return
        chat_id = str(callback.message.chat.id)
        logger.info("chat=%s callback=%s:%s:%s", chat_id, action.namespace, action.value, action.value2)

        async with self._conversation_lock(chat_id):
            self._sessions.get_or_create(chat_id)
            if action.namespace == "flow":
                flow = Flow.parse(action.value)
                if flow is None or flow not in FLOW_CATALOG:
                    logger.info("chat=%s unknown flow callback=%s", chat_id, action.value)
                    return
                await self._select_flow(chat_id, flow)
            elif action.namespace == "sub":
                flow = Flow.parse(action.value)
                spec = FLOW_CATALOG.get(flow) if flow else None
                subtopic = spec.subtopic(action.value2) if spec else None
                if flow is None or subtopic is None:
                    logger.info("chat=%s unknown subtopic callback=%s:%s", chat_id, action.value, action.value2)
                    return
                await self._run_turn(chat_id, subtopic.question, ExplicitAction(flow=flow, tag=subtopic.tag))
            elif action.namespace == "menu" and action.value == "main":
                self._sessions.delete(chat_id)
                await self._channel.send_message(chat_id, INTRO_TEXT, main_menu_keyboard())
            else:
                logger.info("chat=%s unhandled callback namespace=%s", chat_id, action.namespace)

    async def _handle_text(self, chat_id: str, raw_text: str) -> None:
        text = raw_text.strip()
        if not text:
            return
        logger.info("chat=%s message=%s", chat_id, text)
        async with self._conversation_lock(chat_id):
            if text.split()[0].split("@")[0] == "/start":
                self._sessions.delete(chat_id)
                await self._channel.send_message(chat_id, INTRO_TEXT, main_menu_keyboard())
                return
            self._sessions.get_or_create(chat_id)
            for pattern, flow in LABEL_ACTIONS:
                if pattern.search(text):
                    await self._select_flow(chat_id, flow)
                    return
            await self._run_turn(chat_id, text)

    async def _select_flow(self, chat_id: str, flow: Flow) -> None:
        """Apply a menu selection: persist the flow and send its context prompt with chips."""
        resolution = await self._resolver.resolve(chat_id, "", ExplicitAction(flow=flow))
        self._persist_resolution(chat_id, resolution)
        spec = FLOW_CATALOG[flow]
        breadcrumb = f"\n\n_Current topic: {flow.value.upper()} • tap another button to change._"
        await self._channel.send_message(chat_id, f"{spec.prompt}{breadcrumb}", subtopic_keyboard(flow))

    def _persist_resolution(self, chat_id: str, resolution: Resolution) -> None:
        if not resolution.persist_flow:
            return
        session = self._sessions.get_or_create(chat_id)
        active = None if resolution.flow in PSEUDO_FLOWS else resolution.flow
        self._sessions.set(session.with_flow(active))
        logger.info("chat=%s session flow=%s turn=0", chat_id, active.value if active else None)

    async def _run_turn(self, chat_id: str, text: str, explicit_action: Optional[ExplicitAction] = None) -> TurnContext:
        context = TurnContext(conversation_id=chat_id, text=text, explicit_action=explicit_action)
        await self._agent.run(context)
        logger.info("chat=%s route=%s resolved=%s", chat_id, context.route, context.resolved)
        await self._channel.send_message(chat_id, context.reply_text, context.keyboard)
        if context.resolved:
            session = self._sessions.get_or_create(chat_id)
            self._sessions.set(session.next_turn())
        return context

    async def _step_safety(self, context: TurnContext) -> None:
        context.safety = classify(context.text)
        reply = safety_reply(context.safety)
        if reply is not None:
            context.finish(reply, route=f"safety_{context.safety.value}")

    async def _step_intent(self, context: TurnContext) -> None:
        try:
            resolution = await self._resolver.resolve(
                context.conversation_id, context.text, context.explicit_action
            )
        except QuotaExceeded:
            context.finish(MAINTENANCE_REPLY, route="quota")
            return
        context.resolution = resolution
        self._persist_resolution(context.conversation_id, resolution)
        if resolution.emergency:
            context.finish(EMERGENCY_REPLY, route="classifier_emergency")
        elif resolution.flow is Flow.HELP:
            context.finish(HELP_TEXT, route="help", resolved=True)

    async def _step_canonical_lookup(self, context: TurnContext) -> None:
        resolution = context.resolution
        context.canonical = self._bank.lookup(resolution.flow, resolution.tag)
        context.hint = self._bank.hint(resolution.flow)

    async def _step_compose(self, context: TurnContext) -> None:
        resolution = context.resolution
        try:
            context.generated = await self._composer.compose(
                resolution.flow, context.text, tag=resolution.tag, hint=context.hint
            )
        except QuotaExceeded:
            context.finish(MAINTENANCE_REPLY, route="quota")

    async def _step_arbitrate(self, context: TurnContext) -> None:
        context.selection = await self._judge.arbitrate(
            context.resolution.flow, context.text, context.canonical, context.generated
        )

    async def _step_reference_data(self, context: TurnContext) -> None:
        resolution = context.resolution
        if self._reference_data is None:
            return
        if resolution.flow is not Flow.CAREGIVER or resolution.tag != "infantcare":
            return
        area = extract_area(context.text)
        if not area:
            return
        context.records = await self._reference_data.search(
            INFANTCARE_DATASET_KEYWORD, area, limit=MAX_REFERENCE_RECORDS
        )

    async def _step_curate(self, context: TurnContext) -> None:
        resolution = context.resolution
        context.links = self._curator.curate(resolution.flow, resolution.tag, context.generated.text)

    async def _step_render(self, context: TurnContext) -> None:
        resolution = context.resolution
        text = render_reply(
            context.selection.text,
            context.links,
            self._bank,
            helplines=self._bank.helplines(resolution.flow),
            records=context.records,
        )
        context.finish(text, route=f"answer_{context.selection.source.value}", resolved=True)
