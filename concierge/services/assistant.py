"""Automated assistant: turns a conversation into the next reply.

The assistant is a collaborator of the orchestrator. It never touches the
database; it only reads the context and history it is given and returns
an AssistantReply describing what to say and what, if anything, to do
(book a slot, hold a product, hand over to a human).

A single LLM call both answers and decides, using the same line-oriented
output format approach as a combined classify+respond prompt:

    ACTION: reply | book | reserve | escalate
    REPLY: <text for the customer>
    DATE: <YYYY-MM-DD>        (book)
    SLOT: <slot label>        (book)
    EMAIL: <address>          (book, optional)
    PRODUCT: <product name>   (reserve)
    QUANTITY: <n>             (reserve, default 1)
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from concierge.core.exceptions import AssistantUnavailableError
from concierge.services.llm.base import LLMProvider

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BookingIntent:
    date: date
    slot: str
    email: str | None = None


@dataclass(frozen=True)
class ReservationIntent:
    product_name: str
    quantity: int = 1


@dataclass(frozen=True)
class AssistantReply:
    text: str
    media_url: str | None = None
    booking_intent: BookingIntent | None = None
    reservation_intent: ReservationIntent | None = None
    escalate: bool = False


@dataclass
class AssistantContext:
    """Tenant facts the assistant may rely on."""

    company_name: str
    persona_name: str = "Assistant"
    persona_description: str = "A friendly front-desk assistant."
    product_names: list[str] = field(default_factory=list)
    customer_email: str | None = None
    today: date = field(default_factory=date.today)


class Assistant(ABC):
    @abstractmethod
    async def respond(
        self,
        context: AssistantContext,
        history: list[BaseMessage],
        latest: str,
    ) -> AssistantReply:
        """Produce the reply to ``latest``.

        Raises:
            AssistantUnavailableError: the model could not be reached.
        """
        ...


# --------------------------------------------------------------------------- #
# Helpers
# --------------------------------------------------------------------------- #

_HUMAN_TRANSFER_PATTERNS = [
    r"\bhuman\b",
    r"\breal person\b",
    r"\b(speak|talk|chat) (to|with) (someone|somebody|a person|an agent|staff)\b",
    r"\b(live )?agent\b",
    r"\boperator\b",
    r"\brepresentative\b",
    r"\bsupervisor\b",
    r"\bmanager\b",
    r"\btransfer me\b",
    r"\bconnect me\b",
    r"\bescalate\b",
    r"\bcomplaint\b",
]
_HUMAN_TRANSFER_RE = re.compile("|".join(_HUMAN_TRANSFER_PATTERNS), re.IGNORECASE)


def detect_human_transfer_request(message: str) -> bool:
    """True when the customer explicitly asks for a person."""
    return bool(_HUMAN_TRANSFER_RE.search(message))


def window_history(messages: list[BaseMessage], window: int) -> list[BaseMessage]:
    """Keep the opening message plus the last ``window`` messages."""
    if window <= 0:
        return messages[:1]
    if len(messages) <= window + 1:
        return list(messages)
    return [messages[0], *messages[-window:]]


def to_langchain_messages(rows: list[tuple[str, str]]) -> list[BaseMessage]:
    """Convert (role, body) pairs to langchain_core chat messages."""
    return [
        HumanMessage(content=body) if role == "user" else AIMessage(content=body)
        for role, body in rows
    ]


_KEYS = ("ACTION", "REPLY", "DATE", "SLOT", "EMAIL", "PRODUCT", "QUANTITY", "MEDIA")
_KEY_RE = re.compile(r"^\s*(" + "|".join(_KEYS) + r")\s*:\s*(.*)$", re.IGNORECASE)


def parse_assistant_output(raw: str) -> AssistantReply:
    """Parse the model's ACTION/REPLY block into an AssistantReply.

    Unknown or malformed fields degrade to a plain reply. Text with no
    recognised keys is the reply.
    """
    fields: dict[str, list[str]] = {}
    current: str | None = None
    for line in raw.strip().splitlines():
        match = _KEY_RE.match(line)
        if match:
            current = match.group(1).upper()
            fields[current] = [match.group(2).strip()]
        elif current == "REPLY":
            fields["REPLY"].append(line.rstrip())

    if not fields:
        return AssistantReply(text=raw.strip())

    def value(key: str) -> str:
        return "\n".join(fields.get(key, [])).strip().strip("`\"'")

    text = value("REPLY")
    action = value("ACTION").lower().strip(".")
    media_url = value("MEDIA") or None

    if action == "escalate":
        return AssistantReply(
            text=text or _TRANSFER_REPLY, media_url=media_url, escalate=True
        )

    if action == "book":
        try:
            day = date.fromisoformat(value("DATE"))
        except ValueError:
            logger.debug("assistant_book_bad_date", raw_date=value("DATE"))
            return AssistantReply(text=text, media_url=media_url)
        slot = value("SLOT")
        if not slot:
            return AssistantReply(text=text, media_url=media_url)
        return AssistantReply(
            text=text,
            media_url=media_url,
            booking_intent=BookingIntent(date=day, slot=slot, email=value("EMAIL") or None),
        )

    if action == "reserve":
        product = value("PRODUCT")
        if not product:
            return AssistantReply(text=text, media_url=media_url)
        try:
            quantity = max(1, int(value("QUANTITY") or 1))
        except ValueError:
            quantity = 1
        return AssistantReply(
            text=text,
            media_url=media_url,
            reservation_intent=ReservationIntent(product_name=product, quantity=quantity),
        )

    return AssistantReply(text=text, media_url=media_url)


# --------------------------------------------------------------------------- #
# LLM-backed assistant
# --------------------------------------------------------------------------- #

_SYSTEM_PROMPT_TEMPLATE = """You are {persona_name}, the front-desk assistant for {company_name}.

Your role: {persona_description}

Rules you must follow without exception:
1. Be brief: one to three sentences.
2. Only offer products from this catalog: {products}.
3. To book an appointment you need a date and a time slot. Use ACTION: book only once the customer has chosen both.
4. To hold a product use ACTION: reserve with the product name and quantity.
5. If the customer is upset or asks for something you cannot do, use ACTION: escalate.
6. Never invent prices, stock levels or opening hours.

Today's date: {today}
Customer email on file: {customer_email}

Format your response EXACTLY like this:
ACTION: <reply | book | reserve | escalate>
REPLY: <your message to the customer>
DATE: <YYYY-MM-DD, only for book>
SLOT: <slot, only for book>
EMAIL: <customer email, only for book>
PRODUCT: <product name, only for reserve>
QUANTITY: <number, only for reserve>"""

_TRANSFER_REPLY = (
    "I'm connecting you with a member of our team now. "
    "Someone will reply here shortly."
)


class LLMAssistant(Assistant):
    """Assistant backed by an LLMProvider (Cerebras with Gemini fallback)."""

    def __init__(self, llm: LLMProvider) -> None:
        self._llm = llm

    @staticmethod
    def _build_system_prompt(context: AssistantContext) -> str:
        return _SYSTEM_PROMPT_TEMPLATE.format(
            persona_name=context.persona_name,
            company_name=context.company_name,
            persona_description=context.persona_description,
            products=", ".join(context.product_names) or "none",
            today=context.today.isoformat(),
            customer_email=context.customer_email or "unknown",
        )

    @staticmethod
    def _format_chat_history(history: list[BaseMessage]) -> str:
        lines: list[str] = []
        for msg in history:
            speaker = "Customer" if isinstance(msg, HumanMessage) else "Assistant"
            lines.append(f"{speaker}: {msg.content}")
        return "\n".join(lines) + ("\n" if lines else "")

    async def respond(
        self,
        context: AssistantContext,
        history: list[BaseMessage],
        latest: str,
    ) -> AssistantReply:
        if detect_human_transfer_request(latest):
            logger.info("assistant_human_transfer_requested")
            return AssistantReply(text=_TRANSFER_REPLY, escalate=True)

        prompt = (
            f"Chat history:\n{self._format_chat_history(history)}"
            f"Customer: {latest}\n"
        )
        try:
            result = await self._llm.generate(
                prompt=prompt,
                system_prompt=self._build_system_prompt(context),
                max_tokens=400,
                temperature=0.3,
            )
        except Exception as e:
            logger.error("assistant_generate_failed", error=str(e))
            raise AssistantUnavailableError() from e

        reply = parse_assistant_output(result.text)
        if not reply.text and not reply.escalate:
            # Blocked or empty generations still owe the customer an answer.
            reply = AssistantReply(
                text=f"Hi, I'm {context.persona_name}. How can I help you today?",
                media_url=reply.media_url,
                booking_intent=reply.booking_intent,
                reservation_intent=reply.reservation_intent,
            )
        logger.debug(
            "assistant_replied",
            escalate=reply.escalate,
            booking=reply.booking_intent is not None,
            reservation=reply.reservation_intent is not None,
            output_tokens=result.output_tokens,
        )
        return reply
