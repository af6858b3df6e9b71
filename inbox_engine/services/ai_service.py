"""Structured AI operations (classification, extraction, replies, quotes) over ChatService."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from inbox_engine.services.chat_service import ChatService

logger = logging.getLogger(__name__)

CLASSIFICATIONS = ("lead", "question", "spam", "customer", "problem")
INTENTS = ("quote_requested", "booking_requested", "information", "complaint", "other")

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class AiProviderError(RuntimeError):
    """The AI provider could not be reached or failed to answer."""


class AiOutputError(AiProviderError):
    """The AI provider answered, but the output does not have the expected shape."""


# ---------------------------------------------------------------------------
# Output shapes
# ---------------------------------------------------------------------------


class ExtractedFields(BaseModel):
    """Partial contact data pulled out of an inbound message. Unknown values are None."""

    name: str | None = None
    phone: str | None = None
    address: str | None = None
    service_type: str | None = None

    @field_validator("name", "phone", "address", "service_type", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        if not text or text.lower() in {"null", "none", "unknown", "n/a"}:
            return None
        return text


class Classification(BaseModel):
    """Category label plus the sender's most likely intent."""

    category: str
    confidence: float = Field(default=0.5, ge=0, le=1)
    intent: str | None = None

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value: Any) -> str:
        return str(value or "").strip().lower()

    @field_validator("intent", mode="before")
    @classmethod
    def _normalize_intent(cls, value: Any) -> str | None:
        if value is None:
            return None
        label = str(value).strip().lower().replace(" ", "_")
        if not label or label in {"null", "none"}:
            return None
        return label if label in INTENTS else "other"


class QuoteLine(BaseModel):
    description: str = Field(min_length=1)
    quantity: float = Field(gt=0)
    unit_price: float = Field(ge=0)


class QuoteDraft(BaseModel):
    """Quote proposal produced by the model; totals are computed by the caller."""

    title: str = Field(min_length=1)
    description: str | None = None
    items: list[QuoteLine] = Field(min_length=1)
    notes: str | None = None
    tax_rate: float = Field(default=0.0, ge=0, le=100)


@dataclass
class ConversationTurn:
    role: Literal["user", "assistant"]
    content: str


@dataclass
class ReplyRequest:
    """Everything the model sees when drafting one reply."""

    business_name: str | None
    business_type: str | None
    lead: dict[str, Any]
    inbound_subject: str
    inbound_text: str
    history: list[ConversationTurn] = field(default_factory=list)
    available_slots: list[str] = field(default_factory=list)
    follow_up: bool = False


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------


def parse_json_object(raw: str) -> dict[str, Any]:
    """Extract the first JSON object from model output (tolerates code fences and prose)."""

    text = _FENCE_RE.sub("", (raw or "").strip())
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_RE.search(text)
        if not match:
            raise AiOutputError(f"No JSON object in model output: {raw[:120]!r}") from None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise AiOutputError(f"Malformed JSON in model output: {exc}") from exc
    if not isinstance(data, dict):
        raise AiOutputError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _chat_turns(history: list[ConversationTurn], latest_text: str) -> list[tuple[str, str]]:
    """Prior turns for the chat transcript; the latest inbound is sent as the user prompt instead."""

    turns = [(turn.role, turn.content.strip()[:1500]) for turn in history]
    if turns and turns[-1][0] == "user" and turns[-1][1] == latest_text.strip()[:1500]:
        turns.pop()
    return turns


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AiService:
    """AI provider adapter: every call is blocking and raises AiProviderError on failure."""

    def __init__(self, chat_service: ChatService) -> None:
        self._chat = chat_service

    @property
    def is_available(self) -> bool:
        return self._chat.is_available

    @property
    def model(self) -> str:
        return self._chat.model

    def _complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        history: list[tuple[str, str]] | None = None,
    ) -> str:
        if not self._chat.is_available:
            raise AiProviderError("AI provider is not configured")
        try:
            return self._chat.generate(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                history=history or (),
            )
        except Exception as exc:
            raise AiProviderError(f"AI provider call failed: {type(exc).__name__}: {exc}") from exc

    def classify(self, *, subject: str, body: str) -> Classification:
        """Category (one of CLASSIFICATIONS), confidence in [0, 1] and intent (one of INTENTS)."""

        system_prompt = (
            "You label inbound business emails. Categories: "
            "lead (a prospect asking for a service, quote or visit), "
            "question (general question, not yet a sales opportunity), "
            "spam (unsolicited or irrelevant), "
            "customer (an existing customer following up), "
            "problem (a complaint or an issue with past work). "
            "Intents: quote_requested (asks for a price or estimate), "
            "booking_requested (asks for a visit or appointment), "
            "information (wants details only), complaint, other. "
            'Respond with JSON only: {"category": "<category>", '
            '"confidence": <0..1>, "intent": "<intent>"}.'
        )
        user_prompt = f"Subject: {subject}\n\n{body[:4000]}"
        data = parse_json_object(self._complete(system_prompt=system_prompt, user_prompt=user_prompt))
        if "category" not in data and "classification" in data:
            data["category"] = data.pop("classification")
        try:
            result = Classification.model_validate(data)
        except ValidationError as exc:
            raise AiOutputError(f"Invalid classification payload: {exc.error_count()} error(s)") from exc
        if result.category not in CLASSIFICATIONS:
            raise AiOutputError(f"Unknown classification {result.category!r}")
        return result

    def extract_contact_fields(self, *, sender: str, subject: str, body: str) -> ExtractedFields:
        system_prompt = (
            "Extract contact details from the email. Only report values explicitly present. "
            'Respond with JSON only: {"name": str|null, "phone": str|null, '
            '"address": str|null, "service_type": str|null}.'
        )
        user_prompt = f"From: {sender}\nSubject: {subject}\n\n{body[:4000]}"
        data = parse_json_object(self._complete(system_prompt=system_prompt, user_prompt=user_prompt))
        try:
            return ExtractedFields.model_validate(data)
        except ValidationError as exc:
            raise AiOutputError(f"Invalid extraction payload: {exc.error_count()} error(s)") from exc

    def generate_reply(self, request: ReplyRequest) -> str:
        """Draft a plain-text email body (no subject line)."""

        business = request.business_name or "our team"
        business_kind = f" ({request.business_type})" if request.business_type else ""
        task = (
            "Write a short, friendly follow-up to a lead who has not answered yet."
            if request.follow_up
            else "Write a helpful reply to the latest customer email."
        )
        slot_text = ""
        if request.available_slots:
            slot_text = (
                "\nOffer these appointment times (use the exact wording):\n"
                + "\n".join(f"- {slot}" for slot in request.available_slots)
            )
        system_prompt = (
            f"You answer emails on behalf of {business}{business_kind}. {task} "
            "Keep it under 180 words, plain text, no subject line, sign off with the business name. "
            "Never invent prices, dates or commitments that are not given to you."
        )
        lead_lines = "\n".join(f"{k}: {v}" for k, v in request.lead.items() if v)
        user_prompt = (
            f"Lead:\n{lead_lines or '(unknown)'}\n\n"
            f"Latest subject: {request.inbound_subject}\n"
            f"Latest message:\n{request.inbound_text[:4000]}"
            f"{slot_text}"
        )
        reply = self._complete(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            history=_chat_turns(request.history, request.inbound_text),
        ).strip()
        if not reply:
            raise AiOutputError("Empty reply from AI provider")
        return reply

    def generate_quote(
        self,
        *,
        business_type: str | None,
        service_type: str | None,
        address: str | None,
        request_text: str,
    ) -> QuoteDraft:
        system_prompt = (
            "You prepare a preliminary service quote for a small business"
            f"{' (' + business_type + ')' if business_type else ''}. "
            "Use realistic market prices in USD. Respond with JSON only: "
            '{"title": str, "description": str, "items": [{"description": str, '
            '"quantity": number, "unit_price": number}], "notes": str, "tax_rate": number}. '
            "tax_rate is a percentage (e.g. 8.25)."
        )
        user_prompt = (
            f"Service: {service_type or 'unspecified'}\n"
            f"Address: {address or 'unspecified'}\n\n"
            f"Customer request:\n{request_text[:4000]}"
        )
        data = parse_json_object(self._complete(system_prompt=system_prompt, user_prompt=user_prompt))
        try:
            return QuoteDraft.model_validate(data)
        except ValidationError as exc:
            raise AiOutputError(f"Invalid quote payload: {exc.error_count()} error(s)") from exc
