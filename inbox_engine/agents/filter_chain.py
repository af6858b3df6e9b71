"""Inbound mail guards: loop/auto-reply, spam and marketing.

Every guard is a pure function of the email (and the tenant settings for the
toggled ones) returning a FilterVerdict. The chain short-circuits on the first
guard that fires.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

from inbox_engine.schemas import AutomationSettings
from inbox_engine.services.gmail_service import InboundEmail

REASON_AUTO_REPLY = "auto_reply"
REASON_SPAM = "spam"
REASON_MARKETING = "marketing"

AUTO_REPLY_HEADERS = ("x-autoreply", "x-autorespond", "x-autoresponder")
AUTO_REPLY_PRECEDENCE = {"auto_reply", "bulk", "junk"}
NO_REPLY_PHRASES = (
    "out of office",
    "do not reply",
    "automatically generated",
    "auto-reply",
    "automatic reply",
    "this is an automated message",
    "please do not respond",
    "away from the office",
)
NO_REPLY_SENDER_PREFIXES = ("noreply@", "no-reply@", "donotreply@", "do-not-reply@")

SPAM_KEYWORDS = (
    "viagra",
    "casino",
    "lottery",
    "you have won",
    "claim your prize",
    "wire transfer",
    "bitcoin investment",
    "crypto investment",
    "make money fast",
    "work from home opportunity",
    "100% free",
    "risk-free",
    "nigerian prince",
    "seo services",
    "guaranteed first page",
    "increase your ranking",
)
SPAM_SENDER_PATTERNS = ("mailer-daemon@", "postmaster@", "bounce", "bounces@")

MARKETING_KEYWORDS = (
    "unsubscribe",
    "newsletter",
    "limited time offer",
    "special offer",
    "% off",
    "promo code",
    "exclusive deal",
    "view in browser",
    "view this email in your browser",
    "manage your preferences",
    "black friday",
    "flash sale",
)
MARKETING_SENDER_PATTERNS = (
    "newsletter@",
    "newsletters@",
    "marketing@",
    "promo@",
    "promotions@",
    "news@",
    "offers@",
    "deals@",
    "info@mailchimp",
    "mailchimp",
    "sendgrid",
    "campaign",
)

_AUTOMATIC_REPLY_RE = re.compile(r"automatic reply:", re.IGNORECASE)
_RE_PREFIX_RE = re.compile(r"\bre:", re.IGNORECASE)


@dataclass(frozen=True)
class FilterVerdict:
    """Outcome of the filter chain; `skip=True` drops the message before lead resolution."""

    skip: bool
    reason: str | None = None
    detail: str | None = None


PASS = FilterVerdict(skip=False)


def _text(email: InboundEmail) -> str:
    return f"{email.subject}\n{email.body}".lower()


def check_auto_reply(email: InboundEmail) -> FilterVerdict:
    """Detect out-of-office, auto-responder and loop-risk mail."""

    auto_submitted = (email.header("Auto-Submitted") or "").lower()
    if auto_submitted and auto_submitted != "no":
        return FilterVerdict(True, REASON_AUTO_REPLY, f"Auto-Submitted: {auto_submitted}")
    for name in AUTO_REPLY_HEADERS:
        if email.header(name) is not None:
            return FilterVerdict(True, REASON_AUTO_REPLY, f"header {name}")
    precedence = (email.header("Precedence") or "").lower()
    if precedence in AUTO_REPLY_PRECEDENCE:
        return FilterVerdict(True, REASON_AUTO_REPLY, f"Precedence: {precedence}")

    subject = email.subject or ""
    if len(_AUTOMATIC_REPLY_RE.findall(subject)) >= 2:
        return FilterVerdict(True, REASON_AUTO_REPLY, "repeated 'Automatic reply:' subject")
    if len(_RE_PREFIX_RE.findall(subject)) >= 5:
        return FilterVerdict(True, REASON_AUTO_REPLY, "reply chain too deep")

    body = (email.body or "").lower()
    for phrase in NO_REPLY_PHRASES:
        if phrase in body:
            return FilterVerdict(True, REASON_AUTO_REPLY, f"phrase '{phrase}'")

    sender = email.sender_email
    for prefix in NO_REPLY_SENDER_PREFIXES:
        if sender.startswith(prefix):
            return FilterVerdict(True, REASON_AUTO_REPLY, f"sender {sender}")
    return PASS


def check_spam(email: InboundEmail) -> FilterVerdict:
    text = _text(email)
    for keyword in SPAM_KEYWORDS:
        if keyword in text:
            return FilterVerdict(True, REASON_SPAM, f"keyword '{keyword}'")
    sender = email.sender_email
    for pattern in SPAM_SENDER_PATTERNS:
        if pattern in sender:
            return FilterVerdict(True, REASON_SPAM, f"sender {sender}")
    return PASS


def check_marketing(email: InboundEmail) -> FilterVerdict:
    if email.header("List-Unsubscribe") is not None:
        return FilterVerdict(True, REASON_MARKETING, "List-Unsubscribe header")
    text = _text(email)
    for keyword in MARKETING_KEYWORDS:
        if keyword in text:
            return FilterVerdict(True, REASON_MARKETING, f"keyword '{keyword}'")
    sender = email.sender_email
    for pattern in MARKETING_SENDER_PATTERNS:
        if pattern in sender:
            return FilterVerdict(True, REASON_MARKETING, f"sender {sender}")
    return PASS


def run_filter_chain(email: InboundEmail, settings: AutomationSettings) -> FilterVerdict:
    """Run the guards in order; the first one that fires wins."""

    guards: list[Callable[[InboundEmail], FilterVerdict]] = [check_auto_reply]
    if settings.spam_filter:
        guards.append(check_spam)
    if settings.auto_archive_marketing:
        guards.append(check_marketing)
    for guard in guards:
        verdict = guard(email)
        if verdict.skip:
            return verdict
    return PASS
