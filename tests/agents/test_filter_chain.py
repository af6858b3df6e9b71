from __future__ import annotations

import pytest

from inbox_engine.agents.filter_chain import (
    PASS,
    REASON_AUTO_REPLY,
    REASON_MARKETING,
    REASON_SPAM,
    check_auto_reply,
    check_marketing,
    check_spam,
    run_filter_chain,
)
from inbox_engine.schemas import AutomationSettings
from inbox_engine.services.gmail_service import InboundEmail


def _email(
    *,
    sender: str = "Jane Doe <jane@example.com>",
    subject: str = "Leaky faucet",
    body: str = "Hi, my bathroom faucet is dripping. Could someone take a look this week?",
    headers: dict[str, str] | None = None,
) -> InboundEmail:
    return InboundEmail(
        id="m-1",
        thread_id="t-1",
        sender=sender,
        recipient="owner@acme.test",
        subject=subject,
        body=body,
        headers={k.lower(): v for k, v in (headers or {}).items()},
    )


def test_genuine_customer_email_passes_every_guard() -> None:
    settings = AutomationSettings(spam_filter=True, auto_archive_marketing=True)
    assert run_filter_chain(_email(), settings) == PASS


@pytest.mark.parametrize(
    "headers",
    [
        {"Auto-Submitted": "auto-replied"},
        {"X-Autoreply": "yes"},
        {"X-Autorespond": "1"},
        {"Precedence": "bulk"},
    ],
)
def test_auto_reply_headers_are_skipped(headers: dict[str, str]) -> None:
    verdict = check_auto_reply(_email(headers=headers))
    assert verdict.skip is True
    assert verdict.reason == REASON_AUTO_REPLY


def test_auto_submitted_no_is_a_human_message() -> None:
    assert check_auto_reply(_email(headers={"Auto-Submitted": "no"})).skip is False


def test_out_of_office_body_is_skipped() -> None:
    verdict = check_auto_reply(_email(body="I am currently out of office until Monday."))
    assert verdict.skip is True
    assert "out of office" in verdict.detail


def test_repeated_automatic_reply_subject_is_a_loop() -> None:
    email = _email(subject="Automatic reply: Automatic reply: your quote")
    assert check_auto_reply(email).skip is True


def test_deep_reply_chain_is_a_loop() -> None:
    email = _email(subject="Re: Re: Re: Re: Re: Leaky faucet")
    assert check_auto_reply(email).skip is True
    assert check_auto_reply(_email(subject="Re: Re: Leaky faucet")).skip is False


def test_noreply_sender_is_skipped() -> None:
    assert check_auto_reply(_email(sender="noreply@vendor.test")).skip is True


def test_spam_keyword_and_sender() -> None:
    assert check_spam(_email(body="Congratulations, you have won the lottery!")).reason == REASON_SPAM
    assert check_spam(_email(sender="MAILER-DAEMON@mx.example.com")).skip is True


def test_spam_guard_respects_toggle() -> None:
    email = _email(body="Guaranteed first page on Google with our SEO services")
    assert run_filter_chain(email, AutomationSettings(spam_filter=True)).reason == REASON_SPAM
    assert run_filter_chain(email, AutomationSettings(spam_filter=False)).skip is False


def test_marketing_only_when_archiving_enabled() -> None:
    email = _email(
        subject="Spring newsletter",
        body="Our spring sale is here. Click to unsubscribe.",
        sender="news@supplier.test",
    )
    assert check_marketing(email).reason == REASON_MARKETING
    assert run_filter_chain(email, AutomationSettings(auto_archive_marketing=False)).skip is False
    assert run_filter_chain(email, AutomationSettings(auto_archive_marketing=True)).skip is True


def test_list_unsubscribe_header_marks_marketing() -> None:
    email = _email(headers={"List-Unsubscribe": "<mailto:leave@list.test>"})
    assert check_marketing(email).detail == "List-Unsubscribe header"


def test_auto_reply_guard_wins_before_spam() -> None:
    email = _email(body="This is an automated message about your lottery prize", headers={})
    verdict = run_filter_chain(email, AutomationSettings(spam_filter=True))
    assert verdict.reason == REASON_AUTO_REPLY
