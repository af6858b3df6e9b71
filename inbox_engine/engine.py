"""Composition root: builds the store, collaborator adapters, and the three periodic jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from inbox_engine.agents.approval_gate import UsageQuota
from inbox_engine.agents.base import TenantJob, TenantLocks
from inbox_engine.agents.circuit_breaker import CircuitBreaker
from inbox_engine.agents.dispatcher import Dispatcher
from inbox_engine.agents.draft_review import DraftReviewService
from inbox_engine.agents.followup_agent import FollowUpAgent
from inbox_engine.agents.inbound_agent import InboundAgent, InboundPipeline
from inbox_engine.agents.lead_resolver import LeadResolver
from inbox_engine.agents.reminder_agent import ReminderAgent
from inbox_engine.agents.response_generator import ResponseGenerator
from inbox_engine.config import Settings
from inbox_engine.services.ai_service import AiService
from inbox_engine.services.calendar_service import CalendarProvider, GoogleCalendarService
from inbox_engine.services.chat_service import ChatService
from inbox_engine.services.engine_store import EngineStore, create_engine_store, utc_now
from inbox_engine.services.gmail_service import GmailTransport, MailTransport

logger = logging.getLogger(__name__)

JOB_POLL = "poll"
JOB_FOLLOW_UPS = "follow-ups"
JOB_REMINDERS = "reminders"
JOB_NAMES = (JOB_POLL, JOB_FOLLOW_UPS, JOB_REMINDERS)


@dataclass
class Engine:
    store: EngineStore
    chat_service: ChatService | None
    ai_service: AiService
    transport: MailTransport
    calendar: CalendarProvider | None
    dispatcher: Dispatcher
    draft_review: DraftReviewService
    inbound_agent: InboundAgent
    follow_up_agent: FollowUpAgent
    reminder_agent: ReminderAgent

    def job(self, name: str) -> TenantJob:
        """Look up a periodic job by its trigger name."""

        jobs: dict[str, TenantJob] = {
            JOB_POLL: self.inbound_agent,
            JOB_FOLLOW_UPS: self.follow_up_agent,
            JOB_REMINDERS: self.reminder_agent,
        }
        if name not in jobs:
            raise KeyError(f"Unknown job {name!r}; expected one of {', '.join(JOB_NAMES)}")
        return jobs[name]

    def close(self) -> None:
        if self.chat_service is not None:
            self.chat_service.close()


def build_engine(
    settings: Settings,
    *,
    store: EngineStore | None = None,
    transport: MailTransport | None = None,
    ai_service: AiService | None = None,
    calendar: CalendarProvider | None = None,
    now_fn: Callable[[], datetime] = utc_now,
) -> Engine:
    """Wire every component from settings; collaborators can be injected for tests and scripts."""

    store = store or create_engine_store(
        database_url=settings.database_url,
        sqlite_path=settings.engine_sqlite_path,
    )
    chat_service: ChatService | None = None
    if ai_service is None:
        chat_service = ChatService(
            api_key=settings.llmod_api_key,
            base_url=settings.base_url,
            model=settings.chat_model,
            max_output_tokens=settings.chat_max_output_tokens,
        )
        ai_service = AiService(chat_service)
        if not ai_service.is_available:
            logger.warning("AI provider not configured (LLMOD_API_KEY/BASE_URL missing); generation will fail")
    transport = transport or GmailTransport(
        client_id=settings.gmail_client_id,
        client_secret=settings.gmail_client_secret,
    )
    calendar = calendar or GoogleCalendarService(
        client_id=settings.gmail_client_id,
        client_secret=settings.gmail_client_secret,
    )

    locks = TenantLocks()
    dispatcher = Dispatcher(store=store, now_fn=now_fn)
    quota = UsageQuota(store=store)
    generator = ResponseGenerator(
        store=store,
        ai_service=ai_service,
        calendar=calendar,
        calendar_days_ahead=settings.calendar_days_ahead,
        now_fn=now_fn,
    )
    pipeline = InboundPipeline(
        store=store,
        lead_resolver=LeadResolver(store=store, ai_service=ai_service, now_fn=now_fn),
        circuit_breaker=CircuitBreaker(store=store),
        response_generator=generator,
        dispatcher=dispatcher,
        quota=quota,
        now_fn=now_fn,
    )
    job_options = {
        "store": store,
        "transport": transport,
        "locks": locks,
        "max_auth_failures": settings.mail_max_auth_failures,
        "now_fn": now_fn,
    }
    return Engine(
        store=store,
        chat_service=chat_service,
        ai_service=ai_service,
        transport=transport,
        calendar=calendar,
        dispatcher=dispatcher,
        draft_review=DraftReviewService(
            store=store,
            transport=transport,
            dispatcher=dispatcher,
            now_fn=now_fn,
        ),
        inbound_agent=InboundAgent(
            pipeline=pipeline,
            max_unread_per_poll=settings.max_unread_per_poll,
            **job_options,
        ),
        follow_up_agent=FollowUpAgent(
            response_generator=generator,
            dispatcher=dispatcher,
            quota=quota,
            **job_options,
        ),
        reminder_agent=ReminderAgent(dispatcher=dispatcher, **job_options),
    )
