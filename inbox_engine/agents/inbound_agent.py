"""Inbound mail automation: poll each tenant mailbox and run every unread message
through a LangChain pipeline of RunnableLambda stages.

FilterMessage -> ResolveLead -> CircuitBreaker -> GenerateReply -> DispatchReply

A stage halts the pipeline by returning `halted` with a reason. The message is
marked read once it has been handled (stored, filtered, or answered); on an AI
provider failure it stays unread so the next poll retries it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from langchain_core.runnables import RunnableLambda

from inbox_engine.agents.approval_gate import (
    LIMIT_REACHED_CLASSIFICATION,
    UsageQuota,
    decide,
    limit_notice_text,
)
from inbox_engine.agents.base import CycleResult, TenantJob, TenantLocks
from inbox_engine.agents.circuit_breaker import CircuitBreaker
from inbox_engine.agents.dispatcher import Dispatcher
from inbox_engine.agents.filter_chain import run_filter_chain
from inbox_engine.agents.lead_resolver import LeadResolver
from inbox_engine.agents.response_generator import ResponseGenerator, reply_subject
from inbox_engine.schemas import AutomationSettings, StepLog
from inbox_engine.services.engine_store import (
    DIRECTION_INBOUND,
    EngineStore,
    MessageRecord,
    TenantRecord,
    new_id,
    utc_now,
)
from inbox_engine.services.gmail_service import InboundEmail, MailAuthError, Mailbox, MailTransport

logger = logging.getLogger(__name__)

HALT_DUPLICATE = "duplicate"
HALT_FILTERED = "filtered"
HALT_AUTO_RESPOND_OFF = "auto_respond_disabled"
HALT_BREAKER = "circuit_breaker"
HALT_QUOTA = "quota_exhausted"


class InboundPipeline:
    """Per-message decision pipeline composed of RunnableLambda stages."""

    def __init__(
        self,
        *,
        store: EngineStore,
        lead_resolver: LeadResolver,
        circuit_breaker: CircuitBreaker,
        response_generator: ResponseGenerator,
        dispatcher: Dispatcher,
        quota: UsageQuota,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._resolver = lead_resolver
        self._breaker = circuit_breaker
        self._generator = response_generator
        self._dispatcher = dispatcher
        self._quota = quota
        self._now = now_fn

        self.filter_message = RunnableLambda(self._filter_stage).with_config(
            run_name="FilterMessage",
        )
        self.resolve_lead = RunnableLambda(self._resolve_stage).with_config(
            run_name="ResolveLead",
        )
        self.circuit_breaker = RunnableLambda(self._breaker_stage).with_config(
            run_name="CircuitBreaker",
        )
        self.generate_reply = RunnableLambda(self._generate_stage).with_config(
            run_name="GenerateReply",
        )
        self.dispatch_reply = RunnableLambda(self._dispatch_stage).with_config(
            run_name="DispatchReply",
        )

    # -- state merge helper --------------------------------------------------------

    @staticmethod
    def _apply(state: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
        merged = dict(state)
        new_steps = updates.pop("steps", [])
        merged.update(updates)
        merged["steps"] = merged.get("steps", []) + new_steps
        return merged

    # -- main orchestration --------------------------------------------------------

    def invoke(self, state: dict[str, Any]) -> dict[str, Any]:
        """Run the stages in order until one halts. Required keys: tenant, mailbox, settings, email."""

        for stage in (
            self.filter_message,
            self.resolve_lead,
            self.circuit_breaker,
            self.generate_reply,
            self.dispatch_reply,
        ):
            state = self._apply(state, stage.invoke(state))
            if state.get("halted"):
                break
        return state

    # -- stage implementations -----------------------------------------------------

    def _filter_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        email: InboundEmail = state["email"]
        settings: AutomationSettings = state["settings"]
        verdict = run_filter_chain(email, settings)
        step = StepLog(
            module="inbound.filter",
            prompt={"message_id": email.id, "sender": email.sender_email, "subject": email.subject},
            response={"skip": verdict.skip, "reason": verdict.reason, "detail": verdict.detail},
        )
        if verdict.skip:
            logger.info("message %s filtered (%s: %s)", email.id, verdict.reason, verdict.detail)
            return {"halted": HALT_FILTERED, "verdict": verdict, "steps": [step]}
        return {"verdict": verdict, "steps": [step]}

    def _resolve_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        email: InboundEmail = state["email"]
        settings: AutomationSettings = state["settings"]
        resolution = self._resolver.resolve(tenant=state["tenant"], email=email, settings=settings)
        lead = resolution.lead
        now = self._now()
        inbound = MessageRecord(
            id=new_id(),
            lead_id=lead.id,
            direction=DIRECTION_INBOUND,
            content=email.body,
            subject=email.subject,
            from_email=email.sender_email,
            to_email=state["tenant"].email,
            classification=resolution.classification,
            read_at=now,
            provider_message_id=email.id,
            provider_thread_id=email.thread_id,
            rfc_message_id=email.message_id_header,
            rfc_references=email.references,
            created_at=now,
        )
        stored = self._store.insert_message(inbound)
        updates: dict[str, Any] = {
            "lead": lead,
            "is_new_contact": resolution.is_new,
            "classification": resolution.classification,
            "steps": resolution.steps,
        }
        if stored is None:
            logger.info("message %s already ingested, skipping", email.id)
            updates["halted"] = HALT_DUPLICATE
            return updates
        updates["inbound"] = stored
        if not settings.auto_respond_emails:
            updates["halted"] = HALT_AUTO_RESPOND_OFF
        return updates

    def _breaker_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        lead = state["lead"]
        verdict = self._breaker.check(lead.id, self._now())
        step = StepLog(
            module="inbound.circuit_breaker",
            prompt={"lead_id": lead.id},
            response={
                "tripped": verdict.tripped,
                "reason": verdict.reason,
                "outbound_count": verdict.outbound_count,
                "window_size": verdict.window_size,
            },
        )
        if verdict.tripped:
            logger.warning("circuit breaker tripped for lead %s (%s)", lead.id, verdict.reason)
            return {"halted": HALT_BREAKER, "steps": [step]}
        return {"steps": [step]}

    def _generate_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        tenant = state["tenant"]
        mailbox: Mailbox = state["mailbox"]
        lead = state["lead"]
        inbound: MessageRecord = state["inbound"]
        email: InboundEmail = state["email"]
        settings: AutomationSettings = state["settings"]

        quota = self._quota.check(tenant, self._now())
        if not quota.allowed:
            logger.warning(
                "AI conversation limit reached for tenant %s (%s/%s)", tenant.id, quota.used, quota.limit
            )
            notice = self._dispatcher.dispatch(
                mailbox=mailbox,
                lead=lead,
                subject=reply_subject(email.subject),
                body=limit_notice_text(quota.used, quota.limit),
                auto_send=False,
                inbound=inbound,
                is_ai_generated=False,
                classification=LIMIT_REACHED_CLASSIFICATION,
            )
            step = StepLog(
                module="inbound.quota",
                prompt={"tenant_id": tenant.id},
                response={"used": quota.used, "limit": quota.limit, "notice_id": notice.message.id},
            )
            return {"halted": HALT_QUOTA, "steps": [step]}

        try:
            reply = self._generator.generate(
                tenant=tenant,
                account=mailbox.account,
                lead=lead,
                inbound_subject=email.subject,
                inbound_text=email.body,
                settings=settings,
            )
        except Exception:
            # un-ingest so the still-unread message is picked up again next poll
            self._store.delete_message(inbound.id)
            if state.get("is_new_contact"):
                # the retry must still see a first-time sender
                self._store.discard_empty_lead(lead.id)
            raise
        self._quota.record_generation(tenant)
        outcome = self._generator.apply_consequences(
            tenant=tenant,
            account=mailbox.account,
            lead=lead,
            reply=reply,
            inbound_text=email.body,
            settings=settings,
        )
        return {"reply": reply, "lead": outcome.lead, "outcome": outcome, "steps": reply.steps + outcome.steps}

    def _dispatch_stage(self, state: dict[str, Any]) -> dict[str, Any]:
        reply = state["reply"]
        lead = state["lead"]
        decision = decide(state["settings"], now=self._now(), is_new_contact=state["is_new_contact"])
        result = self._dispatcher.dispatch(
            mailbox=state["mailbox"],
            lead=lead,
            subject=reply.subject,
            body=reply.body,
            auto_send=decision.auto_send,
            inbound=state["inbound"],
            is_ai_generated=True,
            confidence=reply.confidence,
            classification=state.get("classification"),
        )
        step = StepLog(
            module="inbound.dispatch",
            prompt={"lead_id": lead.id, "auto_send": decision.auto_send, "reason": decision.reason},
            response={"message_id": result.message.id, "sent": result.sent, "error": result.error},
        )
        return {"dispatch": result, "decision": decision, "steps": [step]}


class InboundAgent(TenantJob):
    """Poll job: fetch unread mail per tenant and run it through the InboundPipeline."""

    name = "poll"

    def __init__(
        self,
        *,
        store: EngineStore,
        transport: MailTransport,
        pipeline: InboundPipeline,
        max_unread_per_poll: int = 10,
        locks: TenantLocks | None = None,
        max_auth_failures: int = 5,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(
            store=store,
            transport=transport,
            locks=locks,
            max_auth_failures=max_auth_failures,
            now_fn=now_fn,
        )
        self.pipeline = pipeline
        self.max_unread_per_poll = max(1, int(max_unread_per_poll))

    def run_tenant(
        self,
        tenant: TenantRecord,
        mailbox: Mailbox,
        settings: AutomationSettings,
        result: CycleResult,
    ) -> None:
        message_ids = mailbox.list_unread(max_results=self.max_unread_per_poll)
        result.counts["unread"] += len(message_ids)
        for message_id in message_ids:
            if self.store.message_exists(message_id):
                mailbox.mark_read(message_id)
                result.counts[HALT_DUPLICATE] += 1
                continue
            try:
                state = self.process_message(tenant, mailbox, settings, message_id)
            except MailAuthError:
                raise
            except Exception:
                logger.exception("processing message %s failed for tenant %s", message_id, tenant.id)
                result.counts["errors"] += 1
                continue
            result.steps.extend(state.get("steps", []))
            halted = state.get("halted")
            if halted:
                result.counts[halted] += 1
            elif state.get("dispatch") is not None and state["dispatch"].sent:
                result.counts["sent"] += 1
            else:
                result.counts["drafted"] += 1

    def process_message(
        self,
        tenant: TenantRecord,
        mailbox: Mailbox,
        settings: AutomationSettings,
        message_id: str,
    ) -> dict[str, Any]:
        email = mailbox.get_message(message_id)
        state = self.pipeline.invoke(
            {"tenant": tenant, "mailbox": mailbox, "settings": settings, "email": email, "steps": []}
        )
        mailbox.mark_read(message_id)
        return state
