"""Shared per-tenant job runner and result types for the engine's periodic jobs."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from inbox_engine.schemas import AutomationSettings, StepLog, parse_automation_settings
from inbox_engine.services.engine_store import EngineStore, TenantRecord, utc_now
from inbox_engine.services.gmail_service import MailAccount, MailAuthError, Mailbox, MailTransport

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


@dataclass
class CycleResult:
    """Outcome of one job for one tenant."""

    job: str
    tenant_id: str
    status: str = STATUS_OK
    counts: Counter = field(default_factory=Counter)
    steps: list[StepLog] = field(default_factory=list)
    error: str | None = None


@dataclass
class RunSummary:
    """Outcome of one job across all tenants."""

    job: str
    results: list[CycleResult] = field(default_factory=list)

    @property
    def tenants_processed(self) -> int:
        return sum(1 for r in self.results if r.status == STATUS_OK)

    @property
    def tenants_failed(self) -> int:
        return sum(1 for r in self.results if r.status == STATUS_FAILED)

    def totals(self) -> dict[str, int]:
        total: Counter = Counter()
        for result in self.results:
            total.update(result.counts)
        return dict(total)


class TenantLocks:
    """One lock per tenant so two jobs never mutate the same tenant concurrently."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, tenant_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = self._locks[tenant_id] = threading.Lock()
            return lock


def mail_account_for(tenant: TenantRecord) -> MailAccount:
    return MailAccount(
        tenant_id=tenant.id,
        email=tenant.email,
        refresh_token=tenant.gmail_refresh_token or "",
        access_token=tenant.gmail_access_token,
    )


class TenantJob:
    """Iterates connected tenants with per-tenant failure isolation.

    Subclasses implement `run_tenant`. Any exception escaping it is logged with the
    tenant id and recorded; the loop continues with the next tenant. Mail auth
    failures additionally count toward disconnecting the tenant mailbox.
    """

    name: str = "job"

    def __init__(
        self,
        *,
        store: EngineStore,
        transport: MailTransport,
        locks: TenantLocks | None = None,
        max_auth_failures: int = 5,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.transport = transport
        self.locks = locks or TenantLocks()
        self.max_auth_failures = max(1, int(max_auth_failures))
        self.now = now_fn

    def run_tenant(
        self,
        tenant: TenantRecord,
        mailbox: Mailbox,
        settings: AutomationSettings,
        result: CycleResult,
    ) -> None:
        """Process one tenant, recording counts and steps on `result`."""

        raise NotImplementedError

    def open_mailbox(self, tenant: TenantRecord) -> Mailbox:
        return Mailbox(
            self.transport,
            mail_account_for(tenant),
            on_token_refresh=lambda token: self.store.update_tenant_tokens(tenant.id, access_token=token),
        )

    def run_all(self, should_stop: Callable[[], bool] | None = None) -> RunSummary:
        summary = RunSummary(job=self.name)
        for tenant in self.store.list_mail_tenants():
            if should_stop is not None and should_stop():
                logger.info("%s run stopping before tenant %s (shutdown requested)", self.name, tenant.id)
                break
            summary.results.append(self.run_one(tenant))
        logger.info(
            "%s run finished: processed=%s failed=%s totals=%s",
            self.name,
            summary.tenants_processed,
            summary.tenants_failed,
            summary.totals(),
        )
        return summary

    def run_one(self, tenant: TenantRecord) -> CycleResult:
        result = CycleResult(job=self.name, tenant_id=tenant.id)
        lock = self.locks.get(tenant.id)
        if not lock.acquire(blocking=False):
            logger.info("%s skipped tenant %s: another job holds it", self.name, tenant.id)
            result.status = STATUS_SKIPPED
            return result
        mailbox = self.open_mailbox(tenant)
        try:
            settings = parse_automation_settings(tenant.automation_settings_json)
            self.run_tenant(tenant, mailbox, settings, result)
        except MailAuthError as exc:
            result.status = STATUS_FAILED
            result.error = f"mail auth: {exc}"
            self._record_auth_failure(tenant, exc)
        except Exception as exc:
            logger.exception("%s failed for tenant %s", self.name, tenant.id)
            result.status = STATUS_FAILED
            result.error = f"{type(exc).__name__}: {exc}"
        else:
            if mailbox.successful_calls and tenant.mail_failure_count:
                self.store.reset_mail_failures(tenant.id)
        finally:
            lock.release()
        return result

    def _record_auth_failure(self, tenant: TenantRecord, exc: MailAuthError) -> None:
        failures = self.store.record_mail_failure(tenant.id)
        logger.warning(
            "%s: mailbox auth failed for tenant %s (%s/%s): %s",
            self.name,
            tenant.id,
            failures,
            self.max_auth_failures,
            exc,
        )
        if failures >= self.max_auth_failures:
            self.store.disable_mailbox(tenant.id)
            logger.error(
                "mailbox integration disabled for tenant %s after %s consecutive auth failures",
                tenant.id,
                failures,
            )
