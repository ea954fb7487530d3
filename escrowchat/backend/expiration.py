"""Inactivity deadlines and the periodic expiration sweep."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from escrowchat.backend.errors import BillingError
from escrowchat.backend.models import RefundReason, Session, SessionState

if TYPE_CHECKING:
    from escrowchat.backend.service import BillingService

logger = structlog.get_logger(__name__)

SWEEP_JOB_ID = "escrowchat-expiration-sweep"
_EXPIRABLE_STATES = (SessionState.AWAITING_PREPAID, SessionState.PAID_ACTIVE)


@dataclass(frozen=True)
class InactivityDeadlines:
    """Shorter deadline once the paid phase started, longer one otherwise."""

    paid: timedelta = timedelta(hours=48)
    total: timedelta = timedelta(hours=72)

    def applicable(self, session: Session) -> timedelta:
        return self.paid if session.first_paid_message_at is not None else self.total

    def expires_at(self, session: Session) -> datetime | None:
        if session.roles.is_free or session.state not in _EXPIRABLE_STATES:
            return None
        return session.last_activity_at + self.applicable(session)

    def is_due(self, session: Session, now: datetime) -> bool:
        if session.roles.is_free or session.state not in _EXPIRABLE_STATES:
            return False
        return now - session.last_activity_at > self.applicable(session)

    def close_reason_for(self, session: Session) -> RefundReason:
        """Why the session ended; the refund itself is always filed as EXPIRED."""
        if session.first_paid_message_at is not None:
            return RefundReason.NO_RESPONSE
        return RefundReason.EXPIRED


@dataclass
class SweepReport:
    expired: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class ExpirationScheduler:
    def __init__(
        self,
        service: BillingService,
        deadlines: InactivityDeadlines,
        interval_seconds: float = 3600.0,
        lock_timeout_seconds: float = 0.5,
        lock_retries: int = 3,
    ) -> None:
        self._service = service
        self._deadlines = deadlines
        self._interval_seconds = interval_seconds
        self._lock_timeout_seconds = lock_timeout_seconds
        self._lock_retries = lock_retries
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Expire every overdue session once; sessions already ended are left alone."""
        now = now or self._service.now()
        report = SweepReport()
        store = self._service.store

        for candidate in store.list_open_sessions():
            if not self._deadlines.is_due(candidate, now):
                continue
            session_id = candidate.session_id
            with self._service.locks.try_hold(session_id, self._lock_timeout_seconds, self._lock_retries) as acquired:
                if not acquired:
                    logger.info("sweep_lock_busy", session_id=session_id)
                    report.skipped.append(session_id)
                    continue
                session = store.get_session(session_id)
                if session is None or not self._deadlines.is_due(session, now):
                    continue
                try:
                    self._service.terminate(
                        session,
                        RefundReason.EXPIRED,
                        "system",
                        now,
                        close_reason=self._deadlines.close_reason_for(session),
                    )
                except BillingError as exc:
                    logger.error("sweep_expire_failed", session_id=session_id, error=exc.code)
                    report.failed.append(session_id)
                    continue
                report.expired.append(session_id)
            if session_id in report.expired:
                self._service.locks.discard(session_id)

        self._service.abuse_guard.purge_expired()
        logger.info(
            "sweep_finished",
            expired=len(report.expired),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    def start(self) -> None:
        if self.running:
            logger.warning("expiration_scheduler_already_running")
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=SWEEP_JOB_ID,
            name="Expire inactive chat sessions",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("expiration_scheduler_started", interval_seconds=self._interval_seconds)

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
        self._scheduler = None
        logger.info("expiration_scheduler_stopped")
