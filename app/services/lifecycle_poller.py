"""Lifecycle poller: time-driven sweeps that move stalled work forward.

Each sweep has its own single-flight guard, so a slow run is never
overlapped by the next tick of the same sweep. Sweeps catch per-item errors
and continue with the next item.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import exists
from sqlalchemy.orm import Session

from app.config import NON_IDEMPOTENT_ROLES, PipelineSettings, settings
from app.database import SessionLocal, utcnow
from app.models.company import Company
from app.models.deal import Deal
from app.models.lead import Lead
from app.models.pending_offer import PendingOffer
from app.models.research import MarketResearch
from app.models.task import Task
from app.schemas.task import TaskCreate
from app.services import deal_state
from app.services.audit import record_audit
from app.services.settings_store import SettingsStore
from app.websocket.manager import emit_event

logger = logging.getLogger(__name__)

MANUAL_REVIEW_MESSAGE = "Stale task requires manual review"

STALE_OFFER_INTERVAL = timedelta(hours=6)
SILENT_DEAL_INTERVAL = timedelta(hours=6)
LOST_DEAL_INTERVAL = timedelta(hours=24)
SATISFACTION_INTERVAL = timedelta(hours=24)
RESEARCH_INTERVAL = timedelta(hours=1)
STALE_TASK_INTERVAL = timedelta(minutes=1)


class SingleFlightGuard:
    """At most one run of a job at a time, owned by the poller instance."""

    def __init__(self, name: str):
        self.name = name
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def try_acquire(self) -> bool:
        if self._running:
            return False
        self._running = True
        return True

    def release(self) -> None:
        self._running = False

    reset = release


class LifecyclePoller:
    JOBS = ("replies", "stale_offers", "silent_deals", "lost_deals", "satisfaction", "research", "stale_tasks")

    def __init__(
        self,
        engine,
        session_factory: Callable[[], Session] = SessionLocal,
        settings_store: Optional[SettingsStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.session_factory = session_factory
        self.settings_store = settings_store or SettingsStore(session_factory)
        self.clock = clock
        self.guards: Dict[str, SingleFlightGuard] = {name: SingleFlightGuard(name) for name in self.JOBS}
        self._loops: List[asyncio.Task] = []

    # ── Scheduling ──

    async def start(self, startup_delay: Optional[float] = None) -> None:
        delay = settings.POLLER_STARTUP_DELAY_SECONDS if startup_delay is None else startup_delay
        jobs = {
            "replies": (self.poll_replies, lambda s: timedelta(minutes=s.reply_poll_interval_minutes)),
            "stale_offers": (self.sweep_stale_offers, lambda s: STALE_OFFER_INTERVAL),
            "silent_deals": (self.sweep_silent_early_deals, lambda s: SILENT_DEAL_INTERVAL),
            "lost_deals": (self.sweep_lost_deals, lambda s: LOST_DEAL_INTERVAL),
            "satisfaction": (self.sweep_satisfaction, lambda s: SATISFACTION_INTERVAL),
            "research": (self.sweep_research, lambda s: RESEARCH_INTERVAL),
            "stale_tasks": (self.sweep_stale_tasks, lambda s: STALE_TASK_INTERVAL),
        }
        for name, (job, interval) in jobs.items():
            self._loops.append(asyncio.create_task(self._poll_loop(name, job, interval, delay)))
        logger.info("LifecyclePoller started (%d jobs, first run in %ss)", len(self._loops), delay)

    async def stop(self) -> None:
        for loop in self._loops:
            loop.cancel()
        for loop in self._loops:
            try:
                await loop
            except asyncio.CancelledError:
                pass
        self._loops.clear()
        logger.info("LifecyclePoller stopped")

    async def _poll_loop(self, name: str, job: Callable[[], Awaitable[int]],
                         interval: Callable[[PipelineSettings], timedelta], delay: float) -> None:
        await asyncio.sleep(delay)
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Poller job %s error", name)
            await asyncio.sleep(interval(self.settings_store.load()).total_seconds())

    async def _guarded(self, name: str, sweep: Callable[[PipelineSettings, datetime], Awaitable[int]]) -> int:
        guard = self.guards[name]
        if not guard.try_acquire():
            logger.debug("Sweep %s already running, skipping this tick", name)
            return 0
        try:
            return await sweep(self.settings_store.load(), self.clock())
        finally:
            guard.release()

    # ── Replies ──

    async def poll_replies(self) -> int:
        return await self._guarded("replies", self._poll_replies)

    async def _poll_replies(self, pipeline: PipelineSettings, now: datetime) -> int:
        deal_ids = self._deal_ids(Deal.status.in_(deal_state.statuses_matching(*deal_state.REPLYABLE_STATUSES)))
        processed = 0
        for deal_id in deal_ids:
            try:
                result = await self.engine.process_reply(deal_id)
                if result.status not in ("waiting", "skipped", "awaiting_approval"):
                    processed += 1
            except Exception:
                logger.exception("Reply processing failed for deal %s", deal_id)
        if processed:
            logger.info("Reply poll: %d of %d deal(s) advanced", processed, len(deal_ids))
        return processed

    @staticmethod
    def _no_pending_offer():
        return ~exists().where(PendingOffer.deal_id == Deal.id, PendingOffer.status == "pending")

    def _deal_ids(self, *criteria) -> List[str]:
        db = self.session_factory()
        try:
            return [row[0] for row in db.query(Deal.id).filter(*criteria).order_by(Deal.updated_at.asc()).all()]
        finally:
            db.close()

    # ── 1. Stale offers: follow up, then give up ──

    async def sweep_stale_offers(self) -> int:
        return await self._guarded("stale_offers", self._sweep_stale_offers)

    async def _sweep_stale_offers(self, pipeline: PipelineSettings, now: datetime) -> int:
        cutoff = now - timedelta(days=pipeline.stale_lead_days)
        deal_ids = self._deal_ids(
            Deal.status.in_(deal_state.statuses_matching(deal_state.OFFER_SENT)),
            Deal.updated_at <= cutoff,
            Deal.follow_up_count < pipeline.max_followup_attempts,
            self._no_pending_offer(),
        )
        if deal_ids:
            logger.info("Stale offers: %d deal(s) need a follow-up", len(deal_ids))

        sent = 0
        for deal_id in deal_ids:
            try:
                if await self._follow_up(deal_id, pipeline):
                    sent += 1
            except Exception:
                logger.exception("Follow-up failed for deal %s", deal_id)
        return sent

    async def _follow_up(self, deal_id: str, pipeline: PipelineSettings) -> bool:
        db = self.session_factory()
        try:
            deal = db.query(Deal).filter(Deal.id == deal_id).one()
            attempt = deal.follow_up_count + 1
            company_id = deal.company_id
        finally:
            db.close()

        delivered = await self.engine.send_lifecycle_email(
            deal_id, "follow_up", {"attempt": attempt, "max_attempts": pipeline.max_followup_attempts},
        )
        if not delivered:
            return False

        db = self.session_factory()
        try:
            deal = db.query(Deal).filter(Deal.id == deal_id).one()
            deal.follow_up_count = deal.follow_up_count + 1
            exhausted = deal.follow_up_count >= pipeline.max_followup_attempts
            if exhausted:
                deal_state.transition(deal, deal_state.CLOSED_LOST)
                deal.sales_notes = f"CLOSED LOST: no response after {deal.follow_up_count} follow-ups"
                record_audit(db, "system", "deal_no_response", company_id=company_id, entity_type="deal",
                             entity_id=deal_id, details={"follow_up_count": deal.follow_up_count})
            count = deal.follow_up_count
            db.commit()
        finally:
            db.close()

        logger.info("Deal %s: follow-up #%d sent%s", deal_id, count, " -> closed_lost" if exhausted else "")
        await emit_event("follow_up_sent", company_id, {"deal_id": deal_id, "follow_up_count": count,
                                                         "closed": exhausted})
        return True

    # ── 2. Prolonged silence before any offer ──

    async def sweep_silent_early_deals(self) -> int:
        return await self._guarded("silent_deals", self._sweep_silent_early_deals)

    async def _sweep_silent_early_deals(self, pipeline: PipelineSettings, now: datetime) -> int:
        # Only offer-stage deals receive follow-ups today, so early deals rarely
        # reach the attempt limit and this sweep usually finds nothing.
        cutoff = now - timedelta(days=2 * pipeline.stale_lead_days)
        deal_ids = self._deal_ids(
            Deal.status.in_(deal_state.statuses_matching(*deal_state.EARLY_STATUSES)),
            Deal.updated_at <= cutoff,
            Deal.follow_up_count >= pipeline.max_followup_attempts,
            self._no_pending_offer(),
        )
        closed = 0
        for deal_id in deal_ids:
            db = self.session_factory()
            try:
                deal = db.query(Deal).filter(Deal.id == deal_id).one()
                deal_state.transition(deal, deal_state.CLOSED_LOST)
                deal.sales_notes = "CLOSED LOST: no response"
                db.commit()
                closed += 1
            except Exception:
                logger.exception("Closing silent deal %s failed", deal_id)
            finally:
                db.close()
        if closed:
            logger.info("Silent deals: %d closed as lost", closed)
        return closed

    # ── 3. Reopen long-lost deals with a fresh lead ──

    async def sweep_lost_deals(self) -> int:
        return await self._guarded("lost_deals", self._sweep_lost_deals)

    async def _sweep_lost_deals(self, pipeline: PipelineSettings, now: datetime) -> int:
        cutoff = now - timedelta(days=pipeline.lost_deal_reopen_days)
        db = self.session_factory()
        try:
            candidates = (
                db.query(Deal)
                .filter(Deal.status.in_(deal_state.statuses_matching(deal_state.CLOSED_LOST)))
                .all()
            )
            deal_ids = [d.id for d in candidates if (d.closed_at or d.updated_at) <= cutoff]
        finally:
            db.close()

        reopened = 0
        for deal_id in deal_ids:
            try:
                new_lead_id = self._reopen(deal_id)
            except Exception:
                logger.exception("Reopening deal %s failed", deal_id)
                continue
            if new_lead_id is None:
                continue
            reopened += 1
            try:
                await self.engine.start_workflow(new_lead_id)
            except Exception:
                logger.exception("Workflow for reopened lead %s failed", new_lead_id)
        return reopened

    def _reopen(self, deal_id: str) -> Optional[str]:
        """Mark the deal reopened and clone its lead. Returns the new lead id."""
        db = self.session_factory()
        try:
            deal = db.query(Deal).filter(Deal.id == deal_id).one()
            lead = db.query(Lead).filter(Lead.id == deal.lead_id).first()
            if not lead:
                logger.warning("Deal %s: original lead not found, skipping", deal_id)
                return None

            # Marked first so a crash after this point never reopens the deal twice
            deal_state.transition(deal, deal_state.REOPENED)
            clone = Lead(
                company_id=lead.company_id,
                company_name=lead.company_name,
                contact_name=lead.contact_name,
                contact_email=lead.contact_email,
                contact_phone=lead.contact_phone,
                product_interest=lead.product_interest,
                company_website=lead.company_website,
                industry=lead.industry,
                company_size=lead.company_size,
                status="new",
                source_lead_id=lead.id,
            )
            db.add(clone)
            db.flush()
            record_audit(db, "system", "deal_reopened", company_id=deal.company_id, entity_type="deal",
                         entity_id=deal.id, details={"new_lead_id": clone.id})
            db.commit()
            logger.info("Deal %s reopened -> new lead %s", deal_id, clone.id)
            return clone.id
        finally:
            db.close()

    # ── 4. Satisfaction check after a win ──

    async def sweep_satisfaction(self) -> int:
        return await self._guarded("satisfaction", self._sweep_satisfaction)

    async def _sweep_satisfaction(self, pipeline: PipelineSettings, now: datetime) -> int:
        window_start = timedelta(days=pipeline.satisfaction_email_days)
        window_end = timedelta(days=pipeline.satisfaction_email_days + 1)
        db = self.session_factory()
        try:
            candidates = (
                db.query(Deal)
                .filter(
                    Deal.status.in_(deal_state.statuses_matching(deal_state.CLOSED_WON)),
                    Deal.satisfaction_sent.is_(False),
                )
                .all()
            )
            deal_ids = [d.id for d in candidates if window_start <= now - (d.closed_at or d.updated_at) < window_end]
        finally:
            db.close()

        sent = 0
        for deal_id in deal_ids:
            try:
                if not await self.engine.send_lifecycle_email(deal_id, "satisfaction"):
                    continue
                db = self.session_factory()
                try:
                    db.query(Deal).filter(Deal.id == deal_id).update(
                        {"satisfaction_sent": True}, synchronize_session=False,
                    )
                    db.commit()
                finally:
                    db.close()
                sent += 1
                logger.info("Deal %s: satisfaction email sent", deal_id)
            except Exception:
                logger.exception("Satisfaction email failed for deal %s", deal_id)
        return sent

    # ── 5. Scheduled market research ──

    async def sweep_research(self) -> int:
        return await self._guarded("research", self._sweep_research)

    async def _sweep_research(self, pipeline: PipelineSettings, now: datetime) -> int:
        interval = timedelta(hours=pipeline.research_interval_hours)
        running_timeout = timedelta(hours=pipeline.research_running_timeout_hours)

        db = self.session_factory()
        try:
            company_ids = [row[0] for row in db.query(Company.id).all()]
            due = []
            for company_id in company_ids:
                latest = (
                    db.query(MarketResearch)
                    .filter(MarketResearch.company_id == company_id)
                    .order_by(MarketResearch.created_at.desc())
                    .first()
                )
                if latest and latest.status == "running":
                    if now - latest.created_at < running_timeout:
                        continue
                    latest.status = "failed"
                    latest.error_message = "Timed out while running"
                    latest.completed_at = now
                    db.commit()
                    logger.warning("Research %s for company %s timed out", latest.id, company_id)
                elif latest and now - latest.created_at < interval:
                    continue
                due.append(company_id)
        finally:
            db.close()

        ran = 0
        for company_id in due:
            try:
                await self.engine.research.run(company_id, trigger="scheduled")
                ran += 1
            except Exception:
                logger.exception("Scheduled research failed for company %s", company_id)
        return ran

    # ── 6. Stale task recovery ──

    async def sweep_stale_tasks(self) -> int:
        return await self._guarded("stale_tasks", self._sweep_stale_tasks)

    async def _sweep_stale_tasks(self, pipeline: PipelineSettings, now: datetime) -> int:
        queue = self.engine.task_queue
        stale = queue.find_stale(
            timedelta(minutes=pipeline.stale_pending_task_minutes),
            timedelta(minutes=pipeline.stale_processing_task_minutes),
            now=now,
        )
        if stale:
            logger.info("Stale tasks: %d found", len(stale))

        retry_roles = set(pipeline.auto_retry_roles) - NON_IDEMPOTENT_ROLES
        handled = 0
        for task in stale:
            try:
                if task.target_role not in retry_roles:
                    queue.fail(task.id, MANUAL_REVIEW_MESSAGE)
                    logger.warning("Task %s (%s/%s) needs manual review", task.id, task.target_role, task.task_type)
                elif task.status == "pending":
                    await self.engine.run_task(task.id)
                else:
                    await self._retry_processing(task)
                handled += 1
            except Exception:
                logger.exception("Recovering stale task %s failed", task.id)
        return handled

    async def _retry_processing(self, task: Task) -> None:
        queue = self.engine.task_queue
        new_id = queue.create_task(TaskCreate(
            company_id=task.company_id,
            source_role=task.source_role,
            target_role=task.target_role,
            task_type=task.task_type,
            title=task.title,
            description=task.description,
            input_data=task.input_data or {},
            deal_id=task.deal_id,
            lead_id=task.lead_id,
            priority=task.priority,
        ))
        if not queue.fail(task.id, f"Stale while processing; retried as {new_id}"):
            # Finished on its own in the meantime; drop the copy
            queue.fail(new_id, f"Superseded: original task {task.id} already finished")
            return
        logger.info("Task %s stuck in processing, retried as %s", task.id, new_id)
        await self.engine.run_task(new_id)
