from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.context import get_correlation_id, reset_refresh_trigger, set_refresh_trigger
from app.core.config import get_settings
from app.metrics import observe_principal_outcome, observe_refresh_run, set_pending_refresh
from app.otel import mark_span_failed
from app.principal_activity.aggregation import aggregate_principal, list_principal_ids
from app.principal_activity.models import ActivityStatus, PrincipalActivityRefreshRun, PrincipalActivitySummary
from app.principal_activity.repository import PrincipalActivitySummaryRepository, SummaryClock, summary_is_current
from app.principal_activity.schemas import (
    PrincipalActivityStats,
    PrincipalActivitySummaryRead,
    RefreshFailure,
    RefreshReport,
    RefreshRunRead,
    TopPerformer,
)
from app.principal_activity.scoring import score_aggregate


logger = logging.getLogger("app.principal_activity.refresh")
tracer = trace.get_tracer("app.principal_activity.refresh")

OUTCOME_REFRESHED = "refreshed"
OUTCOME_REMOVED = "removed"
OUTCOME_SUPERSEDED = "superseded"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingRefresh:
    """Coalesces refresh requests: a request for everything absorbs any principal set."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._everything = False
        self._principal_ids: set[uuid.UUID] = set()

    def add(self, principal_ids: Iterable[uuid.UUID] | None) -> None:
        with self._lock:
            if principal_ids is None:
                self._everything = True
                self._principal_ids.clear()
            elif not self._everything:
                self._principal_ids.update(principal_ids)

    def has_work(self) -> bool:
        with self._lock:
            return self._everything or bool(self._principal_ids)

    def take(self) -> list[uuid.UUID] | None:
        """Pop all pending work. ``None`` means refresh every principal."""
        with self._lock:
            if self._everything:
                self._everything = False
                self._principal_ids.clear()
                return None
            taken = sorted(self._principal_ids, key=str)
            self._principal_ids.clear()
            return taken

    def clear(self) -> None:
        with self._lock:
            self._everything = False
            self._principal_ids.clear()


def _parse_principal_hints(raw: Any) -> list[uuid.UUID] | None:
    if not isinstance(raw, list):
        return None
    parsed: list[uuid.UUID] = []
    for item in raw:
        try:
            parsed.append(uuid.UUID(str(item)))
        except ValueError:
            return None
    return parsed


@dataclass(slots=True)
class PrincipalActivityRefreshService:
    repository: PrincipalActivitySummaryRepository = field(default_factory=PrincipalActivitySummaryRepository)
    clock: SummaryClock = field(default_factory=SummaryClock)
    pending: PendingRefresh = field(default_factory=PendingRefresh)
    _drain_lock: threading.Lock = field(default_factory=threading.Lock)

    def refresh(
        self,
        session: Session,
        principal_ids: Iterable[uuid.UUID] | None = None,
        *,
        trigger: str = "manual",
        requested_by: str | None = None,
    ) -> RefreshReport:
        run_id = uuid.uuid4()
        scope = "all" if principal_ids is None else "principals"
        started_at = utcnow()
        started = time.perf_counter()
        correlation_id = get_correlation_id()
        token = set_refresh_trigger(trigger)

        outcomes = {
            OUTCOME_REFRESHED: 0,
            OUTCOME_REMOVED: 0,
            OUTCOME_SUPERSEDED: 0,
            OUTCOME_SKIPPED: 0,
            OUTCOME_FAILED: 0,
        }
        failures: list[RefreshFailure] = []
        targets: list[uuid.UUID] = []
        targets_loaded = False

        try:
            with tracer.start_as_current_span("principal_activity.refresh") as run_span:
                run_span.set_attribute("run_id", str(run_id))
                run_span.set_attribute("trigger", trigger)
                run_span.set_attribute("scope", scope)
                if correlation_id:
                    run_span.set_attribute("correlation_id", correlation_id)

                logger.info(
                    "principal_activity.refresh.started",
                    extra={"run_id": str(run_id), "trigger": trigger, "status": "Running"},
                )

                try:
                    if principal_ids is None:
                        targets = list_principal_ids(session)
                    else:
                        targets = sorted(set(principal_ids), key=str)
                    targets_loaded = True
                except SQLAlchemyError as exc:
                    session.rollback()
                    failures.append(RefreshFailure(stage="select", error=str(exc)[:500]))
                    outcomes[OUTCOME_FAILED] += 1
                    mark_span_failed(run_span, exc)
                    logger.warning(
                        "principal_activity.refresh_failed",
                        extra={"run_id": str(run_id), "stage": "select", "error": str(exc)[:500]},
                    )
                run_span.set_attribute("requested", len(targets))

                for principal_id in targets:
                    outcome = self._refresh_principal(session, run_id, principal_id, failures)
                    outcomes[outcome] += 1

                if principal_ids is None and targets_loaded:
                    pruned = self._prune(session, run_id, failures)
                    if pruned is None:
                        outcomes[OUTCOME_FAILED] += 1
                    else:
                        outcomes[OUTCOME_REMOVED] += pruned

                final_status = self._final_status(outcomes)
                run_span.set_attribute("status", final_status)
                run_span.set_attribute("failed", outcomes[OUTCOME_FAILED])
        finally:
            reset_refresh_trigger(token)

        finished_at = utcnow()
        duration = time.perf_counter() - started
        report = RefreshReport(
            run_id=run_id,
            trigger=trigger,
            scope=scope,
            status=final_status,
            requested=len(targets),
            refreshed=outcomes[OUTCOME_REFRESHED],
            removed=outcomes[OUTCOME_REMOVED],
            superseded=outcomes[OUTCOME_SUPERSEDED],
            failed=outcomes[OUTCOME_FAILED],
            failures=failures,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=round(duration * 1000, 2),
        )
        self._record_run(session, report, requested_by=requested_by, correlation_id=correlation_id)

        observe_refresh_run(trigger=trigger, status=final_status, duration=duration)
        for outcome, count in outcomes.items():
            observe_principal_outcome(outcome, count)

        log = logger.warning if final_status != "Succeeded" else logger.info
        log(
            "principal_activity.refresh.finished",
            extra={
                "run_id": str(run_id),
                "trigger": trigger,
                "status": final_status,
                "duration_ms": report.duration_ms,
                "requested": report.requested,
                "refreshed": report.refreshed,
                "removed": report.removed,
                "superseded": report.superseded,
                "failed": report.failed,
            },
        )
        return report

    def _refresh_principal(
        self,
        session: Session,
        run_id: uuid.UUID,
        principal_id: uuid.UUID,
        failures: list[RefreshFailure],
    ) -> str:
        with tracer.start_as_current_span("principal_activity.refresh_principal") as span:
            span.set_attribute("run_id", str(run_id))
            span.set_attribute("principal_id", str(principal_id))
            now = self.clock.now()

            try:
                aggregate = aggregate_principal(session, principal_id, as_of=now)
                row = None
                if aggregate.qualifies:
                    result = score_aggregate(aggregate, now=now)
                    row = self.repository.build_row(aggregate, result, now)
            except Exception as exc:
                session.rollback()
                self._record_failure(span, run_id, principal_id, "aggregate", exc, failures)
                return OUTCOME_FAILED

            try:
                if row is None:
                    outcome = OUTCOME_REMOVED if self.repository.remove(session, principal_id) else OUTCOME_SKIPPED
                else:
                    outcome = OUTCOME_REFRESHED if self.repository.replace_row(session, row) else OUTCOME_SUPERSEDED
            except Exception as exc:
                session.rollback()
                self._record_failure(span, run_id, principal_id, "store", exc, failures)
                return OUTCOME_FAILED

            span.set_attribute("outcome", outcome)
            return outcome

    def _record_failure(
        self,
        span: trace.Span,
        run_id: uuid.UUID,
        principal_id: uuid.UUID,
        stage: str,
        exc: Exception,
        failures: list[RefreshFailure],
    ) -> None:
        mark_span_failed(span, exc)
        failures.append(RefreshFailure(principal_id=principal_id, stage=stage, error=str(exc)[:500]))
        logger.warning(
            "principal_activity.refresh_failed",
            extra={
                "run_id": str(run_id),
                "principal_id": str(principal_id),
                "stage": stage,
                "error": str(exc)[:500],
            },
        )

    def _prune(self, session: Session, run_id: uuid.UUID, failures: list[RefreshFailure]) -> int | None:
        try:
            pruned = self.repository.prune(session, list_principal_ids(session))
        except SQLAlchemyError as exc:
            session.rollback()
            failures.append(RefreshFailure(stage="prune", error=str(exc)[:500]))
            logger.warning(
                "principal_activity.refresh_failed",
                extra={"run_id": str(run_id), "stage": "prune", "error": str(exc)[:500]},
            )
            return None
        if pruned:
            logger.info("principal_activity.refresh.pruned", extra={"run_id": str(run_id), "pruned": len(pruned)})
        return len(pruned)

    @staticmethod
    def _final_status(outcomes: dict[str, int]) -> str:
        if outcomes[OUTCOME_FAILED] == 0:
            return "Succeeded"
        completed = outcomes[OUTCOME_REFRESHED] + outcomes[OUTCOME_REMOVED] + outcomes[OUTCOME_SUPERSEDED]
        return "Partial" if completed else "Failed"

    def _record_run(
        self,
        session: Session,
        report: RefreshReport,
        *,
        requested_by: str | None,
        correlation_id: str | None,
    ) -> None:
        run = PrincipalActivityRefreshRun(
            id=report.run_id,
            trigger=report.trigger,
            scope=report.scope,
            status=report.status,
            requested_count=report.requested,
            refreshed_count=report.refreshed,
            removed_count=report.removed,
            superseded_count=report.superseded,
            failed_count=report.failed,
            requested_by=requested_by,
            correlation_id=correlation_id,
            error_json=[
                {
                    "principal_id": str(failure.principal_id) if failure.principal_id else "",
                    "stage": failure.stage,
                    "error": failure.error,
                }
                for failure in report.failures
            ],
            started_at=report.started_at,
            finished_at=report.finished_at,
        )
        session.add(run)
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning(
                "principal_activity.refresh_run_not_recorded",
                extra={"run_id": str(report.run_id), "error": str(exc)[:500]},
            )

    def enqueue(self, principal_ids: Iterable[uuid.UUID] | None = None) -> None:
        self.pending.add(principal_ids)
        set_pending_refresh(True)

    def drain(self, session: Session, *, trigger: str, requested_by: str | None = None) -> list[RefreshReport]:
        """Run pending work until none is left.

        Only one caller drains at a time; a caller that finds the drain busy
        returns immediately because the active drainer picks up its work on
        the next loop iteration.
        """
        reports: list[RefreshReport] = []
        while self.pending.has_work():
            if not self._drain_lock.acquire(blocking=False):
                return reports
            try:
                if not self.pending.has_work():
                    continue
                work = self.pending.take()
                set_pending_refresh(self.pending.has_work())
                reports.append(self.refresh(session, work, trigger=trigger, requested_by=requested_by))
            finally:
                self._drain_lock.release()
        return reports

    def handle_mutation_event(self, session: Session, envelope: dict[str, Any]) -> list[RefreshReport]:
        payload = envelope.get("payload")
        if not isinstance(payload, dict):
            return []

        hints = None
        if get_settings().principal_activity_refresh_scope == "hinted":
            hints = _parse_principal_hints(payload.get("principal_ids"))

        logger.info(
            "principal_activity.notification.received",
            extra={
                "event_id": envelope.get("event_id"),
                "source_entity": payload.get("source_entity"),
                "operation": payload.get("operation"),
                "requested": len(hints) if hints is not None else 0,
            },
        )
        self.enqueue(hints)
        actor = envelope.get("actor_user_id")
        return self.drain(session, trigger="notification", requested_by=actor if isinstance(actor, str) else None)

    def get_summary(self, session: Session, principal_id: uuid.UUID) -> PrincipalActivitySummaryRead:
        row = self.repository.get(session, principal_id)
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="principal activity summary not found")
        return PrincipalActivitySummaryRead.model_validate(row)

    def get_stats(self, session: Session, top_n: int | None = None) -> PrincipalActivityStats:
        limit = top_n if top_n is not None else get_settings().principal_activity_top_performers
        total, active, with_products, with_opportunities, avg_products, avg_engagement = session.execute(
            select(
                func.count(PrincipalActivitySummary.principal_id),
                func.coalesce(
                    func.sum(case((PrincipalActivitySummary.activity_status == ActivityStatus.ACTIVE.value, 1), else_=0)),
                    0,
                ),
                func.coalesce(func.sum(case((PrincipalActivitySummary.product_count > 0, 1), else_=0)), 0),
                func.coalesce(func.sum(case((PrincipalActivitySummary.total_opportunities > 0, 1), else_=0)), 0),
                func.avg(PrincipalActivitySummary.product_count),
                func.avg(PrincipalActivitySummary.engagement_score),
            ).where(summary_is_current())
        ).one()

        top_rows = session.scalars(
            select(PrincipalActivitySummary)
            .where(summary_is_current())
            .order_by(
                PrincipalActivitySummary.engagement_score.desc(),
                PrincipalActivitySummary.total_opportunities.desc(),
                PrincipalActivitySummary.principal_id.asc(),
            )
            .limit(max(0, limit))
        ).all()

        return PrincipalActivityStats(
            total_principals=int(total or 0),
            active_principals=int(active or 0),
            principals_with_products=int(with_products or 0),
            principals_with_opportunities=int(with_opportunities or 0),
            average_products_per_principal=round(float(avg_products or 0), 2),
            average_engagement_score=round(float(avg_engagement or 0), 2),
            top_performers=[
                TopPerformer(
                    principal_id=row.principal_id,
                    principal_name=row.principal_name,
                    engagement_score=row.engagement_score,
                    total_opportunities=row.total_opportunities,
                    won_opportunities=row.won_opportunities,
                    activity_status=row.activity_status,
                )
                for row in top_rows
            ],
        )

    def list_runs(self, session: Session, limit: int = 20) -> list[RefreshRunRead]:
        rows = session.scalars(
            select(PrincipalActivityRefreshRun)
            .order_by(PrincipalActivityRefreshRun.started_at.desc(), PrincipalActivityRefreshRun.id.asc())
            .limit(limit)
        ).all()
        return [RefreshRunRead.model_validate(row) for row in rows]


principal_activity_refresh_service = PrincipalActivityRefreshService()
