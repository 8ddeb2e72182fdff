from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from opentelemetry import trace
from sqlalchemy.orm import Session

from flowapp.automation.engine import FlowExecutionEngine, default_worker_id, get_flow_engine
from flowapp.automation.errors import FlowEngineError
from flowapp.automation.repository import FlowExecutionRepository
from flowapp.core.config import get_settings
from flowapp.metrics import observe_resume_claim


logger = logging.getLogger("flowapp.automation.scheduler")
tracer = trace.get_tracer("flowapp.automation.scheduler")


@dataclass
class ResumeScanResult:
    claimed: list[uuid.UUID] = field(default_factory=list)
    lost: int = 0
    dispatched: int = 0
    failed: int = 0


class ResumeScheduler:
    def __init__(
        self,
        engine: FlowExecutionEngine | None = None,
        *,
        worker_id: str | None = None,
        dispatch: Callable[[uuid.UUID], None] | None = None,
    ) -> None:
        self.engine = engine or get_flow_engine()
        self.worker_id = worker_id or default_worker_id()
        self.dispatch = dispatch
        self.executions = FlowExecutionRepository()

    def claim_due(self, session: Session) -> tuple[list[uuid.UUID], int]:
        settings = get_settings()
        claimed, lost = self.executions.claim_due(
            session,
            worker_id=self.worker_id,
            now=self.engine.clock(),
            claim_ttl_seconds=settings.flow_resume_claim_ttl_seconds,
            limit=settings.flow_resume_batch_size,
        )
        observe_resume_claim("claimed", len(claimed))
        observe_resume_claim("lost", lost)
        if lost:
            logger.debug("flow_resume_claims_lost", extra={"count": lost})
        return claimed, lost

    def run_once(self, session: Session) -> ResumeScanResult:
        started = time.perf_counter()
        with tracer.start_as_current_span("flow.scheduler.scan") as span:
            span.set_attribute("flow.worker_id", self.worker_id)
            claimed, lost = self.claim_due(session)
            result = ResumeScanResult(claimed=claimed, lost=lost)
            span.set_attribute("flow.claimed", len(claimed))

            for execution_id in claimed:
                try:
                    self._dispatch(session, execution_id)
                    result.dispatched += 1
                except FlowEngineError as exc:
                    result.failed += 1
                    logger.warning(
                        "flow_resume_dispatch_failed",
                        extra={"error": exc.message, "status": exc.code},
                    )

            logger.info(
                "flow_resume_scan_completed",
                extra={
                    "claimed": len(claimed),
                    "count": result.dispatched,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            return result

    def _dispatch(self, session: Session, execution_id: uuid.UUID) -> None:
        if self.dispatch is not None:
            self.dispatch(execution_id)
            return
        if get_settings().auto_run_flow_jobs:
            self.engine.resume(session, execution_id, claimed_by=self.worker_id)
            return

        from flowapp.automation.tasks import resume_flow_execution

        resume_flow_execution.delay(str(execution_id), claimed_by=self.worker_id)
