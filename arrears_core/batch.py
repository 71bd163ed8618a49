"""
Daily arrears run.

DailyArrearsJob chains the stages of the scheduled run: late fees over all
open installments, alert refresh, promise expiry, agreement evaluation and
the collection tier engine. Each stage isolates its own per-item failures;
the report carries every stage's result for operators. Scheduling itself
belongs to the caller, which can use ``is_due`` to decide when to run.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Optional
import time

from .agreements import AgreementEngine, AgreementEvaluationResult
from .audit import AuditEventType, AuditTrail
from .collections import AlertSyncResult, CollectionsManager
from .errors import ConflictError
from .events import DomainEvent, EventDispatcher
from .installments import InstallmentRepository
from .logging_config import get_logger
from .mora import FeeBatchResult, MoraCalculator
from .policy import ArrearsConfiguration, ConfigurationProvider
from .promises import PromiseExpiryResult, PromiseTracker
from .tiers import BatchSummary, CobranzaTramoEngine


def is_due(now: datetime, config: ArrearsConfiguration) -> bool:
    """True once the configured run hour is reached and today's run has not happened"""
    if not config.automation_enabled or now.hour < config.daily_run_hour:
        return False
    return config.last_run_at is None or config.last_run_at.date() < now.date()


@dataclass
class DailyRunReport:
    """Results and timings of one daily run"""
    run_date: date
    started_at: datetime
    fees: FeeBatchResult
    alerts: AlertSyncResult = field(default_factory=AlertSyncResult)
    promises: PromiseExpiryResult = field(default_factory=PromiseExpiryResult)
    agreements: AgreementEvaluationResult = field(default_factory=AgreementEvaluationResult)
    tiers: BatchSummary = field(default_factory=BatchSummary)
    durations: Dict[str, float] = field(default_factory=dict)
    finished_at: Optional[datetime] = None

    @property
    def failures(self) -> int:
        return (self.fees.failed + len(self.alerts.failures) + len(self.promises.failures)
                + len(self.agreements.failures) + self.tiers.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_date": self.run_date.isoformat(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "fees": {k: v for k, v in self.fees.to_dict().items() if k != "details"},
            "alerts": self.alerts.to_dict(),
            "promises": self.promises.to_dict(),
            "agreements": self.agreements.to_dict(),
            "tiers": self.tiers.to_dict(include_outcomes=False),
            "failures": self.failures,
            "durations": {k: round(v, 4) for k, v in self.durations.items()},
        }


class DailyArrearsJob:
    """Runs every stage of the daily arrears batch in order"""

    def __init__(
        self,
        config_provider: ConfigurationProvider,
        calculator: MoraCalculator,
        installments: InstallmentRepository,
        collections: CollectionsManager,
        promises: PromiseTracker,
        agreements: AgreementEngine,
        tier_engine: CobranzaTramoEngine,
        audit_trail: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None
    ):
        self.config_provider = config_provider
        self.calculator = calculator
        self.installments = installments
        self.collections = collections
        self.promises = promises
        self.agreements = agreements
        self.tier_engine = tier_engine
        self.audit = audit_trail
        self.events = events
        self.logger = get_logger("arrears.batch")

    def run(self, today: Optional[date] = None, now: Optional[datetime] = None) -> DailyRunReport:
        now = now or datetime.now()
        today = today or now.date()
        config = self.config_provider.get()
        self.logger.info(f"Daily arrears run for {today.isoformat()} started")

        durations: Dict[str, float] = {}

        def timed(stage: str, func, *args, **kwargs):
            started = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                durations[stage] = time.perf_counter() - started

        fees = timed("fees", self.calculator.calculate_fees,
                     self.installments.get_open_installments(), today, config)
        report = DailyRunReport(run_date=today, started_at=now, fees=fees, durations=durations)
        report.alerts = timed("alerts", self.collections.sync_alerts, fees, config, today)
        report.promises = timed("promises", self.promises.expire_overdue_promises, today)
        report.agreements = timed("agreements", self.agreements.evaluate_agreements, today, config)
        report.tiers = timed("tiers", self.tier_engine.process_alerts, config=config, today=today, now=now)
        report.finished_at = datetime.now()

        try:
            self.config_provider.record_run(now)
        except ConflictError as e:
            # Policy edited during the run
            self.logger.warning(f"Could not stamp last run time: {e}")

        summary = report.to_dict()
        if self.audit:
            self.audit.log_event(
                AuditEventType.DAILY_RUN_COMPLETED,
                entity_type="daily_run",
                entity_id=today.isoformat(),
                metadata={k: summary[k] for k in ("fees", "alerts", "tiers", "failures")},
                user_id="SYSTEM"
            )
        if self.events:
            self.events.emit(DomainEvent.DAILY_RUN_COMPLETED, "daily_run", today.isoformat(), **summary)

        self.logger.info(
            f"Daily arrears run for {today.isoformat()} finished: {fees.processed} installments, "
            f"{report.alerts.created} alerts created, {len(report.promises.expired)} promises expired, "
            f"{len(report.agreements.broken)} agreements broken, {report.failures} failures"
        )
        return report
