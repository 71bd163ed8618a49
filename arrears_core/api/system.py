"""
Arrears system wiring and the FastAPI dependency that provides it
"""

from typing import Optional

from ..agreements import AgreementEngine
from ..audit import AuditTrail
from ..batch import DailyArrearsJob
from ..blocking import StorageClientBlockingService
from ..collections import CollectionsManager
from ..concurrency import ConcurrencyGuard
from ..config import ArrearsSettings, get_config
from ..events import EventDispatcher
from ..installments import InstallmentRepository
from ..mora import MoraCalculator
from ..notifications import LogNotificationSender, NotificationSender, NotificationService, WebhookNotificationSender
from ..policy import ConfigurationProvider
from ..promises import PromiseTracker
from ..storage import StorageInterface, create_storage
from ..tiers import CobranzaTramoEngine


class ArrearsSystem:
    """Arrears engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        settings: Optional[ArrearsSettings] = None,
        sender: Optional[NotificationSender] = None
    ):
        settings = settings or get_config()
        self.settings = settings
        self.storage = storage or create_storage(
            settings.storage_backend, settings.sqlite_path, settings.database_url
        )

        self.guard = ConcurrencyGuard(self.storage)
        self.audit_trail = AuditTrail(self.storage) if settings.enable_audit_logging else None
        self.events = EventDispatcher()
        self.config_provider = ConfigurationProvider(self.storage, self.guard, self.audit_trail)

        self.calculator = MoraCalculator(max_workers=settings.batch_max_workers)
        self.installments = InstallmentRepository(self.storage, self.guard, self.audit_trail)
        self.collections = CollectionsManager(
            self.storage, self.guard, self.audit_trail, self.events, self.installments
        )
        self.promises = PromiseTracker(
            self.storage, self.collections, self.config_provider,
            self.guard, self.audit_trail, self.events
        )
        self.agreements = AgreementEngine(
            self.storage, self.collections, self.config_provider,
            self.guard, self.audit_trail, self.events
        )
        self.notifications = NotificationService(self.storage, sender or self._create_sender(settings))
        self.blocking = StorageClientBlockingService(self.storage, self.guard, self.audit_trail, self.events)
        self.tier_engine = CobranzaTramoEngine(
            self.storage, self.collections, self.promises, self.notifications,
            self.installments, self.config_provider,
            blocking=self.blocking,
            guard=self.guard,
            audit_trail=self.audit_trail,
            events=self.events,
            max_workers=settings.batch_max_workers
        )
        self.daily_job = DailyArrearsJob(
            self.config_provider, self.calculator, self.installments, self.collections,
            self.promises, self.agreements, self.tier_engine, self.audit_trail, self.events
        )

    @staticmethod
    def _create_sender(settings: ArrearsSettings) -> NotificationSender:
        # Only deliver for real when a gateway is configured
        if not settings.notification_webhook_url:
            return LogNotificationSender()
        return WebhookNotificationSender(settings.notification_webhook_url, settings.notification_timeout)


_system: Optional[ArrearsSystem] = None


def get_arrears_system() -> ArrearsSystem:
    """Dependency returning the process-wide system, created on first use"""
    global _system
    if _system is None:
        _system = ArrearsSystem()
    return _system
