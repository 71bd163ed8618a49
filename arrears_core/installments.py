"""
Installment repository.

Installments are owned by the credit module; amounts are written by payment
posting. The arrears engine reads them and may only change their status,
always through the concurrency guard.
"""

from typing import List, Optional

from .audit import AuditEventType, AuditTrail
from .concurrency import ConcurrencyGuard
from .errors import EntityNotFoundError, ValidationError
from .logging_config import get_logger
from .models import Installment, InstallmentStatus
from .storage import StorageInterface


class InstallmentRepository:
    """Load installments and apply guarded status changes"""

    def __init__(
        self,
        storage: StorageInterface,
        guard: Optional[ConcurrencyGuard] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.guard = guard or ConcurrencyGuard(storage)
        self.audit = audit_trail
        self.table = "installments"
        self.logger = get_logger("arrears.installments")

    def add_installment(self, installment: Installment) -> Installment:
        """Register an installment handed over by the credit module"""
        self.guard.insert(self.table, installment)
        return installment

    def get_installment(self, installment_id: str) -> Optional[Installment]:
        data = self.storage.load(self.table, installment_id)
        return Installment.from_dict(data) if data else None

    def require_installment(self, installment_id: str) -> Installment:
        installment = self.get_installment(installment_id)
        if installment is None:
            raise EntityNotFoundError("Installment", installment_id)
        return installment

    def get_installments_for_credit(self, credit_id: str) -> List[Installment]:
        installments = [Installment.from_dict(d) for d in self.storage.find(self.table, {"credit_id": credit_id})]
        installments.sort(key=lambda i: i.number)
        return installments

    def get_open_installments(self) -> List[Installment]:
        """Installments that are neither paid nor cancelled, oldest due first"""
        installments = [Installment.from_dict(d) for d in self.storage.load_all(self.table)]
        open_installments = [i for i in installments if i.is_open]
        open_installments.sort(key=lambda i: (i.due_date, i.credit_id, i.number))
        return open_installments

    def change_status(
        self,
        installment_id: str,
        new_status: InstallmentStatus,
        expected_version: int,
        user_id: str = "SYSTEM"
    ) -> Installment:
        """
        Move an installment to ``new_status``.

        Paid and cancelled installments are final for the arrears engine.
        """
        installment = self.require_installment(installment_id)
        if not installment.is_open:
            raise ValidationError(
                f"Installment {installment_id} is {installment.status.name} and cannot change status",
                {"status": "installment is closed"}
            )
        if new_status in (InstallmentStatus.PAID, InstallmentStatus.CANCELLED):
            raise ValidationError(
                "Payment posting owns the PAID and CANCELLED statuses",
                {"new_status": f"{new_status.name} cannot be set by the arrears engine"}
            )

        previous = installment.status
        if previous == new_status:
            return installment

        installment.status = new_status
        installment.audit.touch(user_id)
        self.guard.commit(self.table, installment, expected_version)

        if self.audit:
            self.audit.log_event(
                AuditEventType.INSTALLMENT_STATUS_CHANGED,
                entity_type="installment",
                entity_id=installment.id,
                metadata={"from": previous, "to": new_status, "version": installment.version},
                user_id=user_id
            )
        self.logger.info(f"Installment {installment.id} status {previous.name} -> {new_status.name}")
        return installment
