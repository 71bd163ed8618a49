"""
Client blocking.

ClientBlockingService is the contract the tier engine uses to restrict a
delinquent customer; StorageClientBlockingService keeps the blocks as
versioned records so other modules (sales, credit origination) can query
them.
"""

from abc import ABC, abstractmethod
from typing import List, Optional
import uuid

from .audit import AuditEventType, AuditTrail
from .concurrency import ConcurrencyGuard
from .errors import EntityNotFoundError, ValidationError
from .events import DomainEvent, EventDispatcher
from .logging_config import get_logger
from .models import AuditInfo, BlockType, ClientBlock, CollectionAlert, utc_now
from .policy import ArrearsConfiguration
from .storage import StorageInterface


def should_block(alert: CollectionAlert, config: ArrearsConfiguration) -> bool:
    """True when the policy's automatic blocking criteria are met for ``alert``"""
    if not config.auto_block_enabled:
        return False
    if alert.days_late >= config.block_after_days:
        return True
    if (config.block_after_overdue_installments is not None
            and alert.overdue_installments >= config.block_after_overdue_installments):
        return True
    if (config.block_after_arrears_amount is not None
            and alert.arrears_amount >= config.block_after_arrears_amount):
        return True
    return False


class ClientBlockingService(ABC):
    """Applies operational blocks to customers"""

    @abstractmethod
    def block(
        self,
        customer_id: str,
        block_type: BlockType,
        reason: str = "",
        alert_id: Optional[str] = None,
        user_id: str = "SYSTEM"
    ) -> ClientBlock:
        pass

    @abstractmethod
    def is_blocked(self, customer_id: str, block_type: Optional[BlockType] = None) -> bool:
        pass


class StorageClientBlockingService(ClientBlockingService):
    """Client blocks persisted through the concurrency guard"""

    def __init__(
        self,
        storage: StorageInterface,
        guard: Optional[ConcurrencyGuard] = None,
        audit_trail: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.guard = guard or ConcurrencyGuard(storage)
        self.audit = audit_trail
        self.events = events
        self.table = "client_blocks"
        self.logger = get_logger("arrears.blocking")

    def block(self, customer_id, block_type, reason="", alert_id=None, user_id="SYSTEM") -> ClientBlock:
        """
        Block ``customer_id``. An active block of the same type is returned
        unchanged rather than duplicated.
        """
        if not customer_id:
            raise ValidationError("Customer is required", {"customer_id": "required"})

        for existing in self.get_active_blocks(customer_id):
            if existing.block_type == block_type:
                return existing

        block = ClientBlock(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            block_type=block_type,
            reason=reason,
            blocked_at=utc_now(),
            alert_id=alert_id,
            audit=AuditInfo(created_by=user_id),
        )
        self.guard.insert(self.table, block)

        if self.audit:
            self.audit.log_event(
                AuditEventType.CLIENT_BLOCKED,
                entity_type="customer",
                entity_id=customer_id,
                metadata={"block_id": block.id, "block_type": block_type, "alert_id": alert_id, "reason": reason},
                user_id=user_id
            )
        if self.events:
            self.events.emit(
                DomainEvent.CLIENT_BLOCKED, "customer", customer_id,
                block_id=block.id, block_type=block_type.name, alert_id=alert_id
            )
        self.logger.info(f"Customer {customer_id} blocked ({block_type.name}): {reason}")
        return block

    def unblock(self, block_id: str, expected_version: int, user_id: str = "SYSTEM") -> ClientBlock:
        """Release a block"""
        data = self.storage.load(self.table, block_id)
        if not data:
            raise EntityNotFoundError("ClientBlock", block_id)
        block = ClientBlock.from_dict(data)
        if not block.active:
            raise ValidationError(f"Block {block_id} is already released", {"active": "block is released"})

        block.active = False
        block.released_at = utc_now()
        block.audit.touch(user_id)
        self.guard.commit(self.table, block, expected_version)

        if self.audit:
            self.audit.log_event(
                AuditEventType.CLIENT_UNBLOCKED,
                entity_type="customer",
                entity_id=block.customer_id,
                metadata={"block_id": block.id},
                user_id=user_id
            )
        return block

    def get_active_blocks(self, customer_id: str) -> List[ClientBlock]:
        blocks = [ClientBlock.from_dict(d) for d in self.storage.find(self.table, {"customer_id": customer_id})]
        return [b for b in blocks if b.active]

    def is_blocked(self, customer_id, block_type=None) -> bool:
        return any(
            block_type is None or b.block_type == block_type
            for b in self.get_active_blocks(customer_id)
        )
