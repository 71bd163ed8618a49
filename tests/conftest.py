"""
Shared fixtures for the arrears test suite
"""

import uuid
from datetime import date
from decimal import Decimal
from typing import List

import pytest

from arrears_core.api.system import ArrearsSystem
from arrears_core.config import ArrearsSettings
from arrears_core.models import Installment, InstallmentStatus
from arrears_core.notifications import NotificationSender, SendResult
from arrears_core.storage import InMemoryStorage


class RecordingSender(NotificationSender):
    """Sender double that remembers every message and can be told to fail"""

    def __init__(self):
        self.sent: List[dict] = []
        self.fail_with = None
        self.raise_with = None

    def send(self, customer_id, channel, template, payload):
        if self.raise_with is not None:
            raise self.raise_with
        if self.fail_with is not None:
            return SendResult(success=False, error=self.fail_with)
        self.sent.append({
            "customer_id": customer_id,
            "channel": channel,
            "template": template,
            "payload": payload,
        })
        return SendResult(success=True, message_id=str(uuid.uuid4()))


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def system(storage, sender):
    """Fully wired arrears system on in-memory storage"""
    settings = ArrearsSettings(storage_backend="memory", enable_audit_logging=True, batch_max_workers=1)
    return ArrearsSystem(storage=storage, settings=settings, sender=sender)


@pytest.fixture
def add_installment(system):
    """Factory registering an installment with the repository"""

    def _add(credit_id="CR-1", customer_id="CUST-1", number=1, due_date=date(2024, 3, 1),
             capital="1000.00", interest="0.00", paid_amount="0.00",
             status=InstallmentStatus.PENDING) -> Installment:
        installment = Installment(
            id=f"{credit_id}-{number}",
            credit_id=credit_id,
            customer_id=customer_id,
            number=number,
            due_date=due_date,
            capital=Decimal(capital),
            interest=Decimal(interest),
            paid_amount=Decimal(paid_amount),
            status=status,
        )
        return system.installments.add_installment(installment)

    return _add


def sync(system, as_of: date, config=None):
    """Run the fee batch and alert sync for ``as_of``"""
    config = config or system.config_provider.get()
    fees = system.calculator.calculate_fees(system.installments.get_open_installments(), as_of, config)
    return system.collections.sync_alerts(fees, config)


@pytest.fixture
def open_alert(system, add_installment):
    """Active MEDIUM alert for CR-1, 20 days late on 2024-03-21"""
    add_installment(due_date=date(2024, 3, 1))
    sync(system, date(2024, 3, 21))
    return system.collections.get_active_alert_for_credit("CR-1")


def make_installment(capital="1000.00", interest="0.00", due_date=date(2024, 1, 1),
                     paid_amount="0.00", status=InstallmentStatus.PENDING) -> Installment:
    """Standalone installment for pure fee calculations"""
    return Installment(
        id=str(uuid.uuid4()),
        credit_id="CR-1",
        customer_id="CUST-1",
        number=1,
        due_date=due_date,
        capital=Decimal(capital),
        interest=Decimal(interest),
        paid_amount=Decimal(paid_amount),
        status=status,
    )
