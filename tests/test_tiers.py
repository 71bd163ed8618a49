"""
Test suite for the collection tier engine
"""

import pytest
from datetime import date, datetime
from decimal import Decimal

from arrears_core.api.system import ArrearsSystem
from arrears_core.audit import AuditEventType
from arrears_core.config import ArrearsSettings
from arrears_core.errors import ValidationError
from arrears_core.models import (
    AlertSeverity, CollectionAlert, CollectionTier, InstallmentStatus, PromiseStatus,
    TierAction, TierActionType
)
from arrears_core.policy import ArrearsConfiguration
from arrears_core.storage import InMemoryStorage
from arrears_core.tiers import (
    OutcomeStatus, action_fires, build_default_tiers, determine_actions, select_tier, validate_tiers
)

from conftest import RecordingSender, make_installment, sync


def at_ten(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, 10, 0)


def update_policy(system, **changes):
    config = system.config_provider.get()
    for name, value in changes.items():
        setattr(config, name, value)
    return system.config_provider.update(config, config.version)


def statuses(summary):
    return [(o.action_type, o.status) for o in summary.outcomes]


class TestDefaultTiers:
    """Test tiers derived from the policy"""

    def test_bands_follow_thresholds(self):
        tiers = build_default_tiers(ArrearsConfiguration())

        assert [(t.name, t.days_from, t.days_to) for t in tiers] == [
            ("Initial arrears", 1, 14),
            ("Medium arrears", 15, 29),
            ("High arrears", 30, 59),
            ("Critical arrears", 60, None),
        ]
        assert [t.order for t in tiers] == [1, 2, 3, 4]

    def test_grace_and_preventive_tiers(self):
        config = ArrearsConfiguration(grace_days=5, preventive_alerts_enabled=True, days_before_due_alert=3)

        tiers = build_default_tiers(config)

        assert [(t.name, t.days_from, t.days_to) for t in tiers[:3]] == [
            ("Preventive", -3, 0),
            ("Grace", 1, 5),
            ("Initial arrears", 6, 14),
        ]
        assert tiers[1].actions == []

    def test_long_grace_keeps_bands_ordered(self):
        tiers = build_default_tiers(ArrearsConfiguration(grace_days=20))

        bands = [(t.days_from, t.days_to) for t in tiers]
        assert bands == [(1, 20), (21, 21), (22, 29), (30, 59), (60, None)]

    def test_block_action_only_when_enabled(self):
        plain = build_default_tiers(ArrearsConfiguration())[-1]
        blocking = build_default_tiers(ArrearsConfiguration(auto_block_enabled=True, block_after_days=90))[-1]

        assert TierActionType.BLOCK_CLIENT not in [a.action_type for a in plain.actions]
        block = [a for a in blocking.actions if a.action_type == TierActionType.BLOCK_CLIENT][0]
        assert block.day_of_execution == 90


class TestTierSelection:
    """Test matching and action timing"""

    def test_first_match_wins_on_overlap(self):
        wide = CollectionTier(id="t1", name="Wide", days_from=1, days_to=30, priority=AlertSeverity.LOW)
        narrow = CollectionTier(id="t2", name="Narrow", days_from=10, days_to=12, priority=AlertSeverity.HIGH)

        assert select_tier([wide, narrow], 11) is wide
        assert select_tier([narrow, wide], 11) is narrow

    def test_inactive_tier_skipped(self):
        off = CollectionTier(id="t1", name="Off", days_from=1, days_to=30, priority=AlertSeverity.LOW, active=False)
        assert select_tier([off], 5) is None

    def test_action_fires_on_tier_start_or_its_day(self):
        tier = CollectionTier(id="t1", name="T", days_from=15, days_to=29, priority=AlertSeverity.MEDIUM)
        start = TierAction(TierActionType.ESCALATE_PRIORITY)
        day_20 = TierAction(TierActionType.RECORD_NOTE, day_of_execution=20)

        assert action_fires(start, tier, 15)
        assert not action_fires(start, tier, 16)
        assert action_fires(day_20, tier, 20)
        assert not action_fires(day_20, tier, 15)
        assert not action_fires(TierAction(TierActionType.RECORD_NOTE, active=False), tier, 15)

    def test_implicit_block_from_policy_criteria(self):
        config = ArrearsConfiguration(auto_block_enabled=True, block_after_arrears_amount=Decimal("100"))
        tier = CollectionTier(id="t1", name="T", days_from=1, days_to=None, priority=AlertSeverity.LOW)
        alert = CollectionAlert(
            id="A1", credit_id="CR-1", customer_id="CUST-1", days_late=7,
            overdue_amount=Decimal("1000"), arrears_amount=Decimal("150"),
            severity=AlertSeverity.LOW, alert_date=date(2024, 3, 5),
        )

        actions = determine_actions(tier, alert, config, date(2024, 3, 5))

        assert [a.action_type for a in actions] == [TierActionType.BLOCK_CLIENT]

    def test_validate_tiers(self):
        tiers = [
            CollectionTier(id="t1", name="", days_from=10, days_to=5, priority=AlertSeverity.LOW),
            CollectionTier(id="t2", name="T", days_from=1, days_to=5, priority=AlertSeverity.LOW,
                           actions=[TierAction(TierActionType.RECORD_NOTE, day_of_execution=9)]),
        ]

        errors = validate_tiers(tiers)

        assert set(errors) == {"tiers[0].name", "tiers[0].days_to", "tiers[1].actions[0].day_of_execution"}


class TestTierPersistence:
    """Test stored tier configuration"""

    def test_defaults_when_nothing_stored(self, system):
        assert [t.name for t in system.tier_engine.get_tiers()][0] == "Initial arrears"

    def test_save_replaces_tiers_and_audits(self, system):
        tiers = [
            CollectionTier(id="", name="Early", days_from=1, days_to=10, priority=AlertSeverity.LOW,
                           actions=[TierAction(TierActionType.RECORD_NOTE, note="first contact")]),
            CollectionTier(id="", name="Late", days_from=11, days_to=None, priority=AlertSeverity.HIGH),
        ]

        saved = system.tier_engine.save_tiers(tiers, user_id="admin")

        assert [t.name for t in saved] == ["Early", "Late"]
        assert all(t.id for t in saved)
        assert saved[0].actions[0].note == "first contact"
        assert len(system.audit_trail.get_events_by_type(AuditEventType.TIERS_UPDATED)) == 1

    def test_invalid_tiers_rejected(self, system):
        bad = [CollectionTier(id="t1", name="Bad", days_from=5, days_to=1, priority=AlertSeverity.LOW)]
        with pytest.raises(ValidationError):
            system.tier_engine.save_tiers(bad)
        assert system.storage.count(system.tier_engine.table) == 0


class TestProcessAlerts:
    """Test tier execution over active alerts"""

    def test_first_late_day_marks_installment_and_notifies(self, system, sender, add_installment):
        add_installment(due_date=date(2024, 3, 4))
        today = date(2024, 3, 5)
        sync(system, today)

        summary = system.tier_engine.process_alerts(today=today, now=at_ten(today))

        assert summary.processed == 1
        assert statuses(summary) == [
            (TierActionType.GENERATE_ALERT, OutcomeStatus.SKIPPED),
            (TierActionType.CHANGE_INSTALLMENT_STATUS, OutcomeStatus.SUCCEEDED),
            (TierActionType.SEND_NOTIFICATION, OutcomeStatus.SUCCEEDED),
        ]
        assert summary.notifications_sent == 1
        assert system.installments.require_installment("CR-1-1").status == InstallmentStatus.OVERDUE
        alert = system.collections.get_active_alert_for_credit("CR-1")
        assert alert.notifications_sent == 1
        assert sender.sent[0]["template"] == "overdue_notice"

    def test_medium_threshold_keeps_synced_severity(self, system, add_installment):
        add_installment(due_date=date(2024, 2, 20))
        today = date(2024, 3, 6)
        sync(system, today)

        summary = system.tier_engine.process_alerts(today=today, now=at_ten(today))

        assert (TierActionType.ESCALATE_PRIORITY, OutcomeStatus.SKIPPED) in statuses(summary)
        assert summary.escalated == 0
        assert system.collections.get_active_alert_for_credit("CR-1").severity == AlertSeverity.MEDIUM

    def test_escalation_raises_to_tier_priority_only(self, system, add_installment):
        add_installment(due_date=date(2024, 2, 20))
        today = date(2024, 3, 6)
        sync(system, today)
        alert = system.collections.get_active_alert_for_credit("CR-1")
        alert.severity = AlertSeverity.LOW
        system.guard.commit(system.collections.alerts_table, alert, alert.version)

        summary = system.tier_engine.process_alerts(today=today, now=at_ten(today))

        assert summary.escalated == 1
        assert system.collections.require_alert(alert.id).severity == AlertSeverity.MEDIUM

    def test_day_without_actions(self, system, open_alert):
        summary = system.tier_engine.process_alerts(today=date(2024, 3, 21), now=at_ten(date(2024, 3, 21)))

        assert summary.processed == 1
        assert summary.outcomes == []

    def test_escalation_at_critical_is_skipped(self, system, add_installment):
        add_installment(due_date=date(2024, 1, 5))
        today = date(2024, 3, 5)
        sync(system, today)

        summary = system.tier_engine.process_alerts(today=today, now=at_ten(today))

        assert (TierActionType.ESCALATE_PRIORITY, OutcomeStatus.SKIPPED) in statuses(summary)
        assert summary.escalated == 0

    def test_broken_promise_marked(self, system, open_alert):
        system.promises.register_promise(
            open_alert.id, open_alert.version, date(2024, 3, 22), Decimal("300"), "mgr-1", today=date(2024, 3, 21)
        )
        today = date(2024, 3, 26)

        summary = system.tier_engine.process_alerts(today=today, now=at_ten(today))

        assert statuses(summary) == [(TierActionType.MARK_PROMISE_BROKEN, OutcomeStatus.SUCCEEDED)]
        assert summary.promises_expired == 1
        assert system.promises.get_promises(status=PromiseStatus.EXPIRED)[0].alert_id == open_alert.id
        assert system.collections.require_alert(open_alert.id).severity == AlertSeverity.HIGH

    def test_automatic_block_is_idempotent(self, system, open_alert):
        update_policy(system, auto_block_enabled=True, block_after_overdue_installments=1)
        today = date(2024, 3, 21)

        first = system.tier_engine.process_alerts(today=today, now=at_ten(today))
        second = system.tier_engine.process_alerts(today=today, now=at_ten(today))

        assert first.clients_blocked == 1
        assert statuses(second) == [(TierActionType.BLOCK_CLIENT, OutcomeStatus.SKIPPED)]
        assert system.blocking.is_blocked("CUST-1")
        assert len(system.blocking.get_active_blocks("CUST-1")) == 1

    def test_failed_action_does_not_stop_the_rest(self, system, sender, add_installment):
        add_installment(due_date=date(2024, 2, 20))
        today = date(2024, 3, 6)
        sync(system, today)
        stale = system.collections.get_active_alert_for_credit("CR-1")
        system.collections.assign_manager(stale.id, "mgr-1", stale.version, "lead")

        summary = system.tier_engine.process_alerts(alerts=[stale], today=today, now=at_ten(today))

        assert statuses(summary) == [
            (TierActionType.ESCALATE_PRIORITY, OutcomeStatus.SKIPPED),
            (TierActionType.SEND_NOTIFICATION, OutcomeStatus.SUCCEEDED),
        ]
        assert summary.failures == 0
        stored = system.collections.require_alert(stale.id)
        assert stored.notifications_sent == 1
        assert stored.assigned_manager_id == "mgr-1"
        assert len(sender.sent) == 1

    def test_sent_notification_counts_when_counter_update_conflicts(self, system, sender, open_alert):
        system.tier_engine.save_tiers([
            CollectionTier(id="", name="Reminder", days_from=1, days_to=None, priority=AlertSeverity.LOW, actions=[
                TierAction(TierActionType.SEND_NOTIFICATION, day_of_execution=20),
            ]),
        ])
        stale = system.collections.require_alert(open_alert.id)
        system.collections.assign_manager(stale.id, "mgr-1", stale.version, "lead")
        today = date(2024, 3, 21)

        summary = system.tier_engine.process_alerts(alerts=[stale], today=today, now=at_ten(today))

        assert statuses(summary) == [(TierActionType.SEND_NOTIFICATION, OutcomeStatus.SUCCEEDED)]
        assert summary.notifications_sent == 1
        assert summary.failures == 0
        assert len(sender.sent) == 1
        stored = system.collections.require_alert(open_alert.id)
        assert stored.notifications_sent == 1
        assert stored.last_notification_at == at_ten(today)
        assert stored.assigned_manager_id == "mgr-1"

    def test_action_after_conflict_uses_stored_alert(self, system, open_alert):
        system.tier_engine.save_tiers([
            CollectionTier(id="", name="Desk", days_from=1, days_to=None, priority=AlertSeverity.HIGH, actions=[
                TierAction(TierActionType.ESCALATE_PRIORITY, day_of_execution=20),
                TierAction(TierActionType.ASSIGN_MANAGER, day_of_execution=20, manager_id="mgr-9"),
            ]),
        ])
        stale = system.collections.require_alert(open_alert.id)
        system.collections.assign_manager(stale.id, "mgr-1", stale.version, "lead")
        today = date(2024, 3, 21)

        summary = system.tier_engine.process_alerts(alerts=[stale], today=today, now=at_ten(today))

        assert statuses(summary) == [
            (TierActionType.ESCALATE_PRIORITY, OutcomeStatus.FAILED),
            (TierActionType.ASSIGN_MANAGER, OutcomeStatus.SUCCEEDED),
        ]
        assert "modified by another operation" in summary.outcomes[0].error
        stored = system.collections.require_alert(open_alert.id)
        assert stored.assigned_manager_id == "mgr-9"
        assert stored.severity == AlertSeverity.MEDIUM
        assert stored.version == open_alert.version + 2

    def test_sender_failure_reported(self, system, sender, add_installment):
        sender.fail_with = "gateway down"
        add_installment(due_date=date(2024, 3, 4))
        today = date(2024, 3, 5)
        sync(system, today)

        summary = system.tier_engine.process_alerts(today=today, now=at_ten(today))

        assert (TierActionType.SEND_NOTIFICATION, OutcomeStatus.FAILED) in statuses(summary)
        assert (TierActionType.CHANGE_INSTALLMENT_STATUS, OutcomeStatus.SUCCEEDED) in statuses(summary)

    def test_generate_alert_for_new_alert(self, system):
        alert = CollectionAlert(
            id="fresh", credit_id="CR-9", customer_id="CUST-9", days_late=1,
            overdue_amount=Decimal("100"), severity=AlertSeverity.LOW, alert_date=date(2024, 3, 5),
        )
        today = date(2024, 3, 5)

        summary = system.tier_engine.process_alerts(alerts=[alert], today=today, now=at_ten(today))

        assert (TierActionType.GENERATE_ALERT, OutcomeStatus.SUCCEEDED) in statuses(summary)
        assert system.collections.require_alert("fresh").credit_id == "CR-9"

    def test_custom_tier_assigns_manager_and_records_note(self, system, open_alert):
        system.tier_engine.save_tiers([
            CollectionTier(id="", name="Desk", days_from=1, days_to=None, priority=AlertSeverity.MEDIUM, actions=[
                TierAction(TierActionType.ASSIGN_MANAGER, day_of_execution=20, manager_id="mgr-9"),
                TierAction(TierActionType.RECORD_NOTE, day_of_execution=20, note="Handed to desk"),
            ]),
        ])
        today = date(2024, 3, 21)

        summary = system.tier_engine.process_alerts(today=today, now=at_ten(today))

        assert summary.actions_executed == 2
        assert system.collections.require_alert(open_alert.id).assigned_manager_id == "mgr-9"
        assert system.collections.get_contacts(open_alert.id)[0].notes == "Handed to desk"

    def test_automation_disabled(self, system, open_alert):
        update_policy(system, automation_enabled=False)

        summary = system.tier_engine.process_alerts(today=date(2024, 3, 21))

        assert summary.processed == 0

    def test_thread_pool_processes_every_alert(self):
        storage = InMemoryStorage()
        system = ArrearsSystem(
            storage=storage,
            settings=ArrearsSettings(storage_backend="memory", batch_max_workers=4),
            sender=RecordingSender(),
        )
        for n in range(6):
            system.installments.add_installment(_installment(f"CR-{n}", date(2024, 3, 4)))
        today = date(2024, 3, 5)
        sync(system, today)

        summary = system.tier_engine.process_alerts(today=today, now=at_ten(today))

        assert summary.processed == 6
        assert summary.notifications_sent == 6
        assert summary.failures == 0


def _installment(credit_id, due_date):
    installment = make_installment(due_date=due_date)
    installment.id = f"{credit_id}-1"
    installment.credit_id = credit_id
    installment.customer_id = f"CUST-{credit_id}"
    return installment
