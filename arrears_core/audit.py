"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every state change made by the arrears engine is logged here.
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .storage import StorageInterface


class AuditEventType(Enum):
    """Types of audit events"""
    # Alert events
    ALERT_CREATED = "alert_created"
    ALERT_UPDATED = "alert_updated"
    ALERT_ESCALATED = "alert_escalated"
    ALERT_ASSIGNED = "alert_assigned"
    ALERT_RESOLVED = "alert_resolved"
    ALERT_IGNORED = "alert_ignored"

    # Contact events
    CONTACT_RECORDED = "contact_recorded"

    # Promise events
    PROMISE_REGISTERED = "promise_registered"
    PROMISE_FULFILLED = "promise_fulfilled"
    PROMISE_EXPIRED = "promise_expired"

    # Agreement events
    AGREEMENT_CREATED = "agreement_created"
    AGREEMENT_CONFIRMED = "agreement_confirmed"
    AGREEMENT_PAYMENT_RECORDED = "agreement_payment_recorded"
    AGREEMENT_FULFILLED = "agreement_fulfilled"
    AGREEMENT_BROKEN = "agreement_broken"
    AGREEMENT_CANCELLED = "agreement_cancelled"

    # Installment and client events
    INSTALLMENT_STATUS_CHANGED = "installment_status_changed"
    CLIENT_BLOCKED = "client_blocked"
    CLIENT_UNBLOCKED = "client_unblocked"
    NOTIFICATION_SENT = "notification_sent"

    # System events
    CONFIGURATION_UPDATED = "configuration_updated"
    TIERS_UPDATED = "tiers_updated"
    DAILY_RUN_COMPLETED = "daily_run_completed"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


@dataclass
class AuditEvent:
    """Immutable audit event with hash chaining for tamper detection"""
    id: str
    created_at: datetime
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    sequence: int = 0

    def __post_init__(self):
        self.metadata = _json_safe(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'sequence': self.sequence,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
            'metadata': self.metadata,
            'user_id': self.user_id,
            'sequence': self.sequence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id'),
            sequence=data.get('sequence', 0),
        )


class AuditTrail:
    """Hash-chained audit trail for tamper detection"""

    def __init__(self, storage: StorageInterface, table_name: str = "arrears_audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self._head: Optional[Tuple[str, int]] = None

    def _load_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def _chain_head(self) -> Tuple[str, int]:
        # Sequence numbers are dense, so a count mismatch means the cache is stale
        if self._head is None or self._head[1] != self.storage.count(self.table_name):
            events = self._load_events()
            self._head = (events[-1].current_hash, events[-1].sequence) if events else ("", 0)
        return self._head

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event chained to the previous one.

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited, e.g. "collection_alert"
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user (or "SYSTEM") who initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            previous_hash, last_sequence = self._chain_head()
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=datetime.now(timezone.utc),
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=previous_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id,
                sequence=last_sequence + 1
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self._head = (event.current_hash, event.sequence)
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """All events for one entity, oldest first"""
        events = [
            AuditEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {'entity_type': entity_type, 'entity_id': entity_id})
        ]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_by_type(self, event_type: AuditEventType, limit: Optional[int] = None) -> List[AuditEvent]:
        events = [e for e in self._load_events() if e.event_type == event_type]
        if limit:
            events = events[-limit:]
        return events

    def count_events(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify every event hash and the continuity of the chain.

        Returns:
            Dictionary with 'valid', 'total_events', 'hash_errors' and 'chain_breaks'
        """
        result: Dict[str, Any] = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        events = self._load_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result
