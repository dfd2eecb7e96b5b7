"""
Audit Trail Module

Append-only record of every state change on a loan book: disbursements,
payments, reversals, reclassifications, snapshots and write-offs. Each event
stores the SHA-256 digest of its predecessor, so editing or deleting a
stored event breaks the chain and shows up in verify_integrity().

Events are written through the same storage as the records they describe,
so an event logged inside a rolled-back atomic() block disappears with it.
"""

import hashlib
import json
import threading
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .currency import Currency
from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    # Loan lifecycle
    LOAN_CREATED = "loan_created"
    LOAN_APPROVED = "loan_approved"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_CLOSED = "loan_closed"
    LOAN_WRITTEN_OFF = "loan_written_off"
    SCHEDULE_GENERATED = "schedule_generated"

    # Repayments
    PAYMENT_PROCESSED = "payment_processed"
    PAYMENT_REJECTED = "payment_rejected"
    PAYMENT_REVERSED = "payment_reversed"
    DELAYED_DAYS_UPDATED = "delayed_days_updated"

    # Classification and reporting
    LOAN_RECLASSIFIED = "loan_reclassified"
    BATCH_CLASSIFICATION_RUN = "batch_classification_run"
    SNAPSHOT_CREATED = "snapshot_created"

    COLLATERAL_REGISTERED = "collateral_registered"
    DAILY_UPDATE_RUN = "daily_update_run"


def _plain(value: Any) -> Any:
    """JSON-safe form of a metadata value"""
    if isinstance(value, Currency):
        return value.code
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """One link in the audit chain"""
    event_type: AuditEventType
    entity_type: str  # loan, transaction, classification, snapshot, system
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    organization_id: Optional[str] = None
    performed_by: Optional[str] = None
    sequence: int = 0

    def __post_init__(self):
        if self.metadata:
            self.metadata = {k: _plain(v) for k, v in self.metadata.items()}

    def digest(self) -> str:
        """SHA-256 over every field except current_hash"""
        payload = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'organization_id': self.organization_id,
            'performed_by': self.performed_by,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata
        }
        encoded = json.dumps(payload, sort_keys=True, separators=(',', ':')).encode('utf-8')
        return hashlib.sha256(encoded).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.digest()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        for key in ('created_at', 'updated_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """Hash-chained event log stored in the "audit_events" table"""

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _chain_head(self) -> Optional[Dict[str, Any]]:
        rows = self.storage.load_all(self.table_name)
        if not rows:
            return None
        return max(rows, key=lambda row: row.get('sequence', 0))

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        organization_id: Optional[str] = None,
        performed_by: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain.

        The head is re-read from storage on every call, so the chain always
        continues from the last event that was actually committed.
        """
        with self._lock:
            head = self._chain_head()
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['current_hash'] if head else "",
                current_hash="",
                metadata=metadata or {},
                organization_id=organization_id,
                performed_by=performed_by,
                sequence=head.get('sequence', 0) + 1 if head else 1
            )
            event.current_hash = event.digest()
            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def _events(self, filters: Optional[Dict[str, Any]] = None) -> List[AuditEvent]:
        rows = self.storage.find(self.table_name, filters or {})
        rows.sort(key=lambda row: row.get('sequence', 0))
        return [AuditEvent.from_dict(row) for row in rows]

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Events for one entity, oldest first; limit keeps the most recent"""
        events = self._events({'entity_type': entity_type, 'entity_id': entity_id})
        return events[-limit:] if limit else events

    def get_events_by_type(self, event_type: AuditEventType, limit: Optional[int] = None) -> List[AuditEvent]:
        events = self._events({'event_type': event_type.value})
        return events[-limit:] if limit else events

    def get_events_for_organization(self, organization_id: str) -> List[AuditEvent]:
        return self._events({'organization_id': organization_id})

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain from the first event and report every broken link.

        Returns:
            {'valid': bool, 'total_events': int, 'problems': [...]} where each
            problem names the event, its position and whether its own hash
            no longer matches ("hash_mismatch") or it does not point at its
            predecessor ("chain_break").
        """
        events = self._events()
        problems = []
        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                problems.append({'event_id': event.id, 'position': position, 'kind': 'hash_mismatch'})
            if event.previous_hash != previous_hash:
                problems.append({'event_id': event.id, 'position': position, 'kind': 'chain_break'})
            previous_hash = event.current_hash

        return {'valid': not problems, 'total_events': len(events), 'problems': problems}

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
