"""
Append-only, hash-chained ledger for lease and access events.

Every event stores the hash of its predecessor; previous_event_hash is
unique, so two writers racing on the same tip cannot fork the chain (the
loser gets a LedgerError and is not retried).
"""

import hashlib
import json
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime, Integer, String, create_engine, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from ..models.core import LedgerLeaseReceipt
from ..models.errors import UpstreamUnavailableError
from .config import LedgerConfig
from .logging_config import get_logger
from .timestamp_utils import from_iso, to_iso, utc_now

logger = get_logger(__name__)

GENESIS_HASH = '0x' + '0' * 64

LEASE_CREATED = 'lease_created'
LEASE_REVOKED = 'lease_revoked'
ACCESS_RECORDED = 'access_recorded'

LedgerBase = declarative_base()


class LedgerEvent(LedgerBase):
    """One immutable ledger entry."""

    __tablename__ = 'ledger_events'

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    event_hash = Column(String(66), nullable=False, unique=True)
    previous_event_hash = Column(String(66), nullable=False, unique=True)
    event_type = Column(String(50), nullable=False, index=True)
    correlation_id = Column(String(66), nullable=False, index=True)  # lease id
    principal = Column(String(256), nullable=False, index=True)
    payload_json = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False)


class LedgerError(UpstreamUnavailableError):
    """Custom exception for ledger errors."""
    pass


class LedgerStateError(LedgerError):
    """The ledger has no record of the lease, or it is already revoked there."""
    pass


def _sha256_hex(data: str) -> str:
    return '0x' + hashlib.sha256(data.encode('utf-8')).hexdigest()


def _canonical(value: Dict[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, separators=(',', ':'), ensure_ascii=False)


def compute_event_hash(previous_hash: str, event_type: str, correlation_id: str, principal: str, payload: Dict[str, Any],
                       created_at: datetime) -> str:
    body = _canonical({
        'type': event_type,
        'correlationId': correlation_id,
        'principal': principal,
        'payload': payload,
        'createdAt': to_iso(created_at),
    })
    return _sha256_hex(previous_hash + body)


class LedgerClient:
    """Ledger of record for lease existence, revocation and access decisions."""

    def __init__(self, config: LedgerConfig, engine: Optional[Engine] = None):
        """
        Initialize the ledger client.

        Args:
            config: LedgerConfig instance with the ledger database URL
            engine: Prebuilt SQLAlchemy engine (created from config.database_url if None)
        """
        self.config = config
        self.engine = engine or create_engine(config.database_url, pool_pre_ping=True)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

        logger.info(f'Initialized ledger on {self.engine.url.get_backend_name()}')

    def create_schema(self) -> None:
        try:
            LedgerBase.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            logger.error(f'Error creating ledger schema: {e}')
            raise LedgerError(f'Failed to create ledger schema: {e}')

    def _append(self, session, event_type: str, correlation_id: str, principal: str, payload: Dict[str, Any],
                created_at: datetime) -> LedgerEvent:
        previous_hash = session.execute(select(LedgerEvent.event_hash).order_by(LedgerEvent.sequence.desc()).limit(1)).scalar_one_or_none()
        previous_hash = previous_hash or GENESIS_HASH

        event = LedgerEvent(event_hash=compute_event_hash(previous_hash, event_type, correlation_id, principal, payload, created_at),
                            previous_event_hash=previous_hash,
                            event_type=event_type,
                            correlation_id=correlation_id,
                            principal=principal,
                            payload_json=payload,
                            created_at=created_at)
        session.add(event)
        return event

    def _events_for(self, session, correlation_id: str) -> List[LedgerEvent]:
        return list(
            session.execute(select(LedgerEvent).where(LedgerEvent.correlation_id == correlation_id).order_by(
                LedgerEvent.sequence)).scalars().all())

    def create_lease(self, principal: str, entity: str, access_specifier: str, duration_seconds: int) -> LedgerLeaseReceipt:
        """
        Allocate a lease on the ledger.

        Args:
            principal: Owner granting access
            entity: Grantee
            access_specifier: 'global' or a source name
            duration_seconds: Lease lifetime

        Returns:
            Receipt with the ledger-issued lease id, tx hash and expiry

        Raises:
            LedgerError: If the write fails; the caller must not retry blindly
        """
        created_at = utc_now()
        expires_at = created_at + timedelta(seconds=duration_seconds)
        lease_id = _sha256_hex(
            _canonical({
                'principal': principal,
                'entity': entity,
                'accessSpecifier': access_specifier,
                'durationSeconds': duration_seconds,
                'createdAt': to_iso(created_at),
                'nonce': secrets.token_hex(16),
            }))
        payload = {
            'entity': entity,
            'accessSpecifier': access_specifier,
            'durationSeconds': duration_seconds,
            'expiresAt': to_iso(expires_at),
        }

        try:
            with self.Session.begin() as session:
                event = self._append(session, LEASE_CREATED, lease_id, principal, payload, created_at)
            logger.info(f'Ledger lease created: {lease_id} (tx {event.event_hash})')
            return LedgerLeaseReceipt(lease_id=lease_id, tx_hash=event.event_hash, expires_at=expires_at)
        except IntegrityError as e:
            logger.error(f'Concurrent ledger append while creating lease: {e}')
            raise LedgerError(f'Ledger append conflict: {e}')
        except SQLAlchemyError as e:
            logger.error(f'Ledger lease creation failed: {e}')
            raise LedgerError(f'Ledger lease creation failed: {e}')

    def revoke_lease(self, lease_id: str) -> str:
        """
        Record revocation of a lease.

        Returns:
            Revocation tx hash

        Raises:
            LedgerError: If the lease is unknown, already revoked, or the write fails
        """
        try:
            with self.Session.begin() as session:
                events = self._events_for(session, lease_id)
                created = next((e for e in events if e.event_type == LEASE_CREATED), None)
                if created is None:
                    raise LedgerStateError(f'Lease {lease_id} does not exist on the ledger')
                if any(e.event_type == LEASE_REVOKED for e in events):
                    raise LedgerStateError(f'Lease {lease_id} is already revoked on the ledger')

                event = self._append(session, LEASE_REVOKED, lease_id, created.principal, {}, utc_now())
            logger.info(f'Ledger lease revoked: {lease_id} (tx {event.event_hash})')
            return event.event_hash
        except IntegrityError as e:
            logger.error(f'Concurrent ledger append while revoking lease {lease_id}: {e}')
            raise LedgerError(f'Ledger append conflict: {e}')
        except SQLAlchemyError as e:
            logger.error(f'Ledger lease revocation failed: {e}')
            raise LedgerError(f'Ledger lease revocation failed: {e}')

    def is_active(self, lease_id: str) -> bool:
        """True if the lease exists, is not revoked and has not expired."""
        try:
            with self.Session() as session:
                events = self._events_for(session, lease_id)
        except SQLAlchemyError as e:
            logger.error(f'Ledger lease check failed: {e}')
            raise LedgerError(f'Ledger lease check failed: {e}')

        created = next((e for e in events if e.event_type == LEASE_CREATED), None)
        if created is None or any(e.event_type == LEASE_REVOKED for e in events):
            return False
        return from_iso(created.payload_json['expiresAt']) > utc_now()

    def record_audit(self, principal: str, lease_id: str, entity: str, action: str, memory_ids: List[str]) -> Optional[str]:
        """
        Mirror an access decision onto the ledger.

        Memory ids are stored as hashes only.

        Returns:
            Audit tx hash

        Raises:
            LedgerError: If the write fails
        """
        payload = {
            'entity': entity,
            'action': action,
            'memoryIdHashes': [_sha256_hex(memory_id) for memory_id in memory_ids],
        }
        try:
            with self.Session.begin() as session:
                event = self._append(session, ACCESS_RECORDED, lease_id, principal, payload, utc_now())
            logger.debug(f'Ledger access recorded for lease {lease_id} (tx {event.event_hash})')
            return event.event_hash
        except SQLAlchemyError as e:
            logger.error(f'Ledger audit recording failed: {e}')
            raise LedgerError(f'Ledger audit recording failed: {e}')

    def verify_chain(self) -> Optional[int]:
        """
        Recompute every event hash in sequence order.

        Returns:
            Sequence number of the first broken event, or None if the chain is intact
        """
        try:
            with self.Session() as session:
                events = session.execute(select(LedgerEvent).order_by(LedgerEvent.sequence)).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f'Ledger verification failed: {e}')
            raise LedgerError(f'Ledger verification failed: {e}')

        expected_previous = GENESIS_HASH
        for event in events:
            recomputed = compute_event_hash(event.previous_event_hash, event.event_type, event.correlation_id, event.principal,
                                            event.payload_json, event.created_at)
            if event.previous_event_hash != expected_previous or recomputed != event.event_hash:
                logger.warning(f'Ledger chain broken at sequence {event.sequence}')
                return event.sequence
            expected_previous = event.event_hash
        return None

    def health_check(self) -> bool:
        """
        Perform a health check on the ledger store.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            with self.engine.connect() as connection:
                connection.execute(text('SELECT 1'))
            return True
        except Exception as e:
            logger.error(f'Ledger health check failed: {e}')
            return False
