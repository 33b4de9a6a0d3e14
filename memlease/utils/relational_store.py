"""
Relational store for leases, audit entries, memories and chunk mappings, via SQLAlchemy.
"""

import uuid
from datetime import datetime
from functools import wraps
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import case, create_engine, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload, sessionmaker

from ..models.core import AuditRecord, AuditStats, AuditAction, LeaseInfo, MemoryRecord
from ..models.errors import MemoryLeaseError, UpstreamUnavailableError
from ..models.tables import Base, Memory, MemoryAuditEntry, MemoryEmbedding, MemoryImage, MemoryLease, User
from .config import DatabaseConfig
from .logging_config import get_logger
from .timestamp_utils import to_naive_utc, utc_now

logger = get_logger(__name__)


class RelationalStoreError(UpstreamUnavailableError):
    """Custom exception for relational store errors."""
    pass


class DuplicateFingerprintError(MemoryLeaseError):
    """The principal already has a memory with the same content fingerprint."""
    pass


def wrap_database_errors(func):
    """Decorator translating SQLAlchemy failures into RelationalStoreError."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except (RelationalStoreError, DuplicateFingerprintError):
            raise
        except SQLAlchemyError as e:
            logger.error(f'Error in {func.__name__}: {e}')
            raise RelationalStoreError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _new_id() -> str:
    return uuid.uuid4().hex


def _lease_from_row(row: MemoryLease, now: Optional[datetime] = None) -> LeaseInfo:
    now = now or utc_now()
    return LeaseInfo(id=row.id,
                     principal=row.wallet_id,
                     entity=row.entity,
                     access_specifier=row.access_specifier,
                     expires_at=row.expires_at,
                     is_active=not row.is_revoked and row.expires_at > now,
                     created_at=row.created_at,
                     tx_hash=row.tx_hash)


def _audit_from_row(row: MemoryAuditEntry) -> AuditRecord:
    return AuditRecord(id=row.id,
                       principal=row.wallet_id,
                       lease_id=row.lease_id,
                       entity=row.entity,
                       action=row.action,
                       reason=row.reason,
                       prompt=row.user_prompt,
                       source=row.source,
                       accessed_memories=list(row.accessed_memories or []),
                       tx_hash=row.tx_hash,
                       created_at=row.created_at)


def _memory_from_row(row: Memory) -> MemoryRecord:
    return MemoryRecord(id=row.id,
                        principal=row.wallet_id,
                        source=row.source,
                        extracted_content=row.extracted_memory,
                        tags=list(row.tags or []),
                        fingerprint=row.fingerprint,
                        conversation_thread=row.conversation_thread,
                        prompt=row.prompt,
                        images=[image.identifier for image in row.images],
                        created_at=row.created_at)


class RelationalStore:
    """Durable, queryable projection of leases, audit trail and memories."""

    def __init__(self, config: DatabaseConfig, engine: Optional[Engine] = None):
        """
        Initialize the relational store.

        Args:
            config: DatabaseConfig instance with the connection URL
            engine: Prebuilt SQLAlchemy engine (created from config.url if None)
        """
        self.config = config
        self.engine = engine or create_engine(config.url, echo=config.echo, pool_pre_ping=True)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

        logger.info(f'Initialized relational store on {self.engine.url.get_backend_name()}')

    @wrap_database_errors
    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def _ensure_principal(self, session, principal: str) -> None:
        if session.get(User, principal) is None:
            session.add(User(wallet_id=principal))
            session.flush()
            logger.debug(f'Registered principal {principal}')

    # Leases

    @wrap_database_errors
    def insert_lease(self, lease: LeaseInfo) -> None:
        """
        Materialize a ledger-allocated lease.

        Args:
            lease: Lease whose id was issued by the ledger
        """
        with self.Session.begin() as session:
            self._ensure_principal(session, lease.principal)
            session.add(
                MemoryLease(id=lease.id,
                            wallet_id=lease.principal,
                            entity=lease.entity,
                            access_specifier=lease.access_specifier,
                            expires_at=to_naive_utc(lease.expires_at),
                            tx_hash=lease.tx_hash,
                            is_revoked=False,
                            created_at=lease.created_at or utc_now()))

    @wrap_database_errors
    def get_lease(self, lease_id: str) -> Optional[LeaseInfo]:
        with self.Session() as session:
            row = session.get(MemoryLease, lease_id)
            return _lease_from_row(row) if row is not None else None

    @wrap_database_errors
    def find_unrevoked_lease(self, lease_id: str, principal: str) -> Optional[LeaseInfo]:
        """Lease owned by principal that has not been revoked (expired leases included)."""
        with self.Session() as session:
            row = session.execute(
                select(MemoryLease).where(MemoryLease.id == lease_id, MemoryLease.wallet_id == principal,
                                          MemoryLease.is_revoked.is_(False))).scalar_one_or_none()
            return _lease_from_row(row) if row is not None else None

    @wrap_database_errors
    def mark_lease_revoked(self, lease_id: str, revoked_at: datetime, revoke_tx_hash: Optional[str]) -> bool:
        """
        Flag a lease as revoked.

        Returns:
            False if the lease was missing or already revoked
        """
        with self.Session.begin() as session:
            row = session.get(MemoryLease, lease_id)
            if row is None or row.is_revoked:
                return False
            row.is_revoked = True
            row.revoked_at = to_naive_utc(revoked_at)
            row.revoke_tx_hash = revoke_tx_hash
            return True

    @wrap_database_errors
    def list_unrevoked_leases(self, principal: str) -> List[LeaseInfo]:
        """All non-revoked leases of a principal, newest first; expiry is not applied."""
        now = utc_now()
        with self.Session() as session:
            rows = session.execute(
                select(MemoryLease).where(MemoryLease.wallet_id == principal, MemoryLease.is_revoked.is_(False)).order_by(
                    MemoryLease.created_at.desc(), MemoryLease.id)).scalars().all()
            return [_lease_from_row(row, now) for row in rows]

    # Audit trail

    @wrap_database_errors
    def insert_audit(self, record: AuditRecord) -> None:
        with self.Session.begin() as session:
            self._ensure_principal(session, record.principal)
            session.add(
                MemoryAuditEntry(id=record.id,
                                 wallet_id=record.principal,
                                 lease_id=record.lease_id,
                                 entity=record.entity,
                                 action=record.action,
                                 reason=record.reason,
                                 user_prompt=record.prompt,
                                 source=record.source,
                                 accessed_memories=list(record.accessed_memories),
                                 memory_count=record.memory_count,
                                 tx_hash=record.tx_hash,
                                 created_at=record.created_at or utc_now()))

    @wrap_database_errors
    def list_audit(self, principal: str, limit: int = 50) -> List[AuditRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(MemoryAuditEntry).where(MemoryAuditEntry.wallet_id == principal).order_by(
                    MemoryAuditEntry.created_at.desc()).limit(limit)).scalars().all()
            return [_audit_from_row(row) for row in rows]

    @wrap_database_errors
    def audit_stats(self, principal: str) -> AuditStats:
        granted = MemoryAuditEntry.action == AuditAction.GRANTED.value
        denied = MemoryAuditEntry.action == AuditAction.DENIED.value
        with self.Session() as session:
            total, granted_count, denied_count, memories = session.execute(
                select(func.count(MemoryAuditEntry.id),
                       func.coalesce(func.sum(case((granted, 1), else_=0)), 0),
                       func.coalesce(func.sum(case((denied, 1), else_=0)), 0),
                       func.coalesce(func.sum(case((granted, MemoryAuditEntry.memory_count), else_=0)), 0)).where(
                           MemoryAuditEntry.wallet_id == principal)).one()
        return AuditStats(total_accesses=int(total),
                          granted_accesses=int(granted_count),
                          denied_accesses=int(denied_count),
                          total_memories_accessed=int(memories))

    # Memories

    @wrap_database_errors
    def insert_memory(self, memory: MemoryRecord) -> None:
        """
        Insert a memory and its image identifiers.

        Raises:
            DuplicateFingerprintError: If the principal already stored this fingerprint
        """
        try:
            with self.Session.begin() as session:
                self._ensure_principal(session, memory.principal)
                row = Memory(id=memory.id,
                             wallet_id=memory.principal,
                             prompt=memory.prompt,
                             source=memory.source,
                             conversation_thread=memory.conversation_thread,
                             extracted_memory=memory.extracted_content,
                             tags=list(memory.tags),
                             fingerprint=memory.fingerprint,
                             created_at=memory.created_at or utc_now())
                for identifier in memory.images:
                    row.images.append(MemoryImage(id=_new_id(), wallet_id=memory.principal, identifier=identifier))
                session.add(row)
        except IntegrityError as e:
            if self.find_memory_by_fingerprint(memory.principal, memory.fingerprint) is not None:
                raise DuplicateFingerprintError(f'Memory with fingerprint {memory.fingerprint} already exists')
            logger.error(f'Integrity error inserting memory {memory.id}: {e}')
            raise RelationalStoreError(f'Failed to insert memory: {e}')

    @wrap_database_errors
    def find_memory_by_fingerprint(self, principal: str, fingerprint: str) -> Optional[MemoryRecord]:
        """Look up a principal's memory by fingerprint; other principals' memories are never matched."""
        with self.Session() as session:
            row = session.execute(
                select(Memory).options(selectinload(Memory.images)).where(Memory.wallet_id == principal,
                                                                          Memory.fingerprint == fingerprint)).scalar_one_or_none()
            return _memory_from_row(row) if row is not None else None

    @wrap_database_errors
    def insert_chunk_mappings(self, memory_id: str, principal: str, chunks: Sequence[Tuple[int, int]]) -> None:
        """
        Record which vector ids hold the chunks of a memory.

        Args:
            memory_id: Owning memory
            principal: Owner of the memory
            chunks: (vector_id, chunk_index) pairs
        """
        with self.Session.begin() as session:
            for vector_id, chunk_index in chunks:
                session.add(
                    MemoryEmbedding(id=_new_id(),
                                    memory_id=memory_id,
                                    wallet_id=principal,
                                    vector_id=str(vector_id),
                                    chunk_index=chunk_index))

    @wrap_database_errors
    def delete_memory(self, memory_id: str) -> bool:
        with self.Session.begin() as session:
            row = session.get(Memory, memory_id)
            if row is None:
                return False
            session.delete(row)
            return True

    @wrap_database_errors
    def get_memories(self, principal: str, memory_ids: Sequence[str]) -> Dict[str, MemoryRecord]:
        """
        Load memories owned by principal, with attached image identifiers.

        Returns:
            Mapping of memory id to record; ids not found are absent
        """
        if not memory_ids:
            return {}
        with self.Session() as session:
            rows = session.execute(
                select(Memory).options(selectinload(Memory.images)).where(Memory.wallet_id == principal,
                                                                          Memory.id.in_(list(memory_ids)))).scalars().all()
            return {row.id: _memory_from_row(row) for row in rows}

    @wrap_database_errors
    def list_memories(self, principal: str, source: Optional[str] = None, limit: int = 10, offset: int = 0) -> List[MemoryRecord]:
        query = select(Memory).options(selectinload(Memory.images)).where(Memory.wallet_id == principal)
        if source:
            query = query.where(Memory.source == source)
        query = query.order_by(Memory.created_at.desc()).limit(limit).offset(offset)
        with self.Session() as session:
            return [_memory_from_row(row) for row in session.execute(query).scalars().all()]

    def health_check(self) -> bool:
        """
        Perform a health check on the database.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            with self.engine.connect() as connection:
                connection.execute(text('SELECT 1'))
            return True
        except Exception as e:
            logger.error(f'Relational store health check failed: {e}')
            return False
