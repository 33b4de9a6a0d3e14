"""
Relational schema for principals, leases, audit trail and memories.
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship

from ..utils.timestamp_utils import utc_now

Base = declarative_base()


class User(Base):
    __tablename__ = 'users'

    wallet_id = Column(String(256), primary_key=True)  # normalized principal
    created_at = Column(DateTime, nullable=False, default=utc_now)


class MemoryLease(Base):
    __tablename__ = 'memory_leases'

    id = Column(String(256), primary_key=True)  # ledger-issued lease id
    wallet_id = Column(String(256), ForeignKey('users.wallet_id'), nullable=False)
    entity = Column(String(256), nullable=False)  # claude, chatgpt, etc.
    access_specifier = Column(String(256), nullable=False)  # 'global' or source name
    expires_at = Column(DateTime, nullable=False)
    tx_hash = Column(String(256))  # ledger creation tx, NULL when the ledger is disabled
    is_revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime)
    revoke_tx_hash = Column(String(256))
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index('lease_wallet_idx', 'wallet_id'),
        Index('lease_entity_idx', 'entity'),
        Index('lease_expires_at_idx', 'expires_at'),
        Index('lease_access_specifier_idx', 'access_specifier'),
    )


class MemoryAuditEntry(Base):
    __tablename__ = 'memory_audit_trail'

    id = Column(String(64), primary_key=True)
    wallet_id = Column(String(256), ForeignKey('users.wallet_id'), nullable=False)
    lease_id = Column(String(256))  # NULL when denied before a lease was found
    entity = Column(String(256), nullable=False)
    action = Column(String(50), nullable=False)  # access_granted | access_denied
    reason = Column(Text)
    user_prompt = Column(Text, nullable=False)
    source = Column(String(256))  # effective source filter
    accessed_memories = Column(JSON, nullable=False, default=list)
    memory_count = Column(Integer, nullable=False, default=0)
    tx_hash = Column(String(256))
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index('audit_wallet_idx', 'wallet_id'),
        Index('audit_lease_idx', 'lease_id'),
        Index('audit_action_idx', 'action'),
        Index('audit_created_at_idx', 'created_at'),
    )


class Memory(Base):
    __tablename__ = 'memories'

    id = Column(String(64), primary_key=True)
    wallet_id = Column(String(256), ForeignKey('users.wallet_id'), nullable=False)
    prompt = Column(Text)
    source = Column(String(256), nullable=False)
    conversation_thread = Column(Text)
    extracted_memory = Column(Text, nullable=False)
    tags = Column(JSON, nullable=False, default=list)
    fingerprint = Column(String(256), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    images = relationship('MemoryImage', cascade='all, delete-orphan', order_by='MemoryImage.identifier')
    embeddings = relationship('MemoryEmbedding', cascade='all, delete-orphan')

    __table_args__ = (
        UniqueConstraint('wallet_id', 'fingerprint', name='memory_wallet_fingerprint_uq'),
        Index('memory_wallet_idx', 'wallet_id'),
        Index('memory_source_idx', 'source'),
        Index('memory_created_at_idx', 'created_at'),
    )


class MemoryEmbedding(Base):
    """Maps a memory chunk to its vector index id."""
    __tablename__ = 'memory_embeddings'

    id = Column(String(64), primary_key=True)
    memory_id = Column(String(64), ForeignKey('memories.id', ondelete='CASCADE'), nullable=False, index=True)
    wallet_id = Column(String(256), nullable=False)
    vector_id = Column(String(32), nullable=False, unique=True)
    chunk_index = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)


class MemoryImage(Base):
    """Identifier of an image attached to a memory; the blob lives in object storage."""
    __tablename__ = 'memory_images'

    id = Column(String(64), primary_key=True)
    memory_id = Column(String(64), ForeignKey('memories.id', ondelete='CASCADE'), nullable=False, index=True)
    wallet_id = Column(String(256), nullable=False)
    identifier = Column(String(256), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)
