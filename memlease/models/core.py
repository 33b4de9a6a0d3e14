"""
Core data models for lease-gated memory retrieval.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.timestamp_utils import from_iso, to_iso

GLOBAL_ACCESS = 'global'


def normalize_principal(principal: str) -> str:
    """Wallet addresses compare case-insensitively."""
    return principal.strip().lower()


class AuditAction(str, Enum):
    GRANTED = 'access_granted'
    DENIED = 'access_denied'


@dataclass
class LeaseInfo:
    """A time-boxed grant of an entity's access to a principal's memories."""
    id: str  # Ledger-assigned, doubles as the ledger correlation key
    principal: str
    entity: str
    access_specifier: str  # 'global' or a source name
    expires_at: datetime
    is_active: bool = True
    created_at: Optional[datetime] = None
    tx_hash: Optional[str] = None

    @property
    def is_global(self) -> bool:
        return self.access_specifier == GLOBAL_ACCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'principal': self.principal,
            'entity': self.entity,
            'accessSpecifier': self.access_specifier,
            'expiresAt': to_iso(self.expires_at),
            'isActive': self.is_active,
            'createdAt': to_iso(self.created_at),
            'txHash': self.tx_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LeaseInfo':
        return cls(id=data['id'],
                   principal=data['principal'],
                   entity=data['entity'],
                   access_specifier=data['accessSpecifier'],
                   expires_at=from_iso(data['expiresAt']),
                   is_active=bool(data.get('isActive', True)),
                   created_at=from_iso(data.get('createdAt')),
                   tx_hash=data.get('txHash'))


@dataclass
class LedgerLeaseReceipt:
    """Result of allocating a lease on the ledger."""
    lease_id: str
    tx_hash: Optional[str]
    expires_at: datetime


@dataclass
class AccessResolution:
    """Outcome of access resolution: a lease, or a denial reason."""
    lease: Optional[LeaseInfo] = None
    reason: Optional[str] = None
    available: List[str] = field(default_factory=list)

    @property
    def granted(self) -> bool:
        return self.lease is not None


@dataclass
class AuditRecord:
    """Immutable record of a single retrieval decision."""
    id: str
    principal: str
    entity: str
    action: str
    prompt: str
    lease_id: Optional[str] = None
    reason: Optional[str] = None
    source: Optional[str] = None
    accessed_memories: List[str] = field(default_factory=list)
    tx_hash: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def memory_count(self) -> int:
        return len(self.accessed_memories)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'principal': self.principal,
            'leaseId': self.lease_id,
            'entity': self.entity,
            'action': self.action,
            'reason': self.reason,
            'prompt': self.prompt,
            'source': self.source,
            'accessedMemories': list(self.accessed_memories),
            'memoryCount': self.memory_count,
            'txHash': self.tx_hash,
            'createdAt': to_iso(self.created_at),
        }


@dataclass
class AuditStats:
    total_accesses: int = 0
    granted_accesses: int = 0
    denied_accesses: int = 0
    total_memories_accessed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'totalAccesses': self.total_accesses,
            'grantedAccesses': self.granted_accesses,
            'deniedAccesses': self.denied_accesses,
            'totalMemoriesAccessed': self.total_memories_accessed,
        }


@dataclass
class MemoryRecord:
    """A unit of extracted content as stored in the relational store."""
    id: str
    principal: str
    source: str
    extracted_content: str
    tags: List[str]
    fingerprint: str
    conversation_thread: Optional[str] = None
    prompt: Optional[str] = None
    images: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'source': self.source,
            'conversationThread': self.conversation_thread,
            'extractedContent': self.extracted_content,
            'tags': list(self.tags),
            'images': list(self.images),
            'createdAt': to_iso(self.created_at),
        }


@dataclass
class ChunkPayload:
    """Fixed metadata schema stored alongside every chunk vector.

    memory_id may be None only on documents read back from the index;
    upserts require it.
    """
    memory_id: Optional[str]
    chunk_index: int
    content: str
    tags: List[str]
    principal: str
    source: str

    def to_document(self) -> Dict[str, Any]:
        return {
            'memory_id': self.memory_id,
            'chunk_index': self.chunk_index,
            'content': self.content,
            'tags': list(self.tags),
            'principal': self.principal,
            'source': self.source,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'ChunkPayload':
        return cls(memory_id=doc.get('memory_id') or None,
                   chunk_index=int(doc.get('chunk_index', 0)),
                   content=doc.get('content', ''),
                   tags=list(doc.get('tags') or []),
                   principal=doc.get('principal', ''),
                   source=doc.get('source', ''))


@dataclass
class ChunkMatch:
    """A single nearest-neighbour hit from the vector index."""
    id: str
    score: float
    payload: ChunkPayload


@dataclass
class RankedMemory:
    """A memory returned by retrieval, scored by its best matching chunk."""
    id: str
    source: str
    extracted_content: str
    tags: List[str]
    similarity: float
    created_at: Optional[datetime] = None
    conversation_thread: Optional[str] = None
    matched_chunks: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'source': self.source,
            'extractedContent': self.extracted_content,
            'tags': list(self.tags),
            'createdAt': to_iso(self.created_at),
            'similarity': self.similarity,
            'matchedChunks': list(self.matched_chunks),
            'images': list(self.images),
        }


@dataclass
class IngestionResult:
    memory_id: str
    fingerprint: str
    duplicate: bool = False
    chunk_count: int = 0
