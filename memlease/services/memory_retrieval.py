"""
Memory Retrieval Service: lease-gated semantic search over a principal's memories.
"""

from typing import Dict, List, Optional

from ..models.core import AuditAction, ChunkMatch, RankedMemory, normalize_principal
from ..models.errors import AccessDeniedError, UpstreamUnavailableError, ValidationError
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import RetrievalConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.relational_store import RelationalStore
from .access_resolver import AccessResolver
from .audit_trail import AuditTrailService

logger = get_logger(__name__)


class MemoryRetrievalError(UpstreamUnavailableError):
    """Custom exception for memory retrieval errors."""
    pass


class MemoryRetrievalService:
    """Resolve access, search chunk vectors, rank memories and audit the outcome."""

    def __init__(self,
                 resolver: AccessResolver,
                 audit: AuditTrailService,
                 embed: BedrockEmbed,
                 vector_index: OpenSearchClient,
                 store: RelationalStore,
                 config: RetrievalConfig):
        self.resolver = resolver
        self.audit = audit
        self.embed = embed
        self.vector_index = vector_index
        self.store = store
        self.config = config

        logger.info('Initialized MemoryRetrievalService')

    def _validate(self, principal: str, prompt: str, entity: str, limit: int) -> None:
        if not principal or not principal.strip():
            raise ValidationError('principal is required')
        if not prompt or not prompt.strip():
            raise ValidationError('prompt is required')
        if not entity or not entity.strip():
            raise ValidationError('entity is required')
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= self.config.max_limit:
            raise ValidationError(f'limit must be an integer between 1 and {self.config.max_limit}')

    def retrieve(self,
                 principal: str,
                 prompt: str,
                 entity: str,
                 requested_source: Optional[str] = None,
                 conversation_thread: Optional[str] = None,
                 limit: Optional[int] = None) -> List[RankedMemory]:
        """
        Retrieve the memories most relevant to prompt that entity may see.

        Exactly one audit record is written per call that passes validation:
        denied when access is refused or the pipeline fails before a decision
        was recorded, granted (with the returned ids) otherwise.

        Args:
            principal: Owner of the memories
            prompt: Text to match against memory content
            entity: Integration asking for memories
            requested_source: Restrict to one source; a source-scoped lease overrides it
            conversation_thread: Caller's conversation thread, logged for tracing
            limit: Maximum number of memories to return

        Returns:
            Memories ranked by similarity, best first

        Raises:
            ValidationError: If the request is malformed (nothing is audited)
            AccessDeniedError: If no lease authorizes the request
            MemoryRetrievalError: If an upstream system fails
        """
        if limit is None:
            limit = self.config.default_limit
        self._validate(principal, prompt, entity, limit)

        principal = normalize_principal(principal)
        entity = entity.strip()
        requested_source = (requested_source or '').strip() or None
        audited = False

        logger.info(f'Retrieval request from {entity} (source={requested_source}, thread={conversation_thread}, limit={limit})')

        try:
            resolution = self.resolver.resolve(principal, entity, requested_source)
            if not resolution.granted:
                self.audit.record(principal, entity, AuditAction.DENIED, resolution.reason, prompt, source=requested_source)
                audited = True
                logger.info(f'Access denied for {entity}: {resolution.reason}')
                raise AccessDeniedError(resolution.reason, resolution.available)

            lease = resolution.lease
            # The lease scope always wins over the caller's request
            effective_source = requested_source if lease.is_global else lease.access_specifier

            query_vector = self.embed.embed_query(prompt)
            threshold = self.config.similarity_threshold
            matches = self.vector_index.search(query_vector,
                                               limit=limit * 2,
                                               score_threshold=threshold,
                                               principal=principal,
                                               source=effective_source)
            matches = [match for match in matches if match.score >= threshold]

            if not matches:
                self.audit.record(principal,
                                  entity,
                                  AuditAction.GRANTED,
                                  'No memories above similarity threshold',
                                  prompt,
                                  source=effective_source,
                                  lease_id=lease.id,
                                  accessed_memories=[])
                audited = True
                logger.info(f'No matches above threshold {threshold} for {entity}')
                return []

            ranked = self._rank(principal, matches, limit)
            returned_ids = [memory.id for memory in ranked]

            self.audit.record(principal,
                              entity,
                              AuditAction.GRANTED,
                              f'Returned {len(returned_ids)} memories',
                              prompt,
                              source=effective_source,
                              lease_id=lease.id,
                              accessed_memories=returned_ids)
            audited = True

            logger.info(f'Returning {len(ranked)} memories to {entity} under lease {lease.id}')
            return ranked

        except AccessDeniedError:
            raise
        except Exception as e:
            logger.error(f'Memory retrieval failed for {entity}: {e}')
            if not audited:
                self.audit.record(principal, entity, AuditAction.DENIED, f'Retrieval error: {e}', prompt, source=requested_source)
            raise MemoryRetrievalError(f'Memory retrieval failed: {e}') from e

    def _rank(self, principal: str, matches: List[ChunkMatch], limit: int) -> List[RankedMemory]:
        # Collapse chunk hits to memories: best chunk score wins, every chunk text is kept
        similarity: Dict[str, float] = {}
        chunks: Dict[str, List[str]] = {}
        for match in matches:
            memory_id = match.payload.memory_id
            if not memory_id:
                logger.warning(f'Chunk {match.id} has no memory id in its payload, skipping')
                continue
            similarity[memory_id] = max(similarity.get(memory_id, match.score), match.score)
            chunks.setdefault(memory_id, []).append(match.payload.content)

        records = self.store.get_memories(principal, list(similarity))
        missing = [memory_id for memory_id in similarity if memory_id not in records]
        if missing:
            logger.warning(f'{len(missing)} matched memories not found in relational store: {missing}')

        ranked = []
        for memory_id in similarity:
            record = records.get(memory_id)
            if record is None:
                continue
            ranked.append(
                RankedMemory(id=record.id,
                             source=record.source,
                             extracted_content=record.extracted_content,
                             tags=record.tags,
                             similarity=similarity[memory_id],
                             created_at=record.created_at,
                             conversation_thread=record.conversation_thread,
                             matched_chunks=chunks[memory_id],
                             images=record.images))

        # Stable sort: ties keep the order the index returned them in
        ranked.sort(key=lambda memory: memory.similarity, reverse=True)
        return ranked[:limit]
