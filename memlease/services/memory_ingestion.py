"""
Memory Ingestion Service: extract, fingerprint, chunk, embed and index memories.
"""

import uuid
from typing import List, Optional, Tuple

from ..models.core import ChunkPayload, IngestionResult, MemoryRecord, normalize_principal
from ..models.errors import UpstreamUnavailableError, ValidationError
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.chunking import chunk_text
from ..utils.config import IngestionConfig
from ..utils.fingerprint import chunk_vector_id, memory_fingerprint
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.relational_store import DuplicateFingerprintError, RelationalStore
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)

INTENT_SYSTEM_PROMPT = """
You extract the user's intent and key information from a prompt they sent to an AI assistant.
Focus on what they want to achieve, not just what they said.

Return a JSON object with this exact format:
```json
{
  "summary": "brief intent-focused summary of what the user wants, needs or is working on",
  "tags": ["3 to 6 lowercase keywords or short phrases useful for retrieval"]
}
```

Example: {"summary": "User wants to implement camera permissions in an iOS app", "tags": ["ios", "camera", "permissions", "mobile development"]}"""


class MemoryIngestionError(UpstreamUnavailableError):
    """Custom exception for memory ingestion errors."""
    pass


class MemoryIngestionService:
    """Turn a raw prompt into a stored, searchable memory."""

    def __init__(self,
                 store: RelationalStore,
                 vector_index: OpenSearchClient,
                 embed: BedrockEmbed,
                 llm: BedrockLLM,
                 config: IngestionConfig):
        self.store = store
        self.vector_index = vector_index
        self.embed = embed
        self.llm = llm
        self.config = config

        logger.info('Initialized MemoryIngestionService')

    def extract_intent(self, prompt: str) -> Tuple[str, List[str]]:
        """
        Summarize a prompt and tag it.

        Returns:
            Tuple of (summary, tags)

        Raises:
            MemoryIngestionError: If the LLM response does not have the expected shape
        """
        data = self.llm.generate_json(INTENT_SYSTEM_PROMPT, f'Extract the intent of this prompt:\n{prompt}')
        if not isinstance(data, dict):
            raise MemoryIngestionError(f'Expected JSON object from intent extraction, got {type(data).__name__}')

        summary = str(data.get('summary') or '').strip()
        tags = data.get('tags')
        if not summary or not isinstance(tags, list):
            raise MemoryIngestionError('Invalid JSON structure returned from intent extraction')

        tags = [str(tag).strip().lower() for tag in tags if str(tag).strip()]
        return summary, list(dict.fromkeys(tags))

    def process(self,
                principal: str,
                prompt: str,
                source: str,
                conversation_thread: Optional[str] = None,
                images: Optional[List[str]] = None) -> IngestionResult:
        """
        Store a memory extracted from prompt.

        Identical extractions (same fingerprint) from one principal are stored once; a repeat
        returns the existing memory with duplicate=True.

        Args:
            principal: Owner of the memory
            prompt: Raw text captured by the integration
            source: Producing integration
            conversation_thread: Optional thread identifier
            images: Identifiers of images already placed in object storage

        Returns:
            IngestionResult for the new or existing memory

        Raises:
            ValidationError: If required fields are missing
            MemoryIngestionError: If extraction, embedding or indexing fails
        """
        if not principal or not principal.strip():
            raise ValidationError('principal is required')
        if not prompt or not prompt.strip():
            raise ValidationError('prompt is required')
        if not source or not source.strip():
            raise ValidationError('source is required')

        principal = normalize_principal(principal)
        source = source.strip()
        images = [identifier for identifier in (images or []) if identifier]

        try:
            summary, tags = self.extract_intent(prompt)
            fingerprint = memory_fingerprint(source, summary, tags, conversation_thread, images)

            existing = self.store.find_memory_by_fingerprint(principal, fingerprint)
            if existing is not None:
                logger.info(f'Memory with fingerprint {fingerprint} already stored as {existing.id}')
                return IngestionResult(memory_id=existing.id, fingerprint=fingerprint, duplicate=True)

            chunks = chunk_text(prompt, self.config.chunk_size, self.config.chunk_overlap)
            vectors = self.embed.embed_documents(chunks)

            memory = MemoryRecord(id=uuid.uuid4().hex,
                                  principal=principal,
                                  source=source,
                                  extracted_content=summary,
                                  tags=tags,
                                  fingerprint=fingerprint,
                                  conversation_thread=conversation_thread,
                                  prompt=prompt,
                                  images=images,
                                  created_at=utc_now())
            try:
                self.store.insert_memory(memory)
            except DuplicateFingerprintError:
                existing = self.store.find_memory_by_fingerprint(principal, fingerprint)
                logger.info(f'Concurrent ingestion stored fingerprint {fingerprint} first')
                return IngestionResult(memory_id=existing.id if existing else '', fingerprint=fingerprint, duplicate=True)

            try:
                mappings = self._index_chunks(memory, chunks, vectors)
                self.store.insert_chunk_mappings(memory.id, principal, mappings)
            except UpstreamUnavailableError:
                self._compensate(memory.id)
                raise

            logger.info(f'Stored memory {memory.id} with {len(chunks)} chunks from {source}')
            return IngestionResult(memory_id=memory.id, fingerprint=fingerprint, duplicate=False, chunk_count=len(chunks))

        except UpstreamUnavailableError as e:
            logger.error(f'Memory ingestion failed: {e}')
            if isinstance(e, MemoryIngestionError):
                raise
            raise MemoryIngestionError(f'Memory ingestion failed: {e}') from e

    def _index_chunks(self, memory: MemoryRecord, chunks: List[str], vectors: List[List[float]]) -> List[Tuple[int, int]]:
        mappings = []
        for index, (content, vector) in enumerate(zip(chunks, vectors)):
            vector_id = chunk_vector_id(memory.id, index)
            payload = ChunkPayload(memory_id=memory.id,
                                   chunk_index=index,
                                   content=content,
                                   tags=memory.tags,
                                   principal=memory.principal,
                                   source=memory.source)
            self.vector_index.upsert_chunk(vector_id, vector, payload)
            mappings.append((vector_id, index))
        return mappings

    def _compensate(self, memory_id: str) -> None:
        # Undo a half-written memory so the fingerprint can be ingested again
        try:
            self.vector_index.delete_memory_chunks(memory_id)
        except UpstreamUnavailableError as e:
            logger.error(f'Could not remove chunks of failed memory {memory_id}: {e}')
        try:
            self.store.delete_memory(memory_id)
        except UpstreamUnavailableError as e:
            logger.error(f'Could not remove failed memory {memory_id}: {e}')

    def list_memories(self, principal: str, source: Optional[str] = None, limit: int = 10, offset: int = 0) -> List[MemoryRecord]:
        """Memories of principal, newest first."""
        if limit < 1 or offset < 0:
            raise ValidationError('limit must be positive and offset non-negative')
        return self.store.list_memories(normalize_principal(principal), source, limit, offset)
