"""
Pytest configuration and shared fixtures for the lease gateway tests.
"""
import json
import uuid
from datetime import timedelta

import pytest

from memlease.models.core import LeaseInfo, MemoryRecord
from memlease.services.access_resolver import AccessResolver
from memlease.services.audit_trail import AuditTrailService
from memlease.services.lease_management import LeaseManagementService
from memlease.services.memory_ingestion import MemoryIngestionService
from memlease.services.memory_retrieval import MemoryRetrievalService
from memlease.utils.bedrock_embed import BedrockEmbedError
from memlease.utils.config import DatabaseConfig, IngestionConfig, LeaseConfig, LedgerConfig, RetrievalConfig
from memlease.utils.fingerprint import memory_fingerprint
from memlease.utils.ledger_client import LedgerClient
from memlease.utils.opensearch_client import OpenSearchError
from memlease.utils.redis_cache import CacheError
from memlease.utils.relational_store import RelationalStore
from memlease.utils.timestamp_utils import utc_now

PRINCIPAL = '0xabc'


class FakeCache:
    """In-memory stand-in for RedisCache; values go through JSON like the real one."""

    def __init__(self):
        self.entries = {}
        self.ttls = {}
        self.fail = False

    def set(self, key, value, ttl_seconds):
        if self.fail:
            raise CacheError('cache unavailable')
        if ttl_seconds <= 0:
            raise CacheError(f'non-positive TTL {ttl_seconds}')
        self.entries[key] = json.dumps(value, default=str)
        self.ttls[key] = ttl_seconds

    def get(self, key):
        if self.fail:
            raise CacheError('cache unavailable')
        data = self.entries.get(key)
        return json.loads(data) if data is not None else None

    def delete(self, key):
        if self.fail:
            raise CacheError('cache unavailable')
        self.ttls.pop(key, None)
        return self.entries.pop(key, None) is not None

    def health_check(self):
        return not self.fail


class FakeVectorIndex:
    """Records upserts and search calls; search returns the preset matches."""

    def __init__(self):
        self.matches = []
        self.upserts = []
        self.searches = []
        self.deleted = []
        self.fail_upsert = False

    def upsert_chunk(self, chunk_id, vector, payload):
        if self.fail_upsert:
            raise OpenSearchError('index unavailable')
        self.upserts.append((chunk_id, vector, payload))
        return True

    def search(self, query_vector, limit, score_threshold, principal, source=None):
        self.searches.append({'limit': limit, 'score_threshold': score_threshold, 'principal': principal, 'source': source})
        return list(self.matches)

    def delete_memory_chunks(self, memory_id):
        self.deleted.append(memory_id)
        return 0

    def health_check(self):
        return True


class FakeEmbedder:

    def __init__(self, dimension=4):
        self.dimension = dimension
        self.fail = False

    def _vector(self, text):
        if self.fail:
            raise BedrockEmbedError('embedding service unavailable')
        return [float(len(text) % 7)] + [0.5] * (self.dimension - 1)

    def embed_query(self, text):
        return self._vector(text)

    def embed_documents(self, texts):
        return [self._vector(text) for text in texts]

    def health_check(self):
        return True


class FakeLLM:

    def __init__(self, response=None):
        self.response = response if response is not None else {'summary': 'User is planning a trip', 'tags': ['travel']}
        self.calls = 0

    def generate_json(self, system_prompt, user_text):
        self.calls += 1
        return self.response

    def health_check(self):
        return True


def add_lease(store, entity, access_specifier='global', principal=PRINCIPAL, lease_id=None, created_at=None, expires_in=timedelta(days=7)):
    """Insert a lease row directly, bypassing the ledger."""
    now = utc_now()
    lease = LeaseInfo(id=lease_id or uuid.uuid4().hex,
                      principal=principal,
                      entity=entity,
                      access_specifier=access_specifier,
                      expires_at=now + expires_in,
                      created_at=created_at or now)
    store.insert_lease(lease)
    return lease


def add_memory(store, memory_id, source='gmail', content=None, principal=PRINCIPAL, tags=None):
    """Insert a memory row directly, bypassing extraction and indexing."""
    content = content or f'Memory {memory_id}'
    tags = tags or ['test']
    record = MemoryRecord(id=memory_id,
                          principal=principal,
                          source=source,
                          extracted_content=content,
                          tags=tags,
                          fingerprint=memory_fingerprint(source, content, tags),
                          created_at=utc_now())
    store.insert_memory(record)
    return record


@pytest.fixture
def store(tmp_path):
    """Relational store on a throwaway SQLite file."""
    relational_store = RelationalStore(DatabaseConfig(url=f'sqlite:///{tmp_path / "store.db"}', echo=False))
    relational_store.create_schema()
    return relational_store


@pytest.fixture
def ledger(tmp_path):
    """Ledger on its own SQLite file."""
    ledger_client = LedgerClient(LedgerConfig(enabled=True, database_url=f'sqlite:///{tmp_path / "ledger.db"}'))
    ledger_client.create_schema()
    return ledger_client


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def vector_index():
    return FakeVectorIndex()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def lease_config():
    return LeaseConfig(default_duration_days=7, max_duration_days=365)


@pytest.fixture
def retrieval_config():
    return RetrievalConfig(similarity_threshold=0.3, default_limit=5, max_limit=20)


@pytest.fixture
def lease_service(store, cache, lease_config, ledger):
    return LeaseManagementService(store, cache, lease_config, ledger=ledger)


@pytest.fixture
def resolver(lease_service):
    return AccessResolver(lease_service)


@pytest.fixture
def audit_service(store, ledger):
    return AuditTrailService(store, ledger=ledger)


@pytest.fixture
def retrieval_service(resolver, audit_service, embedder, vector_index, store, retrieval_config):
    return MemoryRetrievalService(resolver, audit_service, embedder, vector_index, store, retrieval_config)


@pytest.fixture
def ingestion_service(store, vector_index, embedder, llm):
    return MemoryIngestionService(store, vector_index, embedder, llm, IngestionConfig(chunk_size=1000, chunk_overlap=200))
