"""
Tests for memory_retrieval.py - lease-gated search, ranking and auditing.
"""
import pytest

from conftest import add_lease, add_memory
from memlease.models.core import ChunkMatch, ChunkPayload
from memlease.models.errors import AccessDeniedError, ValidationError
from memlease.services.memory_retrieval import MemoryRetrievalError


def _match(memory_id, score, content='chunk', source='gmail'):
    payload = ChunkPayload(memory_id=memory_id, chunk_index=0, content=content, tags=[], principal='0xabc', source=source)
    return ChunkMatch(id=f'{memory_id}-{score}', score=score, payload=payload)


class TestDenied:

    def test_denial_is_audited_once_and_skips_search(self, retrieval_service, audit_service, vector_index):
        with pytest.raises(AccessDeniedError) as exc_info:
            retrieval_service.retrieve('0xabc', 'where is my passport?', 'assistant1')

        assert 'No active leases found for user' in exc_info.value.reason
        assert vector_index.searches == []

        [record] = audit_service.get_trail('0xabc')
        assert record.action == 'access_denied'
        assert record.accessed_memories == []
        assert record.lease_id is None

    def test_denial_carries_alternatives(self, retrieval_service, store):
        add_lease(store, 'assistant1', 'gmail')

        with pytest.raises(AccessDeniedError) as exc_info:
            retrieval_service.retrieve('0xabc', 'hello', 'assistant1', requested_source='slack')

        assert exc_info.value.available == ['gmail']

    @pytest.mark.parametrize('principal,prompt,entity,limit', [
        ('', 'hello', 'assistant1', 5),
        ('0xabc', '  ', 'assistant1', 5),
        ('0xabc', 'hello', '', 5),
        ('0xabc', 'hello', 'assistant1', 0),
        ('0xabc', 'hello', 'assistant1', 21),
    ])
    def test_malformed_requests_are_not_audited(self, retrieval_service, audit_service, principal, prompt, entity, limit):
        with pytest.raises(ValidationError):
            retrieval_service.retrieve(principal, prompt, entity, limit=limit)

        assert audit_service.get_trail('0xabc') == []


class TestGranted:

    def test_no_matches_is_an_empty_grant(self, retrieval_service, audit_service, store):
        lease = add_lease(store, 'assistant1', 'global')

        assert retrieval_service.retrieve('0xabc', 'hello', 'assistant1') == []

        [record] = audit_service.get_trail('0xabc')
        assert record.action == 'access_granted'
        assert record.memory_count == 0
        assert record.lease_id == lease.id

    def test_ranking_uses_best_chunk_and_limit(self, retrieval_service, audit_service, store, vector_index):
        add_lease(store, 'assistant1', 'global')
        for memory_id in ('m1', 'm2', 'm3'):
            add_memory(store, memory_id)
        vector_index.matches = [
            _match('m1', 0.91, 'first'),
            _match('m2', 0.95),
            _match('m1', 0.50, 'second'),
            _match('m3', 0.88),
            _match('m3', 0.10),
        ]

        memories = retrieval_service.retrieve('0xabc', 'hello', 'assistant1', limit=2)

        assert [memory.id for memory in memories] == ['m2', 'm1']
        assert [memory.similarity for memory in memories] == [0.95, 0.91]
        assert memories[1].matched_chunks == ['first', 'second']
        assert vector_index.searches[0]['limit'] == 4

        [record] = audit_service.get_trail('0xabc')
        assert record.accessed_memories == ['m2', 'm1']

    def test_scores_below_threshold_are_dropped(self, retrieval_service, store, vector_index):
        add_lease(store, 'assistant1', 'global')
        add_memory(store, 'm1')
        vector_index.matches = [_match('m1', 0.29)]

        assert retrieval_service.retrieve('0xabc', 'hello', 'assistant1') == []

    def test_source_lease_sets_the_search_filter(self, retrieval_service, store, vector_index):
        add_lease(store, 'assistant1', 'gmail')

        retrieval_service.retrieve('0xabc', 'hello', 'assistant1', requested_source='gmail')

        assert vector_index.searches[0]['source'] == 'gmail'
        assert vector_index.searches[0]['principal'] == '0xabc'

    def test_global_lease_keeps_requested_source(self, retrieval_service, store, vector_index):
        add_lease(store, 'assistant1', 'global')

        retrieval_service.retrieve('0xabc', 'hello', 'assistant1', requested_source='slack')
        retrieval_service.retrieve('0xabc', 'hello', 'assistant1')

        assert [search['source'] for search in vector_index.searches] == ['slack', None]

    def test_entity_is_matched_after_stripping(self, retrieval_service, audit_service, store, vector_index):
        lease = add_lease(store, 'assistant1', 'gmail')

        assert retrieval_service.retrieve('0xabc', 'hello', ' assistant1 ', requested_source=' gmail ') == []

        assert vector_index.searches[0]['source'] == 'gmail'
        [record] = audit_service.get_trail('0xabc')
        assert record.action == 'access_granted'
        assert record.entity == 'assistant1'
        assert record.lease_id == lease.id

    def test_chunks_without_memory_id_are_skipped(self, retrieval_service, store, vector_index):
        add_lease(store, 'assistant1', 'global')
        add_memory(store, 'm1')
        vector_index.matches = [_match(None, 0.99), _match('m1', 0.8)]

        assert [memory.id for memory in retrieval_service.retrieve('0xabc', 'hello', 'assistant1')] == ['m1']

    def test_memories_missing_from_store_are_skipped(self, retrieval_service, audit_service, store, vector_index):
        add_lease(store, 'assistant1', 'global')
        add_memory(store, 'm1')
        add_memory(store, 'theirs', principal='0xdef')
        vector_index.matches = [_match('gone', 0.99), _match('theirs', 0.95), _match('m1', 0.8)]

        assert [memory.id for memory in retrieval_service.retrieve('0xabc', 'hello', 'assistant1')] == ['m1']
        assert audit_service.get_trail('0xabc')[0].accessed_memories == ['m1']

    def test_ranked_memory_serializes(self, retrieval_service, store, vector_index):
        add_lease(store, 'assistant1', 'global')
        add_memory(store, 'm1', content='Trip to Lisbon')
        vector_index.matches = [_match('m1', 0.8)]

        [memory] = retrieval_service.retrieve('0xabc', 'hello', 'assistant1')

        data = memory.to_dict()
        assert data['extractedContent'] == 'Trip to Lisbon'
        assert data['similarity'] == 0.8
        assert data['source'] == 'gmail'


class TestFailures:

    def test_upstream_failure_before_decision_is_denied(self, retrieval_service, audit_service, store, embedder):
        add_lease(store, 'assistant1', 'global')
        embedder.fail = True

        with pytest.raises(MemoryRetrievalError):
            retrieval_service.retrieve('0xabc', 'hello', 'assistant1')

        [record] = audit_service.get_trail('0xabc')
        assert record.action == 'access_denied'
        assert record.reason.startswith('Retrieval error:')
