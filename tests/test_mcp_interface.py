"""
Tests for the MCP tool functions and health reporting over test doubles.
"""
from unittest.mock import MagicMock

import pytest

from conftest import add_memory
from memlease import mcp_interface
from memlease.models.core import ChunkMatch, ChunkPayload
from memlease.services.bootstrap import Clients, build_services
from memlease.utils.config import config
from memlease.utils.health_check import check_health, get_health_status


@pytest.fixture
def clients(store, cache, vector_index, embedder, llm, ledger):
    return Clients(store=store, cache=cache, vector_index=vector_index, embed=embedder, llm=llm, ledger=ledger)


@pytest.fixture
def services(clients):
    services = build_services(config, clients=clients)
    mcp_interface.set_services(services)
    yield services
    mcp_interface.set_services(None)


class TestLeaseTools:

    def test_create_list_check_and_revoke(self, services):
        created = mcp_interface.create_lease('0xabc', 'assistant1', 'global', 7)
        assert created['success']
        lease_id = created['leaseId']

        listed = mcp_interface.list_leases('0xabc')
        assert [lease['id'] for lease in listed['leases']] == [lease_id]
        assert listed['leases'][0]['accessSpecifier'] == 'global'

        assert mcp_interface.check_lease(lease_id)['lease']['entity'] == 'assistant1'

        assert mcp_interface.revoke_lease('0xabc', lease_id) == {'success': True, 'leaseId': lease_id}
        assert mcp_interface.check_lease(lease_id) == {'success': False, 'error': 'Lease not found or expired'}
        assert not mcp_interface.revoke_lease('0xabc', lease_id)['success']

    def test_invalid_lease_is_reported(self, services):
        result = mcp_interface.create_lease('0xabc', 'assistant1', 'global', 0)

        assert not result['success']
        assert 'duration_days' in result['error']


class TestMemoryTools:

    def test_retrieval_denied_without_lease(self, services):
        result = mcp_interface.retrieve_memories('0xabc', 'hello', 'assistant1')

        assert not result['success']
        assert 'No active leases found for user' in result['error']
        assert mcp_interface.get_audit_stats('0xabc')['stats']['deniedAccesses'] == 1

    def test_retrieval_with_lease(self, services, store, vector_index):
        mcp_interface.create_lease('0xabc', 'assistant1', 'global', 7)
        add_memory(store, 'm1', content='Trip to Lisbon')
        vector_index.matches = [
            ChunkMatch(id='1',
                       score=0.9,
                       payload=ChunkPayload(memory_id='m1', chunk_index=0, content='Lisbon', tags=[], principal='0xabc', source='gmail'))
        ]

        result = mcp_interface.retrieve_memories('0xabc', 'where am I going?', 'assistant1')

        assert result['count'] == 1
        assert result['memories'][0]['extractedContent'] == 'Trip to Lisbon'
        [record] = mcp_interface.get_audit_trail('0xabc')['auditTrail']
        assert record['accessedMemories'] == ['m1']

    def test_store_and_list(self, services):
        stored = mcp_interface.store_memory('0xabc', 'Book me a flight to Lisbon', 'gmail')
        again = mcp_interface.store_memory('0xabc', 'Book me a flight to Lisbon', 'gmail')

        assert stored['success'] and not stored['duplicate']
        assert again['duplicate'] and again['memoryId'] == stored['memoryId']
        assert mcp_interface.list_memories('0xabc')['count'] == 1


class TestHealth:

    def test_all_components_healthy(self, clients):
        assert check_health(clients)

        status = get_health_status(clients)
        assert set(status) == {'bedrock_llm', 'bedrock_embed', 'opensearch', 'redis', 'relational_store', 'ledger'}

    def test_failing_probe_is_reported(self, clients):
        clients.vector_index = MagicMock()
        clients.vector_index.health_check.side_effect = RuntimeError('unreachable')

        status = get_health_status(clients)

        assert status['opensearch']['healthy'] is False
        assert 'unreachable' in status['opensearch']['error']
        assert not check_health(clients)

    def test_disabled_ledger(self, clients):
        clients.ledger = None

        assert get_health_status(clients)['ledger'] == {'healthy': True, 'service': 'Append-only ledger', 'enabled': False}

    def test_health_tool_includes_configuration(self, services):
        info = mcp_interface.health()

        assert info['configuration']['ledger_enabled'] == config.ledger.enabled
        assert info['health_status']['redis']['healthy']
