"""
Process-scoped wiring of external clients and services.

Clients are created once at startup and handed to each service's
constructor, so tests can swap any of them for a double.
"""

from dataclasses import dataclass
from typing import Optional

from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig
from ..utils.ledger_client import LedgerClient, LedgerError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.redis_cache import RedisCache
from ..utils.relational_store import RelationalStore
from .access_resolver import AccessResolver
from .audit_trail import AuditTrailService
from .lease_management import LeaseManagementService
from .memory_ingestion import MemoryIngestionService
from .memory_retrieval import MemoryRetrievalService

logger = get_logger(__name__)


@dataclass
class Clients:
    """Handles to the external systems."""
    store: RelationalStore
    cache: RedisCache
    vector_index: OpenSearchClient
    embed: BedrockEmbed
    llm: BedrockLLM
    ledger: Optional[LedgerClient] = None


@dataclass
class Services:
    clients: Clients
    leases: LeaseManagementService
    resolver: AccessResolver
    audit: AuditTrailService
    retrieval: MemoryRetrievalService
    ingestion: MemoryIngestionService


def build_clients(config: AppConfig) -> Clients:
    """Create client handles from configuration and make sure schemas and indexes exist."""
    store = RelationalStore(config.database)
    store.create_schema()

    ledger = None
    if config.ledger.enabled:
        ledger = LedgerClient(config.ledger)
        try:
            ledger.create_schema()
        except LedgerError as e:
            logger.warning(f'Failed to create ledger schema: {e}')

    vector_index = OpenSearchClient(config.opensearch)
    try:
        vector_index.create_index_if_not_exists()
    except OpenSearchError as e:
        logger.warning(f'Failed to create OpenSearch index: {e}')

    return Clients(store=store,
                   cache=RedisCache(config.redis),
                   vector_index=vector_index,
                   embed=BedrockEmbed(config.bedrock_embed),
                   llm=BedrockLLM(config.bedrock_llm),
                   ledger=ledger)


def build_services(config: AppConfig, clients: Optional[Clients] = None) -> Services:
    """Wire every service on top of a shared set of clients."""
    clients = clients or build_clients(config)

    leases = LeaseManagementService(clients.store, clients.cache, config.lease, ledger=clients.ledger)
    resolver = AccessResolver(leases)
    audit = AuditTrailService(clients.store, ledger=clients.ledger)
    retrieval = MemoryRetrievalService(resolver, audit, clients.embed, clients.vector_index, clients.store, config.retrieval)
    ingestion = MemoryIngestionService(clients.store, clients.vector_index, clients.embed, clients.llm, config.ingestion)

    logger.info('Services initialized')
    return Services(clients=clients,
                    leases=leases,
                    resolver=resolver,
                    audit=audit,
                    retrieval=retrieval,
                    ingestion=ingestion)
