"""
Health check utilities for the application.
"""

from typing import TYPE_CHECKING, Any, Dict

from .config import config
from .logging_config import get_logger

if TYPE_CHECKING:
    from ..services.bootstrap import Clients

logger = get_logger(__name__)


def check_health(clients: 'Clients') -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(clients)

        # Check if all components are healthy
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def _probe(name: str, service: str, probe, **details: Any) -> Dict[str, Any]:
    try:
        return {'healthy': bool(probe()), 'service': service, **details}
    except Exception as e:
        logger.error(f'{name} health probe raised: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status(clients: 'Clients') -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    health_status = {
        'bedrock_llm': _probe('bedrock_llm', 'Amazon Bedrock LLM', clients.llm.health_check, model=config.bedrock_llm.model_id),
        'bedrock_embed': _probe('bedrock_embed', 'Amazon Bedrock Embed', clients.embed.health_check, model=config.bedrock_embed.model_id),
        'opensearch': _probe('opensearch', 'Amazon OpenSearch', clients.vector_index.health_check, endpoint=config.opensearch.endpoint),
        'redis': _probe('redis', 'Redis lease cache', clients.cache.health_check),
        'relational_store': _probe('relational_store', 'Relational store', clients.store.health_check),
    }

    if clients.ledger is not None:
        health_status['ledger'] = _probe('ledger', 'Append-only ledger', clients.ledger.health_check)
    else:
        health_status['ledger'] = {'healthy': True, 'service': 'Append-only ledger', 'enabled': False}

    return health_status


def get_system_info(clients: 'Clients') -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'memlease',
        'version': '0.1.0',
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'bedrock_embed_model': config.bedrock_embed.model_id,
            'embedding_dimension': config.bedrock_embed.dimension,
            'similarity_threshold': config.retrieval.similarity_threshold,
            'default_lease_days': config.lease.default_duration_days,
            'ledger_enabled': config.ledger.enabled,
        },
        'health_status': get_health_status(clients)
    }
