"""
MCP Interface Layer using fastmcp for assistants and browser integrations.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .models.errors import AccessDeniedError, MemoryLeaseError, NotFoundError, ValidationError
from .services.bootstrap import Services, build_services
from .utils.config import config
from .utils.health_check import get_system_info
from .utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Leased Memory')

_services: Optional[Services] = None


def get_services() -> Services:
    """Build the process-wide services on first use."""
    global _services
    if _services is None:
        _services = build_services(config)
    return _services


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services


def _failure(error: Exception) -> Dict[str, Any]:
    return {'success': False, 'error': str(error)}


def retrieve_memories(user_id: str,
                      user_prompt: str,
                      entity: str,
                      source: Optional[str] = None,
                      conversation_thread: Optional[str] = None,
                      limit: int = 5) -> Dict[str, Any]:
    """Retrieve memories relevant to a prompt, if the entity holds a lease.

    Args:
        user_id: Wallet address owning the memories
        user_prompt: Prompt to match memories against
        entity: Entity making the request (claude, chatgpt, etc.)
        source: Optional source filter
        conversation_thread: Optional conversation thread
        limit: Maximum number of memories (1-20, default 5)

    Returns:
        {success, memories, count} or {success: False, error}
    """
    try:
        memories = get_services().retrieval.retrieve(user_id, user_prompt, entity, source, conversation_thread, limit)
        return {'success': True, 'memories': [memory.to_dict() for memory in memories], 'count': len(memories)}
    except (ValidationError, AccessDeniedError) as e:
        return _failure(e)
    except MemoryLeaseError as e:
        logger.error(f'Memory retrieval error in MCP: {e}')
        return {'success': False, 'error': 'Failed to retrieve memories', 'details': str(e)}


def create_lease(user_id: str, entity: str, access_specifier: str = 'global', duration_days: int = 7) -> Dict[str, Any]:
    """Grant an entity time-boxed access to a user's memories.

    Args:
        user_id: Wallet address granting access
        entity: Entity receiving access
        access_specifier: 'global' or a source name
        duration_days: Lease lifetime in days

    Returns:
        {success, leaseId} or {success: False, error}
    """
    try:
        lease_id = get_services().leases.create_lease(user_id, entity, access_specifier, duration_days)
        return {'success': True, 'leaseId': lease_id}
    except MemoryLeaseError as e:
        logger.error(f'Lease creation failed in MCP: {e}')
        return _failure(e)


def revoke_lease(user_id: str, lease_id: str) -> Dict[str, Any]:
    """Revoke a lease owned by the user.

    Returns:
        {success} or {success: False, error}
    """
    try:
        get_services().leases.revoke_lease(lease_id, user_id)
        return {'success': True, 'leaseId': lease_id}
    except NotFoundError as e:
        return _failure(e)
    except MemoryLeaseError as e:
        logger.error(f'Lease revocation failed in MCP: {e}')
        return _failure(e)


def list_leases(user_id: str) -> Dict[str, Any]:
    """List the user's active leases, newest first."""
    try:
        leases = get_services().leases.list_active_leases(user_id)
        return {'success': True, 'leases': [lease.to_dict() for lease in leases]}
    except MemoryLeaseError as e:
        logger.error(f'Lease listing failed in MCP: {e}')
        return _failure(e)


def check_lease(lease_id: str, fallback: bool = False) -> Dict[str, Any]:
    """Check a lease on the cache fast path, optionally falling back to the database."""
    try:
        lease = get_services().leases.is_lease_valid(lease_id, fallback=fallback)
    except MemoryLeaseError as e:
        return _failure(e)
    if lease is None:
        return {'success': False, 'error': 'Lease not found or expired'}
    return {'success': True, 'lease': lease.to_dict()}


def get_audit_trail(user_id: str, limit: int = 50) -> Dict[str, Any]:
    """Audit records for the user, newest first."""
    try:
        records = get_services().audit.get_trail(user_id, limit)
        return {'success': True, 'auditTrail': [record.to_dict() for record in records]}
    except MemoryLeaseError as e:
        return _failure(e)


def get_audit_stats(user_id: str) -> Dict[str, Any]:
    """Granted/denied totals for the user."""
    try:
        return {'success': True, 'stats': get_services().audit.get_stats(user_id).to_dict()}
    except MemoryLeaseError as e:
        return _failure(e)


def store_memory(user_id: str,
                 prompt: str,
                 source: str,
                 conversation_thread: Optional[str] = None,
                 images: Optional[List[str]] = None) -> Dict[str, Any]:
    """Extract and store a memory from a prompt.

    Args:
        user_id: Wallet address owning the memory
        prompt: Captured prompt text
        source: Producing integration
        conversation_thread: Optional conversation thread
        images: Identifiers of images already in object storage

    Returns:
        {success, memoryId, duplicate} or {success: False, error}
    """
    try:
        result = get_services().ingestion.process(user_id, prompt, source, conversation_thread, images)
        return {'success': True, 'memoryId': result.memory_id, 'duplicate': result.duplicate, 'chunks': result.chunk_count}
    except MemoryLeaseError as e:
        logger.error(f'Memory storage failed in MCP: {e}')
        return _failure(e)


def list_memories(user_id: str, source: Optional[str] = None, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
    """List the user's memories, newest first."""
    try:
        memories = get_services().ingestion.list_memories(user_id, source, limit, offset)
        return {'success': True, 'memories': [memory.to_dict() for memory in memories], 'count': len(memories)}
    except MemoryLeaseError as e:
        return _failure(e)


def health() -> Dict[str, Any]:
    """Report component health and configuration."""
    return get_system_info(get_services().clients)


for _tool in (retrieve_memories, create_lease, revoke_lease, list_leases, check_lease, get_audit_trail, get_audit_stats, store_memory,
              list_memories, health):
    mcp.tool(_tool)


if __name__ == '__main__':
    mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
