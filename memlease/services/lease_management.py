"""
Lease Management Service: create, revoke, list and validate access leases.

Writes go Ledger -> Relational Store -> Cache. The ledger is the authority for
lease existence and identity, the relational store is the queryable
projection, and the cache is a disposable accelerator.
"""

import uuid
from datetime import timedelta
from typing import List, Optional

from ..models.core import LeaseInfo, normalize_principal
from ..models.errors import InconsistencyError, NotFoundError, UpstreamUnavailableError, ValidationError
from ..utils.config import LeaseConfig
from ..utils.ledger_client import LedgerClient, LedgerStateError
from ..utils.logging_config import get_logger
from ..utils.redis_cache import CacheError, RedisCache
from ..utils.relational_store import RelationalStore, RelationalStoreError
from ..utils.timestamp_utils import seconds_until, utc_now

logger = get_logger(__name__)

SECONDS_PER_DAY = 86400


class LeaseManagementError(UpstreamUnavailableError):
    """Custom exception for lease management errors."""
    pass


def lease_cache_key(lease_id: str) -> str:
    return f'lease:{lease_id}'


class LeaseManagementService:
    """Owns the lease lifecycle across ledger, relational store and cache."""

    def __init__(self, store: RelationalStore, cache: RedisCache, config: LeaseConfig, ledger: Optional[LedgerClient] = None):
        """
        Initialize the lease management service.

        Args:
            store: Relational store handle
            cache: Lease cache handle
            config: Lease lifecycle settings
            ledger: Ledger handle; None runs without a ledger, using locally generated ids
        """
        self.store = store
        self.cache = cache
        self.config = config
        self.ledger = ledger

        if ledger is None:
            logger.warning('Ledger disabled - lease ids are generated locally')
        logger.info('Initialized LeaseManagementService')

    def _validate_create(self, principal: str, entity: str, access_specifier: str, duration_days: int) -> None:
        if not principal or not principal.strip():
            raise ValidationError('principal is required')
        if not entity or not entity.strip():
            raise ValidationError('entity is required')
        if not access_specifier or not access_specifier.strip():
            raise ValidationError('access_specifier is required')
        if isinstance(duration_days, bool) or not isinstance(duration_days, int):
            raise ValidationError('duration_days must be an integer')
        if not 0 < duration_days <= self.config.max_duration_days:
            raise ValidationError(f'duration_days must be between 1 and {self.config.max_duration_days}')

    def create_lease(self, principal: str, entity: str, access_specifier: str, duration_days: Optional[int] = None) -> str:
        """
        Create a lease granting entity access to principal's memories.

        Args:
            principal: Wallet address granting access
            entity: Integration receiving access
            access_specifier: 'global' or a specific source name
            duration_days: Lease lifetime (config default if None)

        Returns:
            Ledger-issued lease id

        Raises:
            ValidationError: If the request is malformed
            LedgerError: If the ledger write fails; nothing else has been written
            LeaseManagementError: If the relational write fails after the ledger write
        """
        if duration_days is None:
            duration_days = self.config.default_duration_days
        self._validate_create(principal, entity, access_specifier, duration_days)

        principal = normalize_principal(principal)
        entity = entity.strip()
        access_specifier = access_specifier.strip()
        duration_seconds = duration_days * SECONDS_PER_DAY

        logger.info(f'Creating lease for {entity} on {access_specifier} ({duration_days} days)')

        # Phase one: allocate on the ledger. Never retried, a retry could grant twice.
        if self.ledger is not None:
            receipt = self.ledger.create_lease(principal, entity, access_specifier, duration_seconds)
            lease_id, tx_hash, expires_at = receipt.lease_id, receipt.tx_hash, receipt.expires_at
        else:
            lease_id, tx_hash = uuid.uuid4().hex, None
            expires_at = utc_now() + timedelta(seconds=duration_seconds)

        lease = LeaseInfo(id=lease_id,
                          principal=principal,
                          entity=entity,
                          access_specifier=access_specifier,
                          expires_at=expires_at,
                          is_active=True,
                          created_at=utc_now(),
                          tx_hash=tx_hash)

        # Phase two: materialize locally
        try:
            self.store.insert_lease(lease)
        except RelationalStoreError as e:
            logger.error(f'Lease {lease_id} exists on the ledger (tx {tx_hash}) but could not be stored: {e}')
            raise LeaseManagementError(f'Lease {lease_id} was allocated but could not be stored: {e}')

        try:
            self.cache.set(lease_cache_key(lease_id), lease.to_dict(), seconds_until(expires_at))
        except CacheError as e:
            logger.warning(f'Lease {lease_id} stored but not cached: {e}')

        logger.info(f'Lease created successfully: {lease_id}')
        return lease_id

    def revoke_lease(self, lease_id: str, principal: str) -> None:
        """
        Revoke a lease owned by principal.

        Args:
            lease_id: Lease to revoke
            principal: Caller, must own the lease

        Raises:
            ValidationError: If arguments are missing
            NotFoundError: If the lease is absent, owned by someone else, or already revoked
            LedgerError: If the ledger revocation fails
            InconsistencyError: If the ledger does not know the lease or already revoked it
            LeaseManagementError: If the relational update fails after the ledger write
        """
        if not lease_id or not principal:
            raise ValidationError('lease_id and principal are required')
        principal = normalize_principal(principal)

        logger.info(f'Revoking lease: {lease_id}')

        # Ownership and revocation state are checked before spending a ledger write
        existing = self.store.find_unrevoked_lease(lease_id, principal)
        if existing is None:
            raise NotFoundError('Lease not found or already revoked')

        revoke_tx_hash = None
        if self.ledger is not None:
            try:
                revoke_tx_hash = self.ledger.revoke_lease(lease_id)
            except LedgerStateError as e:
                logger.error(f'Lease {lease_id} is unrevoked in the store but not on the ledger: {e}')
                raise InconsistencyError(f'Lease {lease_id} disagrees between ledger and store: {e}')

        try:
            updated = self.store.mark_lease_revoked(lease_id, utc_now(), revoke_tx_hash)
        except RelationalStoreError as e:
            logger.error(f'Lease {lease_id} revoked on the ledger (tx {revoke_tx_hash}) but not in the store: {e}')
            raise LeaseManagementError(f'Lease {lease_id} revocation could not be stored: {e}')
        if not updated:
            raise NotFoundError('Lease not found or already revoked')

        try:
            self.cache.delete(lease_cache_key(lease_id))
        except CacheError as e:
            # A stale entry would keep the fast path answering valid until its TTL runs out
            logger.error(f'Lease {lease_id} revoked but still cached: {e}')
            raise LeaseManagementError(f'Lease {lease_id} revoked but cache eviction failed: {e}')

        logger.info(f'Lease revoked successfully: {lease_id}')

    def list_active_leases(self, principal: str) -> List[LeaseInfo]:
        """
        List leases that are neither revoked nor expired, newest first.

        Args:
            principal: Owner of the leases

        Returns:
            Active leases ordered by creation time, most recent first
        """
        principal = normalize_principal(principal)
        now = utc_now()
        leases = self.store.list_unrevoked_leases(principal)
        return [lease for lease in leases if lease.expires_at > now]

    def is_lease_valid(self, lease_id: str, fallback: bool = False) -> Optional[LeaseInfo]:
        """
        Check whether a lease is currently provable as valid.

        By default only the cache is consulted: a miss means "not provable
        right now", not "invalid". With fallback=True a miss is answered from
        the relational store and the cache is re-warmed.

        Args:
            lease_id: Lease to check
            fallback: Consult the relational store on a cache miss

        Returns:
            The lease, or None
        """
        key = lease_cache_key(lease_id)
        try:
            cached = self.cache.get(key)
        except CacheError as e:
            logger.warning(f'Lease cache lookup failed for {lease_id}: {e}')
            cached = None

        if cached is not None:
            logger.debug(f'Lease {lease_id} found in cache')
            return LeaseInfo.from_dict(cached)

        logger.debug(f'Lease {lease_id} not found in cache')
        if not fallback:
            return None

        lease = self.store.get_lease(lease_id)
        if lease is None or not lease.is_active:
            return None

        try:
            self.cache.set(key, lease.to_dict(), seconds_until(lease.expires_at))
        except CacheError as e:
            logger.warning(f'Could not re-warm cache for lease {lease_id}: {e}')
        return lease
