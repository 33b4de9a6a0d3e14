"""
Access Resolver: pick the single lease that authorizes an entity's request.
"""

from typing import List, Optional

from ..models.core import GLOBAL_ACCESS, AccessResolution, LeaseInfo, normalize_principal
from ..utils.logging_config import get_logger
from .lease_management import LeaseManagementService

logger = get_logger(__name__)


def _unique(values: List[str]) -> List[str]:
    return list(dict.fromkeys(values))


class AccessResolver:
    """Resolve (principal, entity, requested source) to a lease or a denial reason.

    Precedence: an exact source lease beats a global lease; a source-scoped
    lease never grants unscoped access. Within a tier the first lease in
    list_active_leases order wins, i.e. the most recently created.
    """

    def __init__(self, leases: LeaseManagementService):
        self.leases = leases

    def resolve(self, principal: str, entity: str, requested_source: Optional[str] = None) -> AccessResolution:
        principal = normalize_principal(principal)
        active = self.leases.list_active_leases(principal)

        if not active:
            return AccessResolution(reason=f"No active leases found for user. Please create a lease for entity '{entity}' first.")

        entity_leases = [lease for lease in active if lease.entity == entity]
        if not entity_leases:
            available_entities = _unique([lease.entity for lease in active])
            return AccessResolution(reason=f"No lease found for entity '{entity}'. Available entities: {', '.join(available_entities)}",
                                    available=available_entities)

        available_access = _unique([lease.access_specifier for lease in entity_leases])

        if requested_source:
            exact = _first(entity_leases, requested_source)
            if exact is not None:
                logger.debug(f'Found exact source lease: {exact.id} ({entity} -> {requested_source})')
                return AccessResolution(lease=exact)

            global_lease = _first(entity_leases, GLOBAL_ACCESS)
            if global_lease is not None:
                logger.debug(f'Found global lease for source request: {global_lease.id} ({entity} -> global covers {requested_source})')
                return AccessResolution(lease=global_lease)

            return AccessResolution(
                reason=f"Entity '{entity}' cannot access source '{requested_source}'. Available access: {', '.join(available_access)}",
                available=available_access)

        global_lease = _first(entity_leases, GLOBAL_ACCESS)
        if global_lease is not None:
            logger.debug(f'Found global lease for general access: {global_lease.id} ({entity} -> global)')
            return AccessResolution(lease=global_lease)

        return AccessResolution(reason=(f"Entity '{entity}' has no global access. Create a global lease or specify a source. "
                                        f"Available access: {', '.join(available_access)}"),
                                available=available_access)


def _first(leases: List[LeaseInfo], access_specifier: str) -> Optional[LeaseInfo]:
    return next((lease for lease in leases if lease.access_specifier == access_specifier), None)
