"""
Audit Recorder: one immutable decision record per retrieval attempt.
"""

import uuid
from typing import List, Optional

from ..models.core import AuditAction, AuditRecord, AuditStats, normalize_principal
from ..models.errors import UpstreamUnavailableError, ValidationError
from ..utils.ledger_client import LedgerClient
from ..utils.logging_config import get_logger
from ..utils.relational_store import RelationalStore
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)


class AuditTrailService:
    """Record grant/deny decisions and report on them.

    The relational row is authoritative; the ledger mirror is best effort and
    only written when a lease was involved. Neither failure reaches the caller.
    """

    def __init__(self, store: RelationalStore, ledger: Optional[LedgerClient] = None):
        self.store = store
        self.ledger = ledger

    def record(self,
               principal: str,
               entity: str,
               action: AuditAction,
               reason: Optional[str],
               prompt: str,
               source: Optional[str] = None,
               lease_id: Optional[str] = None,
               accessed_memories: Optional[List[str]] = None) -> str:
        """
        Record an access decision.

        Args:
            principal: Owner of the memories
            entity: Requesting integration
            action: Granted or denied
            reason: Free-text explanation
            prompt: Original request prompt
            source: Effective source filter
            lease_id: Lease the decision was made under, if any
            accessed_memories: Ids of memories actually returned

        Returns:
            Audit record id (also returned when persisting failed)
        """
        record = AuditRecord(id=uuid.uuid4().hex,
                             principal=normalize_principal(principal),
                             entity=entity,
                             action=AuditAction(action).value,
                             reason=reason,
                             prompt=prompt,
                             source=source,
                             lease_id=lease_id,
                             accessed_memories=list(accessed_memories or []),
                             created_at=utc_now())

        if lease_id and self.ledger is not None:
            try:
                record.tx_hash = self.ledger.record_audit(record.principal, lease_id, entity, record.action, record.accessed_memories)
            except UpstreamUnavailableError as e:
                logger.warning(f'Ledger audit mirror failed for {record.id}: {e}')

        try:
            self.store.insert_audit(record)
            logger.info(f'Audit trail recorded: {record.id} ({record.action})')
        except Exception as e:
            logger.error(f'AUDIT WRITE FAILED for {record.id} ({record.action}, principal {record.principal}): {e}')

        return record.id

    def get_trail(self, principal: str, limit: int = 50) -> List[AuditRecord]:
        """Audit records for principal, newest first."""
        if limit < 1:
            raise ValidationError('limit must be positive')
        return self.store.list_audit(normalize_principal(principal), limit)

    def get_stats(self, principal: str) -> AuditStats:
        """Totals of granted/denied decisions and memories handed out under grants."""
        return self.store.audit_stats(normalize_principal(principal))
