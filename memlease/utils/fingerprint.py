"""
Content fingerprints and derived vector ids.
"""

import hashlib
import json
from typing import Iterable, Optional


def memory_fingerprint(source: str,
                       extracted_content: str,
                       tags: Iterable[str],
                       conversation_thread: Optional[str] = None,
                       attachment_ids: Optional[Iterable[str]] = None) -> str:
    """Hash the normalized extraction tuple used as the memory uniqueness key.

    Tags and attachment ids are treated as sets, so their order does not
    change the fingerprint.

    Args:
        source: Producing integration
        extracted_content: Summary text of the memory
        tags: Short labels attached to the memory
        conversation_thread: Optional thread identifier
        attachment_ids: Identifiers of attached images

    Returns:
        0x-prefixed sha256 hex digest
    """
    canonical = json.dumps(
        {
            'source': source,
            'extractedContent': extracted_content,
            'tags': sorted(set(tags)),
            'conversationThread': conversation_thread or None,
            'attachments': sorted(set(attachment_ids or [])),
        },
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False)
    return '0x' + hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def chunk_vector_id(memory_id: str, chunk_index: int) -> int:
    """Derive the integer vector id for a memory chunk (60 bits, stable across runs)."""
    digest = hashlib.sha256(f'{memory_id}_chunk_{chunk_index}'.encode('utf-8')).hexdigest()
    return int(digest[:15], 16)
