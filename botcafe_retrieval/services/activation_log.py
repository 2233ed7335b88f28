"""
Activation audit trail: writes one immutable row per activation decision and rebuilds
per-entry timing state (cooldown, sticky) from those rows.
"""

import uuid
from typing import Dict, List, Optional

from ..models.activation import ActivatedEntry, ActivationContext, EntryState
from ..models.core import KnowledgeActivationLog
from ..utils.exceptions import RetrievalError
from ..utils.logging_config import get_logger
from ..utils.record_store import RecordStore

logger = get_logger(__name__)


class ActivationLogService:
    """Audit logging of activation decisions."""

    def __init__(self, record_store: RecordStore):
        self.record_store = record_store

    @staticmethod
    def build_log(context: ActivationContext, candidate: ActivatedEntry) -> KnowledgeActivationLog:
        return KnowledgeActivationLog(id=str(uuid.uuid4()),
                                      tenant_id=context.tenant_id,
                                      conversation_id=context.conversation_id,
                                      message_index=context.message_index,
                                      knowledge_entry_id=candidate.entry.id,
                                      activation_method=candidate.method,
                                      activation_score=candidate.score,
                                      matched_keywords=list(candidate.matched_keywords),
                                      vector_similarity=candidate.vector_similarity,
                                      position_inserted=candidate.position_label,
                                      tokens_used=candidate.token_cost,
                                      was_included=candidate.included,
                                      exclusion_reason=candidate.exclusion_reason,
                                      sticky=candidate.sticky)

    def record(self, context: ActivationContext, candidates: List[ActivatedEntry]) -> List[KnowledgeActivationLog]:
        """
        Append one log row per candidate. Write failures are logged, never raised.

        Returns:
            Rows that were written
        """
        written = []
        for candidate in candidates:
            log = self.build_log(context, candidate)
            try:
                self.record_store.append_activation_log(log)
                written.append(log)
            except RetrievalError as e:
                logger.error(f'Failed to log activation of entry {candidate.entry.id} '
                             f'in conversation {context.conversation_id}: {e}')

        logger.debug(f'Logged {len(written)}/{len(candidates)} activation decisions for conversation {context.conversation_id}')
        return written

    def list_for_conversation(self, tenant_id: str, conversation_id: str) -> List[KnowledgeActivationLog]:
        return self.record_store.list_activation_logs(tenant_id, conversation_id)

    def entry_states(self, tenant_id: str, conversation_id: str, before_index: Optional[int] = None) -> Dict[str, EntryState]:
        """
        Rebuild per-entry activation history for a conversation.

        Args:
            tenant_id: Owning user
            conversation_id: Conversation to read
            before_index: Ignore rows at or after this message index

        Returns:
            Map of entry id to EntryState
        """
        states: Dict[str, EntryState] = {}
        logs = sorted(self.list_for_conversation(tenant_id, conversation_id), key=lambda log: log.message_index)
        for log in logs:
            if before_index is not None and log.message_index >= before_index:
                continue
            if not log.was_included:
                continue

            state = states.setdefault(log.knowledge_entry_id, EntryState(entry_id=log.knowledge_entry_id))
            state.last_included_index = log.message_index
            # Sticky carry-overs do not restart the sticky window
            if not log.sticky:
                state.last_triggered_index = log.message_index
                state.last_method = log.activation_method
                state.last_score = log.activation_score
                state.last_similarity = log.vector_similarity
        return states

    def delete_logs(self, tenant_id: str, conversation_id: Optional[str] = None) -> int:
        """Delete the owner's logs, optionally for one conversation."""
        deleted = self.record_store.delete_activation_logs(tenant_id, conversation_id)
        logger.info(f'Deleted {deleted} activation logs for tenant {tenant_id}')
        return deleted
