"""
Activation engine: decides which knowledge entries are injected for one conversation turn.

A pass gathers candidates (keyword, vector, constant, manually pinned, sticky carry-over),
scores them, runs the exclusion stages in a fixed order (filter, delay, cooldown,
probability, group, budget) and logs every decision. Each excluded candidate carries
exactly one reason: the first stage that rejected it.
"""

import random
from typing import Dict, List, Optional

from ..models.activation import ActivatedEntry, ActivationContext, ActivationResult, EntryState
from ..models.core import ActivationMethod, ActivationMode, ExclusionReason, KnowledgeEntry, SourceType
from ..utils.exceptions import ActivationError, RetrievalError
from ..utils.logging_config import get_logger
from ..utils.record_store import RecordStore
from .activation_log import ActivationLogService
from .budget_manager import BudgetManager
from .keyword_matcher import KeywordMatcher
from .vector_retriever import VectorRetriever

logger = get_logger(__name__)

FIXED_SCORE = 100.0
HYBRID_BOOST = 0.5
QUERY_MESSAGES = 2

KEYWORD_MODES = (ActivationMode.KEYWORD, ActivationMode.HYBRID)
VECTOR_MODES = (ActivationMode.VECTOR, ActivationMode.HYBRID)


class ActivationEngine:
    """Hybrid keyword and vector knowledge activation."""

    def __init__(self,
                 record_store: RecordStore,
                 vector_retriever: Optional[VectorRetriever] = None,
                 keyword_matcher: Optional[KeywordMatcher] = None,
                 budget_manager: Optional[BudgetManager] = None,
                 activation_log: Optional[ActivationLogService] = None,
                 rng: Optional[random.Random] = None):
        """
        Initialize the engine with its collaborators.

        Args:
            record_store: Source of knowledge entries
            vector_retriever: Similarity search (optional, vector candidates are skipped if None)
            keyword_matcher: Keyword matcher (optional)
            budget_manager: Budget allocator (optional)
            activation_log: Audit log service (optional, built on record_store if None)
            rng: Random source for probability gates (optional)
        """
        self.record_store = record_store
        self.vector_retriever = vector_retriever
        self.keyword_matcher = keyword_matcher or KeywordMatcher()
        self.budget_manager = budget_manager or BudgetManager()
        self.activation_log = activation_log or ActivationLogService(record_store)
        self.rng = rng or random.Random()

    def activate(self, context: ActivationContext) -> ActivationResult:
        """
        Run one activation pass.

        Args:
            context: Current turn, conversation history and budget

        Returns:
            ActivationResult with included and excluded candidates. If knowledge entries
            cannot be read the result is empty and flagged knowledge_degraded.

        Raises:
            ActivationError: If the context has no tenant
        """
        if not context.tenant_id:
            raise ActivationError('Activation requires a tenant_id')

        result = ActivationResult(budget=self.budget_manager.calculate_budget(context.budget))
        try:
            entries = self.record_store.list_knowledge(context.tenant_id, context.collection_ids)
        except RetrievalError as e:
            logger.warning(f'Knowledge unavailable for tenant {context.tenant_id}, activating nothing: {e}')
            result.knowledge_degraded = True
            return result

        entries = [e for e in entries if e.activation.mode != ActivationMode.DISABLED]
        states = self._load_states(context)

        keyword_candidates = self._keyword_candidates(entries, context)
        vector_candidates = self._vector_candidates(entries, context, result)
        result.vector_candidates = len(vector_candidates)

        candidates = self._merge(keyword_candidates, vector_candidates, self._fixed_candidates(entries, context))
        self._add_sticky(candidates, entries, states, context)

        ordered = list(candidates.values())
        for candidate in ordered:
            candidate.token_cost = self.budget_manager.entry_cost(candidate)

        self._apply_filtering(ordered, context)
        self._apply_timed_effects(ordered, states, context)
        self._apply_probability(ordered)
        self._apply_group_scoring(ordered)
        result.total_tokens = self.budget_manager.apply_budget(ordered, result.budget)

        result.included = sorted((c for c in ordered if c.included), key=self.budget_manager.priority_key)
        result.excluded = [c for c in ordered if not c.included]

        self.activation_log.record(context, ordered)

        logger.info(f'Activation for conversation {context.conversation_id} at message {context.message_index}: '
                    f'{len(result.included)} included, {len(result.excluded)} excluded, '
                    f'{result.total_tokens}/{result.budget} tokens')
        return result

    def _load_states(self, context: ActivationContext) -> Dict[str, EntryState]:
        try:
            return self.activation_log.entry_states(context.tenant_id, context.conversation_id, before_index=context.message_index)
        except RetrievalError as e:
            logger.warning(f'Activation history unavailable for conversation {context.conversation_id}: {e}')
            return {}

    def _keyword_candidates(self, entries: List[KnowledgeEntry], context: ActivationContext) -> List[ActivatedEntry]:
        candidates = []
        for entry in entries:
            if entry.activation.mode not in KEYWORD_MODES:
                continue
            match = self.keyword_matcher.match_entry(entry, context.messages, context.system_prompt)
            if match.matched:
                candidates.append(
                    ActivatedEntry(entry=entry,
                                   method=ActivationMethod.KEYWORD,
                                   score=float(match.score),
                                   matched_keywords=match.matched_keywords))
        return candidates

    def _vector_candidates(self, entries: List[KnowledgeEntry], context: ActivationContext,
                           result: ActivationResult) -> List[ActivatedEntry]:
        """Similarity candidates; any backend failure yields none."""
        vector_entries = {e.id: e for e in entries if e.activation.mode in VECTOR_MODES}
        if not vector_entries or self.vector_retriever is None:
            return []

        query = ' '.join(m.content for m in context.messages[-QUERY_MESSAGES:] if m.content).strip()
        if not query:
            return []

        try:
            hits = self.vector_retriever.search(context.tenant_id,
                                                query,
                                                top_k=context.vector_top_k,
                                                source_type=SourceType.KNOWLEDGE,
                                                bot_id=context.bot_id,
                                                persona_id=context.persona_id)
        except RetrievalError as e:
            logger.warning(f'Vector activation skipped for conversation {context.conversation_id}: {e}')
            result.vector_degraded = True
            return []

        candidates = []
        for hit in hits:
            entry = vector_entries.get(hit.source_id)
            if entry is None or hit.similarity < entry.activation.vector_similarity_threshold:
                continue
            candidates.append(
                ActivatedEntry(entry=entry,
                               method=ActivationMethod.VECTOR,
                               score=hit.similarity * 100,
                               vector_similarity=hit.similarity))
        return candidates

    @staticmethod
    def _fixed_candidates(entries: List[KnowledgeEntry], context: ActivationContext) -> List[ActivatedEntry]:
        candidates = []
        for entry in entries:
            if entry.activation.mode == ActivationMode.CONSTANT:
                candidates.append(ActivatedEntry(entry=entry, method=ActivationMethod.CONSTANT, score=FIXED_SCORE))
            elif entry.activation.mode == ActivationMode.MANUAL and entry.id in context.pinned_entry_ids:
                candidates.append(ActivatedEntry(entry=entry, method=ActivationMethod.MANUAL, score=FIXED_SCORE))
        return candidates

    @staticmethod
    def _merge(keyword: List[ActivatedEntry], vector: List[ActivatedEntry], fixed: List[ActivatedEntry]) -> Dict[str, ActivatedEntry]:
        merged: Dict[str, ActivatedEntry] = {}
        for candidate in keyword:
            merged[candidate.entry.id] = candidate

        for candidate in vector:
            existing = merged.get(candidate.entry.id)
            if existing is None:
                merged[candidate.entry.id] = candidate
            else:
                existing.score += candidate.score * HYBRID_BOOST
                existing.vector_similarity = candidate.vector_similarity

        for candidate in fixed:
            merged.setdefault(candidate.entry.id, candidate)
        return merged

    @staticmethod
    def _add_sticky(candidates: Dict[str, ActivatedEntry], entries: List[KnowledgeEntry], states: Dict[str, EntryState],
                    context: ActivationContext) -> None:
        for entry in entries:
            sticky = entry.timed_effects.sticky
            state = states.get(entry.id)
            if entry.id in candidates or sticky <= 0 or state is None or state.last_triggered_index is None:
                continue
            if state.last_triggered_index < context.message_index <= state.last_triggered_index + sticky:
                candidates[entry.id] = ActivatedEntry(entry=entry,
                                                      method=state.last_method or ActivationMethod.KEYWORD,
                                                      score=state.last_score,
                                                      vector_similarity=state.last_similarity,
                                                      sticky=True)

    @staticmethod
    def _apply_filtering(candidates: List[ActivatedEntry], context: ActivationContext) -> None:
        for candidate in candidates:
            filtering = candidate.entry.filtering
            excluded = False

            if filtering.filter_by_bots and context.bot_id:
                if filtering.allowed_bot_ids and context.bot_id not in filtering.allowed_bot_ids:
                    excluded = True
                if context.bot_id in filtering.excluded_bot_ids:
                    excluded = True

            if filtering.filter_by_personas and context.persona_id:
                if filtering.allowed_persona_ids and context.persona_id not in filtering.allowed_persona_ids:
                    excluded = True
                if context.persona_id in filtering.excluded_persona_ids:
                    excluded = True

            if excluded:
                candidate.exclusion_reason = ExclusionReason.FILTER_EXCLUDED

    @staticmethod
    def _apply_timed_effects(candidates: List[ActivatedEntry], states: Dict[str, EntryState], context: ActivationContext) -> None:
        current = context.message_index
        for candidate in candidates:
            # Sticky carry-overs already passed these gates when they triggered
            if not candidate.included or candidate.sticky:
                continue

            effects = candidate.entry.timed_effects
            if effects.delay > 0 and current < effects.delay:
                candidate.exclusion_reason = ExclusionReason.DELAY_NOT_MET
                continue

            state = states.get(candidate.entry.id)
            if effects.cooldown > 0 and state and state.last_included_index is not None:
                if current - state.last_included_index < effects.cooldown:
                    candidate.exclusion_reason = ExclusionReason.COOLDOWN_ACTIVE

    def _apply_probability(self, candidates: List[ActivatedEntry]) -> None:
        for candidate in candidates:
            settings = candidate.entry.activation
            if not candidate.included or candidate.sticky:
                continue
            if settings.use_probability and settings.probability < 100:
                roll = self.rng.random() * 100
                if roll >= settings.probability:
                    candidate.exclusion_reason = ExclusionReason.PROBABILITY_FAILED

    @staticmethod
    def _apply_group_scoring(candidates: List[ActivatedEntry]) -> None:
        groups: Dict[str, List[ActivatedEntry]] = {}
        for candidate in candidates:
            group = candidate.entry.group
            if candidate.included and group.group_name and group.use_group_scoring:
                groups.setdefault(group.group_name, []).append(candidate)

        for members in groups.values():
            if len(members) <= 1:
                continue
            members.sort(key=lambda c: (-c.score * c.entry.group.group_weight, c.entry.positioning.order, c.entry.id))
            for loser in members[1:]:
                loser.exclusion_reason = ExclusionReason.GROUP_SCORING_LOST
