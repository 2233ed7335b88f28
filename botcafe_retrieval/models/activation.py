"""
Per-turn activation models: the request context, candidates and the pass result.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from .core import ActivationMethod, ExclusionReason, KnowledgeEntry, MessageRole, Position


@dataclass
class ChatMessage:
    role: MessageRole
    content: str

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'ChatMessage':
        return cls(role=MessageRole(data.get('role', MessageRole.USER.value)), content=data.get('content', ''))


@dataclass
class BudgetConfig:
    """Token budget for injected knowledge in one prompt."""
    max_context_tokens: int = 8000
    budget_percentage: float = 25.0
    budget_cap_tokens: int = 2000
    reserved_for_conversation: int = 0


@dataclass
class ActivationContext:
    """Everything an activation pass needs to know about the current turn."""
    tenant_id: str
    conversation_id: str
    message_index: int
    messages: List[ChatMessage]
    bot_id: Optional[str] = None
    persona_id: Optional[str] = None
    system_prompt: str = ''
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    pinned_entry_ids: Set[str] = field(default_factory=set)
    collection_ids: Optional[List[str]] = None
    vector_top_k: int = 20


@dataclass
class ActivatedEntry:
    """A candidate entry moving through the scoring and budget stages."""
    entry: KnowledgeEntry
    method: ActivationMethod
    score: float
    matched_keywords: List[str] = field(default_factory=list)
    vector_similarity: Optional[float] = None
    token_cost: int = 0
    sticky: bool = False
    exclusion_reason: Optional[ExclusionReason] = None

    @property
    def included(self) -> bool:
        return self.exclusion_reason is None

    @property
    def position_label(self) -> str:
        return f'{self.entry.positioning.position.value}:{self.entry.positioning.depth}'


@dataclass
class EntryState:
    """Activation history of one entry within one conversation, rebuilt from the audit log."""
    entry_id: str
    last_included_index: Optional[int] = None
    last_triggered_index: Optional[int] = None
    last_method: Optional[ActivationMethod] = None
    last_score: float = 0.0
    last_similarity: Optional[float] = None


@dataclass
class ActivationResult:
    """Outcome of one activation pass."""
    included: List[ActivatedEntry] = field(default_factory=list)
    excluded: List[ActivatedEntry] = field(default_factory=list)
    budget: int = 0
    total_tokens: int = 0
    vector_candidates: int = 0
    vector_degraded: bool = False
    knowledge_degraded: bool = False

    @property
    def budget_remaining(self) -> int:
        return max(0, self.budget - self.total_tokens)

    def exclusion_counts(self) -> Dict[str, int]:
        counts = Counter(c.exclusion_reason.value for c in self.excluded if c.exclusion_reason)
        return dict(counts)

    def injections(self) -> List[Tuple[KnowledgeEntry, Position, str]]:
        """Included entries as (entry, position, text), ordered by position bucket then order."""
        ordered = sorted(self.included, key=lambda c: (list(Position).index(c.entry.positioning.position),
                                                       c.entry.positioning.order, c.entry.id))
        return [(c.entry, c.entry.positioning.position, c.entry.text) for c in ordered]
