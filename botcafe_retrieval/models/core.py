"""
Core data models for knowledge entries, memories, vector records and activation logs.

Every record is owned by exactly one tenant (the owning user). Records are stored as
plain documents; ``to_document`` / ``from_document`` convert between the two forms.
"""

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.timestamp_utils import from_iso, to_iso, utc_now


class SourceType(str, Enum):
    KNOWLEDGE = 'knowledge'
    MEMORY = 'memory'


class ContentType(str, Enum):
    """Content type, selects the chunking profile."""
    LORE = 'lore'
    MEMORY = 'memory'
    LEGACY_MEMORY = 'legacy_memory'
    DOCUMENT = 'document'


class ActivationMode(str, Enum):
    KEYWORD = 'keyword'
    VECTOR = 'vector'
    HYBRID = 'hybrid'
    CONSTANT = 'constant'
    MANUAL = 'manual'
    DISABLED = 'disabled'


class ActivationMethod(str, Enum):
    KEYWORD = 'keyword'
    VECTOR = 'vector'
    CONSTANT = 'constant'
    MANUAL = 'manual'


class KeywordsLogic(str, Enum):
    AND_ANY = 'AND_ANY'
    AND_ALL = 'AND_ALL'
    NOT_ALL = 'NOT_ALL'
    NOT_ANY = 'NOT_ANY'


class Position(str, Enum):
    BEFORE_CHARACTER = 'before_character'
    AFTER_CHARACTER = 'after_character'
    BEFORE_EXAMPLES = 'before_examples'
    AFTER_EXAMPLES = 'after_examples'
    AT_DEPTH = 'at_depth'
    SYSTEM_TOP = 'system_top'
    SYSTEM_BOTTOM = 'system_bottom'


class MessageRole(str, Enum):
    SYSTEM = 'system'
    USER = 'user'
    ASSISTANT = 'assistant'


class ExclusionReason(str, Enum):
    BUDGET_EXCEEDED = 'budget_exceeded'
    GROUP_SCORING_LOST = 'group_scoring_lost'
    COOLDOWN_ACTIVE = 'cooldown_active'
    DELAY_NOT_MET = 'delay_not_met'
    PROBABILITY_FAILED = 'probability_failed'
    FILTER_EXCLUDED = 'filter_excluded'


class MemoryType(str, Enum):
    SHORT_TERM = 'short_term'
    LONG_TERM = 'long_term'
    CONSOLIDATED = 'consolidated'


def to_plain(value: Any) -> Any:
    """Recursively convert enums and datetimes into JSON-friendly values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


def content_hash(text: str) -> str:
    """Stable fingerprint of source text, used to detect stale vectors."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


@dataclass
class ActivationSettings:
    """How an entry is activated during a conversation turn."""
    mode: ActivationMode = ActivationMode.VECTOR
    primary_keys: List[str] = field(default_factory=list)
    secondary_keys: List[str] = field(default_factory=list)
    keywords_logic: KeywordsLogic = KeywordsLogic.AND_ANY
    case_sensitive: bool = False
    match_whole_words: bool = False
    use_regex: bool = False
    vector_similarity_threshold: float = 0.4
    max_vector_results: int = 5
    use_probability: bool = False
    probability: float = 100.0
    scan_depth: Optional[int] = None
    match_in_user_messages: bool = True
    match_in_bot_messages: bool = True
    match_in_system_prompts: bool = False

    @classmethod
    def from_document(cls, doc: Optional[Dict[str, Any]]) -> 'ActivationSettings':
        doc = doc or {}
        return cls(mode=ActivationMode(doc.get('mode', ActivationMode.VECTOR.value)),
                   primary_keys=list(doc.get('primary_keys') or []),
                   secondary_keys=list(doc.get('secondary_keys') or []),
                   keywords_logic=KeywordsLogic(doc.get('keywords_logic', KeywordsLogic.AND_ANY.value)),
                   case_sensitive=bool(doc.get('case_sensitive', False)),
                   match_whole_words=bool(doc.get('match_whole_words', False)),
                   use_regex=bool(doc.get('use_regex', False)),
                   vector_similarity_threshold=float(doc.get('vector_similarity_threshold', 0.4)),
                   max_vector_results=int(doc.get('max_vector_results', 5)),
                   use_probability=bool(doc.get('use_probability', False)),
                   probability=float(doc.get('probability', 100.0)),
                   scan_depth=doc.get('scan_depth'),
                   match_in_user_messages=bool(doc.get('match_in_user_messages', True)),
                   match_in_bot_messages=bool(doc.get('match_in_bot_messages', True)),
                   match_in_system_prompts=bool(doc.get('match_in_system_prompts', False)))


@dataclass
class Positioning:
    """Where an activated entry is inserted into the prompt."""
    position: Position = Position.BEFORE_CHARACTER
    depth: int = 0
    role: MessageRole = MessageRole.SYSTEM
    order: int = 100

    @classmethod
    def from_document(cls, doc: Optional[Dict[str, Any]]) -> 'Positioning':
        doc = doc or {}
        return cls(position=Position(doc.get('position', Position.BEFORE_CHARACTER.value)),
                   depth=int(doc.get('depth', 0)),
                   role=MessageRole(doc.get('role', MessageRole.SYSTEM.value)),
                   order=int(doc.get('order', 100)))


@dataclass
class TimedEffects:
    """Sticky / cooldown / delay counters, all measured in message indices."""
    sticky: int = 0
    cooldown: int = 0
    delay: int = 0

    @classmethod
    def from_document(cls, doc: Optional[Dict[str, Any]]) -> 'TimedEffects':
        doc = doc or {}
        return cls(sticky=int(doc.get('sticky', 0)), cooldown=int(doc.get('cooldown', 0)), delay=int(doc.get('delay', 0)))


@dataclass
class EntryFiltering:
    """Bot and persona allow/deny lists."""
    filter_by_bots: bool = False
    allowed_bot_ids: List[str] = field(default_factory=list)
    excluded_bot_ids: List[str] = field(default_factory=list)
    filter_by_personas: bool = False
    allowed_persona_ids: List[str] = field(default_factory=list)
    excluded_persona_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_document(cls, doc: Optional[Dict[str, Any]]) -> 'EntryFiltering':
        doc = doc or {}
        return cls(filter_by_bots=bool(doc.get('filter_by_bots', False)),
                   allowed_bot_ids=[str(i) for i in doc.get('allowed_bot_ids') or []],
                   excluded_bot_ids=[str(i) for i in doc.get('excluded_bot_ids') or []],
                   filter_by_personas=bool(doc.get('filter_by_personas', False)),
                   allowed_persona_ids=[str(i) for i in doc.get('allowed_persona_ids') or []],
                   excluded_persona_ids=[str(i) for i in doc.get('excluded_persona_ids') or []])


@dataclass
class BudgetControl:
    ignore_budget: bool = False
    token_cost: int = 0  # 0 means estimate from text

    @classmethod
    def from_document(cls, doc: Optional[Dict[str, Any]]) -> 'BudgetControl':
        doc = doc or {}
        return cls(ignore_budget=bool(doc.get('ignore_budget', False)), token_cost=int(doc.get('token_cost', 0)))


@dataclass
class GroupSettings:
    """Mutually exclusive alternatives share a group name; only the best one activates."""
    group_name: Optional[str] = None
    group_weight: float = 1.0
    use_group_scoring: bool = True

    @classmethod
    def from_document(cls, doc: Optional[Dict[str, Any]]) -> 'GroupSettings':
        doc = doc or {}
        return cls(group_name=doc.get('group_name'),
                   group_weight=float(doc.get('group_weight', 1.0)),
                   use_group_scoring=bool(doc.get('use_group_scoring', True)))


@dataclass
class KnowledgeEntry:
    """A lore / knowledge entry owned by one tenant."""
    id: str
    tenant_id: str
    text: str
    collection_id: Optional[str] = None
    content_type: ContentType = ContentType.LORE
    tags: List[str] = field(default_factory=list)
    applies_to_bots: List[str] = field(default_factory=list)
    applies_to_personas: List[str] = field(default_factory=list)
    activation: ActivationSettings = field(default_factory=ActivationSettings)
    positioning: Positioning = field(default_factory=Positioning)
    timed_effects: TimedEffects = field(default_factory=TimedEffects)
    filtering: EntryFiltering = field(default_factory=EntryFiltering)
    budget: BudgetControl = field(default_factory=BudgetControl)
    group: GroupSettings = field(default_factory=GroupSettings)
    is_vectorized: bool = False
    chunk_count: int = 0
    content_hash: Optional[str] = None
    source_memory_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    modified_at: datetime = field(default_factory=utc_now)

    def to_document(self) -> Dict[str, Any]:
        return to_plain(asdict(self))

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'KnowledgeEntry':
        return cls(id=str(doc['id']),
                   tenant_id=str(doc['tenant_id']),
                   text=doc.get('text', ''),
                   collection_id=doc.get('collection_id'),
                   content_type=ContentType(doc.get('content_type', ContentType.LORE.value)),
                   tags=list(doc.get('tags') or []),
                   applies_to_bots=[str(i) for i in doc.get('applies_to_bots') or []],
                   applies_to_personas=[str(i) for i in doc.get('applies_to_personas') or []],
                   activation=ActivationSettings.from_document(doc.get('activation')),
                   positioning=Positioning.from_document(doc.get('positioning')),
                   timed_effects=TimedEffects.from_document(doc.get('timed_effects')),
                   filtering=EntryFiltering.from_document(doc.get('filtering')),
                   budget=BudgetControl.from_document(doc.get('budget')),
                   group=GroupSettings.from_document(doc.get('group')),
                   is_vectorized=bool(doc.get('is_vectorized', False)),
                   chunk_count=int(doc.get('chunk_count', 0)),
                   content_hash=doc.get('content_hash'),
                   source_memory_id=doc.get('source_memory_id'),
                   created_at=from_iso(doc.get('created_at')) or utc_now(),
                   modified_at=from_iso(doc.get('modified_at')) or utc_now())


@dataclass
class Participants:
    bots: List[str] = field(default_factory=list)
    personas: List[str] = field(default_factory=list)


@dataclass
class Memory:
    """Summarized conversation text; may be promoted to a KnowledgeEntry once."""
    id: str
    tenant_id: str
    text: str
    conversation_id: Optional[str] = None
    participants: Participants = field(default_factory=Participants)
    memory_type: MemoryType = MemoryType.SHORT_TERM
    importance: int = 5
    tokens: int = 0
    is_vectorized: bool = False
    chunk_count: int = 0
    content_hash: Optional[str] = None
    converted_to_lore: bool = False
    lore_entry_id: Optional[str] = None
    converted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_document(self) -> Dict[str, Any]:
        return to_plain(asdict(self))

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'Memory':
        participants = doc.get('participants') or {}
        return cls(id=str(doc['id']),
                   tenant_id=str(doc['tenant_id']),
                   text=doc.get('text', ''),
                   conversation_id=doc.get('conversation_id'),
                   participants=Participants(bots=[str(b) for b in participants.get('bots') or []],
                                             personas=[str(p) for p in participants.get('personas') or []]),
                   memory_type=MemoryType(doc.get('memory_type', MemoryType.SHORT_TERM.value)),
                   importance=int(doc.get('importance', 5)),
                   tokens=int(doc.get('tokens', 0)),
                   is_vectorized=bool(doc.get('is_vectorized', False)),
                   chunk_count=int(doc.get('chunk_count', 0)),
                   content_hash=doc.get('content_hash'),
                   converted_to_lore=bool(doc.get('converted_to_lore', False)),
                   lore_entry_id=doc.get('lore_entry_id'),
                   converted_at=from_iso(doc.get('converted_at')),
                   created_at=from_iso(doc.get('created_at')) or utc_now())


@dataclass
class VectorMetadata:
    """Metadata stored next to each vector in the index.

    Only tenant_id, source_type, source_id, type and user_id are filterable by the
    index; the remaining fields are checked in process after a query.
    """
    type: ContentType
    tenant_id: str
    user_id: str
    source_type: SourceType
    source_id: str
    chunk_index: int
    total_chunks: int
    created_at: datetime = field(default_factory=utc_now)
    applies_to_bots: List[str] = field(default_factory=list)
    applies_to_personas: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    importance: Optional[int] = None

    def to_document(self) -> Dict[str, Any]:
        return to_plain(asdict(self))

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'VectorMetadata':
        return cls(type=ContentType(doc.get('type', ContentType.LORE.value)),
                   tenant_id=str(doc['tenant_id']),
                   user_id=str(doc.get('user_id', doc['tenant_id'])),
                   source_type=SourceType(doc['source_type']),
                   source_id=str(doc['source_id']),
                   chunk_index=int(doc.get('chunk_index', 0)),
                   total_chunks=int(doc.get('total_chunks', 1)),
                   created_at=from_iso(doc.get('created_at')) or utc_now(),
                   applies_to_bots=[str(b) for b in doc.get('applies_to_bots') or []],
                   applies_to_personas=[str(p) for p in doc.get('applies_to_personas') or []],
                   tags=list(doc.get('tags') or []),
                   importance=doc.get('importance'))


def make_vector_id(source_type: SourceType, source_id: str, chunk_index: int) -> str:
    """Deterministic index key so re-vectorizing a source overwrites by id."""
    return f'{source_type.value}-{source_id}-chunk-{chunk_index}'


@dataclass
class VectorRecord:
    """Join between one text chunk and its embedding."""
    vector_id: str
    source_type: SourceType
    source_id: str
    tenant_id: str
    chunk_index: int
    total_chunks: int
    chunk_text: str
    metadata: VectorMetadata
    embedding_model: str
    embedding_dimensions: int
    embedding: Optional[List[float]] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_document(self) -> Dict[str, Any]:
        return to_plain(asdict(self))

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'VectorRecord':
        embedding = doc.get('embedding')
        return cls(vector_id=str(doc['vector_id']),
                   source_type=SourceType(doc['source_type']),
                   source_id=str(doc['source_id']),
                   tenant_id=str(doc['tenant_id']),
                   chunk_index=int(doc.get('chunk_index', 0)),
                   total_chunks=int(doc.get('total_chunks', 1)),
                   chunk_text=doc.get('chunk_text', ''),
                   metadata=VectorMetadata.from_document(doc['metadata']),
                   embedding_model=doc.get('embedding_model', ''),
                   embedding_dimensions=int(doc.get('embedding_dimensions', 0)),
                   embedding=list(embedding) if embedding else None,
                   created_at=from_iso(doc.get('created_at')) or utc_now())


@dataclass
class KnowledgeActivationLog:
    """Immutable audit row for one activation decision."""
    id: str
    tenant_id: str
    conversation_id: str
    message_index: int
    knowledge_entry_id: str
    activation_method: ActivationMethod
    activation_score: float
    position_inserted: str
    tokens_used: int
    was_included: bool
    matched_keywords: List[str] = field(default_factory=list)
    vector_similarity: Optional[float] = None
    exclusion_reason: Optional[ExclusionReason] = None
    sticky: bool = False
    activation_timestamp: datetime = field(default_factory=utc_now)

    def to_document(self) -> Dict[str, Any]:
        return to_plain(asdict(self))

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'KnowledgeActivationLog':
        reason = doc.get('exclusion_reason')
        return cls(id=str(doc['id']),
                   tenant_id=str(doc['tenant_id']),
                   conversation_id=str(doc['conversation_id']),
                   message_index=int(doc['message_index']),
                   knowledge_entry_id=str(doc['knowledge_entry_id']),
                   activation_method=ActivationMethod(doc['activation_method']),
                   activation_score=float(doc.get('activation_score', 0.0)),
                   position_inserted=doc.get('position_inserted', ''),
                   tokens_used=int(doc.get('tokens_used', 0)),
                   was_included=bool(doc.get('was_included', False)),
                   matched_keywords=list(doc.get('matched_keywords') or []),
                   vector_similarity=doc.get('vector_similarity'),
                   exclusion_reason=ExclusionReason(reason) if reason else None,
                   sticky=bool(doc.get('sticky', False)),
                   activation_timestamp=from_iso(doc.get('activation_timestamp')) or utc_now())
