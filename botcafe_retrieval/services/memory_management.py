"""
Memory Management Service: conversation summarization, memory search and promotion of
memories to lore entries.
"""

import uuid
from dataclasses import dataclass
from typing import List, Optional

from ..models.activation import ChatMessage
from ..models.core import ActivationMode, ContentType, KnowledgeEntry, Memory, MemoryType, MessageRole, Participants, SourceType
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import MemoryConfig
from ..utils.exceptions import InputError, InvalidResponse
from ..utils.json_utils import parse_json_response
from ..utils.logging_config import get_logger
from ..utils.record_store import RecordStore
from ..utils.timestamp_utils import utc_now
from .chunking import estimate_tokens
from .vector_retriever import VectorRetriever, VectorSearchResult

logger = get_logger(__name__)

SUMMARY_SYSTEM_PROMPT = """
You are a memory writer for a roleplay chat platform. Summarize the conversation excerpt
into a single memory the characters would remember later.

Keep names, relationships, promises, facts learned and emotional turning points. Write in
third person past tense. Do not invent details that are not in the conversation.

Rate the importance of the memory from 1 (small talk) to 10 (life-changing event).

Return JSON with this exact format:
```json
{
  "summary": "memory text",
  "importance": 5
}
```"""


@dataclass
class MemoryTrigger:
    should_generate: bool
    messages_since_last: int
    reason: Optional[str] = None


class MemoryManagementService:
    """Creates, searches and converts conversation memories."""

    def __init__(self,
                 record_store: RecordStore,
                 llm: BedrockLLM,
                 memory_config: MemoryConfig,
                 vector_retriever: Optional[VectorRetriever] = None):
        """
        Initialize the memory management service.

        Args:
            record_store: Memory and knowledge storage
            llm: LLM client used for summarization
            memory_config: Trigger thresholds
            vector_retriever: Similarity search over memories (optional)
        """
        self.record_store = record_store
        self.llm = llm
        self.config = memory_config
        self.vector_retriever = vector_retriever

        logger.info('Initialized MemoryManagementService')

    def check_trigger(self, messages_since_last: int, total_tokens: int) -> MemoryTrigger:
        """Decide whether a conversation is due for summarization."""
        if messages_since_last >= self.config.message_threshold:
            return MemoryTrigger(True, messages_since_last, 'message_threshold')
        if total_tokens >= self.config.token_threshold:
            return MemoryTrigger(True, messages_since_last, 'token_threshold')
        return MemoryTrigger(False, messages_since_last)

    def summarize_conversation(self,
                               tenant_id: str,
                               conversation_id: str,
                               messages: List[ChatMessage],
                               participants: Optional[Participants] = None) -> Memory:
        """Summarize new conversation messages into a stored short-term memory.

        Args:
            tenant_id: Owning user
            conversation_id: Conversation the messages belong to
            messages: Messages since the last summary, oldest first
            participants: Bots and personas taking part

        Returns:
            The stored Memory (not yet vectorized)

        Raises:
            InputError: If there are too few messages to summarize
            ModelUnavailable: If the LLM cannot be reached
            InvalidResponse: If the LLM answer is not a usable summary
        """
        dialogue = [m for m in messages if m.role in (MessageRole.USER, MessageRole.ASSISTANT) and m.content.strip()]
        if len(dialogue) < self.config.min_new_messages:
            raise InputError(f'Not enough new messages to summarize: {len(dialogue)} < {self.config.min_new_messages}')

        content = '\n\n'.join(f'{m.role.value.capitalize()}:\n{m.content}' for m in dialogue)
        llm_messages = [{
            'role': 'user',
            'content': [{
                'text': f'Summarize this conversation:\n{content}'
            }]
        }, {
            'role': 'assistant',
            'content': [{
                'text': '```json'
            }]
        }]

        response, _ = self.llm.generate_response(messages=llm_messages, system_prompt=SUMMARY_SYSTEM_PROMPT, stop_sequences=['```'])
        data = parse_json_response(response)
        if not isinstance(data, dict) or not str(data.get('summary', '')).strip():
            raise InvalidResponse('Summary response has no summary text')

        try:
            importance = int(data.get('importance', 5))
        except (TypeError, ValueError):
            logger.warning(f'Unparseable importance {data.get("importance")!r}, using 5')
            importance = 5

        summary = str(data['summary']).strip()
        memory = Memory(id=str(uuid.uuid4()),
                        tenant_id=tenant_id,
                        text=summary,
                        conversation_id=conversation_id,
                        participants=participants or Participants(),
                        memory_type=MemoryType.SHORT_TERM,
                        importance=min(10, max(1, importance)),
                        tokens=estimate_tokens(summary))
        self.record_store.save_memory(memory)

        logger.info(f'Created memory {memory.id} for conversation {conversation_id} from {len(dialogue)} messages')
        return memory

    def convert_to_lore(self, tenant_id: str, memory_id: str, collection_id: str, tags: Optional[List[str]] = None) -> KnowledgeEntry:
        """Promote a memory to a permanent knowledge entry; a memory converts at most once.

        Raises:
            InputError: If the memory is missing, already converted, or no collection is given
        """
        if not collection_id:
            raise InputError('collection_id is required')

        memory = self.record_store.get_memory(tenant_id, memory_id)
        if memory is None:
            raise InputError(f'Memory {memory_id} not found')
        if memory.converted_to_lore:
            raise InputError(f'Memory {memory_id} has already been converted to lore')

        entry = KnowledgeEntry(id=str(uuid.uuid4()),
                               tenant_id=tenant_id,
                               text=memory.text,
                               collection_id=collection_id,
                               content_type=ContentType.LORE,
                               tags=list(tags or []),
                               applies_to_bots=list(memory.participants.bots),
                               source_memory_id=memory.id)
        entry.activation.mode = ActivationMode.VECTOR
        self.record_store.save_knowledge(entry)

        memory.converted_to_lore = True
        memory.lore_entry_id = entry.id
        memory.converted_at = utc_now()
        self.record_store.save_memory(memory)

        logger.info(f'Converted memory {memory_id} to lore entry {entry.id}')
        return entry

    def search_memories(self,
                        tenant_id: str,
                        query: str,
                        top_k: int = 5,
                        similarity_threshold: float = 0.0,
                        bot_id: Optional[str] = None,
                        persona_id: Optional[str] = None) -> List[VectorSearchResult]:
        """Similarity search restricted to the tenant's memories."""
        if self.vector_retriever is None:
            raise InputError('Memory search requires a vector retriever')
        return self.vector_retriever.search(tenant_id,
                                            query,
                                            top_k=top_k,
                                            similarity_threshold=similarity_threshold,
                                            source_type=SourceType.MEMORY,
                                            bot_id=bot_id,
                                            persona_id=persona_id)
