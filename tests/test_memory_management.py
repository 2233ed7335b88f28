import json

import pytest

from botcafe_retrieval.models.activation import ChatMessage
from botcafe_retrieval.models.core import ActivationMode, ContentType, Memory, MemoryType, MessageRole, Participants, SourceType
from botcafe_retrieval.services.memory_management import MemoryManagementService
from botcafe_retrieval.services.vector_retriever import VectorRetriever
from botcafe_retrieval.utils.config import MemoryConfig
from botcafe_retrieval.utils.exceptions import InputError, InvalidResponse
from tests.conftest import FakeEmbedder, FakeVectorIndex

MEMORY_CONFIG = MemoryConfig(message_threshold=20, token_threshold=4000, min_new_messages=3)


class FakeLLM:

    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    def generate_response(self, messages, system_prompt=None, max_tokens=None, temperature=None, stop_sequences=None):
        self.calls.append({'messages': messages, 'system_prompt': system_prompt, 'stop_sequences': stop_sequences})
        return self.reply, {'inputTokens': 10, 'outputTokens': 5}


def _dialogue(count=4):
    roles = [MessageRole.USER, MessageRole.ASSISTANT]
    return [ChatMessage(role=roles[i % 2], content=f'line {i}') for i in range(count)]


def _service(store, reply='{"summary": "Mira agreed to guide the ship.", "importance": 7}', retriever=None):
    return MemoryManagementService(store, FakeLLM(reply), MEMORY_CONFIG, vector_retriever=retriever)


def test_trigger_thresholds(store):
    service = _service(store)

    assert service.check_trigger(20, 0).reason == 'message_threshold'
    assert service.check_trigger(3, 4000).reason == 'token_threshold'
    assert not service.check_trigger(19, 3999).should_generate


def test_summarize_stores_short_term_memory(store):
    service = _service(store)

    memory = service.summarize_conversation('tenant-1', 'conv-1', _dialogue(), Participants(bots=['bot-1']))

    assert store.memories[memory.id] is memory
    assert memory.text == 'Mira agreed to guide the ship.'
    assert memory.importance == 7
    assert memory.memory_type == MemoryType.SHORT_TERM
    assert memory.participants.bots == ['bot-1']
    assert memory.tokens > 0
    assert not memory.is_vectorized

    call = service.llm.calls[0]
    assert 'User:\nline 0' in call['messages'][0]['content'][0]['text']
    assert call['stop_sequences'] == ['```']


def test_summary_accepts_fenced_json_and_clamps_importance(store):
    reply = '```json\n' + json.dumps({'summary': 'A storm hit Vell.', 'importance': 42}) + '\n```'

    memory = _service(store, reply=reply).summarize_conversation('tenant-1', 'conv-1', _dialogue())

    assert memory.text == 'A storm hit Vell.'
    assert memory.importance == 10


def test_too_few_messages_is_rejected(store):
    messages = _dialogue(2) + [ChatMessage(role=MessageRole.SYSTEM, content='rules')]

    with pytest.raises(InputError):
        _service(store).summarize_conversation('tenant-1', 'conv-1', messages)
    assert store.memories == {}


def test_summary_without_text_is_invalid(store):
    with pytest.raises(InvalidResponse):
        _service(store, reply='{"importance": 3}').summarize_conversation('tenant-1', 'conv-1', _dialogue())


def test_convert_to_lore_once(store):
    store.save_memory(Memory(id='m1', tenant_id='tenant-1', text='Mira owes Teo a favour.',
                             participants=Participants(bots=['bot-1', 'bot-2'])))
    service = _service(store)

    entry = service.convert_to_lore('tenant-1', 'm1', 'collection-1', tags=['debts'])

    assert store.knowledge[entry.id] is entry
    assert entry.content_type == ContentType.LORE
    assert entry.activation.mode == ActivationMode.VECTOR
    assert entry.applies_to_bots == ['bot-1', 'bot-2']
    assert entry.source_memory_id == 'm1'
    assert entry.tags == ['debts']

    memory = store.memories['m1']
    assert memory.converted_to_lore and memory.lore_entry_id == entry.id
    assert memory.converted_at is not None

    with pytest.raises(InputError):
        service.convert_to_lore('tenant-1', 'm1', 'collection-1')


def test_convert_requires_collection_and_memory(store):
    service = _service(store)

    with pytest.raises(InputError):
        service.convert_to_lore('tenant-1', 'm1', '')
    with pytest.raises(InputError):
        service.convert_to_lore('tenant-1', 'missing', 'collection-1')


def test_search_memories_restricts_to_memory_sources(store):
    index = FakeVectorIndex()
    service = _service(store, retriever=VectorRetriever(FakeEmbedder(), index))

    assert service.search_memories('tenant-1', 'the favour') == []
    assert index.queries[0]['filter'] == {'tenant_id': 'tenant-1', 'source_type': SourceType.MEMORY.value}


def test_search_memories_needs_retriever(store):
    with pytest.raises(InputError):
        _service(store).search_memories('tenant-1', 'anything')
