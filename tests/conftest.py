"""
Shared fakes for the retrieval pipeline tests. Nothing here touches the network.
"""

import io
import json
from typing import Any, Dict, List, Optional

import pytest

from botcafe_retrieval.models.core import (ContentType, KnowledgeActivationLog, KnowledgeEntry, Memory, SourceType, VectorMetadata,
                                           VectorRecord)
from botcafe_retrieval.utils.config import BedrockEmbedConfig, OpenSearchConfig
from botcafe_retrieval.utils.exceptions import ModelUnavailable, VectorIndexUnavailable
from botcafe_retrieval.utils.opensearch_client import OpenSearchVectorIndex, VectorMatch
from botcafe_retrieval.utils.record_store import RecordStore

DIMENSION = 4


class InMemoryRecordStore(RecordStore):

    def __init__(self):
        self.knowledge: Dict[str, KnowledgeEntry] = {}
        self.memories: Dict[str, Memory] = {}
        self.vector_records: Dict[str, VectorRecord] = {}
        self.logs: List[KnowledgeActivationLog] = []
        self.fail_log_writes = False

    def get_knowledge(self, tenant_id, entry_id):
        entry = self.knowledge.get(entry_id)
        return entry if entry and entry.tenant_id == tenant_id else None

    def save_knowledge(self, entry):
        self.knowledge[entry.id] = entry

    def list_knowledge(self, tenant_id, collection_ids=None):
        return [
            e for e in self.knowledge.values()
            if e.tenant_id == tenant_id and (not collection_ids or e.collection_id in collection_ids)
        ]

    def delete_knowledge(self, tenant_id, entry_id):
        if self.get_knowledge(tenant_id, entry_id) is None:
            return False
        del self.knowledge[entry_id]
        return True

    def get_memory(self, tenant_id, memory_id):
        memory = self.memories.get(memory_id)
        return memory if memory and memory.tenant_id == tenant_id else None

    def save_memory(self, memory):
        self.memories[memory.id] = memory

    def list_memories(self, tenant_id, conversation_id=None):
        return [
            m for m in self.memories.values()
            if m.tenant_id == tenant_id and (conversation_id is None or m.conversation_id == conversation_id)
        ]

    def save_vector_records(self, records):
        for record in records:
            self.vector_records[record.vector_id] = record

    def list_vector_records(self, tenant_id, source_type=None, source_id=None):
        return sorted((r for r in self.vector_records.values()
                       if r.tenant_id == tenant_id and (source_type is None or r.source_type == source_type) and
                       (source_id is None or r.source_id == source_id)),
                      key=lambda r: r.vector_id)

    def delete_vector_records(self, tenant_id, source_type, source_id):
        doomed = [r.vector_id for r in self.list_vector_records(tenant_id, source_type, source_id)]
        for vector_id in doomed:
            del self.vector_records[vector_id]
        return len(doomed)

    def page_vector_records(self, offset, limit):
        ordered = sorted(self.vector_records.values(), key=lambda r: r.vector_id)
        return ordered[offset:offset + limit]

    def append_activation_log(self, log):
        if self.fail_log_writes:
            raise VectorIndexUnavailable('log store down')
        self.logs.append(log)

    def list_activation_logs(self, tenant_id, conversation_id):
        return [l for l in self.logs if l.tenant_id == tenant_id and l.conversation_id == conversation_id]

    def delete_activation_logs(self, tenant_id, conversation_id=None):
        keep = [l for l in self.logs if l.tenant_id != tenant_id or (conversation_id and l.conversation_id != conversation_id)]
        deleted = len(self.logs) - len(keep)
        self.logs = keep
        return deleted


class FakeEmbedder:
    """Deterministic embedder: a vector derived from text length and vowels."""

    def __init__(self, batch_size: int = 96, fail: bool = False):
        self.config = BedrockEmbedConfig(region='us-east-1',
                                         model_id='fake-embed',
                                         dimension=DIMENSION,
                                         batch_size=batch_size,
                                         retry_attempts=1,
                                         retry_delay=0.0)
        self.model_id = self.config.model_id
        self.dimension = DIMENSION
        self.fail = fail
        self.calls: List[List[str]] = []
        self.query_vector: Optional[List[float]] = None

    @staticmethod
    def vector_for(text: str) -> List[float]:
        vowels = sum(1 for ch in text.lower() if ch in 'aeiou')
        return [float(len(text)), float(vowels), 1.0, float(len(text.split()))]

    def embed_texts(self, texts, input_type='search_document'):
        if self.fail:
            raise ModelUnavailable('embedder down')
        self.calls.append(list(texts))
        return [self.vector_for(t) for t in texts]

    def embed_text(self, text):
        return self.embed_texts([text])[0]

    def embed_query(self, text):
        if self.fail:
            raise ModelUnavailable('embedder down')
        return self.query_vector or self.vector_for(text)


class FakeVectorIndex:
    """Vector index double returning scripted matches."""

    def __init__(self, matches: Optional[List[VectorMatch]] = None, fail: bool = False):
        self.config = make_opensearch_config()
        self.matches = matches or []
        self.fail = fail
        self.queries: List[Dict[str, Any]] = []
        self.docs: Dict[str, VectorRecord] = {}
        self.deleted: List[str] = []

    def query(self, vector, top_k, filter):
        if self.fail:
            raise VectorIndexUnavailable('index down')
        self.queries.append({'vector': vector, 'top_k': top_k, 'filter': dict(filter)})
        return self.matches[:top_k]

    def upsert(self, records, start_offset=0):
        for record in records:
            self.docs[record.vector_id] = record
        return len(records)

    def delete_by_ids(self, ids):
        self.deleted.extend(ids)
        removed = 0
        for vector_id in ids:
            if self.docs.pop(vector_id, None) is not None:
                removed += 1
        return removed


class _FakeIndices:

    def __init__(self):
        self.created: Dict[str, Any] = {}

    def exists(self, index):
        return index in self.created

    def create(self, index, body):
        self.created[index] = body
        return {'acknowledged': True}


class FakeOpenSearch:
    """Low-level opensearch-py client double supporting bulk and search."""

    def __init__(self):
        self.indices = _FakeIndices()
        self.docs: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.fail_ids = set()
        self.bulk_calls: List[int] = []
        self.search_calls: List[Dict[str, Any]] = []
        self.search_response: Dict[str, Any] = {'hits': {'hits': []}}

    def bulk(self, body, **kwargs):
        items = []
        operations = 0
        i = 0
        while i < len(body):
            action = body[i]
            operations += 1
            if 'index' in action:
                meta = action['index']
                document = body[i + 1]
                i += 2
                if meta['_id'] in self.fail_ids:
                    items.append({'index': {'_id': meta['_id'], 'status': 500, 'error': {'type': 'mapper_exception'}}})
                    continue
                existed = meta['_id'] in self.docs.get(meta['_index'], {})
                self.docs.setdefault(meta['_index'], {})[meta['_id']] = json.loads(json.dumps(document))
                items.append({'index': {'_id': meta['_id'], 'status': 200 if existed else 201, 'result': 'updated' if existed else 'created'}})
            else:
                meta = action['delete']
                i += 1
                removed = self.docs.get(meta['_index'], {}).pop(meta['_id'], None)
                if removed is None:
                    items.append({'delete': {'_id': meta['_id'], 'status': 404, 'result': 'not_found'}})
                else:
                    items.append({'delete': {'_id': meta['_id'], 'status': 200, 'result': 'deleted'}})
        self.bulk_calls.append(operations)
        return {'errors': any('error' in next(iter(item.values())) for item in items), 'items': items}

    def search(self, index, body):
        self.search_calls.append({'index': index, 'body': body})
        return self.search_response


def make_opensearch_config(upsert_batch_size: int = 25) -> OpenSearchConfig:
    return OpenSearchConfig(endpoint='localhost',
                            port=443,
                            region='us-east-1',
                            service='es',
                            index_prefix='test',
                            dimension=DIMENSION,
                            upsert_batch_size=upsert_batch_size,
                            retry_attempts=3,
                            retry_delay=0.0)


class FakeBedrockRuntime:
    """bedrock-runtime double; responder maps a request body to a response body or raises."""

    def __init__(self, responder):
        self.responder = responder
        self.requests: List[Dict[str, Any]] = []

    def invoke_model(self, body, modelId, accept, contentType):
        request = json.loads(body)
        self.requests.append(request)
        return {'body': io.BytesIO(json.dumps(self.responder(request)).encode('utf-8'))}


def make_record(index: int, tenant_id: str = 'tenant-1', source_id: Optional[str] = None, embedding=None) -> VectorRecord:
    source_id = source_id or f'k{index:03d}'
    metadata = VectorMetadata(type=ContentType.LORE,
                              tenant_id=tenant_id,
                              user_id=tenant_id,
                              source_type=SourceType.KNOWLEDGE,
                              source_id=source_id,
                              chunk_index=0,
                              total_chunks=1)
    return VectorRecord(vector_id=f'knowledge-{source_id}-chunk-0',
                        source_type=SourceType.KNOWLEDGE,
                        source_id=source_id,
                        tenant_id=tenant_id,
                        chunk_index=0,
                        total_chunks=1,
                        chunk_text=f'chunk {index}',
                        metadata=metadata,
                        embedding_model='fake-embed',
                        embedding_dimensions=DIMENSION,
                        embedding=embedding if embedding is not None else [float(index), 1.0, 0.0, 0.0])


@pytest.fixture()
def store():
    return InMemoryRecordStore()


@pytest.fixture()
def embedder():
    return FakeEmbedder()


@pytest.fixture()
def fake_opensearch():
    return FakeOpenSearch()


@pytest.fixture()
def vector_index(fake_opensearch):
    return OpenSearchVectorIndex(make_opensearch_config(), client=fake_opensearch)
