"""
Record store for knowledge entries, memories, vector records and activation logs.

The store is the source of truth for source text, chunk-to-vector mapping and the
activation audit trail. Every call except the reindex pager is tenant scoped.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from opensearchpy.exceptions import NotFoundError, OpenSearchException

from ..models.core import KnowledgeActivationLog, KnowledgeEntry, Memory, SourceType, VectorRecord
from .config import OpenSearchConfig
from .exceptions import InputError, VectorIndexUnavailable
from .logging_config import get_logger
from .opensearch_client import build_opensearch_client

logger = get_logger(__name__)


class RecordStore(ABC):
    """Document store collaborator used by the pipeline services."""

    @abstractmethod
    def get_knowledge(self, tenant_id: str, entry_id: str) -> Optional[KnowledgeEntry]:
        pass

    @abstractmethod
    def save_knowledge(self, entry: KnowledgeEntry) -> None:
        pass

    @abstractmethod
    def list_knowledge(self, tenant_id: str, collection_ids: Optional[List[str]] = None) -> List[KnowledgeEntry]:
        pass

    @abstractmethod
    def delete_knowledge(self, tenant_id: str, entry_id: str) -> bool:
        pass

    @abstractmethod
    def get_memory(self, tenant_id: str, memory_id: str) -> Optional[Memory]:
        pass

    @abstractmethod
    def save_memory(self, memory: Memory) -> None:
        pass

    @abstractmethod
    def list_memories(self, tenant_id: str, conversation_id: Optional[str] = None) -> List[Memory]:
        pass

    @abstractmethod
    def save_vector_records(self, records: List[VectorRecord]) -> None:
        pass

    @abstractmethod
    def list_vector_records(self,
                            tenant_id: str,
                            source_type: Optional[SourceType] = None,
                            source_id: Optional[str] = None) -> List[VectorRecord]:
        pass

    @abstractmethod
    def delete_vector_records(self, tenant_id: str, source_type: SourceType, source_id: str) -> int:
        pass

    @abstractmethod
    def page_vector_records(self, offset: int, limit: int) -> List[VectorRecord]:
        """Page over all vector records ordered by vector id (admin reindex only)."""
        pass

    @abstractmethod
    def append_activation_log(self, log: KnowledgeActivationLog) -> None:
        pass

    @abstractmethod
    def list_activation_logs(self, tenant_id: str, conversation_id: str) -> List[KnowledgeActivationLog]:
        pass

    @abstractmethod
    def delete_activation_logs(self, tenant_id: str, conversation_id: Optional[str] = None) -> int:
        pass

    def get_source(self, tenant_id: str, source_type: SourceType, source_id: str):
        """Fetch the knowledge entry or memory a vector record points at."""
        if source_type == SourceType.KNOWLEDGE:
            return self.get_knowledge(tenant_id, source_id)
        return self.get_memory(tenant_id, source_id)

    def save_source(self, source) -> None:
        if isinstance(source, KnowledgeEntry):
            self.save_knowledge(source)
        else:
            self.save_memory(source)


class OpenSearchRecordStore(RecordStore):
    """Record store backed by one OpenSearch index per collection."""

    PAGE_SIZE = 500

    def __init__(self, config: OpenSearchConfig, client: Optional[Any] = None):
        """
        Initialize the record store.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Low-level OpenSearch client (optional, built from config if None)
        """
        self.config = config
        self.client = client or build_opensearch_client(config)
        prefix = config.index_prefix
        self.knowledge_index = f'{prefix}_knowledge'
        self.memory_index = f'{prefix}_memory'
        self.vector_record_index = f'{prefix}_vector_records'
        self.activation_log_index = f'{prefix}_activation_logs'
        # Serverless collections reject the refresh parameter
        self._write_params = {'refresh': 'wait_for'} if config.service == 'es' else {}

    def create_indices_if_not_exist(self) -> None:
        keyword = {'type': 'keyword'}
        mappings = {
            self.knowledge_index: {
                'id': keyword,
                'tenant_id': keyword,
                'collection_id': keyword,
                'text': {
                    'type': 'text'
                }
            },
            self.memory_index: {
                'id': keyword,
                'tenant_id': keyword,
                'conversation_id': keyword,
                'text': {
                    'type': 'text'
                }
            },
            self.vector_record_index: {
                'vector_id': keyword,
                'tenant_id': keyword,
                'source_type': keyword,
                'source_id': keyword,
                'embedding': {
                    'type': 'float',
                    'index': False
                }
            },
            self.activation_log_index: {
                'id': keyword,
                'tenant_id': keyword,
                'conversation_id': keyword,
                'knowledge_entry_id': keyword,
                'message_index': {
                    'type': 'integer'
                }
            }
        }
        try:
            for index_name, properties in mappings.items():
                if self.client.indices.exists(index=index_name):
                    continue
                self.client.indices.create(index=index_name, body={'mappings': {'properties': properties}})
                logger.info(f'Created index {index_name}')
        except OpenSearchException as e:
            logger.error(f'Error creating record store indices: {e}')
            raise VectorIndexUnavailable(f'Failed to create record store indices: {e}')

    def _get(self, index: str, doc_id: str, tenant_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.get(index=index, id=doc_id)
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error reading {doc_id} from {index}: {e}')
            raise VectorIndexUnavailable(f'Record store read failed: {e}')

        source = response.get('_source')
        if not source or source.get('tenant_id') != tenant_id:
            return None
        return source

    def _put(self, index: str, doc_id: str, document: Dict[str, Any]) -> None:
        try:
            self.client.index(index=index, id=doc_id, body=document, **self._write_params)
        except OpenSearchException as e:
            logger.error(f'Error writing {doc_id} to {index}: {e}')
            raise VectorIndexUnavailable(f'Record store write failed: {e}')

    def _search_all(self, index: str, filters: List[Dict[str, Any]], sort: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
        documents: List[Dict[str, Any]] = []
        offset = 0
        while True:
            body: Dict[str, Any] = {'from': offset, 'size': self.PAGE_SIZE, 'query': {'bool': {'filter': filters}}}
            if sort:
                body['sort'] = sort
            try:
                response = self.client.search(index=index, body=body)
            except NotFoundError:
                return documents
            except OpenSearchException as e:
                logger.error(f'Error searching {index}: {e}')
                raise VectorIndexUnavailable(f'Record store search failed: {e}')

            hits = response['hits']['hits']
            documents.extend(hit['_source'] for hit in hits)
            if len(hits) < self.PAGE_SIZE:
                return documents
            offset += len(hits)

    def _delete_query(self, index: str, filters: List[Dict[str, Any]]) -> int:
        try:
            response = self.client.delete_by_query(index=index, body={'query': {'bool': {'filter': filters}}})
        except NotFoundError:
            return 0
        except OpenSearchException as e:
            logger.error(f'Error deleting from {index}: {e}')
            raise VectorIndexUnavailable(f'Record store delete failed: {e}')
        return int(response.get('deleted', 0))

    def get_knowledge(self, tenant_id: str, entry_id: str) -> Optional[KnowledgeEntry]:
        source = self._get(self.knowledge_index, entry_id, tenant_id)
        return KnowledgeEntry.from_document(source) if source else None

    def save_knowledge(self, entry: KnowledgeEntry) -> None:
        self._put(self.knowledge_index, entry.id, entry.to_document())

    def list_knowledge(self, tenant_id: str, collection_ids: Optional[List[str]] = None) -> List[KnowledgeEntry]:
        filters: List[Dict[str, Any]] = [{'term': {'tenant_id': tenant_id}}]
        if collection_ids:
            filters.append({'terms': {'collection_id': collection_ids}})
        return [KnowledgeEntry.from_document(doc) for doc in self._search_all(self.knowledge_index, filters)]

    def delete_knowledge(self, tenant_id: str, entry_id: str) -> bool:
        filters = [{'term': {'tenant_id': tenant_id}}, {'term': {'id': entry_id}}]
        return self._delete_query(self.knowledge_index, filters) > 0

    def get_memory(self, tenant_id: str, memory_id: str) -> Optional[Memory]:
        source = self._get(self.memory_index, memory_id, tenant_id)
        return Memory.from_document(source) if source else None

    def save_memory(self, memory: Memory) -> None:
        self._put(self.memory_index, memory.id, memory.to_document())

    def list_memories(self, tenant_id: str, conversation_id: Optional[str] = None) -> List[Memory]:
        filters: List[Dict[str, Any]] = [{'term': {'tenant_id': tenant_id}}]
        if conversation_id:
            filters.append({'term': {'conversation_id': conversation_id}})
        return [Memory.from_document(doc) for doc in self._search_all(self.memory_index, filters)]

    def save_vector_records(self, records: List[VectorRecord]) -> None:
        if not records:
            return
        actions: List[Dict[str, Any]] = []
        for record in records:
            actions.append({'index': {'_index': self.vector_record_index, '_id': record.vector_id}})
            actions.append(record.to_document())
        try:
            response = self.client.bulk(body=actions, **self._write_params)
        except OpenSearchException as e:
            logger.error(f'Error saving vector records: {e}')
            raise VectorIndexUnavailable(f'Record store bulk write failed: {e}')
        if response.get('errors'):
            raise VectorIndexUnavailable('Record store bulk write reported item errors')

    def list_vector_records(self,
                            tenant_id: str,
                            source_type: Optional[SourceType] = None,
                            source_id: Optional[str] = None) -> List[VectorRecord]:
        filters: List[Dict[str, Any]] = [{'term': {'tenant_id': tenant_id}}]
        if source_type is not None:
            filters.append({'term': {'source_type': source_type.value}})
        if source_id is not None:
            filters.append({'term': {'source_id': source_id}})
        documents = self._search_all(self.vector_record_index, filters, sort=[{'vector_id': 'asc'}])
        return [VectorRecord.from_document(doc) for doc in documents]

    def delete_vector_records(self, tenant_id: str, source_type: SourceType, source_id: str) -> int:
        filters = [{'term': {'tenant_id': tenant_id}}, {'term': {'source_type': source_type.value}}, {'term': {'source_id': source_id}}]
        return self._delete_query(self.vector_record_index, filters)

    def page_vector_records(self, offset: int, limit: int) -> List[VectorRecord]:
        if offset < 0 or limit <= 0:
            raise InputError(f'Invalid page offset={offset} limit={limit}')
        body = {'from': offset, 'size': limit, 'query': {'match_all': {}}, 'sort': [{'vector_id': 'asc'}]}
        try:
            response = self.client.search(index=self.vector_record_index, body=body)
        except OpenSearchException as e:
            logger.error(f'Error paging vector records: {e}')
            raise VectorIndexUnavailable(f'Record store search failed: {e}')
        return [VectorRecord.from_document(hit['_source']) for hit in response['hits']['hits']]

    def append_activation_log(self, log: KnowledgeActivationLog) -> None:
        self._put(self.activation_log_index, log.id, log.to_document())

    def list_activation_logs(self, tenant_id: str, conversation_id: str) -> List[KnowledgeActivationLog]:
        filters = [{'term': {'tenant_id': tenant_id}}, {'term': {'conversation_id': conversation_id}}]
        documents = self._search_all(self.activation_log_index, filters, sort=[{'message_index': 'asc'}])
        return [KnowledgeActivationLog.from_document(doc) for doc in documents]

    def delete_activation_logs(self, tenant_id: str, conversation_id: Optional[str] = None) -> int:
        filters: List[Dict[str, Any]] = [{'term': {'tenant_id': tenant_id}}]
        if conversation_id:
            filters.append({'term': {'conversation_id': conversation_id}})
        return self._delete_query(self.activation_log_index, filters)
