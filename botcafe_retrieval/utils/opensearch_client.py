"""
OpenSearch k-NN vector index client for knowledge and memory chunks.
"""

import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import VectorMetadata, VectorRecord
from .config import OpenSearchConfig
from .exceptions import InputError, PartialBatchFailure, VectorIndexUnavailable
from .logging_config import get_logger

logger = get_logger(__name__)

# Metadata keys the index can filter on; anything else is checked after the query
FILTERABLE_KEYS = ('tenant_id', 'source_type', 'source_id', 'type', 'user_id')


def build_opensearch_client(config: OpenSearchConfig) -> OpenSearch:
    """
    Create a low-level OpenSearch client signed with the current AWS credentials.

    Args:
        config: OpenSearchConfig instance with connection parameters

    Returns:
        Configured opensearchpy client
    """
    credentials = boto3.Session().get_credentials()
    auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)

    endpoint = config.endpoint
    if '://' in endpoint:
        # Remove protocol if present
        endpoint = endpoint.split('://', 1)[1]

    client = OpenSearch(hosts=[{
        'host': endpoint,
        'port': config.port
    }],
                        http_auth=auth,
                        use_ssl=True,
                        verify_certs=True,
                        connection_class=RequestsHttpConnection)

    logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')
    return client


@dataclass
class VectorMatch:
    """One nearest-neighbour hit."""
    id: str
    score: float
    metadata: VectorMetadata
    chunk_text: str = ''


class OpenSearchVectorIndex:
    """Vector index over chunk embeddings, one document per chunk keyed by vector id."""

    def __init__(self, config: OpenSearchConfig, client: Optional[Any] = None):
        """
        Initialize the vector index.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Low-level OpenSearch client (optional, built from config if None)
        """
        self.config = config
        self.index_name = f'{config.index_prefix}_vectors'
        self.client = client or build_opensearch_client(config)

    def create_index_if_not_exists(self) -> str:
        """
        Create the k-NN index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'
        """
        keyword = {'type': 'keyword'}
        index_body = {
            'mappings': {
                'properties': {
                    'vector_id': keyword,
                    'tenant_id': keyword,
                    'user_id': keyword,
                    'source_type': keyword,
                    'source_id': keyword,
                    'type': keyword,
                    'chunk_index': {
                        'type': 'integer'
                    },
                    'total_chunks': {
                        'type': 'integer'
                    },
                    'chunk_text': {
                        'type': 'text'
                    },
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': self.config.dimension,
                        'method': {
                            'name': 'hnsw',
                            'space_type': 'cosinesimil',
                            'engine': 'nmslib'
                        }
                    },
                    'created_at': {
                        'type': 'date'
                    }
                }
            },
            'settings': {
                'index': {
                    'knn': True,
                    'knn.algo_param.ef_search': 100
                }
            }
        }

        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=self.index_name, body=index_body)
            if response.get('acknowledged', False):
                logger.info(f'Created index {self.index_name}')
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise VectorIndexUnavailable(f'Failed to create index: {e}')

    @staticmethod
    def _to_document(record: VectorRecord) -> Dict[str, Any]:
        document = record.metadata.to_document()
        document['vector_id'] = record.vector_id
        document['chunk_text'] = record.chunk_text
        document['embedding'] = record.embedding
        return document

    def _bulk_with_retry(self, actions: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Send one bulk request, retrying transport errors with exponential backoff.

        Raises:
            OpenSearchException: The last error once every attempt has failed
        """
        attempts = max(1, self.config.retry_attempts)
        for attempt in range(attempts):
            try:
                return self.client.bulk(body=actions)
            except OpenSearchException as e:
                logger.warning(f'Bulk request attempt {attempt + 1}/{attempts} failed: {e}')

                if attempt == attempts - 1:
                    raise
                # Exponential backoff with jitter
                delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                time.sleep(delay)

    def upsert(self, records: List[VectorRecord], start_offset: int = 0) -> int:
        """
        Write records, replacing any existing record with the same vector id.

        Sub-batches are not atomic. The first failed record stops the write.

        Args:
            records: Records with embeddings to write
            start_offset: Offset of records[0] in the caller's larger job

        Returns:
            Number of records written

        Raises:
            InputError: If a record has no embedding or the wrong dimensionality
            PartialBatchFailure: If a record fails, or a whole sub-batch fails after retries; processed counts the records before it
        """
        for record in records:
            if not record.embedding:
                raise InputError(f'Vector record {record.vector_id} has no embedding')
            if len(record.embedding) != self.config.dimension:
                raise InputError(f'Vector record {record.vector_id} has {len(record.embedding)} dimensions, '
                                 f'expected {self.config.dimension}')

        batch_size = max(1, self.config.upsert_batch_size)
        for start in range(0, len(records), batch_size):
            batch = records[start:start + batch_size]
            actions: List[Dict[str, Any]] = []
            for record in batch:
                actions.append({'index': {'_index': self.index_name, '_id': record.vector_id}})
                actions.append(self._to_document(record))

            try:
                response = self._bulk_with_retry(actions)
            except OpenSearchException as e:
                logger.error(f'Bulk upsert failed at record {start_offset + start}: {e}')
                raise PartialBatchFailure(f'Vector upsert failed: {e}',
                                          processed=start,
                                          failed=len(batch),
                                          next_offset=start_offset + start)

            if response.get('errors'):
                items = response.get('items', [])
                failures = [i for i, item in enumerate(items) if item.get('index', {}).get('error')]
                if failures:
                    first = failures[0]
                    error = items[first]['index']['error']
                    processed = start + first
                    logger.error(f'Vector upsert failed for {batch[first].vector_id}: {error}')
                    raise PartialBatchFailure(f'Vector upsert failed for {batch[first].vector_id}: {error}',
                                              processed=processed,
                                              failed=len(failures),
                                              next_offset=start_offset + processed)

            logger.debug(f'Upserted {len(batch)} vectors into {self.index_name}')

        return len(records)

    def query(self, vector: List[float], top_k: int, filter: Dict[str, Any]) -> List[VectorMatch]:
        """
        Return up to top_k nearest records restricted by an equality filter.

        Args:
            vector: Query embedding
            top_k: Maximum number of results
            filter: Equality filter; must contain tenant_id

        Returns:
            Matches ranked by cosine similarity, highest first

        Raises:
            InputError: If tenant_id is missing or top_k is not positive
            VectorIndexUnavailable: If the search fails
        """
        if not filter or not filter.get('tenant_id'):
            raise InputError('Vector query requires a tenant_id filter')
        if top_k <= 0:
            raise InputError(f'top_k must be positive, got {top_k}')

        terms = []
        for key, value in filter.items():
            if key not in FILTERABLE_KEYS:
                logger.debug(f'Dropping non-filterable key {key} from index query')
                continue
            if value is None:
                continue
            terms.append({'term': {key: getattr(value, 'value', value)}})

        search_body = {
            'size': top_k,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': vector,
                                'k': top_k
                            }
                        }
                    }],
                    'filter': terms
                }
            },
            '_source': {
                'excludes': ['embedding']
            }
        }

        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise VectorIndexUnavailable(f'Vector search failed: {e}')

        matches = []
        for hit in response['hits']['hits']:
            source = hit['_source']
            # nmslib cosinesimil scores are 1 / (1 + (1 - cosine))
            similarity = 2.0 - 1.0 / float(hit['_score'])
            matches.append(VectorMatch(id=hit['_id'],
                                       score=similarity,
                                       metadata=VectorMetadata.from_document(source),
                                       chunk_text=source.get('chunk_text', '')))

        matches.sort(key=lambda m: m.score, reverse=True)
        logger.debug(f'Vector search returned {len(matches)} results for tenant {filter["tenant_id"]}')
        return matches[:top_k]

    def delete_by_ids(self, ids: List[str]) -> int:
        """
        Remove records by vector id. Unknown ids are ignored.

        Returns:
            Number of records actually deleted
        """
        deleted = 0
        batch_size = max(1, self.config.upsert_batch_size)
        for start in range(0, len(ids), batch_size):
            actions = [{'delete': {'_index': self.index_name, '_id': vector_id}} for vector_id in ids[start:start + batch_size]]
            try:
                response = self.client.bulk(body=actions)
            except OpenSearchException as e:
                logger.error(f'Error deleting vectors: {e}')
                raise VectorIndexUnavailable(f'Vector delete failed: {e}')

            for item in response.get('items', []):
                result = item.get('delete', {})
                if result.get('result') == 'deleted':
                    deleted += 1
                elif result.get('status') != 404 and result.get('error'):
                    raise VectorIndexUnavailable(f'Vector delete failed for {result.get("_id")}: {result["error"]}')

        logger.debug(f'Deleted {deleted}/{len(ids)} vectors from {self.index_name}')
        return deleted

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return self.client.indices.exists(index=self.index_name) in [True, False]
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
