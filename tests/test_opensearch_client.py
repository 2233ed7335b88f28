import pytest
from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError

from botcafe_retrieval.models.core import SourceType
from botcafe_retrieval.utils import opensearch_client
from botcafe_retrieval.utils.exceptions import InputError, PartialBatchFailure, VectorIndexUnavailable
from botcafe_retrieval.utils.opensearch_client import OpenSearchVectorIndex
from tests.conftest import FakeOpenSearch, make_opensearch_config, make_record


def test_upsert_is_idempotent_by_vector_id(vector_index, fake_opensearch):
    records = [make_record(i) for i in range(3)]

    vector_index.upsert(records)
    vector_index.upsert(records)

    stored = fake_opensearch.docs['test_vectors']
    assert sorted(stored) == ['knowledge-k000-chunk-0', 'knowledge-k001-chunk-0', 'knowledge-k002-chunk-0']
    assert stored['knowledge-k001-chunk-0']['tenant_id'] == 'tenant-1'
    assert stored['knowledge-k001-chunk-0']['source_type'] == 'knowledge'
    assert stored['knowledge-k001-chunk-0']['chunk_text'] == 'chunk 1'


def test_upsert_writes_in_sub_batches(fake_opensearch):
    index = OpenSearchVectorIndex(make_opensearch_config(upsert_batch_size=25), client=fake_opensearch)

    assert index.upsert([make_record(i) for i in range(60)]) == 60
    assert fake_opensearch.bulk_calls == [25, 25, 10]


def test_failed_record_reports_resume_offset(vector_index, fake_opensearch):
    fake_opensearch.fail_ids = {'knowledge-k029-chunk-0'}
    records = [make_record(i) for i in range(40)]

    with pytest.raises(PartialBatchFailure) as excinfo:
        vector_index.upsert(records, start_offset=100)

    assert excinfo.value.processed == 29
    assert excinfo.value.failed == 1
    assert excinfo.value.next_offset == 129
    # The first sub-batch is committed, the third never sent
    assert len(fake_opensearch.bulk_calls) == 2
    assert 'knowledge-k024-chunk-0' in fake_opensearch.docs['test_vectors']


def test_whole_batch_error_is_partial_failure_after_retries(monkeypatch, vector_index, fake_opensearch):
    monkeypatch.setattr(opensearch_client.time, 'sleep', lambda delay: None)
    attempts = []

    def broken_bulk(body, **kwargs):
        attempts.append(len(body))
        raise OpenSearchConnectionError('N/A', 'connection refused', None)

    fake_opensearch.bulk = broken_bulk

    with pytest.raises(PartialBatchFailure) as excinfo:
        vector_index.upsert([make_record(0)], start_offset=7)

    assert len(attempts) == 3
    assert excinfo.value.processed == 0
    assert excinfo.value.next_offset == 7


def test_upsert_retries_transport_error(monkeypatch, vector_index, fake_opensearch):
    delays = []
    monkeypatch.setattr(opensearch_client.time, 'sleep', delays.append)
    real_bulk = fake_opensearch.bulk
    attempts = []

    def flaky_bulk(body, **kwargs):
        attempts.append(len(body))
        if len(attempts) == 1:
            raise OpenSearchConnectionError('N/A', 'connection reset', None)
        return real_bulk(body, **kwargs)

    fake_opensearch.bulk = flaky_bulk

    assert vector_index.upsert([make_record(i) for i in range(3)]) == 3
    assert len(attempts) == 2
    assert len(delays) == 1
    assert sorted(fake_opensearch.docs['test_vectors']) == ['knowledge-k000-chunk-0', 'knowledge-k001-chunk-0', 'knowledge-k002-chunk-0']


def test_upsert_rejects_wrong_dimension(vector_index, fake_opensearch):
    with pytest.raises(InputError):
        vector_index.upsert([make_record(0, embedding=[1.0, 2.0])])
    assert fake_opensearch.bulk_calls == []


def test_query_requires_tenant(vector_index):
    with pytest.raises(InputError):
        vector_index.query([1.0, 0.0, 0.0, 0.0], 5, {})
    with pytest.raises(InputError):
        vector_index.query([1.0, 0.0, 0.0, 0.0], 5, {'source_type': 'knowledge'})


def test_query_rejects_non_positive_top_k(vector_index):
    with pytest.raises(InputError):
        vector_index.query([1.0, 0.0, 0.0, 0.0], 0, {'tenant_id': 'tenant-1'})


def test_query_filters_on_filterable_keys_only(vector_index, fake_opensearch):
    vector_index.query([1.0, 0.0, 0.0, 0.0], 5, {
        'tenant_id': 'tenant-1',
        'source_type': SourceType.MEMORY,
        'applies_to_bots': 'bot-1'
    })

    body = fake_opensearch.search_calls[0]['body']
    assert body['size'] == 5
    assert body['query']['bool']['filter'] == [{'term': {'tenant_id': 'tenant-1'}}, {'term': {'source_type': 'memory'}}]
    assert body['_source'] == {'excludes': ['embedding']}


def test_query_converts_scores_to_cosine_similarity(vector_index, fake_opensearch):
    doc = vector_index._to_document(make_record(1))
    fake_opensearch.search_response = {
        'hits': {
            'hits': [
                {'_id': 'low', '_score': 0.5, '_source': doc},
                {'_id': 'high', '_score': 0.8, '_source': doc},
            ]
        }
    }

    matches = vector_index.query([1.0, 0.0, 0.0, 0.0], 2, {'tenant_id': 'tenant-1'})

    assert [m.id for m in matches] == ['high', 'low']
    # 1 / (2 - cosine)
    assert matches[0].score == pytest.approx(0.75)
    assert matches[1].score == pytest.approx(0.0)
    assert matches[0].metadata.source_id == 'k001'
    assert matches[0].chunk_text == 'chunk 1'


def test_query_backend_error_is_unavailable(vector_index, fake_opensearch):

    def broken_search(index, body):
        raise OpenSearchConnectionError('N/A', 'timeout', None)

    fake_opensearch.search = broken_search

    with pytest.raises(VectorIndexUnavailable):
        vector_index.query([1.0, 0.0, 0.0, 0.0], 3, {'tenant_id': 'tenant-1'})


def test_delete_ignores_unknown_ids(vector_index, fake_opensearch):
    vector_index.upsert([make_record(i) for i in range(2)])

    deleted = vector_index.delete_by_ids(['knowledge-k000-chunk-0', 'knowledge-missing-chunk-0'])

    assert deleted == 1
    assert list(fake_opensearch.docs['test_vectors']) == ['knowledge-k001-chunk-0']


def test_create_index_once():
    client = FakeOpenSearch()
    index = OpenSearchVectorIndex(make_opensearch_config(), client=client)

    assert index.create_index_if_not_exists() == 'created'
    assert index.create_index_if_not_exists() == 'exists'
    mapping = client.indices.created['test_vectors']['mappings']['properties']['embedding']
    assert mapping['dimension'] == 4
    assert mapping['method']['space_type'] == 'cosinesimil'
