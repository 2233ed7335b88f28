from botcafe_retrieval.utils.health_check import check_health, get_health_status


class FakeBackend:

    def __init__(self, healthy=True, error=None):
        self.healthy = healthy
        self.error = error

    def health_check(self):
        if self.error:
            raise self.error
        return self.healthy


def test_all_backends_healthy():
    status = get_health_status(embedder=FakeBackend(), llm=FakeBackend(), vector_index=FakeBackend())

    assert set(status) == {'bedrock_embed', 'bedrock_llm', 'opensearch'}
    assert all(result['healthy'] for result in status.values())
    assert check_health(embedder=FakeBackend(), llm=FakeBackend(), vector_index=FakeBackend())


def test_failing_backend_reports_error():
    status = get_health_status(embedder=FakeBackend(),
                               llm=FakeBackend(error=RuntimeError('no credentials')),
                               vector_index=FakeBackend(False))

    assert status['bedrock_llm'] == {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': 'no credentials'}
    assert status['opensearch']['healthy'] is False
    assert not check_health(embedder=FakeBackend(), llm=FakeBackend(), vector_index=FakeBackend(False))
