"""
Health probes for the retrieval backends: embedding model, summarization model and the
OpenSearch vector index.
"""

from typing import Any, Callable, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger
from .opensearch_client import OpenSearchVectorIndex

logger = get_logger(__name__)


def _probe(service: str, detail: Dict[str, Any], build: Callable[[], Any]) -> Dict[str, Any]:
    """Build a client (or reuse the injected one) and run its health_check."""
    try:
        client = build()
        return {'healthy': bool(client.health_check()), 'service': service, **detail}
    except Exception as e:
        logger.warning(f'{service} health probe failed: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status(embedder: Optional[BedrockEmbed] = None,
                      llm: Optional[BedrockLLM] = None,
                      vector_index: Optional[OpenSearchVectorIndex] = None) -> Dict[str, Dict[str, Any]]:
    """
    Probe each backend. Clients that are not passed in are built from the global config.

    Returns:
        Map of backend name to a status dict with 'healthy' and either details or 'error'
    """
    return {
        'bedrock_embed':
            _probe('Amazon Bedrock Embed', {'model': config.bedrock_embed.model_id},
                   lambda: embedder or BedrockEmbed(config.bedrock_embed)),
        'bedrock_llm':
            _probe('Amazon Bedrock LLM', {'model': config.bedrock_llm.model_id}, lambda: llm or BedrockLLM(config.bedrock_llm)),
        'opensearch':
            _probe('Amazon OpenSearch', {
                'endpoint': config.opensearch.endpoint,
                'index': f'{config.opensearch.index_prefix}_vectors'
            }, lambda: vector_index or OpenSearchVectorIndex(config.opensearch)),
    }


def check_health(**clients) -> bool:
    """True when every backend answers its probe."""
    status = get_health_status(**clients)
    unhealthy = sorted(name for name, result in status.items() if not result['healthy'])

    if unhealthy:
        logger.warning(f'Unhealthy backends: {", ".join(unhealthy)}')
        return False

    logger.info('All retrieval backends are healthy')
    return True
