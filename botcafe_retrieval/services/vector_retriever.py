"""
Similarity search over vectorized knowledge and memories.

Filtering is two-stage: the index filters on tenant, source type and content type, then
bot and persona applicability is checked here against the returned metadata.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from ..models.core import ContentType, SourceType, VectorMetadata
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.exceptions import InputError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchVectorIndex, VectorMatch

logger = get_logger(__name__)


@dataclass
class VectorSearchResult:
    """Best-matching chunk of one source."""
    source_id: str
    source_type: SourceType
    similarity: float
    chunk_index: int
    chunk_text: str
    metadata: VectorMetadata


def applies_to(metadata: VectorMetadata, bot_id: Optional[str], persona_id: Optional[str]) -> bool:
    """Application-level predicate; an empty applicability list means everyone."""
    if bot_id and metadata.applies_to_bots and bot_id not in metadata.applies_to_bots:
        return False
    if persona_id and metadata.applies_to_personas and persona_id not in metadata.applies_to_personas:
        return False
    return True


class VectorRetriever:
    """Embeds query text and searches the vector index for one tenant."""

    def __init__(self, embedder: BedrockEmbed, vector_index: OpenSearchVectorIndex):
        self.embedder = embedder
        self.vector_index = vector_index

    def search(self,
               tenant_id: str,
               query: str,
               top_k: int = 10,
               similarity_threshold: float = 0.0,
               source_type: Optional[SourceType] = None,
               content_type: Optional[ContentType] = None,
               bot_id: Optional[str] = None,
               persona_id: Optional[str] = None) -> List[VectorSearchResult]:
        """
        Retrieve the sources most similar to the query text.

        Args:
            tenant_id: Owning user; required
            query: Query text
            top_k: Maximum number of sources returned
            similarity_threshold: Minimum cosine similarity
            source_type: Restrict to knowledge or memory
            content_type: Restrict to one content type
            bot_id: Drop sources that apply to other bots only
            persona_id: Drop sources that apply to other personas only

        Returns:
            One result per source, highest similarity first

        Raises:
            InputError: If tenant_id or query is empty
            ModelUnavailable: If the query cannot be embedded
            VectorIndexUnavailable: If the index query fails
        """
        if not tenant_id:
            raise InputError('Vector search requires a tenant_id')
        if not query or not query.strip():
            raise InputError('Empty query text')

        index_filter: Dict[str, object] = {'tenant_id': tenant_id}
        if source_type is not None:
            index_filter['source_type'] = source_type.value
        if content_type is not None:
            index_filter['type'] = content_type.value

        vector = self.embedder.embed_query(query)
        # Over-fetch to make up for the application-level filter and chunk collapse
        matches = self.vector_index.query(vector, top_k * 2, index_filter)

        best: Dict[str, VectorMatch] = {}
        for match in matches:
            if match.metadata.tenant_id != tenant_id:
                logger.warning(f'Dropping vector {match.id} from another tenant')
                continue
            if match.score < similarity_threshold:
                continue
            if not applies_to(match.metadata, bot_id, persona_id):
                continue
            key = f'{match.metadata.source_type.value}:{match.metadata.source_id}'
            if key not in best or match.score > best[key].score:
                best[key] = match

        results = [
            VectorSearchResult(source_id=m.metadata.source_id,
                               source_type=m.metadata.source_type,
                               similarity=m.score,
                               chunk_index=m.metadata.chunk_index,
                               chunk_text=m.chunk_text,
                               metadata=m.metadata) for m in best.values()
        ]
        results.sort(key=lambda r: (-r.similarity, r.source_id))
        logger.debug(f'Vector search for tenant {tenant_id} kept {len(results[:top_k])} of {len(matches)} matches')
        return results[:top_k]
