"""
MCP Interface Layer using fastmcp for the knowledge retrieval pipeline.
"""
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from botcafe_retrieval.models.activation import ActivationContext, BudgetConfig, ChatMessage
from botcafe_retrieval.models.core import ContentType, Participants, SourceType, to_plain
from botcafe_retrieval.services.activation_engine import ActivationEngine
from botcafe_retrieval.services.activation_log import ActivationLogService
from botcafe_retrieval.services.keyword_matcher import KeywordMatcher
from botcafe_retrieval.services.memory_management import MemoryManagementService
from botcafe_retrieval.services.prompt_builder import PromptBuilder
from botcafe_retrieval.services.vector_retriever import VectorRetriever
from botcafe_retrieval.services.vectorization import VectorizationService
from botcafe_retrieval.utils.bedrock_embed import BedrockEmbed
from botcafe_retrieval.utils.bedrock_llm import BedrockLLM
from botcafe_retrieval.utils.config import config
from botcafe_retrieval.utils.exceptions import RetrievalError
from botcafe_retrieval.utils.health_check import check_health, get_health_status
from botcafe_retrieval.utils.logging_config import get_logger
from botcafe_retrieval.utils.opensearch_client import OpenSearchVectorIndex, build_opensearch_client
from botcafe_retrieval.utils.record_store import OpenSearchRecordStore

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('BotCafe Knowledge Retrieval')

# Clients are built once here and injected into every service
opensearch = build_opensearch_client(config.opensearch)
record_store = OpenSearchRecordStore(config.opensearch, client=opensearch)
vector_index = OpenSearchVectorIndex(config.opensearch, client=opensearch)
embedder = BedrockEmbed(config.bedrock_embed)
llm = BedrockLLM(config.bedrock_llm)

try:
    vector_index.create_index_if_not_exists()
    record_store.create_indices_if_not_exist()
except RetrievalError as e:
    logger.warning(f'Failed to create OpenSearch indices: {e}')

retriever = VectorRetriever(embedder, vector_index)
vectorization_service = VectorizationService(record_store,
                                             embedder,
                                             vector_index,
                                             chunking=config.chunking,
                                             max_concurrency=config.vectorization.max_concurrency,
                                             reindex_batch_size=config.vectorization.reindex_batch_size,
                                             reindex_max_batch_size=config.vectorization.reindex_max_batch_size)
activation_engine = ActivationEngine(record_store,
                                     vector_retriever=retriever,
                                     keyword_matcher=KeywordMatcher(default_scan_depth=config.activation.default_scan_depth),
                                     activation_log=ActivationLogService(record_store))
memory_service = MemoryManagementService(record_store, llm, config.memory, vector_retriever=retriever)
prompt_builder = PromptBuilder()


def _fail(operation: str, error: Exception) -> Exception:
    logger.error(f'{operation} failed: {error}')
    return Exception(f'{operation} failed: {error}')


@mcp.tool()
def vectorize_knowledge(tenant_id: str, entry_id: str) -> Dict[str, Any]:
    """Chunk, embed and index a knowledge entry.

    Args:
        tenant_id: Owning user ID
        entry_id: Knowledge entry ID

    Returns:
        Dict with chunk_count and vector_ids
    """
    try:
        return to_plain(asdict(vectorization_service.vectorize_knowledge(tenant_id, entry_id)))
    except RetrievalError as e:
        raise _fail('Knowledge vectorization', e)


@mcp.tool()
def vectorize_memory(tenant_id: str, memory_id: str) -> Dict[str, Any]:
    """Chunk, embed and index a memory."""
    try:
        return to_plain(asdict(vectorization_service.vectorize_memory(tenant_id, memory_id)))
    except RetrievalError as e:
        raise _fail('Memory vectorization', e)


@mcp.tool()
def delete_source_vectors(tenant_id: str, source_type: str, source_id: str) -> Dict[str, Any]:
    """Remove every vector of a knowledge entry or memory.

    Args:
        tenant_id: Owning user ID
        source_type: 'knowledge' or 'memory'
        source_id: Source record ID
    """
    try:
        removed = vectorization_service.delete_source_vectors(tenant_id, SourceType(source_type), source_id)
        return {'source_type': source_type, 'source_id': source_id, 'deleted': removed}
    except (RetrievalError, ValueError) as e:
        raise _fail('Vector deletion', e)


@mcp.tool()
def search_vectors(tenant_id: str,
                   query: str,
                   top_k: int = 10,
                   similarity_threshold: float = 0.0,
                   source_type: Optional[str] = None,
                   content_type: Optional[str] = None,
                   bot_id: Optional[str] = None,
                   persona_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Similarity search over a tenant's knowledge and memories.

    Returns:
        List of dicts with source_id, source_type, similarity, chunk_index and chunk_text
    """
    try:
        if not query or not query.strip():
            return []
        results = retriever.search(tenant_id,
                                   query,
                                   top_k=top_k,
                                   similarity_threshold=similarity_threshold,
                                   source_type=SourceType(source_type) if source_type else None,
                                   content_type=ContentType(content_type) if content_type else None,
                                   bot_id=bot_id,
                                   persona_id=persona_id)
        return [{
            'source_id': r.source_id,
            'source_type': r.source_type.value,
            'similarity': r.similarity,
            'chunk_index': r.chunk_index,
            'chunk_text': r.chunk_text
        } for r in results]
    except (RetrievalError, ValueError) as e:
        raise _fail('Vector search', e)


@mcp.tool()
def reindex_vectors(offset: int = 0, batch_size: Optional[int] = None) -> Dict[str, Any]:
    """Re-upsert one page of stored embeddings; call again with next_offset until done."""
    try:
        return asdict(vectorization_service.reindex(offset, batch_size))
    except RetrievalError as e:
        raise _fail('Reindex', e)


@mcp.tool()
def activate_knowledge(tenant_id: str,
                       conversation_id: str,
                       message_index: int,
                       messages: List[Dict[str, str]],
                       system_prompt: str = '',
                       bot_id: Optional[str] = None,
                       bot_name: Optional[str] = None,
                       persona_id: Optional[str] = None,
                       pinned_entry_ids: Optional[List[str]] = None,
                       max_context_tokens: Optional[int] = None) -> Dict[str, Any]:
    """Run a knowledge activation pass and assemble the prompt.

    Args:
        tenant_id: Owning user ID
        conversation_id: Conversation ID
        message_index: Index of the current message in the conversation
        messages: Conversation history as dicts with 'role' and 'content'
        system_prompt: Base system prompt with the character card
        bot_id: Current bot ID, used for filtering
        bot_name: Current bot name, used to locate the character card
        persona_id: Current persona ID, used for filtering
        pinned_entry_ids: Manual-mode entries to include this turn
        max_context_tokens: Model context window (default from config)

    Returns:
        Dict with prompt, messages, included entries and budget statistics
    """
    try:
        chat = [ChatMessage.from_dict(m) for m in messages]
        budget = BudgetConfig(max_context_tokens=max_context_tokens or config.activation.max_context_tokens,
                              budget_percentage=config.activation.budget_percentage,
                              budget_cap_tokens=config.activation.budget_cap_tokens,
                              reserved_for_conversation=config.activation.reserved_for_conversation)
        context = ActivationContext(tenant_id=tenant_id,
                                    conversation_id=conversation_id,
                                    message_index=message_index,
                                    messages=chat,
                                    bot_id=bot_id,
                                    persona_id=persona_id,
                                    system_prompt=system_prompt,
                                    budget=budget,
                                    pinned_entry_ids=set(pinned_entry_ids or []),
                                    vector_top_k=config.activation.vector_top_k)
        result = activation_engine.activate(context)

        prompt = prompt_builder.build_prompt(system_prompt, result.included, bot_name)
        final_messages = prompt_builder.build_messages_with_depth_entries(chat, result.included)
        return {
            'prompt': prompt,
            'messages': [{
                'role': m.role.value,
                'content': m.content
            } for m in final_messages],
            'included': [{
                'entry_id': c.entry.id,
                'method': c.method.value,
                'score': c.score,
                'position': c.position_label,
                'tokens': c.token_cost
            } for c in result.included],
            'total_tokens': result.total_tokens,
            'budget': result.budget,
            'budget_remaining': result.budget_remaining,
            'exclusions': result.exclusion_counts(),
            'vector_degraded': result.vector_degraded,
            'knowledge_degraded': result.knowledge_degraded
        }
    except (RetrievalError, ValueError) as e:
        raise _fail('Knowledge activation', e)


@mcp.tool()
def summarize_conversation(tenant_id: str,
                           conversation_id: str,
                           messages: List[Dict[str, str]],
                           bot_ids: Optional[List[str]] = None,
                           persona_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    """Summarize conversation messages into a new memory."""
    try:
        memory = memory_service.summarize_conversation(tenant_id,
                                                       conversation_id, [ChatMessage.from_dict(m) for m in messages],
                                                       Participants(bots=bot_ids or [], personas=persona_ids or []))
        return memory.to_document()
    except (RetrievalError, ValueError) as e:
        raise _fail('Conversation summarization', e)


@mcp.tool()
def convert_memory_to_lore(tenant_id: str, memory_id: str, collection_id: str, tags: Optional[List[str]] = None) -> Dict[str, Any]:
    """Promote a memory to a permanent lore entry."""
    try:
        return memory_service.convert_to_lore(tenant_id, memory_id, collection_id, tags).to_document()
    except RetrievalError as e:
        raise _fail('Memory conversion', e)


@mcp.tool()
def vector_sync_check(tenant_id: str) -> Dict[str, Any]:
    """Report drift between a tenant's sources and their vectors."""
    try:
        report = vectorization_service.sync_check(tenant_id)
        return {**asdict(report), 'in_sync': report.in_sync}
    except RetrievalError as e:
        raise _fail('Sync check', e)


@mcp.tool()
def health_status() -> Dict[str, Any]:
    """Probe the embedding model, the summarization model and the vector index."""
    return get_health_status(embedder=embedder, llm=llm, vector_index=vector_index)


if __name__ == '__main__':
    # Log backend status; the server starts either way
    check_health(embedder=embedder, llm=llm, vector_index=vector_index)

    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
