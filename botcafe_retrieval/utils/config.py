"""
Configuration management for AWS services and retrieval pipeline settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    batch_size: int
    retry_attempts: int
    retry_delay: float


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch (vector index and record store)."""
    endpoint: str
    port: int
    region: str
    service: str
    index_prefix: str
    dimension: int
    upsert_batch_size: int
    retry_attempts: int
    retry_delay: float


@dataclass
class ChunkProfile:
    """Chunking parameters for one content type."""
    chunk_size: int
    overlap: int
    min_chunk_length: int
    method: str


@dataclass
class ChunkingConfig:
    """Chunk profiles per content type."""
    lore: ChunkProfile
    memory: ChunkProfile
    legacy_memory: ChunkProfile
    document: ChunkProfile


@dataclass
class ActivationConfig:
    """Defaults for knowledge activation passes."""
    max_context_tokens: int
    budget_percentage: float
    budget_cap_tokens: int
    reserved_for_conversation: int
    vector_top_k: int
    default_scan_depth: int


@dataclass
class VectorizationConfig:
    """Configuration for vectorization and reindex jobs."""
    max_concurrency: int
    reindex_batch_size: int
    reindex_max_batch_size: int


@dataclass
class MemoryConfig:
    """Configuration for conversation memory generation."""
    message_threshold: int
    token_threshold: int
    min_new_messages: int


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    chunking: ChunkingConfig
    activation: ActivationConfig
    vectorization: VectorizationConfig
    memory: MemoryConfig
    mcp: MCPConfig


def _chunk_profile(prefix: str, chunk_size: int, overlap: int, min_chunk_length: int, method: str) -> ChunkProfile:
    return ChunkProfile(chunk_size=int(os.getenv(f'CHUNK_{prefix}_SIZE', str(chunk_size))),
                        overlap=int(os.getenv(f'CHUNK_{prefix}_OVERLAP', str(overlap))),
                        min_chunk_length=int(os.getenv(f'CHUNK_{prefix}_MIN_LENGTH', str(min_chunk_length))),
                        method=os.getenv(f'CHUNK_{prefix}_METHOD', method))


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1024')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'cohere.embed-multilingual-v3'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              batch_size=int(os.getenv('BEDROCK_EMBED_BATCH_SIZE', '96')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Vector index and record store configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'aoss'),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'botcafe'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         upsert_batch_size=int(os.getenv('OPENSEARCH_UPSERT_BATCH_SIZE', '25')),
                                         retry_attempts=int(os.getenv('OPENSEARCH_RETRY_ATTEMPTS', '3')),
                                         retry_delay=float(os.getenv('OPENSEARCH_RETRY_DELAY', '1.0')))

    chunking_config = ChunkingConfig(lore=_chunk_profile('LORE', 750, 50, 100, 'paragraph'),
                                     memory=_chunk_profile('MEMORY', 400, 25, 50, 'sentence'),
                                     legacy_memory=_chunk_profile('LEGACY_MEMORY', 600, 40, 100, 'paragraph'),
                                     document=_chunk_profile('DOCUMENT', 1000, 75, 200, 'sliding'))

    activation_config = ActivationConfig(
        max_context_tokens=int(os.getenv('ACTIVATION_MAX_CONTEXT_TOKENS', '8000')),
        budget_percentage=float(os.getenv('ACTIVATION_BUDGET_PERCENTAGE', '25')),
        budget_cap_tokens=int(os.getenv('ACTIVATION_BUDGET_CAP_TOKENS', '2000')),
        reserved_for_conversation=int(os.getenv('ACTIVATION_RESERVED_FOR_CONVERSATION', '0')),
        vector_top_k=int(os.getenv('ACTIVATION_VECTOR_TOP_K', '20')),
        default_scan_depth=int(os.getenv('ACTIVATION_DEFAULT_SCAN_DEPTH', '2')))

    vectorization_config = VectorizationConfig(
        max_concurrency=int(os.getenv('VECTORIZATION_MAX_CONCURRENCY', '4')),
        reindex_batch_size=int(os.getenv('REINDEX_BATCH_SIZE', '50')),
        reindex_max_batch_size=int(os.getenv('REINDEX_MAX_BATCH_SIZE', '100')))

    # Memory configuration
    memory_config = MemoryConfig(message_threshold=int(os.getenv('MEMORY_MESSAGE_THRESHOLD', '20')),
                                 token_threshold=int(os.getenv('MEMORY_TOKEN_THRESHOLD', '4000')),
                                 min_new_messages=int(os.getenv('MEMORY_MIN_NEW_MESSAGES', '5')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     chunking=chunking_config,
                     activation=activation_config,
                     vectorization=vectorization_config,
                     memory=memory_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
