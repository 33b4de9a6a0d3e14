"""
Configuration management for external services and application settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


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
    retry_attempts: int
    retry_delay: float


@dataclass
class OpenSearchConfig:
    """Configuration for the OpenSearch chunk index."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    max_content_length: int
    max_tags: int


@dataclass
class RedisConfig:
    """Configuration for the Redis lease cache."""
    url: str
    key_prefix: str
    socket_timeout: float


@dataclass
class DatabaseConfig:
    """Configuration for the relational store."""
    url: str
    echo: bool


@dataclass
class LedgerConfig:
    """Configuration for the append-only ledger."""
    enabled: bool
    database_url: str


@dataclass
class LeaseConfig:
    """Configuration for lease lifecycle."""
    default_duration_days: int
    max_duration_days: int


@dataclass
class RetrievalConfig:
    """Configuration for memory retrieval."""
    similarity_threshold: float
    default_limit: int
    max_limit: int


@dataclass
class IngestionConfig:
    """Configuration for memory ingestion."""
    chunk_size: int
    chunk_overlap: int


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
    redis: RedisConfig
    database: DatabaseConfig
    ledger: LedgerConfig
    lease: LeaseConfig
    retrieval: RetrievalConfig
    ingestion: IngestionConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2000')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.3')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    embedding_dimension = int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024'))
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=embedding_dimension,
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'memory_chunks'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', str(embedding_dimension))),
                                         max_content_length=int(os.getenv('VECTOR_PAYLOAD_MAX_CONTENT', '2000')),
                                         max_tags=int(os.getenv('VECTOR_PAYLOAD_MAX_TAGS', '10')))

    # Lease cache configuration
    redis_config = RedisConfig(url=os.getenv('REDIS_URL', 'redis://localhost:6379/0'),
                               key_prefix=os.getenv('REDIS_KEY_PREFIX', 'memlease'),
                               socket_timeout=float(os.getenv('REDIS_SOCKET_TIMEOUT', '5.0')))

    # Relational store configuration
    database_config = DatabaseConfig(url=os.getenv('DATABASE_URL', 'sqlite:///memlease.db'),
                                     echo=_env_bool('DATABASE_ECHO', 'false'))

    # Ledger configuration
    ledger_config = LedgerConfig(enabled=_env_bool('LEDGER_ENABLED', 'true'),
                                 database_url=os.getenv('LEDGER_DATABASE_URL', 'sqlite:///memlease_ledger.db'))

    # Lease configuration
    lease_config = LeaseConfig(default_duration_days=int(os.getenv('LEASE_DEFAULT_DURATION_DAYS', '7')),
                               max_duration_days=int(os.getenv('LEASE_MAX_DURATION_DAYS', '365')))

    # Retrieval configuration
    retrieval_config = RetrievalConfig(similarity_threshold=float(os.getenv('RETRIEVAL_SIMILARITY_THRESHOLD', '0.3')),
                                       default_limit=int(os.getenv('RETRIEVAL_DEFAULT_LIMIT', '5')),
                                       max_limit=int(os.getenv('RETRIEVAL_MAX_LIMIT', '20')))

    # Ingestion configuration
    ingestion_config = IngestionConfig(chunk_size=int(os.getenv('INGEST_CHUNK_SIZE', '1000')),
                                       chunk_overlap=int(os.getenv('INGEST_CHUNK_OVERLAP', '200')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     redis=redis_config,
                     database=database_config,
                     ledger=ledger_config,
                     lease=lease_config,
                     retrieval=retrieval_config,
                     ingestion=ingestion_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
