"""
Configuration management for AWS services and learning loop settings.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .errors import ValidationError


@dataclass
class BedrockLLMConfig:
    """Configuration for the Amazon Bedrock judge model."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    connect_timeout: float
    read_timeout: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    connect_timeout: float
    read_timeout: float


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    timeout: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: Optional[str]
    port: int
    region: str

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint)


@dataclass
class EventBusConfig:
    """Configuration for event delivery."""
    max_workers: int
    retry_attempts: int
    retry_delay: float


@dataclass
class LearningConfig:
    """Thresholds and bounds for evaluation, curation and retrieval."""
    curation_threshold: float
    retrieval_threshold: float
    pattern_threshold: float
    similar_link_threshold: float
    evidence_char_limit: int
    expected_evidence_count: int
    retrieval_top_k: int


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
    neptune: NeptuneConfig
    event_bus: EventBusConfig
    learning: LearningConfig
    mcp: MCPConfig


def _get_int(name: str, default: str, minimum: int = 1) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f'{name} must be an integer, got {raw!r}')
    if value < minimum:
        raise ValidationError(f'{name} must be >= {minimum}, got {value}')
    return value


def _get_float(name: str, default: str, minimum: float = 0.0, maximum: Optional[float] = None) -> float:
    raw = os.getenv(name, default)
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError(f'{name} must be a number, got {raw!r}')
    if value < minimum or (maximum is not None and value > maximum):
        raise ValidationError(f'{name} must be within [{minimum}, {maximum}], got {value}')
    return value


def _get_threshold(name: str, default: str) -> float:
    return _get_float(name, default, minimum=0.0, maximum=1.0)


def _get_timeout(name: str, default: str) -> float:
    value = _get_float(name, default)
    if value <= 0:
        raise ValidationError(f'{name} must be a positive number of seconds, got {value}')
    return value


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults.

    Returns:
        Validated AppConfig instance

    Raises:
        ValidationError: If any value is malformed or out of range
    """
    load_dotenv()
    environment = os.getenv('ENVIRONMENT', 'development')

    log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
    if log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
        raise ValidationError(f'LOG_LEVEL is not a valid logging level: {log_level}')

    # Judge model configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=_get_int('BEDROCK_LLM_MAX_TOKENS', '2048'),
                                          temperature=_get_float('BEDROCK_LLM_TEMPERATURE', '0.0', maximum=1.0),
                                          connect_timeout=_get_timeout('BEDROCK_LLM_CONNECT_TIMEOUT', '10'),
                                          read_timeout=_get_timeout('BEDROCK_LLM_READ_TIMEOUT', '60'))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=_get_int('BEDROCK_EMBED_DIMENSION', '1024'),
                                              connect_timeout=_get_timeout('BEDROCK_EMBED_CONNECT_TIMEOUT', '5'),
                                              read_timeout=_get_timeout('BEDROCK_EMBED_READ_TIMEOUT', '15'))

    # Vector search and interaction log configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=_get_int('OPENSEARCH_PORT', '443'),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'learning_loop'),
                                         dimension=_get_int('OPENSEARCH_DIMENSION', '1024'),
                                         timeout=_get_timeout('OPENSEARCH_TIMEOUT', '10'))

    if opensearch_config.dimension != bedrock_embed_config.dimension:
        raise ValidationError(f'OPENSEARCH_DIMENSION ({opensearch_config.dimension}) must equal '
                              f'BEDROCK_EMBED_DIMENSION ({bedrock_embed_config.dimension})')

    # Neptune is optional; provenance links are skipped without an endpoint
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT') or None,
                                   port=_get_int('NEPTUNE_PORT', '8182'),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    event_bus_config = EventBusConfig(max_workers=_get_int('EVENT_BUS_MAX_WORKERS', '4'),
                                      retry_attempts=_get_int('EVENT_BUS_RETRY_ATTEMPTS', '3'),
                                      retry_delay=_get_float('EVENT_BUS_RETRY_DELAY', '1.0'))

    learning_config = LearningConfig(curation_threshold=_get_threshold('LEARNING_CURATION_THRESHOLD', '0.75'),
                                     retrieval_threshold=_get_threshold('LEARNING_RETRIEVAL_THRESHOLD', '0.25'),
                                     pattern_threshold=_get_threshold('LEARNING_PATTERN_THRESHOLD', '0.8'),
                                     similar_link_threshold=_get_threshold('LEARNING_SIMILAR_LINK_THRESHOLD', '0.8'),
                                     evidence_char_limit=_get_int('LEARNING_EVIDENCE_CHAR_LIMIT', '8000'),
                                     expected_evidence_count=_get_int('LEARNING_EXPECTED_EVIDENCE_COUNT', '10'),
                                     retrieval_top_k=_get_int('LEARNING_RETRIEVAL_TOP_K', '3'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=_get_int('MCP_PORT', '8000'))

    return AppConfig(environment=environment,
                     log_level=log_level,
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     neptune=neptune_config,
                     event_bus=event_bus_config,
                     learning=learning_config,
                     mcp=mcp_config)
