"""
Amazon Bedrock embedding client wrapper with input validation and dimension checks.
"""

import json
from typing import Any, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .errors import SchemaError, TransientServiceError, ValidationError
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbedError(TransientServiceError):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client producing fixed-length vectors."""

    def __init__(self, config: BedrockEmbedConfig, runtime: Optional[Any] = None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            runtime: Pre-built bedrock-runtime client (built from config if None)
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        if 'cohere' in self.model_id.lower() and self.dimension != 1024:
            raise ValidationError(f'Cohere models only support 1024 dimensions, got {self.dimension}')
        if 'titan' not in self.model_id.lower() and 'cohere' not in self.model_id.lower():
            raise ValidationError(f'Unsupported embedding model: {self.model_id}')

        # Finite timeouts; redelivery is the event bus's job, not the client's
        self.bedrock = runtime or boto3.client(service_name='bedrock-runtime',
                                               region_name=config.region,
                                               config=BotoConfig(connect_timeout=config.connect_timeout,
                                                                 read_timeout=config.read_timeout,
                                                                 retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _invoke(self, data: dict) -> dict:
        """
        Make a single Bedrock API call.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If the call fails or times out
            SchemaError: If the response body is not JSON
        """
        try:
            response = self.bedrock.invoke_model(body=json.dumps(data),
                                                 modelId=self.model_id,
                                                 accept='application/json',
                                                 contentType='application/json')
            body = response.get('body').read()
        except (ClientError, BotoCoreError) as e:
            logger.warning(f'Bedrock Embed request failed: {e}')
            raise BedrockEmbedError(f'Bedrock Embed request failed: {e}')

        try:
            return json.loads(body)
        except (TypeError, ValueError) as e:
            raise SchemaError(f'Bedrock Embed returned a non-JSON body: {e}')

    def embed(self, text: str) -> List[float]:
        """
        Generate an embedding for text.

        Args:
            text: Text to embed

        Returns:
            List of exactly `dimension` floats

        Raises:
            ValidationError: If text is empty or whitespace-only (no call is made)
            BedrockEmbedError: If the provider call fails
            SchemaError: If the returned vector has the wrong shape or length
        """
        if not isinstance(text, str) or not text.strip():
            raise ValidationError('Cannot generate embedding for empty text')

        if 'titan' in self.model_id.lower():
            response = self._invoke({'inputText': text, 'dimensions': self.dimension, 'normalize': True})
            vector = response.get('embedding')
        else:
            response = self._invoke({'input_type': 'search_query', 'texts': [text]})
            embeddings = response.get('embeddings') or [None]
            vector = embeddings[0]

        if not isinstance(vector, list) or not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in vector):
            raise SchemaError('Bedrock Embed response did not contain a numeric vector')

        if len(vector) != self.dimension:
            raise SchemaError(f'Expected {self.dimension}-dimensional embedding, got {len(vector)} dimensions')

        logger.debug(f'Generated {len(vector)}-dimensional embedding for text of length {len(text)}')
        return [float(v) for v in vector]

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed('test')) == self.dimension

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
