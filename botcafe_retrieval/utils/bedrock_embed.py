"""
Amazon Bedrock embedding client wrapper with batching, dimension validation and retries.
"""

import json
import random
import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .exceptions import DimensionMismatch, InputError, InvalidResponse, ModelUnavailable
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbed:
    """Amazon Bedrock embedding client.

    Cohere models accept a list of texts per call and are called in sub-batches of
    ``batch_size``; Titan models take one text per call.
    """

    def __init__(self, config: BedrockEmbedConfig, client: Optional[Any] = None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (optional, created from config if None)
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        if 'cohere' in self.model_id.lower() and self.dimension != 1024:
            raise InputError(f'Cohere models only support 1024 dimensions, got {self.dimension}')
        if 'cohere' not in self.model_id.lower() and 'titan' not in self.model_id.lower():
            raise InputError(f'Unsupported embedding model: {self.model_id}')

        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    @property
    def is_cohere(self) -> bool:
        return 'cohere' in self.model_id.lower()

    def _call_with_retry(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            ModelUnavailable: If all retry attempts fail
            InvalidResponse: If the response body is not JSON
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{self.config.retry_attempts}')
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                raw = response.get('body').read()
                break

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise ModelUnavailable(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')
        else:
            raise ModelUnavailable(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            raise InvalidResponse(f'Bedrock Embed returned a non-JSON body: {e}')

    def _validate(self, vectors: Any, expected_count: int) -> List[List[float]]:
        if not isinstance(vectors, list) or len(vectors) != expected_count:
            got = len(vectors) if isinstance(vectors, list) else type(vectors).__name__
            raise InvalidResponse(f'Expected {expected_count} embeddings, got {got}')

        for position, vector in enumerate(vectors):
            if not isinstance(vector, list):
                raise InvalidResponse(f'Embedding at position {position} is not a list')
            if len(vector) != self.dimension:
                raise DimensionMismatch(self.dimension, len(vector), position)
        return [[float(v) for v in vector] for vector in vectors]

    def _embed_batch(self, texts: List[str], input_type: str) -> List[List[float]]:
        if self.is_cohere:
            response = self._call_with_retry({'input_type': input_type, 'texts': texts})
            return self._validate(response.get('embeddings'), len(texts))

        vectors = []
        for text in texts:
            response = self._call_with_retry({'inputText': text, 'dimensions': self.dimension})
            vectors.append(response.get('embedding'))
        return self._validate(vectors, len(texts))

    def embed_texts(self, texts: List[str], input_type: str = 'search_document') -> List[List[float]]:
        """
        Generate embeddings for a batch of texts, preserving input order.

        Args:
            texts: Texts to embed
            input_type: Cohere input type ('search_document' or 'search_query')

        Returns:
            One vector per input text

        Raises:
            InputError: If the batch is empty or any text is blank
            ModelUnavailable: If the model cannot be reached
            DimensionMismatch: If a returned vector has the wrong length
            InvalidResponse: If the response is malformed
        """
        if not texts:
            raise InputError('No texts provided for embedding')
        for position, text in enumerate(texts):
            if not text or not text.strip():
                raise InputError(f'Empty text provided for embedding at position {position}')

        vectors: List[List[float]] = []
        batch_size = max(1, self.config.batch_size)
        for start in range(0, len(texts), batch_size):
            batch = texts[start:start + batch_size]
            logger.debug(f'Embedding batch of {len(batch)} texts starting at {start}')
            vectors.extend(self._embed_batch(batch, input_type))
        return vectors

    def embed_text(self, text: str) -> List[float]:
        """Generate the document embedding for a single text."""
        return self.embed_texts([text])[0]

    def embed_query(self, text: str) -> List[float]:
        """Generate the query-side embedding for search text."""
        return self.embed_texts([text], input_type='search_query')[0]

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed_text('test')) == self.dimension
        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
