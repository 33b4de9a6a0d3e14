"""
Amazon Bedrock embedding client wrapper with retry logic and error handling.

Embedding failures fail closed: every public method either returns vectors
of the configured dimension or raises BedrockEmbedError.
"""

import json
import random
import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..models.errors import UpstreamUnavailableError
from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Cohere embed models accept at most 96 texts per request
COHERE_BATCH_SIZE = 96


class BedrockEmbedError(UpstreamUnavailableError):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig, bedrock: Optional[Any] = None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            bedrock: Prebuilt bedrock-runtime client (created from config if None)
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        # Create Bedrock runtime client
        self.bedrock = bedrock or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _invoke(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """
        Invoke the embedding model, retrying throttling and transport errors.

        Raises:
            BedrockEmbedError: If every attempt fails or the response is unreadable
        """
        body = json.dumps(request)
        attempts = self.config.retry_attempts

        for attempt in range(attempts):
            try:
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response['body'].read())

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt == attempts - 1:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {attempts} attempts: {e}')
                time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 1))

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {attempts} attempts')

    def _check_vector(self, vector: Any) -> List[float]:
        if not isinstance(vector, list) or len(vector) != self.dimension:
            size = len(vector) if isinstance(vector, list) else 'none'
            raise BedrockEmbedError(f'Unexpected embedding dimensions: {size} (expected {self.dimension})')
        return [float(v) for v in vector]

    def _embed_batch(self, texts: List[str], input_type: str) -> List[List[float]]:
        model = self.model_id.lower()

        if 'titan' in model:
            # Titan embeds one text per request
            vectors = []
            for text in texts:
                response = self._invoke({'inputText': text, 'dimensions': self.dimension})
                vectors.append(self._check_vector(response.get('embedding')))
            return vectors

        if 'cohere' in model:
            if self.dimension != 1024:
                raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.dimension}')

            vectors = []
            for start in range(0, len(texts), COHERE_BATCH_SIZE):
                batch = texts[start:start + COHERE_BATCH_SIZE]
                response = self._invoke({'input_type': input_type, 'texts': batch})
                embeddings = response.get('embeddings') or []
                if len(embeddings) != len(batch):
                    raise BedrockEmbedError(f'Expected {len(batch)} embeddings, got {len(embeddings)}')
                vectors.extend(self._check_vector(embedding) for embedding in embeddings)
            return vectors

        raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a batch of document texts.

        Args:
            texts: Texts to embed

        Returns:
            One embedding per input text, in input order

        Raises:
            BedrockEmbedError: If any text is blank or any embedding fails
        """
        if not texts:
            return []
        if any(not text or not text.strip() for text in texts):
            raise BedrockEmbedError('Cannot embed empty document text')

        try:
            return self._embed_batch(texts, 'search_document')
        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating document embeddings: {e}')
            raise BedrockEmbedError(f'Document embedding failed: {e}')

    def embed_document(self, text: str) -> List[float]:
        """Generate the embedding for a single document text."""
        return self.embed_documents([text])[0]

    def embed_query(self, text: str) -> List[float]:
        """
        Generate embeddings for query text.

        Args:
            text: Query text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot embed empty query text')

        try:
            return self._embed_batch([text], 'search_query')[0]
        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating query embedding: {e}')
            raise BedrockEmbedError(f'Query embedding failed: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_embedding = self.embed_document('test')
            return len(test_embedding) == self.dimension

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
