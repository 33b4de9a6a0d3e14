"""
OpenSearch client wrapper for chunk vector similarity search.
"""

import time
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError as OpenSearchNotFoundError
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import ChunkMatch, ChunkPayload
from ..models.errors import UpstreamUnavailableError
from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class OpenSearchError(UpstreamUnavailableError):
    """Custom exception for OpenSearch errors."""
    pass


def score_to_similarity(score: float) -> float:
    """Map an OpenSearch cosinesimil score, (1 + cos) / 2, back to cosine similarity."""
    return 2.0 * score - 1.0


def similarity_to_score(similarity: float) -> float:
    return (1.0 + similarity) / 2.0


class OpenSearchClient:
    """Vector index over memory chunk embeddings with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Prebuilt OpenSearch client (created with SigV4 auth if None)
        """
        self.config = config
        self.index_name = config.index_name

        if client is None:
            # Get AWS credentials and create auth
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
            # Remove protocol if present
            endpoint = config.endpoint.split('://', 1)[-1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)
        self.client = client

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def create_index_if_not_exists(self) -> str:
        """
        Create the chunk index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'

        Raises:
            OpenSearchError: If the index cannot be checked or created
        """
        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            index_body = {
                'mappings': {
                    'properties': {
                        'memory_id': {
                            'type': 'keyword'
                        },
                        'chunk_index': {
                            'type': 'integer'
                        },
                        'content': {
                            'type': 'text'
                        },
                        'tags': {
                            'type': 'keyword'
                        },
                        'principal': {
                            'type': 'keyword'
                        },
                        'source': {
                            'type': 'keyword'
                        },
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'lucene'
                            }
                        }
                    }
                },
                'settings': {
                    'index': {
                        'knn': True
                    }
                }
            }

            response = self.client.indices.create(index=self.index_name, body=index_body)
            logger.info(f'Created index {self.index_name}')
            if response.get('acknowledged', False):
                logger.info(f'Waiting 15s for index {self.index_name} sync-up...')
                time.sleep(15)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def _validate(self, vector: List[float], payload: ChunkPayload) -> None:
        if len(vector) != self.config.dimension:
            raise OpenSearchError(f'Embedding has {len(vector)} dimensions, index expects {self.config.dimension}')
        if not payload.memory_id:
            raise OpenSearchError('Chunk payload is missing memory_id')
        if not payload.principal or not payload.source:
            raise OpenSearchError('Chunk payload requires principal and source')

    def upsert_chunk(self, chunk_id: int, vector: List[float], payload: ChunkPayload) -> bool:
        """
        Insert or replace one chunk vector with its payload.

        Content is truncated and tags are capped before indexing.

        Args:
            chunk_id: Derived integer id of the chunk
            vector: Chunk embedding
            payload: Fixed chunk metadata

        Returns:
            True if the document was created or updated

        Raises:
            OpenSearchError: If validation or indexing fails
        """
        self._validate(vector, payload)

        document = payload.to_document()
        document['content'] = payload.content[:self.config.max_content_length]
        document['tags'] = list(payload.tags)[:self.config.max_tags]
        document['embedding'] = vector

        try:
            response = self.client.index(index=self.index_name, id=str(chunk_id), body=document)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed chunk {chunk_id} of memory {payload.memory_id}')
            else:
                logger.warning(f'Unexpected result indexing chunk {chunk_id}: {response}')

            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing chunk {chunk_id}: {e}')
            raise OpenSearchError(f'Failed to index chunk: {e}')
        except Exception as e:
            logger.error(f'Unexpected error indexing chunk {chunk_id}: {e}')
            raise OpenSearchError(f'Unexpected error indexing chunk: {e}')

    def search(self,
               query_vector: List[float],
               limit: int,
               score_threshold: float,
               principal: str,
               source: Optional[str] = None) -> List[ChunkMatch]:
        """
        Perform vector similarity search restricted to a principal and optional source.

        Args:
            query_vector: Query embedding
            limit: Number of chunk matches to return
            score_threshold: Minimum cosine similarity, applied natively by the index
            principal: Owner of the chunks
            source: Restrict to chunks from this source

        Returns:
            Chunk matches with cosine similarity scores, best first

        Raises:
            OpenSearchError: If the search fails
        """
        filters: List[Dict[str, Any]] = [{'term': {'principal': principal}}]
        if source:
            filters.append({'term': {'source': source}})

        search_body = {
            'size': limit,
            'min_score': similarity_to_score(score_threshold),
            'query': {
                'knn': {
                    'embedding': {
                        'vector': query_vector,
                        'k': limit,
                        'filter': {
                            'bool': {
                                'must': filters
                            }
                        }
                    }
                }
            },
            '_source': {
                'excludes': ['embedding']  # Don't return embedding in results
            }
        }

        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in vector search: {e}')
            raise OpenSearchError(f'Unexpected error in vector search: {e}')

        results = []
        for hit in response['hits']['hits']:
            results.append(
                ChunkMatch(id=hit['_id'],
                           score=score_to_similarity(hit['_score']),
                           payload=ChunkPayload.from_document(hit.get('_source') or {})))

        logger.debug(f'Vector search returned {len(results)} results above threshold {score_threshold}')
        return results

    def delete_memory_chunks(self, memory_id: str) -> int:
        """
        Delete every chunk belonging to a memory.

        Args:
            memory_id: Owning memory id

        Returns:
            Number of chunks deleted
        """
        try:
            response = self.client.delete_by_query(index=self.index_name, body={'query': {'term': {'memory_id': memory_id}}})
            deleted = int(response.get('deleted', 0))
            logger.debug(f'Deleted {deleted} chunks of memory {memory_id}')
            return deleted

        except OpenSearchNotFoundError:
            logger.warning(f'Index {self.index_name} not found while deleting chunks of {memory_id}')
            return 0
        except OpenSearchException as e:
            logger.error(f'Error deleting chunks of memory {memory_id}: {e}')
            raise OpenSearchError(f'Failed to delete chunks: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name)

            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
