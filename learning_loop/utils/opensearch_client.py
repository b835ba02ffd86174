"""
OpenSearch client wrapper for the interaction log and the memory vector index.
"""

from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import ConflictError, NotFoundError as OpenSearchNotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .errors import TransientServiceError
from .logging_config import get_logger

logger = get_logger(__name__)

INTERACTION_INDEX = 'interaction'
EVALUATION_INDEX = 'evaluation'
MEMORY_INDEX = 'memory'
FEEDBACK_INDEX = 'feedback'

_SCORE_FIELDS = ('grounding_score', 'accuracy_score', 'completeness_score', 'pedagogy_score', 'clarity_score',
                 'overall_score')


class OpenSearchError(TransientServiceError):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[Any] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built low-level client (built from config if None)
        """
        self.config = config

        if client is None:
            # Get AWS credentials and create auth
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='es', refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                # Remove protocol if present
                endpoint = endpoint.split('://', 1)[1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                timeout=config.timeout,
                                connection_class=RequestsHttpConnection)
        self.client = client

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name(self, index_type: str) -> str:
        return f'{self.config.index_name}_{index_type}'

    def _index_body(self, index_type: str) -> Dict[str, Any]:
        if index_type == INTERACTION_INDEX:
            properties = {
                'id': {'type': 'keyword'},
                'query': {'type': 'text'},
                'answer': {'type': 'text'},
                'model': {'type': 'keyword'},
                'temperature': {'type': 'float'},
                'cypher_queries': {'type': 'text'},
                'graph_results': {'type': 'object', 'enabled': False},
                'evidence_node_ids': {'type': 'keyword'},
                'confidence': {'type': 'float'},
                'grounding_rate': {'type': 'float'},
                'step_count': {'type': 'integer'},
                'latency_ms': {'type': 'integer'},
                'memories_used': {'type': 'keyword'},
                'status': {'type': 'keyword'},
                'created_at': {'type': 'date'},
            }
            return {'mappings': {'properties': properties}}

        if index_type == EVALUATION_INDEX:
            properties = {field: {'type': 'float'} for field in _SCORE_FIELDS}
            properties.update({
                'interaction_id': {'type': 'keyword'},
                'strengths': {'type': 'text'},
                'weaknesses': {'type': 'text'},
                'suggestions': {'type': 'text'},
                'created_at': {'type': 'date'},
            })
            return {'mappings': {'properties': properties}}

        if index_type == FEEDBACK_INDEX:
            properties = {
                'interaction_id': {'type': 'keyword'},
                'thumbs_up': {'type': 'boolean'},
                'note': {'type': 'text'},
                'created_at': {'type': 'date'},
                'updated_at': {'type': 'date'},
            }
            return {'mappings': {'properties': properties}}

        if index_type == MEMORY_INDEX:
            properties = {field: {'type': 'float'} for field in _SCORE_FIELDS}
            properties.update({
                'id': {'type': 'keyword'},
                'interaction_id': {'type': 'keyword'},
                'query': {'type': 'text'},
                'answer': {'type': 'text'},
                'query_patterns': {'type': 'text'},
                'confidence': {'type': 'float'},
                'evaluator_notes': {'type': 'text'},
                'memories_used': {'type': 'keyword'},
                'embedding': {
                    'type': 'knn_vector',
                    'dimension': self.config.dimension,
                    'method': {
                        'name': 'hnsw',
                        'space_type': 'cosinesimil',
                        'engine': 'faiss'
                    }
                },
                'created_at': {'type': 'date'},
            })
            return {
                'mappings': {'properties': properties},
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }

        raise ValueError(f'Unknown index type: {index_type}')

    def create_index_if_not_exists(self, index_type: str) -> str:
        """
        Create index if it doesn't exist.

        Args:
            index_type: One of interaction, evaluation, feedback or memory

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_name(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=self._index_body(index_type))
            if response.get('acknowledged', False):
                logger.info(f'Created index {index_name}')
                return 'created'
            logger.warning(f'Index creation not acknowledged for {index_name}: {response}')
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def create_document(self, doc_id: str, document: Dict[str, Any], index_type: str) -> bool:
        """
        Write a document that must not already exist.

        Args:
            doc_id: Document ID
            document: Document body
            index_type: Target index type

        Returns:
            True if the document was created, False if the id already existed
        """
        index_name = self.index_name(index_type)

        try:
            response = self.client.index(index=index_name, id=doc_id, body=document, op_type='create')
            success = response.get('result') == 'created'
            if success:
                logger.debug(f'Created document {doc_id} in {index_name}')
            else:
                logger.warning(f'Unexpected result creating document {doc_id}: {response}')
            return success

        except ConflictError:
            logger.debug(f'Document {doc_id} already exists in {index_name}')
            return False
        except OpenSearchException as e:
            logger.error(f'Error creating document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to create document: {e}')

    def get_document(self, doc_id: str, index_type: str) -> Optional[Dict[str, Any]]:
        """
        Get a document by id.

        Returns:
            Document source if found, None otherwise
        """
        index_name = self.index_name(index_type)

        try:
            response = self.client.get(index=index_name, id=doc_id)
            return response.get('_source') if response.get('found', True) else None

        except OpenSearchNotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')

    def update_document(self, doc_id: str, fields: Dict[str, Any], index_type: str) -> bool:
        """
        Merge fields into an existing document.

        Returns:
            True if the document exists and was updated (or already held the values), False if not found
        """
        index_name = self.index_name(index_type)

        try:
            response = self.client.update(index=index_name, id=doc_id, body={'doc': fields})
            return response.get('result') in ('updated', 'noop')

        except OpenSearchNotFoundError:
            logger.warning(f'Document {doc_id} not found for update')
            return False
        except OpenSearchException as e:
            logger.error(f'Error updating document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to update document: {e}')

    def search_documents(self, index_type: str, size: int, sort_field: str = 'created_at',
                         ascending: bool = False) -> List[Dict[str, Any]]:
        """
        List documents of an index ordered by one field.

        Args:
            index_type: Target index type
            size: Maximum number of documents to return
            sort_field: Field to order by
            ascending: Oldest first when True

        Returns:
            List of document sources
        """
        index_name = self.index_name(index_type)

        try:
            response = self.client.search(index=index_name,
                                          body={
                                              'size': size,
                                              'query': {
                                                  'match_all': {}
                                              },
                                              'sort': [{
                                                  sort_field: {
                                                      'order': 'asc' if ascending else 'desc'
                                                  }
                                              }]
                                          })
            return [hit['_source'] for hit in response['hits']['hits']]

        except OpenSearchException as e:
            logger.error(f'Error listing documents in {index_name}: {e}')
            raise OpenSearchError(f'Failed to list documents: {e}')

    def count_documents(self, index_type: str) -> int:
        index_name = self.index_name(index_type)

        try:
            response = self.client.count(index=index_name)
            return int(response.get('count', 0))

        except OpenSearchException as e:
            logger.error(f'Error counting documents in {index_name}: {e}')
            raise OpenSearchError(f'Failed to count documents: {e}')

    def query_nearest(self, embedding: List[float], k: int, min_quality: float,
                      include_embedding: bool = False) -> List[Dict[str, Any]]:
        """
        k-NN search over memories whose overall score is strictly above min_quality.

        Args:
            embedding: Query vector
            k: Number of neighbours to return
            min_quality: Exclusive lower bound on overall_score
            include_embedding: Return stored vectors in the records (omitted by default)

        Returns:
            List of {'id', 'score', 'record'} ordered by score descending
        """
        index_name = self.index_name(MEMORY_INDEX)

        try:
            search_body = {
                'size': k,
                'query': {
                    'knn': {
                        'embedding': {
                            'vector': embedding,
                            'k': k,
                            'filter': {
                                'range': {
                                    'overall_score': {
                                        'gt': min_quality
                                    }
                                }
                            }
                        }
                    }
                }
            }
            if not include_embedding:
                search_body['_source'] = {'excludes': ['embedding']}

            response = self.client.search(index=index_name, body=search_body)

            results = []
            for hit in response['hits']['hits']:
                results.append({'id': hit['_id'], 'score': hit['_score'], 'record': hit['_source']})

            logger.debug(f'Vector search returned {len(results)} results above quality {min_quality}')
            return results

        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')

    def memory_stats(self) -> Dict[str, Any]:
        """
        Aggregate statistics over the memory index.

        Returns:
            Dictionary with total_memories, avg_overall_score and avg_confidence
        """
        index_name = self.index_name(MEMORY_INDEX)

        try:
            response = self.client.search(index=index_name,
                                          body={
                                              'size': 0,
                                              'track_total_hits': True,
                                              'aggs': {
                                                  'avg_overall_score': {
                                                      'avg': {
                                                          'field': 'overall_score'
                                                      }
                                                  },
                                                  'avg_confidence': {
                                                      'avg': {
                                                          'field': 'confidence'
                                                      }
                                                  }
                                              }
                                          })
            aggregations = response.get('aggregations', {})
            return {
                'total_memories': response['hits']['total']['value'],
                'avg_overall_score': aggregations.get('avg_overall_score', {}).get('value') or 0.0,
                'avg_confidence': aggregations.get('avg_confidence', {}).get('value') or 0.0,
            }

        except OpenSearchException as e:
            logger.error(f'Error computing memory stats: {e}')
            raise OpenSearchError(f'Memory stats failed: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name(MEMORY_INDEX))

            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
