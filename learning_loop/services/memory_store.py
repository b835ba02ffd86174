"""
Memory Store: append-only collection of curated exemplars backed by the k-NN index.
"""

from typing import Any, Dict, List

from ..models.core import Memory
from ..utils.errors import SchemaError, StorageError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import MEMORY_INDEX, OpenSearchClient, OpenSearchError

logger = get_logger(__name__)


class MemoryStore:
    """Append-only memory collection; there is no update or delete."""

    def __init__(self, opensearch: OpenSearchClient, dimension: int):
        """
        Args:
            opensearch: OpenSearchClient hosting the memory index
            dimension: Required embedding length
        """
        self.opensearch = opensearch
        self.dimension = dimension
        logger.info('Initialized MemoryStore')

    def ensure_index(self) -> None:
        try:
            self.opensearch.create_index_if_not_exists(MEMORY_INDEX)
        except OpenSearchError as e:
            raise StorageError(f'Failed to prepare memory index: {e}')

    def append(self, memory: Memory) -> bool:
        """Add a memory to the index.

        Args:
            memory: Memory with an embedding of the configured dimension

        Returns:
            True if written, False if a memory with this id was already appended

        Raises:
            SchemaError: If the embedding has the wrong dimension
            StorageError: If the index write failed
        """
        if len(memory.embedding) != self.dimension:
            raise SchemaError(f'Memory {memory.id} embedding has {len(memory.embedding)} dimensions, expected {self.dimension}')

        try:
            created = self.opensearch.create_document(memory.id, memory.to_document(), MEMORY_INDEX)
        except OpenSearchError as e:
            logger.error(f'Failed to append memory {memory.id}: {e}')
            raise StorageError(f'Failed to append memory: {e}')

        if created:
            logger.info(f'Appended memory {memory.id} (overall {memory.overall_score:.3f})')
        else:
            logger.info(f'Memory {memory.id} already exists; append skipped')
        return created

    def query_nearest(self, embedding: List[float], k: int, min_quality: float,
                      include_embedding: bool = False) -> List[Dict[str, Any]]:
        """
        Nearest memories with overall score strictly above min_quality.

        Records carry their stored vector only when include_embedding is set.

        Returns:
            List of {'record', 'score'} ordered by score descending

        Raises:
            OpenSearchError: If the index is unreachable or errors
        """
        hits = self.opensearch.query_nearest(embedding, k, min_quality, include_embedding=include_embedding)
        return [{'record': hit['record'], 'score': hit['score']} for hit in hits]

    def stats(self) -> Dict[str, Any]:
        """Memory count and average scores."""
        return self.opensearch.memory_stats()
