"""
Amazon Neptune graph client recording memory provenance (evidence, query patterns, similar memories).
"""

from functools import wraps
from typing import Any, List, Optional, Tuple

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, P

from .config import NeptuneConfig
from .errors import TransientServiceError
from .logging_config import get_logger
from .timestamp_utils import to_iso

logger = get_logger(__name__)


class NeptuneError(TransientServiceError):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to reconnect once when Neptune closed the websocket."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower() and self.connection is not None:
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _first(value: Any, default: Any = None) -> Any:
    """value_map() returns list-wrapped properties."""
    if isinstance(value, list):
        return value[0] if value else default
    return default if value is None else value


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig, g: Optional[Any] = None):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
            g: Pre-built traversal source (connects from config if None)
        """
        self.config = config
        self.connection = None
        self.g = g
        if self.g is None:
            self._connect()
            logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = Session().region_name or self.config.region or 'us-east-1'

        # Create signed request for WebSocket connection
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()
            self.connection = None

    @retry_on_connection_error
    def create_memory_vertex(self, memory_id: str, interaction_id: str, overall_score: float,
                             created_at: Optional[str] = None) -> bool:
        """
        Create a Memory vertex unless one already exists.

        Returns:
            True once the vertex exists
        """
        existing = self.g.V().has('Memory', 'id', memory_id).to_list()
        if existing:
            logger.debug(f'Memory vertex already exists: {memory_id}')
            return True

        self.g.add_v('Memory').property('id', memory_id)\
            .property('interaction_id', interaction_id)\
            .property('overall_score', overall_score)\
            .property('created_at', created_at or to_iso())\
            .next()
        logger.debug(f'Created memory vertex: {memory_id}')
        return True

    @retry_on_connection_error
    def link_evidence(self, memory_id: str, evidence_node_ids: List[str]) -> int:
        """
        Connect a memory to the curriculum nodes cited as evidence.

        Returns:
            Number of USED_EVIDENCE edges created
        """
        if not evidence_node_ids:
            return 0

        linked = self.g.V().has('Memory', 'id', memory_id).as_('m')\
            .V().has('id', P.within(*evidence_node_ids)).not_(__.has_label('Memory'))\
            .add_e('USED_EVIDENCE').from_('m')\
            .count().next()
        logger.debug(f'Linked {linked} evidence nodes to {memory_id}')
        return int(linked)

    @retry_on_connection_error
    def record_query_pattern(self, memory_id: str, pattern_name: str, description: str, cypher_template: str) -> int:
        """
        Upsert a QueryPattern vertex, bump its success count and link the memory to it.

        Returns:
            The pattern's success count after this use
        """
        existing = self.g.V().has('QueryPattern', 'name', pattern_name).value_map(True).to_list()
        if existing:
            success_count = int(_first(existing[0].get('success_count'), 0)) + 1
            self.g.V().has('QueryPattern', 'name', pattern_name)\
                .property(Cardinality.single, 'success_count', success_count)\
                .property(Cardinality.single, 'updated_at', to_iso())\
                .iterate()
        else:
            success_count = 1
            self.g.add_v('QueryPattern').property('name', pattern_name)\
                .property('description', description)\
                .property('cypher_template', cypher_template)\
                .property('success_count', success_count)\
                .property('failure_count', 0)\
                .property('created_at', to_iso())\
                .property('updated_at', to_iso())\
                .next()

        self.g.V().has('Memory', 'id', memory_id)\
            .add_e('APPLIED_PATTERN').to(__.V().has('QueryPattern', 'name', pattern_name))\
            .iterate()
        logger.debug(f'Pattern {pattern_name} recorded for {memory_id} (uses: {success_count})')
        return success_count

    @retry_on_connection_error
    def link_similar_memories(self, memory_id: str, similar: List[Tuple[str, float]]) -> int:
        """
        Add SIMILAR_TO edges from a memory to earlier memories.

        Args:
            memory_id: Source memory
            similar: (memory_id, similarity) pairs

        Returns:
            Number of edges created
        """
        linked = 0
        for other_id, similarity in similar:
            if other_id == memory_id:
                continue
            self.g.V().has('Memory', 'id', memory_id)\
                .add_e('SIMILAR_TO').to(__.V().has('Memory', 'id', other_id))\
                .property('similarity', similarity)\
                .property('created_at', to_iso())\
                .iterate()
            linked += 1
        logger.debug(f'Linked {linked} similar memories to {memory_id}')
        return linked

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy
        """
        self.g.V().limit(1).count().next()
        return True
