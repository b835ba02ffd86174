"""
Memory Curation: promotes well-evaluated interactions into retrievable memories.
"""

import re
from typing import Optional

from ..models.core import Evaluation, Interaction, InteractionStatus, Memory
from ..models.events import REFLECTION_COMPLETE, Event, parse_reflection_complete
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import LearningConfig
from ..utils.errors import LearningLoopError, SchemaError, TransientServiceError, ValidationError
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient
from .event_bus import EventBus
from .interaction_store import InteractionStore
from .memory_store import MemoryStore

logger = get_logger(__name__)

_MATCH_PATTERN = re.compile(r'MATCH\s+\(([^)]+)\)', re.IGNORECASE)
_PROPERTY_FILTER = re.compile(r'\{[^}]+\}')

SIMILAR_LINK_LIMIT = 5


def hash_query_pattern(cypher: str) -> str:
    """Name the structural pattern of a Cypher query from its first MATCH clause.

    "MATCH (o:Objective {year: 3})" -> "o:objective"
    """
    match = _MATCH_PATTERN.search(cypher or '')
    if not match:
        return 'unknown_pattern'
    pattern = _PROPERTY_FILTER.sub('', match.group(1)).strip()
    pattern = re.sub(r'\s+', '_', pattern).lower()
    return pattern or 'unknown_pattern'


class MemoryCurator:
    """Consumes `reflection.complete` and appends a Memory when the evaluation clears the curation bar."""

    def __init__(self,
                 embedder: BedrockEmbed,
                 memories: MemoryStore,
                 interactions: InteractionStore,
                 bus: EventBus,
                 config: LearningConfig,
                 graph: Optional[NeptuneClient] = None):
        """
        Args:
            embedder: Embedding client for the source query
            memories: Target memory store
            interactions: Interaction log, for lifecycle status
            bus: Event bus to subscribe on
            config: Learning thresholds
            graph: Optional Neptune client for provenance links
        """
        self.embedder = embedder
        self.memories = memories
        self.interactions = interactions
        self.bus = bus
        self.config = config
        self.graph = graph

        logger.info(f'Initialized MemoryCurator (curation threshold {config.curation_threshold})')

    def register(self) -> None:
        self.bus.subscribe(REFLECTION_COMPLETE, self.handle_reflection_complete)

    def handle_reflection_complete(self, event: Event) -> None:
        try:
            interaction, evaluation = parse_reflection_complete(event.payload)
        except SchemaError as e:
            logger.error(f'Dropping malformed {event.name} event {event.event_id}: {e}')
            return

        self.curate(interaction, evaluation)

    def curate(self, interaction: Interaction, evaluation: Evaluation) -> Optional[Memory]:
        """Promote or discard one evaluated interaction.

        Returns:
            The appended Memory, or None if the interaction was discarded

        Raises:
            StorageError: If the memory index write failed (left to event redelivery)
        """
        if evaluation.overall <= self.config.curation_threshold:
            logger.info(f'Score {evaluation.overall:.3f} <= {self.config.curation_threshold}, '
                        f'discarding interaction {interaction.id}')
            self._set_status(interaction.id, InteractionStatus.DISCARDED)
            return None

        try:
            embedding = self.embedder.embed(interaction.query)
        except (ValidationError, TransientServiceError, SchemaError) as e:
            logger.error(f'Embedding failed for interaction {interaction.id}, discarding: {e}')
            self._set_status(interaction.id, InteractionStatus.DISCARDED)
            return None

        memory = Memory.from_interaction(interaction, evaluation, embedding)
        self.memories.append(memory)
        self._set_status(interaction.id, InteractionStatus.PROMOTED)

        if self.graph is not None:
            self._link_provenance(memory, interaction)

        return memory

    def _set_status(self, interaction_id: str, status: InteractionStatus) -> None:
        try:
            self.interactions.update(interaction_id, {'status': status.value})
        except LearningLoopError as e:
            logger.warning(f'Could not mark interaction {interaction_id} as {status.value}: {e}')

    def _link_provenance(self, memory: Memory, interaction: Interaction) -> None:
        """Record evidence, query pattern and similar-memory links; each step may fail alone."""
        try:
            self.graph.create_memory_vertex(memory.id, memory.interaction_id, memory.overall_score)
        except LearningLoopError as e:
            logger.error(f'Failed to create memory vertex {memory.id} (non-critical): {e}')
            return

        try:
            self.graph.link_evidence(memory.id, interaction.evidence_node_ids)
        except LearningLoopError as e:
            logger.error(f'Failed to link evidence for {memory.id} (non-critical): {e}')

        if memory.overall_score > self.config.pattern_threshold and interaction.cypher_queries:
            first_query = interaction.cypher_queries[0]
            try:
                self.graph.record_query_pattern(memory.id,
                                                hash_query_pattern(first_query),
                                                f'Pattern for query type: {interaction.query[:100]}',
                                                first_query)
            except LearningLoopError as e:
                logger.error(f'Failed to record query pattern for {memory.id} (non-critical): {e}')

        try:
            neighbours = self.memories.query_nearest(memory.embedding, SIMILAR_LINK_LIMIT + 1, 0.0)
            similar = [(hit['record'].get('id'), hit['score']) for hit in neighbours
                       if hit['record'].get('id') and hit['record'].get('id') != memory.id
                       and hit['score'] > self.config.similar_link_threshold][:SIMILAR_LINK_LIMIT]
            if similar:
                self.graph.link_similar_memories(memory.id, similar)
        except LearningLoopError as e:
            logger.error(f'Failed to link similar memories for {memory.id} (non-critical): {e}')
