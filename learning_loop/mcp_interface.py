"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .models.core import InteractionResult
from .services.learning_service import LearningLoop, build_learning_loop
from .services.retrieval import format_few_shot_examples
from .utils.config import load_config
from .utils.errors import LearningLoopError, ValidationError
from .utils.health_check import get_system_info
from .utils.logging_config import get_logger

logger = get_logger(__name__)


def _memory_summary(memory) -> Dict[str, Any]:
    return {
        'id': memory.id,
        'query': memory.query,
        'answer': memory.answer,
        'query_patterns': memory.query_patterns,
        'overall_score': memory.overall_score,
        'grounding_score': memory.grounding_score,
        'accuracy_score': memory.accuracy_score,
    }


def create_mcp(loop: LearningLoop) -> FastMCP:
    """Expose the learning loop as MCP tools."""
    mcp = FastMCP('Learning Loop')

    @mcp.tool()
    def retrieve_similar_memories(query: str, top_k: int = 3) -> Dict[str, Any]:
        """Find past high-quality interactions similar to a query.

        Args:
            query: Natural language query
            top_k: Maximum number of memories to return (default: 3)

        Returns:
            Dictionary with the memories and a rendered few-shot prompt block
        """
        memories = loop.retrieve_similar(query, top_k)
        logger.debug(f'MCP retrieval returned {len(memories)} memories')
        return {
            'memories': [_memory_summary(memory) for memory in memories],
            'few_shot_examples': format_few_shot_examples(memories),
        }

    @mcp.tool()
    def begin_interaction(query: str, model: str, temperature: float = 0.3) -> str:
        """Record a new user turn before answering it.

        Returns:
            Interaction id
        """
        try:
            return loop.begin_interaction(query, model, temperature)
        except LearningLoopError as e:
            logger.error(f'Failed to begin interaction: {e}')
            raise Exception(f'Failed to begin interaction: {e}')

    @mcp.tool()
    def complete_interaction(interaction_id: str,
                             answer: str,
                             cypher_queries: Optional[List[str]] = None,
                             graph_results: Optional[List[Dict[str, Any]]] = None,
                             confidence: float = 0.0,
                             step_count: int = 0,
                             latency_ms: int = 0,
                             memories_used: Optional[List[str]] = None) -> bool:
        """Submit the final answer of an interaction for background evaluation.

        Returns:
            True if the interaction was queued for evaluation
        """
        result = InteractionResult(answer=answer,
                                   cypher_queries=cypher_queries or [],
                                   graph_results=graph_results or [],
                                   confidence=confidence,
                                   step_count=step_count,
                                   latency_ms=latency_ms,
                                   memories_used=memories_used or [])
        return loop.complete_interaction(interaction_id, result)

    @mcp.tool()
    def record_feedback(interaction_id: str, thumbs_up: Optional[bool] = None, note: Optional[str] = None) -> Dict[str, Any]:
        """Record or amend user feedback (rating and/or note) on an interaction.

        Returns:
            The stored feedback record
        """
        try:
            return loop.record_feedback(interaction_id, thumbs_up=thumbs_up, note=note)
        except ValidationError as e:
            raise Exception(f'Invalid input: {e}')
        except LearningLoopError as e:
            logger.error(f'Failed to record feedback: {e}')
            raise Exception(f'Failed to record feedback: {e}')

    @mcp.tool()
    def recent_interactions(limit: int = 20) -> List[Dict[str, Any]]:
        """List the most recent interactions, newest first."""
        try:
            return [interaction.to_document() for interaction in loop.recent_interactions(limit)]
        except LearningLoopError as e:
            logger.error(f'Failed to list interactions: {e}')
            raise Exception(f'Failed to list interactions: {e}')

    @mcp.tool()
    def embed_text(text: str) -> List[float]:
        """Embed text with the configured Bedrock model.

        Raises:
            Exception: If the text is empty or embedding fails
        """
        try:
            return loop.embed(text)
        except ValidationError as e:
            raise Exception(f'Invalid input: {e}')
        except LearningLoopError as e:
            logger.error(f'Embedding error in MCP tool: {e}')
            raise Exception(f'Embedding failed: {e}')

    @mcp.tool()
    def health() -> Dict[str, Any]:
        """Report component health, configuration and memory statistics."""
        return get_system_info(loop)

    return mcp


if __name__ == '__main__':
    config = load_config()
    loop = build_learning_loop(config)
    loop.start()
    try:
        create_mcp(loop).run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
    finally:
        loop.close()
