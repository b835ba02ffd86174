"""
Retrieval Service: nearest high-quality memories for a new query, plus few-shot prompt rendering.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import Memory
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.errors import LearningLoopError, SchemaError
from ..utils.logging_config import get_logger
from .memory_store import MemoryStore

logger = get_logger(__name__)

ANSWER_EXCERPT_CHARS = 200
NO_EXAMPLES_MESSAGE = ('No similar past interactions available yet. This is a new type of query - '
                       'approach it carefully by exploring the graph schema.')


def parse_memory_row(row: Any) -> Tuple[Optional[Memory], str]:
    """
    Validate one index row.

    Returns:
        (Memory, '') for a valid row, (None, reason) otherwise
    """
    if not isinstance(row, dict) or not isinstance(row.get('record'), dict):
        return None, 'row has no record'
    try:
        return Memory.from_record(row['record']), ''
    except SchemaError as e:
        return None, str(e)


class RetrievalService:
    """Embeds a query and returns the closest memories above the quality floor."""

    def __init__(self, embedder: BedrockEmbed, memories: MemoryStore, retrieval_threshold: float = 0.25):
        self.embedder = embedder
        self.memories = memories
        self.retrieval_threshold = retrieval_threshold

        logger.info(f'Initialized RetrievalService (quality floor {retrieval_threshold})')

    def retrieve_similar(self, query: str, k: int = 3, include_embedding: bool = False) -> List[Memory]:
        """
        Find up to k memories similar to the query.

        Never raises: any failure degrades to an empty list so generation can proceed without examples.

        Args:
            query: Incoming user query
            k: Maximum number of memories
            include_embedding: Load each memory's stored vector. Without it the
                returned memories have an empty `embedding`.

        Returns:
            Memories ordered by similarity, most similar first
        """
        if not isinstance(k, int) or isinstance(k, bool) or k <= 0:
            return []
        if not isinstance(query, str) or not query.strip():
            logger.warning('Empty query; skipping memory retrieval')
            return []

        try:
            embedding = self.embedder.embed(query)
            rows = self.memories.query_nearest(embedding, k, self.retrieval_threshold, include_embedding=include_embedding)
        except LearningLoopError as e:
            logger.error(f'Memory retrieval failed: {e}')
            return []
        except Exception as e:
            logger.error(f'Unexpected error during memory retrieval: {e}')
            return []

        scored = []
        for row in rows:
            memory, reason = parse_memory_row(row)
            if memory is None:
                logger.warning(f'Skipping invalid memory row: {reason}')
                continue
            if memory.overall_score <= self.retrieval_threshold:
                continue
            scored.append((row.get('score') or 0.0, memory))

        # sorted() is stable; equal scores keep index order
        scored = sorted(scored, key=lambda item: item[0], reverse=True)[:k]

        logger.info(f'Retrieved {len(scored)} memories for query')
        return [memory for _, memory in scored]


def _why_it_worked(evaluator_notes: str) -> str:
    try:
        notes: Dict[str, Any] = json.loads(evaluator_notes)
    except (TypeError, ValueError):
        return evaluator_notes
    if isinstance(notes, dict) and isinstance(notes.get('strengths'), list):
        return f"Strengths: {', '.join(str(s) for s in notes['strengths'])}"
    return evaluator_notes


def format_few_shot_examples(memories: List[Memory]) -> str:
    """Render retrieved memories as the few-shot block of a generation prompt."""
    if not memories:
        return NO_EXAMPLES_MESSAGE

    examples = []
    for index, memory in enumerate(memories):
        cypher_query = memory.query_patterns[0] if memory.query_patterns else 'No Cypher query recorded'
        answer = memory.answer
        if len(answer) > ANSWER_EXCERPT_CHARS:
            answer = answer[:ANSWER_EXCERPT_CHARS] + '...'

        examples.append(f"""## Example {index + 1} (Quality Score: {memory.overall_score:.2f})

**User Query**: "{memory.query}"

**Cypher Used**:
```cypher
{cypher_query}
```

**Answer** (excerpt):
"{answer}"

**Why This Worked**: {_why_it_worked(memory.evaluator_notes)}

**Key Takeaways**:
- Confidence: {memory.confidence:.2f}
- Grounding: {memory.grounding_score:.2f}
- Accuracy: {memory.accuracy_score:.2f}
""")

    return '\n---\n\n'.join(examples)
