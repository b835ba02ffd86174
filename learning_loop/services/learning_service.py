"""
Learning loop service: wires capture, evaluation, curation and retrieval together.
"""

import time
from typing import Any, Dict, List, Optional

from ..models.core import Interaction, InteractionDraft, InteractionResult, Memory, is_number
from ..models.events import INTERACTION_COMPLETE, interaction_complete_payload
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig
from ..utils.errors import LearningLoopError
from ..utils.logging_config import get_logger, setup_logging
from ..utils.neptune_client import NeptuneClient
from ..utils.opensearch_client import OpenSearchClient
from .background import BackgroundWorker
from .evaluation_engine import EvaluationEngine, LLMJudgeScorer, Scorer
from .event_bus import EventBus
from .interaction_store import InteractionStore
from .memory_curation import MemoryCurator
from .memory_store import MemoryStore
from .retrieval import RetrievalService

logger = get_logger(__name__)


class LearningLoop:
    """Self-improving loop around a question-answering agent.

    The request path calls `begin_interaction` before generating an answer and
    `complete_interaction` once it has one; everything after that runs in the
    background and never reaches the caller.
    """

    def __init__(self,
                 config: AppConfig,
                 opensearch: OpenSearchClient,
                 embedder: BedrockEmbed,
                 scorer: Scorer,
                 graph: Optional[NeptuneClient] = None,
                 llm: Optional[BedrockLLM] = None):
        """
        Args:
            config: Application configuration
            opensearch: Client for the interaction, evaluation, feedback and memory indices
            embedder: Embedding client
            scorer: Evaluation strategy
            graph: Optional Neptune client for provenance links
            llm: Judge model client, when the scorer uses one (reported by health checks)
        """
        self.config = config
        self.opensearch = opensearch
        self.embedder = embedder
        self.scorer = scorer
        self.graph = graph
        self.llm = llm

        self.interactions = InteractionStore(opensearch)
        self.memories = MemoryStore(opensearch, config.bedrock_embed.dimension)
        self.bus = EventBus(config.event_bus)
        self.worker = BackgroundWorker(max_workers=1, name='interaction-complete')

        self.evaluator = EvaluationEngine(scorer, self.bus, self.interactions, config.learning.evidence_char_limit)
        self.curator = MemoryCurator(embedder, self.memories, self.interactions, self.bus, config.learning, graph)
        self.retrieval = RetrievalService(embedder, self.memories, config.learning.retrieval_threshold)
        self._started = False

    def start(self) -> None:
        """Prepare indices and subscribe the pipeline stages; safe to call more than once."""
        if self._started:
            return
        self.interactions.ensure_indices()
        self.memories.ensure_index()
        self.evaluator.register()
        self.curator.register()
        self._started = True
        logger.info('Learning loop started')

    def begin_interaction(self, query: str, model: str, temperature: float) -> str:
        """
        Record a user turn before the answer is generated.

        Returns:
            The interaction id to pass to complete_interaction

        Raises:
            ValidationError: If the query is empty or temperature is not a number
            StorageError: If the record could not be written
        """
        return self.interactions.create(InteractionDraft(query=query, model=model, temperature=temperature))

    def complete_interaction(self, interaction_id: str, result: InteractionResult) -> bool:
        """
        Hand the finished answer to the learning pipeline without waiting for it.

        Returns:
            True if the continuation was scheduled
        """
        if not isinstance(result.answer, str) or not result.answer.strip():
            logger.error(f'Interaction {interaction_id} has no answer; not completing it')
            return False
        return self.worker.spawn(self._finish_interaction, interaction_id, result, description=f'completion of {interaction_id}')

    def _finish_interaction(self, interaction_id: str, result: InteractionResult) -> None:
        try:
            self.interactions.update(interaction_id, result.to_fields(self.config.learning.expected_evidence_count))
            interaction = self.interactions.get(interaction_id)
        except LearningLoopError as e:
            logger.error(f'Failed to complete interaction {interaction_id}: {e}')
            return

        self.bus.publish(INTERACTION_COMPLETE, interaction_complete_payload(interaction))
        logger.info(f'Interaction {interaction_id} completed ({len(interaction.evidence_node_ids)} evidence nodes, '
                    f'grounding rate {interaction.grounding_rate:.2f})')

    def retrieve_similar(self, query: str, k: Optional[int] = None, include_embedding: bool = False) -> List[Memory]:
        """Memories to use as few-shot examples for a new query; empty on any failure."""
        top_k = self.config.learning.retrieval_top_k if k is None else k
        return self.retrieval.retrieve_similar(query, top_k, include_embedding=include_embedding)

    def record_feedback(self, interaction_id: str, thumbs_up: Optional[bool] = None,
                        note: Optional[str] = None) -> Dict[str, Any]:
        """
        Raises:
            ValidationError: If neither value is given or a value has the wrong type
            NotFoundError: If the interaction is unknown
            StorageError: If the record could not be written
        """
        return self.interactions.record_feedback(interaction_id, thumbs_up=thumbs_up, note=note)

    def get_feedback(self, interaction_id: str) -> Optional[Dict[str, Any]]:
        return self.interactions.get_feedback(interaction_id)

    def recent_interactions(self, limit: int = 20) -> List[Interaction]:
        return self.interactions.recent_interactions(limit)

    def interaction_stats(self, evaluation_limit: int = 1000) -> Dict[str, Any]:
        """Interaction count and average scores over the oldest `evaluation_limit` evaluations."""
        evaluations = self.interactions.list_evaluations(evaluation_limit)
        averages = {}
        for score_field in ('grounding_score', 'accuracy_score', 'completeness_score', 'pedagogy_score',
                            'clarity_score', 'overall_score'):
            values = [evaluation[score_field] for evaluation in evaluations if is_number(evaluation.get(score_field))]
            averages[f'avg_{score_field}'] = sum(values) / len(values) if values else 0.0
        return {
            'total_interactions': self.interactions.count_interactions(),
            'total_evaluations': len(evaluations),
            **averages,
        }

    def embed(self, text: str) -> List[float]:
        """
        Raises:
            ValidationError: If text is empty
            TransientServiceError: If the embedding call failed
            SchemaError: If the vector has the wrong dimension
        """
        return self.embedder.embed(text)

    def memory_stats(self) -> Dict[str, Any]:
        return self.memories.stats()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for all background work, including follow-up events, to finish."""
        deadline = None if timeout is None else time.monotonic() + timeout
        if not self.worker.join(timeout):
            return False
        remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
        return self.bus.join(remaining)

    def close(self, timeout: Optional[float] = 30.0) -> None:
        self.worker.shutdown(timeout)
        self.bus.shutdown(timeout)
        if self.graph is not None:
            self.graph.close()
        logger.info('Learning loop closed')


def build_learning_loop(config: AppConfig,
                        opensearch_client: Optional[Any] = None,
                        embed_runtime: Optional[Any] = None,
                        llm_runtime: Optional[Any] = None,
                        neptune_g: Optional[Any] = None) -> LearningLoop:
    """Create a LearningLoop from configuration.

    The optional low-level clients replace the ones otherwise built from config.

    Args:
        config: Application configuration
        opensearch_client: opensearch-py client
        embed_runtime: bedrock-runtime client used for embeddings
        llm_runtime: bedrock-runtime client used for judging
        neptune_g: Gremlin traversal source; Neptune is used when given or when an endpoint is configured
    """
    setup_logging(config)

    opensearch = OpenSearchClient(config.opensearch, client=opensearch_client)
    embedder = BedrockEmbed(config.bedrock_embed, runtime=embed_runtime)
    llm = BedrockLLM(config.bedrock_llm, runtime=llm_runtime)

    graph = None
    if neptune_g is not None or config.neptune.enabled:
        graph = NeptuneClient(config.neptune, g=neptune_g)
    else:
        logger.info('No Neptune endpoint configured; provenance links disabled')

    return LearningLoop(config, opensearch, embedder, LLMJudgeScorer(llm), graph=graph, llm=llm)
