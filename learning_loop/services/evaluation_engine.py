"""
Evaluation Engine: LLM-as-judge scoring of completed interactions.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from ..models.core import Evaluation, Interaction, InteractionStatus
from ..models.events import (FEEDBACK_ITEMS, INTERACTION_COMPLETE, REFLECTION_COMPLETE, Event, parse_interaction_complete,
                             reflection_complete_payload)
from ..utils.bedrock_llm import BedrockLLM
from ..utils.errors import LearningLoopError, SchemaError, TransientServiceError
from ..utils.json_utils import parse_json_object
from ..utils.logging_config import get_logger
from .event_bus import EventBus
from .interaction_store import InteractionStore

logger = get_logger(__name__)

JUDGE_SYSTEM_PROMPT = """You are an expert curriculum evaluator. You judge how well an AI assistant answered an educator's question, using only the graph data the assistant actually retrieved as evidence.

Score each dimension on a continuous scale from 0.0 to 1.0.

## Grounding (weight 0.30)
Are the answer's claims supported by the retrieved graph results?
- 1.0: every claim traces to the results and citations are accurate
- 0.5: about half the claims are supported
- 0.0: fabricated, no relation to the results

## Accuracy (weight 0.30)
Is the information correct according to the curriculum represented in the graph?
- 1.0: entirely correct
- 0.5: a mix of correct and incorrect statements that affects understanding
- 0.0: incorrect throughout

## Completeness (weight 0.20)
Does the answer address every part of the question?
- 1.0: complete, including implicit sub-questions
- 0.5: covers about half of what was asked
- 0.0: off-topic, does not answer the question

## Pedagogy (weight 0.10)
Is the answer framed appropriately for educators, with progression and terminology where relevant?
- 1.0: fully appropriate educational framing
- 0.5: neutral, generic framing
- 0.0: inappropriate or misleading for teaching

## Clarity (weight 0.10)
Is the answer well structured and easy to follow?
- 1.0: clear on first reading
- 0.5: requires effort, structural issues
- 0.0: incomprehensible or contradictory

Also give exactly 3 specific strengths, exactly 3 specific weaknesses and exactly 3 actionable suggestions, referring to concrete parts of the answer.

## Output format
```json
{
    "grounding": 0.0,
    "accuracy": 0.0,
    "completeness": 0.0,
    "pedagogy": 0.0,
    "clarity": 0.0,
    "strengths": ["...", "...", "..."],
    "weaknesses": ["...", "...", "..."],
    "suggestions": ["...", "...", "..."]
}
```
"""  # noqa: E501


@dataclass
class JudgeContext:
    """Everything the judge sees about one interaction."""
    interaction_id: str
    query: str
    answer: str
    cypher_queries: List[str]
    evidence: str
    evidence_truncated: bool
    total_results: int


def format_cypher_queries(cypher_queries: List[str]) -> str:
    if not cypher_queries:
        return '(No Cypher queries were executed)'
    return '\n\n'.join(f'Query {i + 1}:\n```cypher\n{query}\n```' for i, query in enumerate(cypher_queries))


def format_graph_results(graph_results: List[Any], char_limit: int) -> Tuple[str, bool]:
    """Serialize evidence for the judge, cutting it at char_limit characters.

    Returns:
        Tuple of (formatted text, truncated flag)
    """
    if not graph_results:
        return '(No graph results were returned)', False

    serialized = json.dumps(graph_results, indent=2, default=str)
    if len(serialized) > char_limit:
        return f'```json\n{serialized[:char_limit]}\n... (truncated, {len(graph_results)} total results)\n```', True
    return f'```json\n{serialized}\n```', False


def build_judge_context(interaction: Interaction, evidence_char_limit: int) -> JudgeContext:
    evidence, truncated = format_graph_results(interaction.graph_results, evidence_char_limit)
    if truncated:
        logger.info(f'Evidence for interaction {interaction.id} truncated to {evidence_char_limit} characters '
                    f'({len(interaction.graph_results)} results)')
    return JudgeContext(interaction_id=interaction.id,
                        query=interaction.query,
                        answer=interaction.answer,
                        cypher_queries=list(interaction.cypher_queries),
                        evidence=evidence,
                        evidence_truncated=truncated,
                        total_results=len(interaction.graph_results))


class Scorer(ABC):
    """Scoring strategy producing an Evaluation for a judge context."""

    @abstractmethod
    def score(self, context: JudgeContext) -> Evaluation:
        """
        Raises:
            TransientServiceError: If the scoring backend fails or times out
            SchemaError: If the scoring output is malformed
        """


class LLMJudgeScorer(Scorer):
    """Scores interactions with a Bedrock model acting as judge."""

    def __init__(self, llm: BedrockLLM):
        self.llm = llm

    def _user_message(self, context: JudgeContext) -> str:
        return f"""# Question
"{context.query}"

# Assistant's answer
{context.answer}

# Cypher queries used
{format_cypher_queries(context.cypher_queries)}

# Graph results retrieved
{context.evidence}

Evaluate the answer against the rubric."""

    def score(self, context: JudgeContext) -> Evaluation:
        messages = [{
            'role': 'user',
            'content': [{
                'text': self._user_message(context)
            }]
        }, {
            'role': 'assistant',
            'content': [{
                'text': '```json'
            }]
        }]

        response, _ = self.llm.generate_response(messages=messages, system_prompt=JUDGE_SYSTEM_PROMPT, stop_sequences=['```'])
        return parse_judge_response(response)


def parse_judge_response(response: str) -> Evaluation:
    """Validate judge output into an Evaluation, recomputing overall.

    Raises:
        SchemaError: If the response is not JSON or fails the rubric schema
    """
    try:
        data = parse_json_object(response)
    except ValueError as e:
        raise SchemaError(f'Judge response is not a JSON object: {e}')

    if 'overall' in data:
        logger.debug(f"Ignoring judge-reported overall {data['overall']!r}; recomputing")

    return Evaluation.from_payload(data, feedback_items=FEEDBACK_ITEMS)


class EvaluationEngine:
    """Consumes `interaction.complete`, judges the interaction and emits `reflection.complete`."""

    def __init__(self, scorer: Scorer, bus: EventBus, interactions: InteractionStore, evidence_char_limit: int = 8000):
        self.scorer = scorer
        self.bus = bus
        self.interactions = interactions
        self.evidence_char_limit = evidence_char_limit

        logger.info('Initialized EvaluationEngine')

    def register(self) -> None:
        self.bus.subscribe(INTERACTION_COMPLETE, self.handle_interaction_complete)

    def handle_interaction_complete(self, event: Event) -> None:
        try:
            interaction = parse_interaction_complete(event.payload)
        except SchemaError as e:
            logger.error(f'Dropping malformed {event.name} event {event.event_id}: {e}')
            return

        evaluation = self.evaluate(interaction)
        if evaluation is None:
            self._discard(interaction.id)
            return

        self._record(interaction.id, evaluation)
        self.bus.publish(REFLECTION_COMPLETE, reflection_complete_payload(interaction, evaluation))
        logger.info(f'Reflection complete for interaction {interaction.id}. Overall: {evaluation.overall:.3f}')

    def evaluate(self, interaction: Interaction) -> Optional[Evaluation]:
        """
        Score one interaction.

        Returns:
            The Evaluation, or None when judging failed (the failure is logged)
        """
        context = build_judge_context(interaction, self.evidence_char_limit)

        try:
            evaluation = self.scorer.score(context)
        except TransientServiceError as e:
            logger.error(f'Judge call failed for interaction {interaction.id}: {e}')
            return None
        except SchemaError as e:
            logger.error(f'Judge output rejected for interaction {interaction.id}: {e}')
            return None

        logger.debug(f'Interaction {interaction.id} scored: grounding={evaluation.grounding:.2f}, '
                     f'accuracy={evaluation.accuracy:.2f}, overall={evaluation.overall:.3f}')
        return evaluation

    def _record(self, interaction_id: str, evaluation: Evaluation) -> None:
        # Bookkeeping only; curation reads the evaluation from the event
        try:
            self.interactions.save_evaluation(interaction_id, evaluation)
            self.interactions.update(interaction_id, {'status': InteractionStatus.EVALUATED.value})
        except LearningLoopError as e:
            logger.warning(f'Failed to record evaluation for interaction {interaction_id}: {e}')

    def _discard(self, interaction_id: str) -> None:
        try:
            self.interactions.update(interaction_id, {'status': InteractionStatus.DISCARDED.value})
        except LearningLoopError as e:
            logger.warning(f'Could not mark unevaluated interaction {interaction_id} as discarded: {e}')
