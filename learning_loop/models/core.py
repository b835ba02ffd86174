"""
Core data models for the learning loop: interactions, evaluations and curated memories.
"""

import json
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..utils.errors import SchemaError, ValidationError
from ..utils.timestamp_utils import parse_timestamp, to_iso, utc_now

# Rubric weights; they sum to 1.0
WEIGHTS = {
    'grounding': 0.30,
    'accuracy': 0.30,
    'completeness': 0.20,
    'pedagogy': 0.10,
    'clarity': 0.10,
}
DIMENSIONS = tuple(WEIGHTS)
FEEDBACK_FIELDS = ('strengths', 'weaknesses', 'suggestions')
OVERALL_TOLERANCE = 1e-6

_CITATION_PATTERN = re.compile(r'\[([^\]]+)\]')


class InteractionStatus(str, Enum):
    """Lifecycle of an interaction."""
    CREATED = 'created'
    COMPLETED = 'completed'
    EVALUATED = 'evaluated'
    PROMOTED = 'promoted'
    DISCARDED = 'discarded'


ALLOWED_TRANSITIONS = {
    InteractionStatus.CREATED: {InteractionStatus.COMPLETED},
    InteractionStatus.COMPLETED: {InteractionStatus.EVALUATED, InteractionStatus.DISCARDED},
    InteractionStatus.EVALUATED: {InteractionStatus.PROMOTED, InteractionStatus.DISCARDED},
    InteractionStatus.PROMOTED: set(),
    InteractionStatus.DISCARDED: set(),
}


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _unit_score(name: str, value: Any) -> float:
    if not is_number(value):
        raise SchemaError(f'{name} must be a number, got {value!r}')
    if not 0.0 <= value <= 1.0:
        raise SchemaError(f'{name} must be within [0, 1], got {value}')
    return float(value)


def _str_list(name: str, value: Any) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise SchemaError(f'{name} must be a list of strings')
    return list(value)


def _required_str(name: str, value: Any, allow_empty: bool = False) -> str:
    if not isinstance(value, str) or (not allow_empty and not value.strip()):
        raise SchemaError(f'{name} must be a non-empty string')
    return value


def _number(name: str, value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    if not is_number(value):
        raise SchemaError(f'{name} must be a number, got {value!r}')
    return float(value)


def _timestamp(name: str, value: Any, default: Optional[datetime] = None) -> datetime:
    if value is None:
        return default or utc_now()
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError) as e:
        raise SchemaError(f'{name} is not a timestamp: {e}')


def compute_overall(grounding: float, accuracy: float, completeness: float, pedagogy: float, clarity: float) -> float:
    """Weighted rubric score."""
    overall = (WEIGHTS['grounding'] * grounding + WEIGHTS['accuracy'] * accuracy + WEIGHTS['completeness'] * completeness +
               WEIGHTS['pedagogy'] * pedagogy + WEIGHTS['clarity'] * clarity)
    # Float error can push an all-ones score just past 1.0
    return min(max(overall, 0.0), 1.0)


def extract_evidence_ids(answer: str) -> List[str]:
    """Collect `[Node-ID]` citations from an answer, in order of appearance."""
    return [match.strip() for match in _CITATION_PATTERN.findall(answer or '') if match.strip()]


def compute_grounding_rate(evidence_node_ids: List[str], cypher_queries: List[str], expected_count: int = 10) -> float:
    """Fraction of cited evidence relative to the expected count, capped at 1.0.

    An answer produced without executing any query cannot be grounded, so its rate is 0.0.
    """
    if not cypher_queries:
        return 0.0
    return min(len(evidence_node_ids) / expected_count, 1.0)


@dataclass
class InteractionDraft:
    """Fields known when a user turn starts."""
    query: str
    model: str
    temperature: float

    def validate(self) -> None:
        if not isinstance(self.query, str) or not self.query.strip():
            raise ValidationError('Interaction query must not be empty')
        if not is_number(self.temperature):
            raise ValidationError(f'Temperature must be a number, got {self.temperature!r}')


@dataclass
class InteractionResult:
    """Answer and execution metadata reported once the answer is available."""
    answer: str
    cypher_queries: List[str] = field(default_factory=list)
    graph_results: List[Any] = field(default_factory=list)
    confidence: float = 0.0
    step_count: int = 0
    latency_ms: int = 0
    memories_used: List[str] = field(default_factory=list)

    def to_fields(self, expected_evidence_count: int = 10) -> Dict[str, Any]:
        """Update payload for InteractionStore.update with derived evidence metrics."""
        evidence_node_ids = extract_evidence_ids(self.answer)
        return {
            'answer': self.answer,
            'cypher_queries': list(self.cypher_queries),
            'graph_results': list(self.graph_results),
            'evidence_node_ids': evidence_node_ids,
            'confidence': self.confidence,
            'grounding_rate': compute_grounding_rate(evidence_node_ids, self.cypher_queries, expected_evidence_count),
            'step_count': self.step_count,
            'latency_ms': self.latency_ms,
            'memories_used': list(self.memories_used),
        }


@dataclass
class Interaction:
    """One captured user query/answer exchange with its execution metadata."""
    id: str
    query: str
    model: str
    temperature: float
    answer: str = ''
    cypher_queries: List[str] = field(default_factory=list)
    graph_results: List[Any] = field(default_factory=list)
    evidence_node_ids: List[str] = field(default_factory=list)
    confidence: float = 0.0
    grounding_rate: float = 0.0
    step_count: int = 0
    latency_ms: int = 0
    memories_used: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    status: InteractionStatus = InteractionStatus.CREATED

    def to_document(self) -> Dict[str, Any]:
        """Storage representation (snake_case)."""
        return {
            'id': self.id,
            'query': self.query,
            'answer': self.answer,
            'model': self.model,
            'temperature': self.temperature,
            'cypher_queries': list(self.cypher_queries),
            'graph_results': list(self.graph_results),
            'evidence_node_ids': list(self.evidence_node_ids),
            'confidence': self.confidence,
            'grounding_rate': self.grounding_rate,
            'step_count': self.step_count,
            'latency_ms': self.latency_ms,
            'memories_used': list(self.memories_used),
            'created_at': to_iso(self.created_at),
            'status': self.status.value,
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> 'Interaction':
        try:
            status = InteractionStatus(document.get('status', InteractionStatus.CREATED.value))
        except ValueError:
            raise SchemaError(f"Unknown interaction status: {document.get('status')!r}")
        graph_results = document.get('graph_results') or []
        if not isinstance(graph_results, list):
            raise SchemaError('graph_results must be a list')
        return cls(id=_required_str('id', document.get('id')),
                   query=_required_str('query', document.get('query')),
                   model=_required_str('model', document.get('model', ''), allow_empty=True),
                   temperature=_number('temperature', document.get('temperature')),
                   answer=_required_str('answer', document.get('answer', ''), allow_empty=True),
                   cypher_queries=_str_list('cypher_queries', document.get('cypher_queries')),
                   graph_results=graph_results,
                   evidence_node_ids=_str_list('evidence_node_ids', document.get('evidence_node_ids')),
                   confidence=_number('confidence', document.get('confidence')),
                   grounding_rate=_number('grounding_rate', document.get('grounding_rate')),
                   step_count=int(_number('step_count', document.get('step_count'))),
                   latency_ms=int(_number('latency_ms', document.get('latency_ms'))),
                   memories_used=_str_list('memories_used', document.get('memories_used')),
                   created_at=_timestamp('created_at', document.get('created_at')),
                   status=status)

    def to_payload(self) -> Dict[str, Any]:
        """Event representation (camelCase, `interaction.complete` shape)."""
        return {
            'interactionId': self.id,
            'query': self.query,
            'answer': self.answer,
            'model': self.model,
            'temperature': self.temperature,
            'cypherQueries': list(self.cypher_queries),
            'graphResults': list(self.graph_results),
            'evidenceNodeIds': list(self.evidence_node_ids),
            'confidence': self.confidence,
            'groundingRate': self.grounding_rate,
            'stepCount': self.step_count,
            'latencyMs': self.latency_ms,
            'memoriesUsed': list(self.memories_used),
            'timestamp': to_iso(self.created_at),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'Interaction':
        """Parse an event payload; the interaction must already carry an answer.

        Raises:
            SchemaError: If a field is missing or has the wrong shape
        """
        if not isinstance(payload, dict):
            raise SchemaError('Event payload must be an object')
        graph_results = payload.get('graphResults') or []
        if not isinstance(graph_results, list):
            raise SchemaError('graphResults must be a list')
        return cls(id=_required_str('interactionId', payload.get('interactionId')),
                   query=_required_str('query', payload.get('query')),
                   answer=_required_str('answer', payload.get('answer')),
                   model=_required_str('model', payload.get('model', ''), allow_empty=True),
                   temperature=_number('temperature', payload.get('temperature')),
                   cypher_queries=_str_list('cypherQueries', payload.get('cypherQueries')),
                   graph_results=graph_results,
                   evidence_node_ids=_str_list('evidenceNodeIds', payload.get('evidenceNodeIds')),
                   confidence=_number('confidence', payload.get('confidence')),
                   grounding_rate=_number('groundingRate', payload.get('groundingRate')),
                   step_count=int(_number('stepCount', payload.get('stepCount'))),
                   latency_ms=int(_number('latencyMs', payload.get('latencyMs'))),
                   memories_used=_str_list('memoriesUsed', payload.get('memoriesUsed')),
                   created_at=_timestamp('timestamp', payload.get('timestamp')),
                   status=InteractionStatus.COMPLETED)


@dataclass(frozen=True)
class Evaluation:
    """Five-dimension rubric judgment of one interaction.

    `overall` is always the weighted sum of the five dimensions; construct through
    `from_scores` to have it computed.
    """
    grounding: float
    accuracy: float
    completeness: float
    pedagogy: float
    clarity: float
    overall: float
    strengths: Tuple[str, ...] = ()
    weaknesses: Tuple[str, ...] = ()
    suggestions: Tuple[str, ...] = ()

    def __post_init__(self):
        for name in DIMENSIONS + ('overall',):
            _unit_score(name, getattr(self, name))
        expected = compute_overall(self.grounding, self.accuracy, self.completeness, self.pedagogy, self.clarity)
        if abs(self.overall - expected) > OVERALL_TOLERANCE:
            raise SchemaError(f'overall {self.overall} does not match weighted score {expected}')

    @classmethod
    def from_scores(cls,
                    grounding: float,
                    accuracy: float,
                    completeness: float,
                    pedagogy: float,
                    clarity: float,
                    strengths: Tuple[str, ...] = (),
                    weaknesses: Tuple[str, ...] = (),
                    suggestions: Tuple[str, ...] = ()) -> 'Evaluation':
        scores = {name: _unit_score(name, value) for name, value in zip(DIMENSIONS, (grounding, accuracy, completeness, pedagogy, clarity))}
        return cls(overall=compute_overall(**scores),
                   strengths=tuple(strengths),
                   weaknesses=tuple(weaknesses),
                   suggestions=tuple(suggestions),
                   **scores)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], feedback_items: Optional[int] = None) -> 'Evaluation':
        """Parse an evaluation object; any reported overall is ignored and recomputed.

        Args:
            payload: Dictionary with the five scores and feedback lists
            feedback_items: Exact length required for each feedback list (None accepts any)

        Raises:
            SchemaError: If a score is missing/out of range or a list has the wrong shape
        """
        if not isinstance(payload, dict):
            raise SchemaError('Evaluation must be an object')
        scores = {}
        for name in DIMENSIONS:
            if name not in payload:
                raise SchemaError(f'Evaluation is missing {name}')
            scores[name] = _unit_score(name, payload[name])

        feedback = {}
        for name in FEEDBACK_FIELDS:
            if name not in payload:
                raise SchemaError(f'Evaluation is missing {name}')
            items = _str_list(name, payload[name])
            if feedback_items is not None:
                if len(items) != feedback_items:
                    raise SchemaError(f'{name} must contain exactly {feedback_items} items, got {len(items)}')
                if not all(item.strip() for item in items):
                    raise SchemaError(f'{name} must not contain empty items')
            feedback[name] = tuple(items)

        return cls.from_scores(**scores, **feedback)

    def to_payload(self) -> Dict[str, Any]:
        return {
            'grounding': self.grounding,
            'accuracy': self.accuracy,
            'completeness': self.completeness,
            'pedagogy': self.pedagogy,
            'clarity': self.clarity,
            'overall': self.overall,
            'strengths': list(self.strengths),
            'weaknesses': list(self.weaknesses),
            'suggestions': list(self.suggestions),
        }

    def evaluator_notes(self) -> str:
        return json.dumps({name: list(getattr(self, name)) for name in FEEDBACK_FIELDS})


@dataclass
class Memory:
    """A curated, embedded exemplar derived from a high-scoring interaction."""
    id: str
    interaction_id: str
    query: str
    answer: str
    query_patterns: List[str]
    confidence: float
    grounding_score: float
    accuracy_score: float
    completeness_score: float
    pedagogy_score: float
    clarity_score: float
    overall_score: float
    evaluator_notes: str
    embedding: List[float]  # Empty when read back from the index without include_embedding
    memories_used: List[str]
    created_at: datetime

    @staticmethod
    def id_for(interaction_id: str) -> str:
        return f'memory-{interaction_id}'

    @classmethod
    def from_interaction(cls, interaction: Interaction, evaluation: Evaluation, embedding: List[float]) -> 'Memory':
        return cls(id=cls.id_for(interaction.id),
                   interaction_id=interaction.id,
                   query=interaction.query,
                   answer=interaction.answer,
                   query_patterns=list(interaction.cypher_queries),
                   confidence=interaction.confidence,
                   grounding_score=evaluation.grounding,
                   accuracy_score=evaluation.accuracy,
                   completeness_score=evaluation.completeness,
                   pedagogy_score=evaluation.pedagogy,
                   clarity_score=evaluation.clarity,
                   overall_score=evaluation.overall,
                   evaluator_notes=evaluation.evaluator_notes(),
                   embedding=list(embedding),
                   memories_used=list(interaction.memories_used),
                   created_at=utc_now())

    def to_document(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'interaction_id': self.interaction_id,
            'query': self.query,
            'answer': self.answer,
            'query_patterns': list(self.query_patterns),
            'confidence': self.confidence,
            'grounding_score': self.grounding_score,
            'accuracy_score': self.accuracy_score,
            'completeness_score': self.completeness_score,
            'pedagogy_score': self.pedagogy_score,
            'clarity_score': self.clarity_score,
            'overall_score': self.overall_score,
            'evaluator_notes': self.evaluator_notes,
            'embedding': list(self.embedding),
            'memories_used': list(self.memories_used),
            'created_at': to_iso(self.created_at),
        }

    @classmethod
    def from_record(cls, record: Any) -> 'Memory':
        """Validate an index row into a Memory.

        Raises:
            SchemaError: If a required field is missing or malformed
        """
        if not isinstance(record, dict):
            raise SchemaError('Memory record must be an object')
        notes = record.get('evaluator_notes', '')
        if not isinstance(notes, str):
            notes = json.dumps(notes)
        embedding = record.get('embedding') or []
        if not isinstance(embedding, list) or not all(is_number(v) for v in embedding):
            raise SchemaError('embedding must be a list of numbers')
        return cls(id=_required_str('id', record.get('id')),
                   interaction_id=_required_str('interaction_id', record.get('interaction_id', ''), allow_empty=True),
                   query=_required_str('query', record.get('query')),
                   answer=_required_str('answer', record.get('answer', ''), allow_empty=True),
                   query_patterns=_str_list('query_patterns', record.get('query_patterns')),
                   confidence=_number('confidence', record.get('confidence')),
                   grounding_score=_unit_score('grounding_score', record.get('grounding_score', 0.0)),
                   accuracy_score=_unit_score('accuracy_score', record.get('accuracy_score', 0.0)),
                   completeness_score=_unit_score('completeness_score', record.get('completeness_score', 0.0)),
                   pedagogy_score=_unit_score('pedagogy_score', record.get('pedagogy_score', 0.0)),
                   clarity_score=_unit_score('clarity_score', record.get('clarity_score', 0.0)),
                   overall_score=_unit_score('overall_score', record.get('overall_score')),
                   evaluator_notes=notes,
                   embedding=[float(v) for v in embedding],
                   memories_used=_str_list('memories_used', record.get('memories_used')),
                   created_at=_timestamp('created_at', record.get('created_at'), default=datetime.fromtimestamp(0, tz=timezone.utc)))
