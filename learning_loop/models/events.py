"""
Event definitions for the asynchronous learning loop.

- `interaction.complete`: emitted once an interaction has its final answer; consumed by the evaluation engine
- `reflection.complete`: emitted by the evaluation engine; consumed by memory curation
"""

import copy
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from ..utils.errors import SchemaError
from ..utils.timestamp_utils import to_iso
from .core import Evaluation, Interaction

INTERACTION_COMPLETE = 'interaction.complete'
REFLECTION_COMPLETE = 'reflection.complete'
EVENT_NAMES = (INTERACTION_COMPLETE, REFLECTION_COMPLETE)

# The judge must return exactly this many strengths, weaknesses and suggestions
FEEDBACK_ITEMS = 3


@dataclass(frozen=True)
class Event:
    """A named payload delivered between pipeline stages."""
    name: str
    payload: Dict[str, Any]
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    published_at: str = field(default_factory=to_iso)

    @classmethod
    def create(cls, name: str, payload: Dict[str, Any]) -> 'Event':
        # Publishers keep their own dict; subscribers get a private copy
        return cls(name=name, payload=copy.deepcopy(payload))

    @property
    def interaction_id(self) -> str:
        return self.payload.get('interactionId', '') if isinstance(self.payload, dict) else ''


def interaction_complete_payload(interaction: Interaction) -> Dict[str, Any]:
    return interaction.to_payload()


def reflection_complete_payload(interaction: Interaction, evaluation: Evaluation) -> Dict[str, Any]:
    payload = interaction.to_payload()
    payload['evaluation'] = evaluation.to_payload()
    return payload


def parse_interaction_complete(payload: Dict[str, Any]) -> Interaction:
    """
    Raises:
        SchemaError: If the payload is malformed
    """
    return Interaction.from_payload(payload)


def parse_reflection_complete(payload: Dict[str, Any]) -> Tuple[Interaction, Evaluation]:
    """
    Raises:
        SchemaError: If the payload or its evaluation is malformed
    """
    interaction = Interaction.from_payload(payload)
    if 'evaluation' not in payload:
        raise SchemaError('reflection.complete payload is missing evaluation')
    evaluation = Evaluation.from_payload(payload['evaluation'], feedback_items=FEEDBACK_ITEMS)
    return interaction, evaluation
