"""
Interaction Store for the durable log of user turns and their evaluations.
"""

import uuid
from typing import Any, Dict, List, Optional

from ..models.core import ALLOWED_TRANSITIONS, Evaluation, Interaction, InteractionDraft, InteractionStatus
from ..utils.errors import NotFoundError, SchemaError, StorageError, ValidationError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import (EVALUATION_INDEX, FEEDBACK_INDEX, INTERACTION_INDEX, OpenSearchClient,
                                       OpenSearchError)
from ..utils.timestamp_utils import to_iso

logger = get_logger(__name__)

UPDATABLE_FIELDS = frozenset({
    'answer',
    'cypher_queries',
    'graph_results',
    'evidence_node_ids',
    'confidence',
    'grounding_rate',
    'step_count',
    'latency_ms',
    'memories_used',
    'status',
})


class InteractionStore:
    """Id-keyed interaction records: created pending, completed by a single update, never deleted."""

    def __init__(self, opensearch: OpenSearchClient):
        """
        Initialize the interaction store.

        Args:
            opensearch: OpenSearchClient hosting the interaction, evaluation and feedback indices
        """
        self.opensearch = opensearch
        logger.info('Initialized InteractionStore')

    def ensure_indices(self) -> None:
        try:
            self.opensearch.create_index_if_not_exists(INTERACTION_INDEX)
            self.opensearch.create_index_if_not_exists(EVALUATION_INDEX)
            self.opensearch.create_index_if_not_exists(FEEDBACK_INDEX)
        except OpenSearchError as e:
            raise StorageError(f'Failed to prepare interaction indices: {e}')

    def create(self, draft: InteractionDraft) -> str:
        """Record a new interaction in the `created` state.

        Args:
            draft: Query, model and temperature known at the start of the turn

        Returns:
            The new interaction id

        Raises:
            ValidationError: If the draft is incomplete
            StorageError: If the record could not be written
        """
        draft.validate()
        interaction = Interaction(id=str(uuid.uuid4()), query=draft.query, model=draft.model, temperature=draft.temperature)

        try:
            created = self.opensearch.create_document(interaction.id, interaction.to_document(), INTERACTION_INDEX)
        except OpenSearchError as e:
            logger.error(f'Failed to create interaction: {e}')
            raise StorageError(f'Failed to create interaction: {e}')

        if not created:
            raise StorageError(f'Interaction id collision: {interaction.id}')

        logger.debug(f'Created interaction {interaction.id}')
        return interaction.id

    def get(self, interaction_id: str) -> Interaction:
        """
        Raises:
            NotFoundError: If the id is unknown
            StorageError: If the record could not be read or parsed
        """
        try:
            document = self.opensearch.get_document(interaction_id, INTERACTION_INDEX)
        except OpenSearchError as e:
            raise StorageError(f'Failed to read interaction {interaction_id}: {e}')

        if document is None:
            raise NotFoundError(f'Interaction not found: {interaction_id}')

        try:
            return Interaction.from_document(document)
        except SchemaError as e:
            raise StorageError(f'Stored interaction {interaction_id} is malformed: {e}')

    def update(self, interaction_id: str, fields: Dict[str, Any]) -> bool:
        """Overwrite answer, metric and status fields of an existing interaction.

        Supplying an answer to a `created` interaction moves it to `completed`.
        Re-applying values that are already stored issues no write.

        Args:
            interaction_id: Interaction to update
            fields: Subset of UPDATABLE_FIELDS

        Returns:
            True on success

        Raises:
            ValidationError: On unknown fields, malformed values, an illegal status
                transition or completion without an answer
            NotFoundError: If the id is unknown
            StorageError: If the record could not be read or written
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f'Cannot update interaction fields: {sorted(unknown)}')

        changes = dict(fields)
        if 'status' in changes:
            try:
                changes['status'] = InteractionStatus(changes['status']).value
            except ValueError:
                raise ValidationError(f"Unknown interaction status: {changes['status']!r}")

        current = self.get(interaction_id)
        stored = current.to_document()
        changes = {name: value for name, value in changes.items() if stored.get(name) != value}

        if current.status == InteractionStatus.CREATED and changes.get('answer') and 'status' not in changes:
            changes['status'] = InteractionStatus.COMPLETED.value

        if 'status' in changes:
            target = InteractionStatus(changes['status'])
            if target not in ALLOWED_TRANSITIONS[current.status]:
                raise ValidationError(f'Illegal status transition for {interaction_id}: '
                                      f'{current.status.value} -> {target.value}')

        # The merged record must still parse, or later reads would fail
        try:
            merged = Interaction.from_document({**stored, **changes})
        except SchemaError as e:
            raise ValidationError(f'Invalid update for interaction {interaction_id}: {e}')

        if merged.status == InteractionStatus.COMPLETED and not merged.answer.strip():
            raise ValidationError(f'Interaction {interaction_id} cannot be completed without an answer')

        if not changes:
            logger.debug(f'Update of interaction {interaction_id} is a no-op')
            return True

        try:
            updated = self.opensearch.update_document(interaction_id, changes, INTERACTION_INDEX)
        except OpenSearchError as e:
            logger.error(f'Failed to update interaction {interaction_id}: {e}')
            raise StorageError(f'Failed to update interaction: {e}')

        if not updated:
            raise NotFoundError(f'Interaction not found: {interaction_id}')

        logger.debug(f'Updated interaction {interaction_id}: {sorted(changes)}')
        return True

    def save_evaluation(self, interaction_id: str, evaluation: Evaluation) -> str:
        """Persist the evaluation of an interaction, once.

        Returns:
            The evaluation record id

        Raises:
            StorageError: If the record could not be written
        """
        evaluation_id = f'evaluation-{interaction_id}'
        document = {
            'interaction_id': interaction_id,
            'grounding_score': evaluation.grounding,
            'accuracy_score': evaluation.accuracy,
            'completeness_score': evaluation.completeness,
            'pedagogy_score': evaluation.pedagogy,
            'clarity_score': evaluation.clarity,
            'overall_score': evaluation.overall,
            'strengths': list(evaluation.strengths),
            'weaknesses': list(evaluation.weaknesses),
            'suggestions': list(evaluation.suggestions),
            'created_at': to_iso(),
        }

        try:
            if not self.opensearch.create_document(evaluation_id, document, EVALUATION_INDEX):
                logger.debug(f'Evaluation for {interaction_id} already recorded')
        except OpenSearchError as e:
            raise StorageError(f'Failed to save evaluation for {interaction_id}: {e}')

        return evaluation_id

    def list_evaluations(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Stored evaluations, oldest first, for score trend reporting."""
        try:
            return self.opensearch.search_documents(EVALUATION_INDEX, limit, ascending=True)
        except OpenSearchError as e:
            raise StorageError(f'Failed to list evaluations: {e}')

    def recent_interactions(self, limit: int = 20) -> List[Interaction]:
        """
        Most recent interactions, newest first. Unreadable records are skipped.

        Raises:
            ValidationError: If limit is not positive
            StorageError: If the index could not be read
        """
        if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
            raise ValidationError(f'limit must be a positive integer, got {limit!r}')

        try:
            documents = self.opensearch.search_documents(INTERACTION_INDEX, limit)
        except OpenSearchError as e:
            raise StorageError(f'Failed to list interactions: {e}')

        interactions = []
        for document in documents:
            try:
                interactions.append(Interaction.from_document(document))
            except SchemaError as e:
                logger.warning(f"Skipping malformed interaction {document.get('id')}: {e}")
        return interactions

    def count_interactions(self) -> int:
        try:
            return self.opensearch.count_documents(INTERACTION_INDEX)
        except OpenSearchError as e:
            raise StorageError(f'Failed to count interactions: {e}')

    def record_feedback(self, interaction_id: str, thumbs_up: Optional[bool] = None,
                        note: Optional[str] = None) -> Dict[str, Any]:
        """Create or amend the user's feedback on an interaction.

        Each interaction holds at most one feedback record. Values left as None
        keep whatever was recorded before, so a rating and a note can arrive
        separately.

        Args:
            interaction_id: Interaction the feedback is about
            thumbs_up: True for a positive rating, False for a negative one
            note: Free-text comment

        Returns:
            The stored feedback record

        Raises:
            ValidationError: If neither value is given or a value has the wrong type
            NotFoundError: If the interaction is unknown
            StorageError: If the record could not be read or written
        """
        if thumbs_up is not None and not isinstance(thumbs_up, bool):
            raise ValidationError(f'thumbs_up must be a boolean, got {thumbs_up!r}')
        if note is not None and not isinstance(note, str):
            raise ValidationError(f'note must be a string, got {note!r}')
        if thumbs_up is None and note is None:
            raise ValidationError('Feedback needs a rating or a note')

        self.get(interaction_id)

        feedback_id = f'feedback-{interaction_id}'
        now = to_iso()
        changes = {name: value for name, value in (('thumbs_up', thumbs_up), ('note', note)) if value is not None}

        try:
            document = {'interaction_id': interaction_id, 'thumbs_up': None, 'note': None, 'created_at': now,
                        'updated_at': now, **changes}
            if not self.opensearch.create_document(feedback_id, document, FEEDBACK_INDEX):
                self.opensearch.update_document(feedback_id, {**changes, 'updated_at': now}, FEEDBACK_INDEX)
            stored = self.opensearch.get_document(feedback_id, FEEDBACK_INDEX)
        except OpenSearchError as e:
            logger.error(f'Failed to record feedback for {interaction_id}: {e}')
            raise StorageError(f'Failed to record feedback: {e}')

        logger.info(f'Recorded feedback for interaction {interaction_id}: {sorted(changes)}')
        return stored

    def get_feedback(self, interaction_id: str) -> Optional[Dict[str, Any]]:
        """Feedback recorded for an interaction, or None."""
        try:
            return self.opensearch.get_document(f'feedback-{interaction_id}', FEEDBACK_INDEX)
        except OpenSearchError as e:
            raise StorageError(f'Failed to read feedback for {interaction_id}: {e}')
