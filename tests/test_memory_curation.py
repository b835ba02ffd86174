"""Unit tests for memory curation and the memory store."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError

from conftest import DIMENSION
from learning_loop.models.core import Evaluation, InteractionDraft, InteractionResult, InteractionStatus, Memory
from learning_loop.models.events import REFLECTION_COMPLETE, Event, reflection_complete_payload
from learning_loop.services.interaction_store import InteractionStore
from learning_loop.services.memory_curation import MemoryCurator, hash_query_pattern
from learning_loop.services.memory_store import MemoryStore
from learning_loop.utils.bedrock_embed import BedrockEmbed
from learning_loop.utils.errors import SchemaError, StorageError
from learning_loop.utils.neptune_client import NeptuneError
from learning_loop.utils.opensearch_client import OpenSearchClient

FEEDBACK = (('Cites objectives', 'Correct year', 'Concise'), ('No examples', 'Skips tenths', 'Terse'),
            ('Add examples', 'Cover tenths', 'Expand'))


def _evaluation(*scores):
    return Evaluation.from_scores(*scores, *FEEDBACK)


@pytest.fixture
def opensearch(app_config, fake_opensearch):
    return OpenSearchClient(app_config.opensearch, client=fake_opensearch)


@pytest.fixture
def interactions(opensearch):
    store = InteractionStore(opensearch)
    store.ensure_indices()
    return store


@pytest.fixture
def memories(opensearch):
    store = MemoryStore(opensearch, DIMENSION)
    store.ensure_index()
    return store


@pytest.fixture
def graph():
    graph = MagicMock()
    graph.link_evidence.return_value = 2
    graph.record_query_pattern.return_value = 1
    return graph


@pytest.fixture
def curator(app_config, embed_runtime, memories, interactions, graph):
    embedder = BedrockEmbed(app_config.bedrock_embed, runtime=embed_runtime)
    return MemoryCurator(embedder, memories, interactions, MagicMock(), app_config.learning, graph=graph)


@pytest.fixture
def evaluated(interactions):
    interaction_id = interactions.create(InteractionDraft(query='What fractions are taught in Year 3?', model='m', temperature=0.3))
    interactions.update(interaction_id, InteractionResult(answer='Unit fractions [Y3-F-001] and tenths [Y3-F-002].',
                                                          cypher_queries=['MATCH (o:Objective {year: 3}) RETURN o'],
                                                          graph_results=[{'id': 'Y3-F-001'}],
                                                          confidence=0.8).to_fields())
    interactions.update(interaction_id, {'status': InteractionStatus.EVALUATED.value})
    return interactions.get(interaction_id)


class TestHashQueryPattern:

    def test_property_filters_removed(self):
        assert hash_query_pattern('MATCH (o:Objective {year: 3}) RETURN o') == 'o:objective'

    def test_whitespace_collapsed(self):
        assert hash_query_pattern('match (o : Objective) return o') == 'o_:_objective'

    def test_first_match_only(self):
        assert hash_query_pattern('MATCH (s:Strand) MATCH (o:Objective) RETURN s, o') == 's:strand'

    def test_no_match_clause(self):
        assert hash_query_pattern('CALL db.labels()') == 'unknown_pattern'


class TestCurate:

    def test_above_threshold_creates_memory(self, curator, evaluated, memories, interactions, fake_opensearch):
        memory = curator.curate(evaluated, _evaluation(0.9, 0.8, 0.9, 0.7, 0.9))

        assert memory.id == f'memory-{evaluated.id}'
        stored = fake_opensearch.data['test_memory'][memory.id]
        assert stored['overall_score'] == pytest.approx(0.85)
        assert stored['query_patterns'] == evaluated.cypher_queries
        assert len(stored['embedding']) == DIMENSION
        assert interactions.get(evaluated.id).status == InteractionStatus.PROMOTED

    def test_below_threshold_discarded(self, curator, evaluated, interactions, fake_opensearch, embed_runtime):
        assert curator.curate(evaluated, _evaluation(0.6, 0.6, 0.6, 0.6, 0.6)) is None

        assert fake_opensearch.data['test_memory'] == {}
        assert embed_runtime.requests == []
        assert interactions.get(evaluated.id).status == InteractionStatus.DISCARDED

    def test_exactly_at_threshold_discarded(self, curator, evaluated, fake_opensearch):
        evaluation = _evaluation(0.9, 0.8, 0.9, 0.7, 0.9)
        curator.config.curation_threshold = evaluation.overall
        assert curator.curate(evaluated, evaluation) is None
        assert fake_opensearch.data['test_memory'] == {}

    def test_embedding_failure_discards(self, curator, evaluated, interactions, fake_opensearch, embed_runtime):
        embed_runtime.error = ClientError({'Error': {'Code': 'ServiceUnavailable', 'Message': 'down'}}, 'InvokeModel')

        assert curator.curate(evaluated, _evaluation(0.9, 0.8, 0.9, 0.7, 0.9)) is None
        assert fake_opensearch.data['test_memory'] == {}
        assert interactions.get(evaluated.id).status == InteractionStatus.DISCARDED

    def test_redelivery_does_not_duplicate(self, curator, evaluated, fake_opensearch):
        event = Event.create(REFLECTION_COMPLETE, reflection_complete_payload(evaluated, _evaluation(0.9, 0.8, 0.9, 0.7, 0.9)))
        curator.handle_reflection_complete(event)
        curator.handle_reflection_complete(event)

        assert list(fake_opensearch.data['test_memory']) == [f'memory-{evaluated.id}']

    def test_malformed_event_dropped(self, curator, fake_opensearch):
        curator.handle_reflection_complete(Event.create(REFLECTION_COMPLETE, {'interactionId': 'x'}))
        assert fake_opensearch.data['test_memory'] == {}


class TestProvenanceLinks:

    def test_links_evidence_and_pattern(self, curator, evaluated, graph):
        memory = curator.curate(evaluated, _evaluation(0.9, 0.8, 0.9, 0.7, 0.9))

        graph.create_memory_vertex.assert_called_once_with(memory.id, evaluated.id, memory.overall_score)
        graph.link_evidence.assert_called_once_with(memory.id, ['Y3-F-001', 'Y3-F-002'])
        pattern_args = graph.record_query_pattern.call_args.args
        assert pattern_args[0] == memory.id
        assert pattern_args[1] == 'o:objective'
        assert pattern_args[3] == evaluated.cypher_queries[0]

    def test_pattern_needs_higher_score(self, curator, evaluated, graph):
        curator.curate(evaluated, _evaluation(0.8, 0.8, 0.8, 0.7, 0.7))
        graph.record_query_pattern.assert_not_called()

    def test_links_similar_memories_excluding_self(self, curator, evaluated, graph, memories):
        neighbour = Memory.from_interaction(evaluated, _evaluation(0.9, 0.9, 0.9, 0.9, 0.9), [1.0, 0.0, 0.0, 0.0])
        neighbour.id = 'memory-earlier'
        memories.append(neighbour)

        memory = curator.curate(evaluated, _evaluation(0.9, 0.8, 0.9, 0.7, 0.9))

        similar = graph.link_similar_memories.call_args.args[1]
        assert [memory_id for memory_id, _ in similar] == ['memory-earlier']
        assert memory.id not in [memory_id for memory_id, _ in similar]

    def test_graph_failure_keeps_memory(self, curator, evaluated, graph, fake_opensearch):
        graph.create_memory_vertex.side_effect = NeptuneError('socket closed')

        memory = curator.curate(evaluated, _evaluation(0.9, 0.8, 0.9, 0.7, 0.9))

        assert memory.id in fake_opensearch.data['test_memory']
        graph.link_evidence.assert_not_called()

    def test_later_step_failure_is_isolated(self, curator, evaluated, graph):
        graph.link_evidence.side_effect = NeptuneError('timeout')
        curator.curate(evaluated, _evaluation(0.9, 0.8, 0.9, 0.7, 0.9))
        graph.record_query_pattern.assert_called_once()


class TestMemoryStore:

    def test_wrong_dimension_rejected(self, memories, evaluated, fake_opensearch):
        memory = Memory.from_interaction(evaluated, _evaluation(0.9, 0.8, 0.9, 0.7, 0.9), [0.1, 0.2])
        with pytest.raises(SchemaError):
            memories.append(memory)
        assert fake_opensearch.data['test_memory'] == {}

    def test_append_is_create_only(self, memories, evaluated):
        memory = Memory.from_interaction(evaluated, _evaluation(0.9, 0.8, 0.9, 0.7, 0.9), [0.1, 0.2, 0.3, 0.4])
        assert memories.append(memory) is True
        assert memories.append(memory) is False

    def test_backend_failure_is_storage_error(self, memories, evaluated, fake_opensearch):
        fake_opensearch.fail_with = OpenSearchConnectionError('N/A', 'refused', None)
        memory = Memory.from_interaction(evaluated, _evaluation(0.9, 0.8, 0.9, 0.7, 0.9), [0.1, 0.2, 0.3, 0.4])
        with pytest.raises(StorageError):
            memories.append(memory)

    def test_stats(self, memories, evaluated):
        memories.append(Memory.from_interaction(evaluated, _evaluation(0.9, 0.8, 0.9, 0.7, 0.9), [0.1, 0.2, 0.3, 0.4]))
        stats = memories.stats()
        assert stats['total_memories'] == 1
        assert stats['avg_overall_score'] == pytest.approx(0.85)
        assert stats['avg_confidence'] == pytest.approx(0.8)
