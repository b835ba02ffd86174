"""Unit tests for similarity retrieval and few-shot formatting."""

import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError

from conftest import DIMENSION, FakeEmbedRuntime
from learning_loop.models.core import Memory
from learning_loop.services.memory_store import MemoryStore
from learning_loop.services.retrieval import NO_EXAMPLES_MESSAGE, RetrievalService, format_few_shot_examples, parse_memory_row
from learning_loop.utils.bedrock_embed import BedrockEmbed
from learning_loop.utils.opensearch_client import OpenSearchClient

QUERY_VECTOR = [1.0, 0.0, 0.0, 0.0]


def _document(memory_id, overall, embedding, answer='Answer text', notes=None):
    return {
        'id': memory_id,
        'interaction_id': memory_id.replace('memory-', ''),
        'query': f'Query for {memory_id}',
        'answer': answer,
        'query_patterns': ['MATCH (o:Objective) RETURN o'],
        'confidence': 0.7,
        'grounding_score': 0.9,
        'accuracy_score': 0.8,
        'completeness_score': 0.8,
        'pedagogy_score': 0.7,
        'clarity_score': 0.9,
        'overall_score': overall,
        'evaluator_notes': notes or json.dumps({'strengths': ['Grounded', 'Clear', 'Complete']}),
        'embedding': embedding,
        'memories_used': [],
        'created_at': '2026-01-01T00:00:00Z',
    }


@pytest.fixture
def memories(app_config, fake_opensearch):
    store = MemoryStore(OpenSearchClient(app_config.opensearch, client=fake_opensearch), DIMENSION)
    store.ensure_index()
    return store


@pytest.fixture
def embed_runtime():
    return FakeEmbedRuntime(default=QUERY_VECTOR)


@pytest.fixture
def service(app_config, embed_runtime, memories):
    return RetrievalService(BedrockEmbed(app_config.bedrock_embed, runtime=embed_runtime), memories, retrieval_threshold=0.25)


def _seed(fake_opensearch, *documents):
    for document in documents:
        fake_opensearch.data['test_memory'][document['id']] = document


class TestRetrieveSimilar:

    def test_ordered_by_similarity(self, service, fake_opensearch):
        _seed(fake_opensearch,
              _document('memory-far', 0.9, [0.0, 1.0, 0.0, 0.0]),
              _document('memory-near', 0.8, [1.0, 0.1, 0.0, 0.0]),
              _document('memory-mid', 0.95, [1.0, 1.0, 0.0, 0.0]))

        results = service.retrieve_similar('What fractions are taught in Year 3?', k=3)

        assert [memory.id for memory in results] == ['memory-near', 'memory-mid', 'memory-far']

    def test_at_most_k(self, service, fake_opensearch):
        _seed(fake_opensearch, *[_document(f'memory-{i}', 0.9, [1.0, float(i), 0.0, 0.0]) for i in range(5)])
        assert len(service.retrieve_similar('query', k=2)) == 2

    def test_quality_floor_is_strict(self, service, fake_opensearch):
        _seed(fake_opensearch,
              _document('memory-low', 0.2, QUERY_VECTOR),
              _document('memory-edge', 0.25, QUERY_VECTOR),
              _document('memory-good', 0.3, QUERY_VECTOR))

        results = service.retrieve_similar('query', k=3)

        assert [memory.id for memory in results] == ['memory-good']
        assert all(memory.overall_score > 0.25 for memory in results)

    def test_rows_below_floor_dropped_even_if_index_returns_them(self, app_config, embed_runtime):
        memories = MagicMock()
        memories.query_nearest.return_value = [
            {'record': _document('memory-low', 0.1, []), 'score': 0.99},
            {'record': _document('memory-ok', 0.6, []), 'score': 0.9},
        ]
        service = RetrievalService(BedrockEmbed(app_config.bedrock_embed, runtime=embed_runtime), memories, 0.25)

        assert [memory.id for memory in service.retrieve_similar('query')] == ['memory-ok']

    def test_invalid_rows_skipped(self, app_config, embed_runtime):
        broken = _document('memory-broken', 0.9, [])
        del broken['query']
        memories = MagicMock()
        memories.query_nearest.return_value = [
            {'record': broken, 'score': 0.99},
            {'record': 'not a dict', 'score': 0.95},
            {'record': _document('memory-ok', 0.9, []), 'score': 0.9},
        ]
        service = RetrievalService(BedrockEmbed(app_config.bedrock_embed, runtime=embed_runtime), memories, 0.25)

        assert [memory.id for memory in service.retrieve_similar('query')] == ['memory-ok']

    @pytest.mark.parametrize('query', ['', '   ', None])
    def test_empty_query_returns_empty(self, service, embed_runtime, query):
        assert service.retrieve_similar(query) == []
        assert embed_runtime.requests == []

    @pytest.mark.parametrize('k', [0, -1])
    def test_non_positive_k_returns_empty(self, service, embed_runtime, k):
        assert service.retrieve_similar('query', k=k) == []
        assert embed_runtime.requests == []

    def test_embedding_failure_returns_empty(self, service, embed_runtime, fake_opensearch):
        _seed(fake_opensearch, _document('memory-1', 0.9, QUERY_VECTOR))
        embed_runtime.error = ClientError({'Error': {'Code': 'ThrottlingException', 'Message': 'slow'}}, 'InvokeModel')
        assert service.retrieve_similar('query') == []

    def test_index_failure_returns_empty(self, service, fake_opensearch):
        fake_opensearch.fail_with = OpenSearchConnectionError('N/A', 'refused', None)
        assert service.retrieve_similar('query') == []

    def test_wrong_dimension_returns_empty(self, service, embed_runtime):
        embed_runtime.default = [1.0, 0.0]
        assert service.retrieve_similar('query') == []

    def test_empty_store(self, service):
        assert service.retrieve_similar('query') == []

    def test_embeddings_omitted_by_default(self, service, fake_opensearch):
        _seed(fake_opensearch, _document('memory-1', 0.9, [1.0, 0.5, 0.0, 0.0]))
        [memory] = service.retrieve_similar('query')
        assert memory.embedding == []

    def test_embeddings_loaded_on_request(self, service, fake_opensearch):
        _seed(fake_opensearch,
              _document('memory-1', 0.9, [1.0, 0.5, 0.0, 0.0]),
              _document('memory-2', 0.8, [0.0, 1.0, 0.0, 0.0]))

        results = service.retrieve_similar('query', include_embedding=True)

        assert [memory.id for memory in results] == ['memory-1', 'memory-2']
        assert all(len(memory.embedding) == DIMENSION for memory in results)
        assert results[0].embedding == [1.0, 0.5, 0.0, 0.0]


class TestParseMemoryRow:

    def test_valid_row(self):
        memory, reason = parse_memory_row({'record': _document('memory-1', 0.9, []), 'score': 0.9})
        assert memory.id == 'memory-1'
        assert reason == ''

    def test_missing_record(self):
        memory, reason = parse_memory_row({'score': 0.9})
        assert memory is None
        assert reason


class TestFewShotExamples:

    def test_no_memories(self):
        assert format_few_shot_examples([]) == NO_EXAMPLES_MESSAGE

    def test_example_block(self):
        memory = Memory.from_record(_document('memory-1', 0.85, [], answer='x' * 300))
        text = format_few_shot_examples([memory])

        assert text.startswith('## Example 1 (Quality Score: 0.85)')
        assert 'MATCH (o:Objective) RETURN o' in text
        assert '"' + 'x' * 200 + '..."' in text
        assert 'Strengths: Grounded, Clear, Complete' in text
        assert '- Grounding: 0.90' in text
        assert '- Accuracy: 0.80' in text

    def test_plain_notes_and_missing_query(self):
        document = _document('memory-1', 0.85, [], notes='Well grounded')
        document['query_patterns'] = []
        text = format_few_shot_examples([Memory.from_record(document), Memory.from_record(document)])

        assert 'No Cypher query recorded' in text
        assert '**Why This Worked**: Well grounded' in text
        assert '## Example 2' in text
        assert '\n---\n\n' in text
