import copy
import io
import json
import math
import threading

import pytest
from opensearchpy.exceptions import ConflictError, NotFoundError

from learning_loop.utils.config import (AppConfig, BedrockEmbedConfig, BedrockLLMConfig, EventBusConfig, LearningConfig,
                                        MCPConfig, NeptuneConfig, OpenSearchConfig)

DIMENSION = 4


class FakeIndices:
    def __init__(self, owner):
        self.owner = owner

    def exists(self, index):
        return index in self.owner.mappings

    def create(self, index, body):
        self.owner.mappings[index] = body
        self.owner.data.setdefault(index, {})
        return {'acknowledged': True}


class FakeOpenSearch:
    """In-memory stand-in for the opensearch-py client calls the wrapper makes."""

    def __init__(self):
        self.mappings = {}
        self.data = {}
        self.indices = FakeIndices(self)
        self.calls = []
        self.fail_with = None
        self._lock = threading.Lock()

    def _record(self, name):
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    def index(self, index, id, body, op_type='index'):
        with self._lock:
            self._record('index')
            docs = self.data.setdefault(index, {})
            if op_type == 'create' and id in docs:
                raise ConflictError(409, 'version_conflict_engine_exception', {})
            docs[id] = copy.deepcopy(body)
            return {'result': 'created'}

    def get(self, index, id):
        with self._lock:
            self._record('get')
            docs = self.data.get(index, {})
            if id not in docs:
                raise NotFoundError(404, 'not_found', {})
            return {'found': True, '_id': id, '_source': copy.deepcopy(docs[id])}

    def update(self, index, id, body):
        with self._lock:
            self._record('update')
            docs = self.data.get(index, {})
            if id not in docs:
                raise NotFoundError(404, 'document_missing_exception', {})
            fields = body['doc']
            if all(docs[id].get(name) == value for name, value in fields.items()):
                return {'result': 'noop'}
            docs[id].update(copy.deepcopy(fields))
            return {'result': 'updated'}

    def count(self, index):
        with self._lock:
            self._record('count')
            return {'count': len(self.data.get(index, {}))}

    def search(self, index, body):
        with self._lock:
            self._record('search')
            docs = list(self.data.get(index, {}).items())

        if 'aggs' in body:
            scores = [doc['overall_score'] for _, doc in docs]
            confidences = [doc['confidence'] for _, doc in docs]
            return {
                'hits': {'total': {'value': len(docs)}, 'hits': []},
                'aggregations': {
                    'avg_overall_score': {'value': sum(scores) / len(scores) if scores else None},
                    'avg_confidence': {'value': sum(confidences) / len(confidences) if confidences else None},
                }
            }

        if 'match_all' in body['query']:
            (sort_field, order), = [(name, spec['order']) for name, spec in body['sort'][0].items()]
            docs.sort(key=lambda item: item[1][sort_field], reverse=order == 'desc')
            hits = [{'_id': doc_id, '_source': copy.deepcopy(doc)} for doc_id, doc in docs[:body['size']]]
            return {'hits': {'total': {'value': len(docs)}, 'hits': hits}}

        knn = body['query']['knn']['embedding']
        floor = knn['filter']['range']['overall_score']['gt']
        excludes = body.get('_source', {}).get('excludes', [])
        hits = []
        for doc_id, doc in docs:
            if doc['overall_score'] <= floor:
                continue
            source = {name: copy.deepcopy(value) for name, value in doc.items() if name not in excludes}
            hits.append({'_id': doc_id, '_score': cosine_score(knn['vector'], doc['embedding']), '_source': source})
        hits.sort(key=lambda hit: hit['_score'], reverse=True)
        return {'hits': {'total': {'value': len(hits)}, 'hits': hits[:knn['k']]}}


def cosine_score(a, b):
    """OpenSearch cosinesimil score: (1 + cosine) / 2."""
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return (1 + (dot / norm if norm else 0.0)) / 2


class FakeEmbedRuntime:
    """bedrock-runtime stand-in answering Titan embedding requests."""

    def __init__(self, vectors=None, default=None, dimension=DIMENSION):
        self.vectors = vectors or {}
        self.default = default or [1.0] + [0.0] * (dimension - 1)
        self.requests = []
        self.error = None

    def invoke_model(self, body, modelId, accept, contentType):
        request = json.loads(body)
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        vector = self.vectors.get(request.get('inputText'), self.default)
        return {'body': io.BytesIO(json.dumps({'embedding': vector}).encode('utf-8'))}


class FakeLLMRuntime:
    """bedrock-runtime stand-in streaming a canned converse response."""

    def __init__(self, response='', error=None):
        self.response = response
        self.error = error
        self.requests = []

    def converse_stream(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return {
            'stream': [
                {'contentBlockDelta': {'delta': {'text': self.response}}},
                {'metadata': {'usage': {'inputTokens': 10, 'outputTokens': 20}, 'metrics': {'latencyMs': 5}}},
            ]
        }


def judge_response(grounding=0.9, accuracy=0.8, completeness=0.9, pedagogy=0.7, clarity=0.9, **extra):
    payload = {
        'grounding': grounding,
        'accuracy': accuracy,
        'completeness': completeness,
        'pedagogy': pedagogy,
        'clarity': clarity,
        'strengths': ['Cites objectives', 'Correct year group', 'Concise'],
        'weaknesses': ['No examples', 'Skips fractions', 'Terse intro'],
        'suggestions': ['Add examples', 'Cover fractions', 'Expand intro'],
    }
    payload.update(extra)
    return '\n' + json.dumps(payload) + '\n'


@pytest.fixture
def app_config():
    return AppConfig(environment='test',
                     log_level='DEBUG',
                     bedrock_llm=BedrockLLMConfig(region='us-east-1',
                                                  model_id='anthropic.claude-3-sonnet-20240229-v1:0',
                                                  max_tokens=512,
                                                  temperature=0.0,
                                                  connect_timeout=1,
                                                  read_timeout=1),
                     bedrock_embed=BedrockEmbedConfig(region='us-east-1',
                                                      model_id='amazon.titan-embed-text-v2:0',
                                                      dimension=DIMENSION,
                                                      connect_timeout=1,
                                                      read_timeout=1),
                     opensearch=OpenSearchConfig(endpoint='localhost',
                                                 port=9200,
                                                 region='us-east-1',
                                                 index_name='test',
                                                 dimension=DIMENSION,
                                                 timeout=1),
                     neptune=NeptuneConfig(endpoint=None, port=8182, region='us-east-1'),
                     event_bus=EventBusConfig(max_workers=4, retry_attempts=3, retry_delay=0.0),
                     learning=LearningConfig(curation_threshold=0.75,
                                             retrieval_threshold=0.25,
                                             pattern_threshold=0.8,
                                             similar_link_threshold=0.8,
                                             evidence_char_limit=8000,
                                             expected_evidence_count=10,
                                             retrieval_top_k=3),
                     mcp=MCPConfig(transport='stdio', host='127.0.0.1', port=8000))


@pytest.fixture
def fake_opensearch():
    return FakeOpenSearch()


@pytest.fixture
def embed_runtime():
    return FakeEmbedRuntime()
