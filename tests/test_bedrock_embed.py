"""Unit tests for the Bedrock embedding client."""

import io
import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, ReadTimeoutError

from learning_loop.utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from learning_loop.utils.config import BedrockEmbedConfig
from learning_loop.utils.errors import SchemaError, TransientServiceError, ValidationError


def _response(payload):
    return {'body': io.BytesIO(json.dumps(payload).encode('utf-8'))}


@pytest.fixture
def runtime():
    runtime = MagicMock()
    runtime.invoke_model.return_value = _response({'embedding': [0.1, 0.2, 0.3, 0.4]})
    return runtime


@pytest.fixture
def embedder(app_config, runtime):
    return BedrockEmbed(app_config.bedrock_embed, runtime=runtime)


class TestEmbed:

    def test_returns_fixed_length_vector(self, embedder, runtime):
        assert embedder.embed('Year 3 fractions') == [0.1, 0.2, 0.3, 0.4]
        body = json.loads(runtime.invoke_model.call_args.kwargs['body'])
        assert body == {'inputText': 'Year 3 fractions', 'dimensions': 4, 'normalize': True}

    @pytest.mark.parametrize('text', ['', '   ', '\n\t'])
    def test_empty_text_rejected_without_call(self, embedder, runtime, text):
        with pytest.raises(ValidationError):
            embedder.embed(text)
        runtime.invoke_model.assert_not_called()

    def test_wrong_dimension_is_schema_error(self, embedder, runtime):
        runtime.invoke_model.return_value = _response({'embedding': [0.1, 0.2]})
        with pytest.raises(SchemaError):
            embedder.embed('query')

    def test_non_numeric_vector_is_schema_error(self, embedder, runtime):
        runtime.invoke_model.return_value = _response({'embedding': ['a', 'b', 'c', 'd']})
        with pytest.raises(SchemaError):
            embedder.embed('query')

    def test_client_error_is_transient(self, embedder, runtime):
        runtime.invoke_model.side_effect = ClientError({'Error': {'Code': 'ThrottlingException', 'Message': 'slow down'}},
                                                       'InvokeModel')
        with pytest.raises(BedrockEmbedError) as excinfo:
            embedder.embed('query')
        assert isinstance(excinfo.value, TransientServiceError)

    def test_timeout_is_transient(self, embedder, runtime):
        runtime.invoke_model.side_effect = ReadTimeoutError(endpoint_url='https://bedrock-runtime')
        with pytest.raises(TransientServiceError):
            embedder.embed('query')

    def test_cohere_request_shape(self, runtime):
        runtime.invoke_model.return_value = _response({'embeddings': [[0.5] * 1024]})
        config = BedrockEmbedConfig(region='us-east-1', model_id='cohere.embed-english-v3', dimension=1024,
                                    connect_timeout=1, read_timeout=1)
        vector = BedrockEmbed(config, runtime=runtime).embed('query')
        assert len(vector) == 1024
        assert json.loads(runtime.invoke_model.call_args.kwargs['body']) == {'input_type': 'search_query', 'texts': ['query']}

    def test_cohere_requires_1024(self, runtime):
        config = BedrockEmbedConfig(region='us-east-1', model_id='cohere.embed-english-v3', dimension=256,
                                    connect_timeout=1, read_timeout=1)
        with pytest.raises(ValidationError):
            BedrockEmbed(config, runtime=runtime)

    def test_health_check(self, embedder, runtime):
        assert embedder.health_check() is True
        runtime.invoke_model.side_effect = ClientError({'Error': {'Code': 'AccessDenied', 'Message': 'no'}}, 'InvokeModel')
        assert embedder.health_check() is False
