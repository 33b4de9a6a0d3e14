"""
Tests for the OpenSearch, Redis and Bedrock client wrappers with mocked SDK clients.
"""
import io
import json
from unittest.mock import MagicMock

import pytest
import redis
from opensearchpy.exceptions import OpenSearchException

from memlease.models.core import ChunkPayload
from memlease.utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from memlease.utils.bedrock_llm import BedrockLLM, BedrockLLMError, clean_json_response
from memlease.utils.config import BedrockEmbedConfig, BedrockLLMConfig, OpenSearchConfig, RedisConfig
from memlease.utils.opensearch_client import OpenSearchClient, OpenSearchError, score_to_similarity, similarity_to_score
from memlease.utils.redis_cache import CacheError, RedisCache


@pytest.fixture
def opensearch():
    config = OpenSearchConfig(endpoint='https://search.example.com',
                              port=443,
                              region='us-east-1',
                              index_name='memory_chunks',
                              dimension=4,
                              max_content_length=10,
                              max_tags=2)
    return OpenSearchClient(config, client=MagicMock())


@pytest.fixture
def payload():
    return ChunkPayload(memory_id='m1',
                        chunk_index=0,
                        content='a fairly long chunk of text',
                        tags=['a', 'b', 'c'],
                        principal='0xabc',
                        source='gmail')


class TestOpenSearchClient:

    def test_score_conversion(self):
        assert score_to_similarity(similarity_to_score(0.3)) == pytest.approx(0.3)
        assert score_to_similarity(1.0) == 1.0

    def test_search_filters_natively(self, opensearch):
        opensearch.client.search.return_value = {
            'hits': {
                'hits': [{
                    '_id': '42',
                    '_score': 0.975,
                    '_source': {
                        'memory_id': 'm1',
                        'chunk_index': 0,
                        'content': 'text',
                        'tags': ['a'],
                        'principal': '0xabc',
                        'source': 'gmail'
                    }
                }]
            }
        }

        [match] = opensearch.search([0.1] * 4, limit=10, score_threshold=0.3, principal='0xabc', source='gmail')

        body = opensearch.client.search.call_args.kwargs['body']
        assert body['min_score'] == pytest.approx(0.65)
        assert body['size'] == 10
        assert body['query']['knn']['embedding']['filter']['bool']['must'] == [{
            'term': {
                'principal': '0xabc'
            }
        }, {
            'term': {
                'source': 'gmail'
            }
        }]
        assert match.id == '42'
        assert match.score == pytest.approx(0.95)
        assert match.payload.memory_id == 'm1'

    def test_search_without_source_filters_principal_only(self, opensearch):
        opensearch.client.search.return_value = {'hits': {'hits': []}}

        assert opensearch.search([0.1] * 4, limit=5, score_threshold=0.3, principal='0xabc') == []
        body = opensearch.client.search.call_args.kwargs['body']
        assert body['query']['knn']['embedding']['filter']['bool']['must'] == [{'term': {'principal': '0xabc'}}]

    def test_search_failure_is_wrapped(self, opensearch):
        opensearch.client.search.side_effect = OpenSearchException('boom')

        with pytest.raises(OpenSearchError):
            opensearch.search([0.1] * 4, limit=5, score_threshold=0.3, principal='0xabc')

    def test_upsert_truncates_payload(self, opensearch, payload):
        opensearch.client.index.return_value = {'result': 'created'}

        assert opensearch.upsert_chunk(42, [0.1] * 4, payload)

        kwargs = opensearch.client.index.call_args.kwargs
        assert kwargs['id'] == '42'
        assert kwargs['body']['content'] == 'a fairly l'
        assert kwargs['body']['tags'] == ['a', 'b']
        assert kwargs['body']['embedding'] == [0.1] * 4

    def test_upsert_rejects_wrong_dimension(self, opensearch, payload):
        with pytest.raises(OpenSearchError):
            opensearch.upsert_chunk(42, [0.1] * 3, payload)

        opensearch.client.index.assert_not_called()

    def test_upsert_requires_memory_id(self, opensearch, payload):
        payload.memory_id = None

        with pytest.raises(OpenSearchError):
            opensearch.upsert_chunk(42, [0.1] * 4, payload)

    def test_existing_index_is_kept(self, opensearch):
        opensearch.client.indices.exists.return_value = True

        assert opensearch.create_index_if_not_exists() == 'exists'
        opensearch.client.indices.create.assert_not_called()


class TestRedisCache:

    @pytest.fixture
    def cache(self):
        return RedisCache(RedisConfig(url='redis://localhost:6379/0', key_prefix='memlease', socket_timeout=1.0), client=MagicMock())

    def test_set_uses_ttl_and_prefix(self, cache):
        cache.set('lease:1', {'id': '1'}, 60)

        cache.client.setex.assert_called_once_with('memlease:lease:1', 60, json.dumps({'id': '1'}))

    def test_non_positive_ttl_is_refused(self, cache):
        with pytest.raises(CacheError):
            cache.set('lease:1', {'id': '1'}, 0)

        cache.client.setex.assert_not_called()

    def test_get_decodes_and_misses(self, cache):
        cache.client.get.return_value = '{"id": "1"}'
        assert cache.get('lease:1') == {'id': '1'}

        cache.client.get.return_value = None
        assert cache.get('lease:1') is None

    def test_delete_reports_removal(self, cache):
        cache.client.delete.return_value = 1
        assert cache.delete('lease:1') is True

        cache.client.delete.return_value = 0
        assert cache.delete('lease:1') is False

    def test_redis_errors_are_wrapped(self, cache):
        cache.client.get.side_effect = redis.ConnectionError('down')

        with pytest.raises(CacheError):
            cache.get('lease:1')


def _body(data):
    return {'body': io.BytesIO(json.dumps(data).encode('utf-8'))}


class TestBedrockEmbed:

    @pytest.fixture
    def embed(self):
        config = BedrockEmbedConfig(region='us-east-1', model_id='amazon.titan-embed-text-v2:0', dimension=4, retry_attempts=1, retry_delay=0.0)
        return BedrockEmbed(config, bedrock=MagicMock())

    def test_query_embedding(self, embed):
        embed.bedrock.invoke_model.return_value = _body({'embedding': [0.1, 0.2, 0.3, 0.4]})

        assert embed.embed_query('hello') == [0.1, 0.2, 0.3, 0.4]
        request = json.loads(embed.bedrock.invoke_model.call_args.kwargs['body'])
        assert request == {'inputText': 'hello', 'dimensions': 4}

    def test_wrong_dimension_fails_closed(self, embed):
        embed.bedrock.invoke_model.return_value = _body({'embedding': [0.1, 0.2]})

        with pytest.raises(BedrockEmbedError):
            embed.embed_query('hello')

    def test_blank_text_is_never_sent(self, embed):
        with pytest.raises(BedrockEmbedError):
            embed.embed_query('   ')
        with pytest.raises(BedrockEmbedError):
            embed.embed_documents(['ok', ''])

        embed.bedrock.invoke_model.assert_not_called()

    def test_cohere_batches_documents(self):
        config = BedrockEmbedConfig(region='us-east-1', model_id='cohere.embed-english-v3', dimension=1024, retry_attempts=1, retry_delay=0.0)
        embed = BedrockEmbed(config, bedrock=MagicMock())
        embed.bedrock.invoke_model.side_effect = lambda **kwargs: _body(
            {'embeddings': [[0.0] * 1024 for _ in json.loads(kwargs['body'])['texts']]})

        vectors = embed.embed_documents(['text'] * 100)

        assert len(vectors) == 100
        assert embed.bedrock.invoke_model.call_count == 2


class TestBedrockLLM:

    @pytest.fixture
    def llm(self):
        config = BedrockLLMConfig(region='us-east-1', model_id='anthropic.claude-3-haiku', max_tokens=100, temperature=0.0, retry_attempts=1, retry_delay=0.0)
        return BedrockLLM(config, bedrock_runtime=MagicMock())

    def _stream(self, *parts):
        return {'stream': [{'contentBlockDelta': {'delta': {'text': part}}} for part in parts]}

    def test_generate_json_parses_streamed_text(self, llm):
        llm.bedrock_runtime.converse_stream.return_value = self._stream('\n{"summary": "x",', ' "tags": ["a"]}\n')

        assert llm.generate_json('system', 'user text') == {'summary': 'x', 'tags': ['a']}
        kwargs = llm.bedrock_runtime.converse_stream.call_args.kwargs
        assert kwargs['inferenceConfig']['stopSequences'] == ['```']
        assert kwargs['messages'][-1]['role'] == 'assistant'

    def test_invalid_json_raises(self, llm):
        llm.bedrock_runtime.converse_stream.return_value = self._stream('not json')

        with pytest.raises(BedrockLLMError):
            llm.generate_json('system', 'user text')


class TestCleanJson:

    @pytest.mark.parametrize('raw', ['```json\n{"a": 1}\n```', '```{"a": 1}```', '  {"a": 1}  ', '{"a": 1}`'])
    def test_markers_are_removed(self, raw):
        assert clean_json_response(raw) == '{"a": 1}'
