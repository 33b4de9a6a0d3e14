"""
Amazon Bedrock LLM client used for intent extraction at ingestion time.
"""

import json
import random
import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..models.errors import UpstreamUnavailableError
from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

JSON_FENCE = '```json'


class BedrockLLMError(UpstreamUnavailableError):
    """Custom exception for Bedrock LLM errors."""
    pass


def clean_json_response(response: str) -> str:
    """Strip code fence markers and stray backticks around a JSON answer.

    Args:
        response: Raw LLM response

    Returns:
        Text ready for json.loads
    """
    text = response.strip()
    for marker in (JSON_FENCE, '```'):
        if text.startswith(marker):
            text = text[len(marker):]
            break
    return text.replace('`', '').strip()


def _read_stream(stream) -> str:
    parts = []
    for event in stream or []:
        delta = event.get('contentBlockDelta')
        if delta:
            parts.append(delta['delta'].get('text', ''))
    return ''.join(parts)


class BedrockLLM:
    """Bedrock converse client with manual retries and JSON-mode prompting."""

    def __init__(self, config: BedrockLLMConfig, bedrock_runtime: Optional[Any] = None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            bedrock_runtime: Prebuilt bedrock-runtime client (created from config if None)
        """
        self.config = config
        self.model_id = config.model_id

        # Botocore retries are disabled; _converse retries with jitter itself
        self.bedrock_runtime = bedrock_runtime or boto3.client('bedrock-runtime',
                                                               region_name=config.region,
                                                               config=BotoConfig(connect_timeout=60,
                                                                                 read_timeout=300,
                                                                                 retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def _converse(self,
                  messages: List[Dict[str, Any]],
                  system_prompt: str,
                  max_tokens: Optional[int] = None,
                  temperature: Optional[float] = None,
                  stop_sequences: Optional[List[str]] = None) -> str:
        inference_config = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'stopSequences': stop_sequences or [],
        }
        attempts = self.config.retry_attempts

        for attempt in range(attempts):
            try:
                response = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                                messages=messages,
                                                                system=[{'text': system_prompt}],
                                                                inferenceConfig=inference_config)
                text = _read_stream(response.get('stream'))
                logger.debug(f'Bedrock LLM returned {len(text)} characters')
                return text

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt == attempts - 1:
                    raise BedrockLLMError(f'Bedrock LLM failed after {attempts} attempts: {e}')
                time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 1))

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {attempts} attempts')

    def generate_json(self, system_prompt: str, user_text: str) -> Any:
        """
        Ask for a JSON document, prefilling the assistant turn with a json code fence.

        Args:
            system_prompt: Instructions describing the expected JSON shape
            user_text: Content to analyse

        Returns:
            Parsed JSON value

        Raises:
            BedrockLLMError: If the call fails or the response is not valid JSON
        """
        messages = [
            {'role': 'user', 'content': [{'text': user_text}]},
            {'role': 'assistant', 'content': [{'text': JSON_FENCE}]},
        ]
        response = self._converse(messages, system_prompt, stop_sequences=['```'])
        try:
            return json.loads(clean_json_response(response))
        except json.JSONDecodeError as e:
            logger.error(f'Failed to parse LLM JSON response: {e}')
            raise BedrockLLMError(f'LLM returned invalid JSON: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            reply = self._converse([{'role': 'user', 'content': [{'text': 'Hi'}]}],
                                   "Respond with just 'OK'.",
                                   max_tokens=10,
                                   temperature=0.0)
            return bool(reply.strip())
        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
