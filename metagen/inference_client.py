"""
Inference gateway client.

Sends one chat-completion request per item through the OpenAI SDK against an
OpenAI-compatible gateway. Transient 5xx and connection failures are retried
with exponential backoff; 429 and 402 are surfaced immediately as
RateLimitedError / CreditsExhaustedError for the dispatcher to act on.
"""
import asyncio
import base64
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import openai
from openai import OpenAI

from .errors import CreditsExhaustedError, InferenceError, RateLimitedError
from .pipeline_config import config

logger = logging.getLogger(__name__)


def image_reference(url: str, data: Optional[bytes] = None,
                    content_type: str = 'image/jpeg') -> str:
    """URL the gateway can read: http(s) as-is, otherwise an inline data URL"""
    if url and url.startswith(('http://', 'https://', 'data:')):
        return url
    if data is None:
        raise InferenceError(f"Asset {url} is not publicly reachable and no bytes were supplied")
    encoded = base64.b64encode(data).decode('ascii')
    return f"data:{content_type};base64,{encoded}"


class InferenceClient:
    """Chat-completion client with status classification"""

    def __init__(self, client: Optional[Any] = None, model: Optional[str] = None,
                 retry_attempts: Optional[int] = None, retry_delay: Optional[float] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.model = model or config.inference_model
        self.retry_attempts = config.retry_attempts if retry_attempts is None else retry_attempts
        self.retry_delay = config.retry_delay if retry_delay is None else retry_delay
        self._sleep = sleep
        self.openai_client = client
        if self.openai_client is None and config.inference_api_key:
            # retries are handled here so 429/402 are never retried silently
            self.openai_client = OpenAI(
                base_url=config.inference_base_url,
                api_key=config.inference_api_key,
                timeout=config.request_timeout,
                max_retries=0,
            )
            logger.info("Inference client initialized (model=%s)", self.model)

    @staticmethod
    def classify(exc: Exception) -> InferenceError:
        """Map SDK errors onto the pipeline taxonomy"""
        if isinstance(exc, InferenceError):
            return exc
        if isinstance(exc, openai.APIStatusError):
            status = exc.status_code
            if status == 429:
                return RateLimitedError()
            if status == 402:
                return CreditsExhaustedError()
            return InferenceError(
                f"AI gateway error: {status}", status=status, retryable=status >= 500)
        if isinstance(exc, (openai.APIConnectionError, asyncio.TimeoutError)):
            return InferenceError(f"AI gateway unreachable: {exc}", retryable=True)
        return InferenceError(str(exc) or exc.__class__.__name__)

    async def complete(self, messages: List[Dict[str, Any]]) -> str:
        """Return the completion text, raising InferenceError subclasses on failure"""
        if self.openai_client is None:
            raise InferenceError("Inference client not configured. Set INFERENCE_API_KEY.")

        attempts = max(1, self.retry_attempts + 1)
        last_error: Optional[InferenceError] = None

        for attempt in range(attempts):
            start = time.time()
            try:
                completion = await asyncio.to_thread(
                    self.openai_client.chat.completions.create,
                    model=self.model,
                    messages=messages,
                )
                logger.debug("Inference request succeeded (%.2fs)", time.time() - start)
                return self._extract_text(completion)
            except Exception as e:
                error = self.classify(e)
                last_error = error
                logger.warning(
                    "Inference error (attempt %d/%d, status=%s): %s",
                    attempt + 1, attempts, error.status, error)
                # 429 is retryable at the batch level, not inside this call
                if isinstance(error, (RateLimitedError, CreditsExhaustedError)):
                    raise error
                if error.retryable and attempt < attempts - 1:
                    await self._sleep(min(30, self.retry_delay * (2 ** attempt)))
                    continue
                raise error

        raise last_error or InferenceError("Failed to retrieve inference response")

    @staticmethod
    def _extract_text(completion: Any) -> str:
        def _get_field(obj, key):
            if obj is None:
                return None
            if isinstance(obj, dict):
                return obj.get(key)
            return getattr(obj, key, None)

        choices = _get_field(completion, 'choices')
        if choices:
            message = _get_field(choices[0], 'message')
            tool_calls = _get_field(message, 'tool_calls')
            if tool_calls:
                function = _get_field(tool_calls[0], 'function')
                arguments = _get_field(function, 'arguments')
                if isinstance(arguments, str) and arguments.strip():
                    return arguments

            content = _get_field(message, 'content')
            if isinstance(content, str) and content.strip():
                return content
            # multimodal replies may come back as a list of blocks
            if isinstance(content, list):
                parts = []
                for block in content:
                    text = _get_field(block, 'text')
                    if isinstance(text, str) and text.strip():
                        parts.append(text.strip())
                if parts:
                    return '\n'.join(parts)

        raise InferenceError("Unable to extract completion text from gateway response")
