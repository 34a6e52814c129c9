"""
Resilient chat-completions client.

Retries transient upstream failures with exponential backoff and surfaces
permanent ones immediately.
"""

import logging
import threading
from typing import Any, Callable, Iterable, Optional

from openai import APIConnectionError, APIStatusError, OpenAI

from ..core.errors import UpstreamClientError, UpstreamExhausted, UpstreamServerError
from ..core.prompts import SYSTEM_PROMPT
from ..core.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.x.ai/v1"
DEFAULT_MODEL = "grok-4-fast-reasoning"


def _error_body(error: APIStatusError) -> Optional[str]:
    response = getattr(error, "response", None)
    if response is not None:
        return response.text
    if error.body is not None:
        return str(error.body)
    return None


class ResilientModelClient:
    """Text-generation client with bounded retry on server-side failures.

    5xx responses, connection errors and timeouts are retried after waiting
    ``backoff_base ** attempt`` seconds. 4xx responses fail on the first
    attempt unless their status is listed in ``retry_on_status``.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        temperature: Optional[float] = 0.7,
        max_tokens: Optional[int] = None,
        retry_on_status: Iterable[int] = (),
        system_prompt: str = SYSTEM_PROMPT,
        client: Optional[Any] = None,
        sleep: Optional[Callable[[float, Optional[threading.Event]], None]] = None
    ):
        """Initialize the client.

        Args:
            model: Default model identifier (required)
            api_key: Endpoint API key; ignored when ``client`` is given
            base_url: OpenAI-compatible endpoint root
            timeout: Per-attempt HTTP timeout in seconds
            max_retries: Default total attempts per ``invoke``
            backoff_base: Base of the exponential backoff
            temperature: Sampling temperature (optional)
            max_tokens: Completion token cap (optional)
            retry_on_status: 4xx statuses to treat as retryable
            system_prompt: System message sent with every prompt
            client: Preconfigured OpenAI client, mainly for tests
            sleep: Backoff sleeper, mainly for tests

        Raises:
            ValueError: If model is missing/empty or max_retries < 1
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")

        self.model = model
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.retry_on_status = frozenset(retry_on_status)
        self.system_prompt = system_prompt
        self.sleep = sleep
        # RetryPolicy owns retries; the SDK must not add its own.
        self.client = client or OpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0
        )

    def _classify(self, error: APIStatusError) -> Exception:
        status = error.status_code
        body = _error_body(error)
        message = f"Model endpoint returned {status}"
        if 500 <= status < 600 or status in self.retry_on_status:
            return UpstreamServerError(message, status_code=status, body=body)
        return UpstreamClientError(message, status_code=status, body=body)

    def _invoke_once(self, prompt: str, model: str) -> str:
        params = {}
        if self.temperature is not None:
            params["temperature"] = self.temperature
        if self.max_tokens is not None:
            params["max_tokens"] = self.max_tokens

        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": prompt},
                ],
                **params
            )
        except APIStatusError as e:
            raise self._classify(e) from e
        except APIConnectionError as e:
            raise UpstreamServerError(f"Model endpoint unreachable: {e}") from e

        choices = getattr(response, "choices", None) or []
        if not choices:
            logger.warning("Model response contained no choices")
            return ""
        message = getattr(choices[0], "message", None)
        return getattr(message, "content", None) or ""

    def invoke(
        self,
        prompt: str,
        model: Optional[str] = None,
        max_retries: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> str:
        """Send ``prompt`` and return the text of the first choice.

        Args:
            prompt: User prompt (required)
            model: Overrides the default model
            max_retries: Overrides the default total attempts
            cancel_event: Interrupts backoff when set

        Returns:
            Message text, or an empty string when the reply had none

        Raises:
            ValueError: If prompt is empty
            UpstreamClientError: On a non-retryable status (first attempt)
            UpstreamExhausted: When every attempt failed transiently
            GenerationCancelled: If cancelled between attempts
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")

        target = model or self.model
        attempts = max_retries if max_retries is not None else self.max_retries
        policy = RetryPolicy(
            max_attempts=attempts,
            initial_delay=self.backoff_base,
            multiplier=self.backoff_base,
            retry_on=(UpstreamServerError,),
            sleep=self.sleep
        )
        made = 0

        def attempt() -> str:
            nonlocal made
            made += 1
            logger.debug(f"Calling {target} (attempt {made}/{attempts})")
            return self._invoke_once(prompt, target)

        def on_retry(number: int, error: BaseException, delay: float) -> None:
            logger.warning(
                f"Model endpoint error {getattr(error, 'status_code', None)} on attempt "
                f"{number}/{attempts}, retrying in {delay:.0f}s"
            )

        try:
            text = policy.run(attempt, cancel_event=cancel_event, on_retry=on_retry)
        except UpstreamServerError as e:
            logger.error(f"Model endpoint failed after {made} attempts: {e}")
            raise UpstreamExhausted(
                f"Model endpoint failed after {made} attempts",
                status_code=e.status_code,
                body=e.body,
                attempts=made
            ) from e
        except UpstreamClientError as e:
            logger.error(f"Model endpoint rejected request with {e.status_code}: {e.body}")
            raise

        if made > 1:
            logger.info(f"Model call succeeded on attempt {made}")
        return text
