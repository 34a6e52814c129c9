"""
Unit tests for SDK layer.

Tests retry classification and backoff of the model client against a
mocked OpenAI client.
"""

import threading
from unittest.mock import Mock, patch

import httpx
import pytest
from openai import APIConnectionError, APIStatusError

from jump_guard.core.errors import (
    GenerationCancelled,
    UpstreamClientError,
    UpstreamExhausted,
)
from jump_guard.sdk.model_client import DEFAULT_BASE_URL, ResilientModelClient

URL = "https://api.x.ai/v1/chat/completions"


def _status_error(status: int, body: str = "error body") -> APIStatusError:
    request = httpx.Request("POST", URL)
    response = httpx.Response(status, request=request, text=body)
    return APIStatusError(f"Error code: {status}", response=response, body=None)


def _connection_error() -> APIConnectionError:
    return APIConnectionError(request=httpx.Request("POST", URL))


def _completion(content):
    response = Mock()
    response.choices = [Mock(message=Mock(content=content))]
    return response


class TestResilientModelClient:
    """Test ResilientModelClient retry behavior."""

    def setup_method(self):
        """Set up a client over a mocked OpenAI client."""
        self.delays = []
        self.openai = Mock()
        self.create = self.openai.chat.completions.create
        self.client = ResilientModelClient(
            model="grok-test",
            client=self.openai,
            sleep=lambda delay, event: self.delays.append(delay)
        )

    @patch('jump_guard.sdk.model_client.OpenAI')
    def test_init_disables_sdk_retries(self, mock_openai_class):
        """Test the SDK's own retry loop is switched off."""
        ResilientModelClient(api_key="key", timeout=12.0)
        mock_openai_class.assert_called_once_with(
            api_key="key",
            base_url=DEFAULT_BASE_URL,
            timeout=12.0,
            max_retries=0
        )

    def test_init_missing_model(self):
        with pytest.raises(ValueError, match="model is required"):
            ResilientModelClient(model="", client=Mock())

    def test_init_invalid_retries(self):
        with pytest.raises(ValueError, match="max_retries"):
            ResilientModelClient(client=Mock(), max_retries=0)

    def test_invoke_success(self):
        """Test a successful call returns the first choice's text."""
        self.create.return_value = _completion('{"a": 1}')

        assert self.client.invoke("Plan my week") == '{"a": 1}'

        self.create.assert_called_once_with(
            model="grok-test",
            messages=[
                {"role": "system", "content": self.client.system_prompt},
                {"role": "user", "content": "Plan my week"},
            ],
            temperature=0.7
        )
        assert self.delays == []

    def test_invoke_passes_max_tokens_and_model_override(self):
        client = ResilientModelClient(client=self.openai, temperature=None, max_tokens=500)
        self.create.return_value = _completion("hi")

        client.invoke("prompt", model="other-model")

        kwargs = self.create.call_args.kwargs
        assert kwargs["model"] == "other-model"
        assert kwargs["max_tokens"] == 500
        assert "temperature" not in kwargs

    def test_empty_prompt_rejected(self):
        with pytest.raises(ValueError, match="prompt is required"):
            self.client.invoke("   ")
        self.create.assert_not_called()

    def test_retry_timing_500_500_200(self):
        """Test two server errors then success: waits 2s then 4s, 3 attempts."""
        self.create.side_effect = [
            _status_error(500),
            _status_error(500),
            _completion("done"),
        ]

        assert self.client.invoke("prompt") == "done"
        assert self.create.call_count == 3
        assert self.delays == [2.0, 4.0]

    def test_no_retry_on_404(self):
        """Test a 404 fails on the first attempt."""
        self.create.side_effect = _status_error(404, "model not found")

        with pytest.raises(UpstreamClientError) as exc_info:
            self.client.invoke("prompt")

        assert exc_info.value.status_code == 404
        assert exc_info.value.body == "model not found"
        assert self.create.call_count == 1
        assert self.delays == []

    def test_rate_limit_not_retried_by_default(self):
        self.create.side_effect = _status_error(429)

        with pytest.raises(UpstreamClientError):
            self.client.invoke("prompt")
        assert self.create.call_count == 1

    def test_rate_limit_retried_when_configured(self):
        client = ResilientModelClient(
            client=self.openai,
            retry_on_status=[429],
            sleep=lambda delay, event: self.delays.append(delay)
        )
        self.create.side_effect = [_status_error(429), _completion("ok")]

        assert client.invoke("prompt") == "ok"
        assert self.delays == [2.0]

    def test_exhausted_carries_last_status_and_body(self):
        """Test exhausting retries raises UpstreamExhausted with diagnostics."""
        self.create.side_effect = [
            _status_error(500, "first"),
            _status_error(502, "second"),
            _status_error(503, "third"),
        ]

        with pytest.raises(UpstreamExhausted) as exc_info:
            self.client.invoke("prompt")

        error = exc_info.value
        assert error.status_code == 503
        assert error.body == "third"
        assert error.attempts == 3
        assert self.create.call_count == 3
        assert self.delays == [2.0, 4.0]

    def test_max_retries_override(self):
        self.create.side_effect = _status_error(500)

        with pytest.raises(UpstreamExhausted) as exc_info:
            self.client.invoke("prompt", max_retries=1)

        assert exc_info.value.attempts == 1
        assert self.delays == []

    def test_connection_error_is_transient(self):
        self.create.side_effect = [_connection_error(), _completion("ok")]

        assert self.client.invoke("prompt") == "ok"
        assert self.create.call_count == 2

    def test_connection_errors_exhaust_without_status(self):
        self.create.side_effect = _connection_error()

        with pytest.raises(UpstreamExhausted) as exc_info:
            self.client.invoke("prompt")
        assert exc_info.value.status_code is None

    def test_cancel_during_backoff(self):
        """Test cancellation while waiting stops the retry loop."""
        event = threading.Event()
        client = ResilientModelClient(client=self.openai, sleep=lambda delay, e: e.set())
        self.create.side_effect = _status_error(500)

        with pytest.raises(GenerationCancelled):
            client.invoke("prompt", cancel_event=event)
        assert self.create.call_count == 1

    def test_missing_content_returns_empty_text(self):
        self.create.return_value = _completion(None)
        assert self.client.invoke("prompt") == ""

    def test_no_choices_returns_empty_text(self):
        response = Mock()
        response.choices = []
        self.create.return_value = response
        assert self.client.invoke("prompt") == ""
