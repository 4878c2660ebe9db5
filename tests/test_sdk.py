"""
Unit tests for SDK layer.

Tests the synthesis gateway: provider error classification, credential
rotation through the pool, and response handling.
"""

import base64
from unittest.mock import Mock, patch

import httpx
import openai
import pytest

from credit_guard.core.credentials import CredentialPool, TransientErrorKind
from credit_guard.core.errors import CredentialPoolExhausted, InvalidRequest, RateLimited, SynthesisFailed
from credit_guard.sdk.gateway import (
    GridArtifact,
    GridRequest,
    SynthesisGateway,
    SynthesisMode,
    classify_provider_error,
    classify_status,
    decode_artifact,
)

REFERENCE = base64.b64encode(b"fake-png-bytes").decode("ascii")
PROMPTS = ["wave", "laugh", "sleep", "run"]

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/images/edits")


def status_error(status: int, code: str = None) -> openai.APIStatusError:
    """Build a provider error carrying an HTTP status."""
    body = {"code": code, "message": "error"} if code else None
    return openai.APIStatusError(
        "error", response=httpx.Response(status, request=_REQUEST), body=body
    )


def image_response(b64: str = "Y29tcG9zaXRl"):
    return Mock(data=[Mock(b64_json=b64)])


class TestClassification:
    """Test mapping of provider failures to error kinds."""

    @pytest.mark.parametrize("status,code,kind", [
        (401, None, TransientErrorKind.PERMANENT_INVALID),
        (400, "invalid_api_key", TransientErrorKind.PERMANENT_INVALID),
        (400, "API_KEY_INVALID", TransientErrorKind.PERMANENT_INVALID),
        (400, None, TransientErrorKind.NOT_RETRYABLE),
        (403, None, TransientErrorKind.PERMISSION_DENIED),
        (429, None, TransientErrorKind.RATE_LIMITED),
        (500, None, TransientErrorKind.TRANSIENT),
        (503, None, TransientErrorKind.TRANSIENT),
        (404, None, TransientErrorKind.NOT_RETRYABLE),
        (None, None, TransientErrorKind.NOT_RETRYABLE),
    ])
    def test_classify_status(self, status, code, kind):
        assert classify_status(status, code) is kind

    def test_status_error_uses_response_status(self):
        assert classify_provider_error(status_error(429)) is TransientErrorKind.RATE_LIMITED
        assert classify_provider_error(status_error(401)) is TransientErrorKind.PERMANENT_INVALID

    def test_invalid_key_code_in_body(self):
        error = status_error(400, "invalid_api_key")
        assert classify_provider_error(error) is TransientErrorKind.PERMANENT_INVALID

    def test_connection_errors_are_transient(self):
        assert classify_provider_error(
            openai.APIConnectionError(request=_REQUEST)
        ) is TransientErrorKind.TRANSIENT
        assert classify_provider_error(TimeoutError()) is TransientErrorKind.TRANSIENT

    def test_unknown_errors_are_not_retryable(self):
        assert classify_provider_error(KeyError("x")) is TransientErrorKind.NOT_RETRYABLE


class TestDecodeArtifact:
    """Test reference image decoding."""

    def test_plain_base64(self):
        assert decode_artifact(REFERENCE) == b"fake-png-bytes"

    def test_data_url_prefix_is_stripped(self):
        assert decode_artifact(f"data:image/png;base64,{REFERENCE}") == b"fake-png-bytes"

    def test_empty_reference(self):
        with pytest.raises(InvalidRequest, match="Reference image is required"):
            decode_artifact("  ")

    def test_invalid_base64(self):
        with pytest.raises(InvalidRequest, match="not valid base64"):
            decode_artifact("not base64!!")


class TestSynthesisGateway:
    """Test the gateway against a mocked OpenAI client."""

    def setup_method(self):
        self.sleep = Mock()
        self.clients = {"key-a": Mock(), "key-b": Mock()}

    def _gateway(self, keys=("key-a", "key-b"), retries=2):
        pool = CredentialPool(list(keys), retries=retries, base_delay=1.0, sleep=self.sleep)
        return SynthesisGateway(pool, model="gpt-image-1")

    def _patch_openai(self):
        return patch(
            'credit_guard.sdk.gateway.OpenAI',
            side_effect=lambda api_key, max_retries: self.clients[api_key],
        )

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="model is required"):
            SynthesisGateway(CredentialPool(["k"]), model="")

    def test_generate_grid_success(self):
        """Test a successful grid call returns the composite."""
        self.clients["key-a"].images.edit.return_value = image_response("Y29tcG9zaXRl")
        gateway = self._gateway()

        with self._patch_openai() as mock_openai:
            artifact = gateway.generate_grid(
                GridRequest(REFERENCE, PROMPTS, "a cat", SynthesisMode.INDEPENDENT)
            )

        assert artifact == GridArtifact("Y29tcG9zaXRl", SynthesisMode.INDEPENDENT)
        mock_openai.assert_called_once_with(api_key="key-a", max_retries=0)
        kwargs = self.clients["key-a"].images.edit.call_args.kwargs
        assert kwargs["model"] == "gpt-image-1"
        assert kwargs["size"] == "1024x1024"
        assert kwargs["image"][1] == b"fake-png-bytes"
        for prompt in PROMPTS:
            assert prompt in kwargs["prompt"]

    def test_clone_mode_prompt_mentions_master_reference(self):
        self.clients["key-a"].images.edit.return_value = image_response()
        gateway = self._gateway()

        with self._patch_openai():
            artifact = gateway.generate_grid(
                GridRequest(REFERENCE, PROMPTS, "a cat", SynthesisMode.CLONE)
            )

        assert artifact.mode is SynthesisMode.CLONE
        assert "master visual reference" in self.clients["key-a"].images.edit.call_args.kwargs["prompt"]

    def test_clients_are_cached_per_credential(self):
        for client in self.clients.values():
            client.images.edit.return_value = image_response()
        gateway = self._gateway()

        with self._patch_openai() as mock_openai:
            for _ in range(4):
                gateway.generate_grid(GridRequest(REFERENCE, PROMPTS, "a cat"))

        assert mock_openai.call_count == 2

    def test_wrong_prompt_count_rejected(self):
        gateway = self._gateway()
        with pytest.raises(InvalidRequest, match="exactly 4 prompts"):
            gateway.generate_grid(GridRequest(REFERENCE, PROMPTS[:3], "a cat"))

    def test_invalid_key_rotates_and_disables(self):
        """Test a rejected credential is disabled and the next one used."""
        self.clients["key-a"].images.edit.side_effect = status_error(401)
        self.clients["key-b"].images.edit.return_value = image_response()
        gateway = self._gateway()

        with self._patch_openai():
            gateway.generate_grid(GridRequest(REFERENCE, PROMPTS, "a cat"))

        assert gateway.pool.is_disabled("key-a")
        assert not gateway.pool.is_disabled("key-b")
        self.sleep.assert_not_called()

    def test_rate_limit_exhausting_budget_raises_rate_limited(self):
        for client in self.clients.values():
            client.images.edit.side_effect = status_error(429)
        gateway = self._gateway()

        with self._patch_openai():
            with pytest.raises(RateLimited) as exc_info:
                gateway.generate_grid(GridRequest(REFERENCE, PROMPTS, "a cat"))

        assert isinstance(exc_info.value.__cause__, openai.APIStatusError)
        assert self.sleep.call_count == 2
        self.sleep.assert_called_with(2.0)

    def test_not_retryable_error_raises_synthesis_failed(self):
        self.clients["key-a"].images.edit.side_effect = status_error(400)
        gateway = self._gateway()

        with self._patch_openai():
            with pytest.raises(SynthesisFailed):
                gateway.generate_grid(GridRequest(REFERENCE, PROMPTS, "a cat"))

        self.clients["key-b"].images.edit.assert_not_called()

    def test_empty_response_raises_synthesis_failed(self):
        self.clients["key-a"].images.edit.return_value = Mock(data=[])
        gateway = self._gateway()

        with self._patch_openai():
            with pytest.raises(SynthesisFailed, match="no image data"):
                gateway.generate_grid(GridRequest(REFERENCE, PROMPTS, "a cat"))

    def test_all_credentials_invalid_exhausts_pool(self):
        for client in self.clients.values():
            client.images.edit.side_effect = status_error(401)
        gateway = self._gateway(retries=5)

        with self._patch_openai():
            with pytest.raises(CredentialPoolExhausted):
                gateway.generate_grid(GridRequest(REFERENCE, PROMPTS, "a cat"))

        assert gateway.pool.enabled_count == 0

    def test_generate_single(self):
        self.clients["key-a"].images.edit.return_value = image_response("c2luZ2xl")
        gateway = self._gateway()

        with self._patch_openai():
            assert gateway.generate_single(REFERENCE, "a cat", "waving") == "c2luZ2xl"

        assert "waving" in self.clients["key-a"].images.edit.call_args.kwargs["prompt"]

    def test_generate_single_requires_prompt(self):
        with pytest.raises(InvalidRequest):
            self._gateway().generate_single(REFERENCE, "a cat", " ")
