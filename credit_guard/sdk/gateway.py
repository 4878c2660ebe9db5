"""
Synthesis gateway over the OpenAI images API.

Wraps one provider call with credential rotation. Provider errors are
mapped once, here, to a TransientErrorKind; callers only ever see
``SynthesisFailed``, ``RateLimited`` or ``CredentialPoolExhausted``.
"""

import base64
import binascii
import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Sequence

import openai
from openai import OpenAI

from ..core.credentials import CredentialPool, TransientErrorKind
from ..core.errors import CreditGuardError, InvalidRequest, RateLimited, SynthesisFailed

logger = logging.getLogger(__name__)

GRID_ARITY = 4

_DATA_URL_PREFIX = re.compile(r"^data:image/(png|jpeg|jpg|webp);base64,")

# Error codes some providers return with HTTP 400 for a bad key.
_INVALID_KEY_CODES = {"invalid_api_key", "API_KEY_INVALID"}


class SynthesisMode(Enum):
    """How the reference artifact is used by the provider."""
    INDEPENDENT = "independent"
    CLONE = "clone"


@dataclass(frozen=True)
class GridRequest:
    """One fixed-arity grid synthesis call."""
    reference: str
    prompts: Sequence[str]
    description: str
    mode: SynthesisMode = SynthesisMode.INDEPENDENT


@dataclass(frozen=True)
class GridArtifact:
    """Composite image returned for a grid request (base64 PNG)."""
    image_base64: str
    mode: SynthesisMode


def classify_status(status: Optional[int], code: Optional[str] = None) -> TransientErrorKind:
    """Map a provider HTTP status (and error code) to a TransientErrorKind."""
    if status == 401 or (status == 400 and code in _INVALID_KEY_CODES):
        return TransientErrorKind.PERMANENT_INVALID
    if status == 403:
        return TransientErrorKind.PERMISSION_DENIED
    if status == 429:
        return TransientErrorKind.RATE_LIMITED
    if status is not None and status >= 500:
        return TransientErrorKind.TRANSIENT
    return TransientErrorKind.NOT_RETRYABLE


def classify_provider_error(error: BaseException) -> TransientErrorKind:
    """Classify an exception raised during a provider call."""
    if isinstance(error, openai.APIConnectionError):
        return TransientErrorKind.TRANSIENT
    if isinstance(error, openai.APIStatusError):
        return classify_status(error.status_code, getattr(error, "code", None))
    if isinstance(error, (ConnectionError, TimeoutError)):
        return TransientErrorKind.TRANSIENT
    return TransientErrorKind.NOT_RETRYABLE


def decode_artifact(artifact: str) -> bytes:
    """Decode a base64 image, accepting an optional data-URL prefix.

    Raises:
        InvalidRequest: If the artifact is empty or not valid base64
    """
    if not artifact or not artifact.strip():
        raise InvalidRequest("Reference image is required")
    clean = _DATA_URL_PREFIX.sub("", artifact.strip())
    try:
        return base64.b64decode(clean, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidRequest("Reference image is not valid base64")


def _grid_prompt(request: GridRequest) -> str:
    if request.mode is SynthesisMode.CLONE:
        reference_instruction = (
            "The attached image is the master visual reference, a grid of stickers. "
            "Draw the exact same characters: copy clothing, colors, line width and shading. "
            "If the character description conflicts with the image, follow the image."
        )
    else:
        reference_instruction = (
            "Use the attached photo as the character reference and transform it "
            "into the requested style."
        )
    cells = ["Top left", "Top right", "Bottom left", "Bottom right"]
    layout = "\n".join(f"- {cell}: {prompt}" for cell, prompt in zip(cells, request.prompts))
    return (
        "Create a 2x2 grid image containing 4 distinct die-cut stickers.\n"
        f"{reference_instruction}\n"
        f"Character description: {request.description}\n"
        f"Grid layout:\n{layout}\n"
        "All 4 stickers depict the same character. Strict 2x2 grid, non-overlapping."
    )


def _single_prompt(description: str, prompt: str) -> str:
    return (
        "Create a single centered die-cut sticker.\n"
        f"Character description: {description}\n"
        f"Action/expression: {prompt}"
    )


class SynthesisGateway:
    """Image synthesis client with pooled credentials.

    One OpenAI client is kept per credential; the pool decides which
    credential each attempt uses.
    """

    def __init__(
        self,
        pool: CredentialPool,
        model: str = "gpt-image-1",
        image_size: str = "1024x1024",
    ):
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.pool = pool
        self.model = model
        self.image_size = image_size
        self._clients: Dict[str, OpenAI] = {}
        self._clients_lock = threading.Lock()

    def _client(self, credential: str) -> OpenAI:
        with self._clients_lock:
            client = self._clients.get(credential)
            if client is None:
                client = OpenAI(api_key=credential, max_retries=0)
                self._clients[credential] = client
            return client

    def _edit(self, credential: str, image: bytes, prompt: str) -> str:
        response = self._client(credential).images.edit(
            model=self.model,
            image=("reference.png", image, "image/png"),
            prompt=prompt,
            size=self.image_size,
        )
        data = response.data or []
        if not data or not getattr(data[0], "b64_json", None):
            raise SynthesisFailed("Provider returned no image data")
        return data[0].b64_json

    def _run(self, image: bytes, prompt: str) -> str:
        try:
            return self.pool.execute(
                lambda credential: self._edit(credential, image, prompt),
                classify_provider_error,
            )
        except CreditGuardError:
            raise
        except Exception as e:
            if classify_provider_error(e) is TransientErrorKind.RATE_LIMITED:
                raise RateLimited("Provider rate limit reached") from e
            raise SynthesisFailed(f"Image synthesis failed: {e}") from e

    def generate_grid(self, request: GridRequest) -> GridArtifact:
        """Synthesize one 2x2 composite for exactly four prompts.

        Raises:
            InvalidRequest: If the prompt count or reference is invalid
            RateLimited: If the provider kept rate limiting until the budget ran out
            SynthesisFailed: For any other provider failure
            CredentialPoolExhausted: If no credential is enabled
        """
        if len(request.prompts) != GRID_ARITY:
            raise InvalidRequest(f"Grid generation requires exactly {GRID_ARITY} prompts")
        image = decode_artifact(request.reference)

        logger.info("Dispatching grid synthesis (%s mode)", request.mode.value)
        composite = self._run(image, _grid_prompt(request))
        return GridArtifact(image_base64=composite, mode=request.mode)

    def generate_single(self, reference: str, description: str, prompt: str) -> str:
        """Synthesize one sticker image and return it as base64."""
        if not prompt or not prompt.strip():
            raise InvalidRequest("prompt is required and cannot be empty")
        image = decode_artifact(reference)
        return self._run(image, _single_prompt(description, prompt))
