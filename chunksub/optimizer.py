"""Optional LLM-based correction of subtitle text."""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

import httpx

from .exceptions import (
    AuthenticationMissing,
    BackendRejected,
    BackendUnavailable,
    ConfigurationError,
    OperationCancelled,
    OptimizationFailed,
)
from .models import SubtitleCue
from .retry import RetryExecutor, is_retryable
from .utils import CancellationToken

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a professional subtitle proofreader."

CORRECTION_INSTRUCTIONS = """Correct the subtitles below without changing their meaning or structure.

Requirements:
1. Fix typos and punctuation.
2. Remove filler words (um, uh, er and the like).
3. Normalize formatting (capitalization, numbers, formulas, code).
4. Keep every key exactly as given; return one entry per key."""

_FENCED_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)


class CorrectionBackend(ABC):
    """Abstract base class for text correction services."""

    name: str = "correction"

    @abstractmethod
    def complete(self, system_prompt: str, user_prompt: str) -> str:
        """
        Sends one prompt and returns the model's reply text.

        Raises:
            AuthenticationMissing: No API key configured.
            BackendUnavailable: Timeout, HTTP 429 or 5xx. Retryable.
            BackendRejected: Any other HTTP 4xx.
            OptimizationFailed: The reply had no usable content.
        """
        pass

    def close(self) -> None:
        pass


class OpenAICompatibleCorrectionBackend(CorrectionBackend):
    """Chat-completions endpoint (``{base_url}/v1/chat/completions``) with a Bearer key."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        model: str,
        temperature: float = 0.3,
        timeout: float = 120.0,
        name: str = "llm",
        client: Optional[httpx.Client] = None,
    ):
        if not base_url:
            raise ConfigurationError("Base URL of the correction service cannot be empty.")
        base = base_url.rstrip("/")
        if not base.endswith("/v1"):
            base += "/v1"
        self.url = f"{base}/chat/completions"
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.name = name
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout, connect=30.0))

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        if not self.api_key:
            raise AuthenticationMissing(f"No API key configured for correction backend '{self.name}'")
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            response = self._client.post(self.url, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            raise BackendUnavailable(f"{self.name}: request timed out: {e}") from e
        except httpx.TransportError as e:
            raise BackendUnavailable(f"{self.name}: network error: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise BackendUnavailable(f"{self.name} API call failed ({status}): {response.text[:300]}",
                                     status_code=status)
        if status >= 400:
            raise BackendRejected(f"{self.name} API call failed ({status}): {response.text[:300]}",
                                  status_code=status)
        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise OptimizationFailed(f"Unexpected chat completion response: {response.text[:300]}") from e
        if not content or not str(content).strip():
            raise OptimizationFailed("The correction service returned empty content")
        return str(content)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def build_request(cues: Sequence[SubtitleCue], custom_instructions: Optional[str] = None) -> str:
    """Builds the user prompt. Cues are keyed by their 0-based position, not by their index."""
    mapping = {str(position): cue.text for position, cue in enumerate(cues)}
    parts = [CORRECTION_INSTRUCTIONS]
    if custom_instructions and custom_instructions.strip():
        parts.append(f"Terminology and additional instructions: {custom_instructions.strip()}")
    parts.append("Subtitles:\n" + json.dumps(mapping, ensure_ascii=False, indent=2))
    parts.append('Return the corrected subtitles as a JSON object in the same form: {"0": "...", "1": "..."}')
    return "\n\n".join(parts)


def extract_json_object(reply: str) -> Dict[str, str]:
    """
    Pulls the key -> text object out of a model reply.

    Accepts a bare JSON object, one wrapped in a fenced code block, or one
    embedded in surrounding prose. Non-string values are ignored.

    Raises:
        OptimizationFailed: If no JSON object can be decoded.
    """
    candidates: List[str] = []
    fenced = _FENCED_RE.search(reply or "")
    if fenced:
        candidates.append(fenced.group(1))
    text = (reply or "").strip()
    candidates.append(text)
    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        candidates.append(text[first:last + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return {str(key): value for key, value in data.items() if isinstance(value, str)}
    raise OptimizationFailed(f"No JSON object found in correction reply: {text[:200]!r}")


def apply_corrections(cues: Sequence[SubtitleCue], corrections: Dict[str, str]) -> List[SubtitleCue]:
    """Splices corrected text back by position. Timing, count and order are untouched."""
    result = []
    for position, cue in enumerate(cues):
        corrected = corrections.get(str(position))
        if corrected is not None and corrected.strip():
            result.append(cue.with_text(corrected.strip()))
        else:
            result.append(cue)
    return result


class SubtitleOptimizer:
    """
    Sends merged subtitle text to a correction backend and maps the answer
    back onto the original cues.

    Any failure (network, retries exhausted, unreadable reply) leaves the
    cues exactly as they were; only cancellation propagates.
    """

    def __init__(self, retry_executor: Optional[RetryExecutor] = None):
        self.retry_executor = retry_executor or RetryExecutor()

    def optimize(
        self,
        cues: Sequence[SubtitleCue],
        backend: CorrectionBackend,
        custom_instructions: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[SubtitleCue]:
        cues = list(cues)
        if not cues:
            return cues

        prompt = build_request(cues, custom_instructions)
        logger.info(f"Requesting correction of {len(cues)} cues from '{backend.name}'")
        try:
            reply = self.retry_executor.execute_with_retry(
                lambda: backend.complete(SYSTEM_PROMPT, prompt),
                is_retryable,
                cancel_token=cancel_token,
                description=f"Subtitle correction via {backend.name}",
            )
            corrections = extract_json_object(reply)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.warning(f"Subtitle optimization abandoned, keeping original text: {e}")
            return cues

        missing = sum(1 for position in range(len(cues)) if str(position) not in corrections)
        if missing:
            logger.info(f"Correction reply missed {missing} of {len(cues)} cues; their original text is kept")
        return apply_corrections(cues, corrections)
