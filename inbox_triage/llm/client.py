"""
Generation engine clients.

Both providers expose the same "prompt in, text out" contract:

- Exactly one network call per generate(); no internal retries.
  Retry policy, if any, belongs to the caller.
- Every call runs under asyncio.wait_for with the caller's timeout, so an
  expired deadline cancels the in-flight request instead of waiting on a
  client-library default.
- Expected failures (timeout, non-2xx, transport error) are returned as
  GenerationFailure values, not raised.
- Logging covers model, purpose, latency and token counts. Never the
  prompt or the response text.

Usage:
    from inbox_triage.llm.client import OllamaClient

    llm = OllamaClient()
    outcome = await llm.generate(prompt, timeout=90, purpose="triage")
    if isinstance(outcome, GenerationFailure):
        ...
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Union

import anthropic
import httpx

from inbox_triage.config import settings

logger = logging.getLogger(__name__)

BODY_EXCERPT_CHARS = 300


@dataclass
class GenerationResult:
    """Raw text returned by the engine plus call metadata."""
    text: str
    model: str
    latency_ms: int
    input_tokens: int = 0
    output_tokens: int = 0


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    REMOTE_ERROR = "remote_error"
    TRANSPORT_ERROR = "transport_error"


@dataclass
class GenerationFailure:
    """A generate() call that produced no usable text."""
    kind: FailureKind
    elapsed_ms: int
    status: Optional[int] = None
    body_excerpt: str = ""
    detail: str = ""

    def __str__(self) -> str:
        if self.kind is FailureKind.TIMEOUT:
            return f"Generation timed out after {self.elapsed_ms}ms"
        if self.kind is FailureKind.REMOTE_ERROR:
            return f"Generation engine error {self.status}: {self.body_excerpt}"
        return f"Generation request failed: {self.detail}"


GenerationOutcome = Union[GenerationResult, GenerationFailure]


class GenerationClient(Protocol):
    model: str

    async def generate(self, prompt: str, timeout: float, purpose: str = "unknown") -> GenerationOutcome: ...

    async def health(self) -> bool: ...

    async def aclose(self) -> None: ...


class _SessionStats:
    """Per-client counters, mirrored into every call log line."""

    def __init__(self):
        self.reset_session_stats()

    def reset_session_stats(self) -> None:
        self.session_call_count = 0
        self.session_failure_count = 0
        self.session_total_input_tokens = 0
        self.session_total_output_tokens = 0

    def get_session_stats(self) -> dict:
        return {
            "total_calls": self.session_call_count,
            "total_failures": self.session_failure_count,
            "total_input_tokens": self.session_total_input_tokens,
            "total_output_tokens": self.session_total_output_tokens,
            "model": self.model,
        }

    def _record_success(self, result: GenerationResult, purpose: str) -> GenerationResult:
        self.session_call_count += 1
        self.session_total_input_tokens += result.input_tokens
        self.session_total_output_tokens += result.output_tokens
        logger.info(
            "llm.call.success",
            extra={
                "action": "llm.call.success",
                "purpose": purpose,
                "model": result.model,
                "input_tokens": result.input_tokens,
                "output_tokens": result.output_tokens,
                "latency_ms": result.latency_ms,
                "session_call_count": self.session_call_count,
            },
        )
        return result

    def _record_failure(self, failure: GenerationFailure, purpose: str) -> GenerationFailure:
        self.session_call_count += 1
        self.session_failure_count += 1
        logger.warning(
            f"llm.call.{failure.kind.value}",
            extra={
                "action": f"llm.call.{failure.kind.value}",
                "purpose": purpose,
                "model": self.model,
                "latency_ms": failure.elapsed_ms,
                "status_code": failure.status,
                "error": failure.detail or None,
            },
        )
        return failure


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _token_count(value) -> int:
    """Usage counters are informational; anything non-numeric counts as 0."""
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


class OllamaClient(_SessionStats):
    """
    Client for an Ollama-compatible /api/generate endpoint.

    The underlying httpx client has no timeout of its own; the deadline
    passed to generate() is the only one that applies.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__()
        self._base = (base_url or settings.ollama_base_url).rstrip("/")
        self.model = model or settings.ollama_model
        self._temperature = settings.generation_temperature if temperature is None else temperature
        self._http = http or httpx.AsyncClient(timeout=None)

        logger.info(
            "llm_client.initialized",
            extra={
                "action": "llm_client.initialized",
                "provider": "ollama",
                "model": self.model,
                "base_url": self._base,
            },
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def generate(self, prompt: str, timeout: float, purpose: str = "unknown") -> GenerationOutcome:
        """
        Send one prompt and return the raw response text or a failure value.

        Args:
            prompt: Fully rendered prompt.
            timeout: Hard deadline in seconds for the whole request.
            purpose: What this call is for ("triage", "summarize"). Used in
                     logs only. NEVER include message content here.
        """
        start = time.monotonic()
        body = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": self._temperature},
        }

        try:
            resp = await asyncio.wait_for(
                self._http.post(f"{self._base}/api/generate", json=body),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return self._record_failure(
                GenerationFailure(kind=FailureKind.TIMEOUT, elapsed_ms=_elapsed_ms(start)), purpose
            )
        except httpx.HTTPError as e:
            return self._record_failure(
                GenerationFailure(
                    kind=FailureKind.TRANSPORT_ERROR,
                    elapsed_ms=_elapsed_ms(start),
                    detail=str(e) or type(e).__name__,
                ),
                purpose,
            )

        if not resp.is_success:
            return self._record_failure(
                GenerationFailure(
                    kind=FailureKind.REMOTE_ERROR,
                    elapsed_ms=_elapsed_ms(start),
                    status=resp.status_code,
                    body_excerpt=resp.text[:BODY_EXCERPT_CHARS],
                ),
                purpose,
            )

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        return self._record_success(
            GenerationResult(
                text=str(data.get("response") or "").strip(),
                model=self.model,
                latency_ms=_elapsed_ms(start),
                input_tokens=_token_count(data.get("prompt_eval_count")),
                output_tokens=_token_count(data.get("eval_count")),
            ),
            purpose,
        )

    async def health(self, timeout: Optional[float] = None) -> bool:
        """Cheap liveness probe: list local models."""
        try:
            resp = await asyncio.wait_for(
                self._http.get(f"{self._base}/api/tags"),
                timeout=timeout or settings.health_timeout_seconds,
            )
            healthy = resp.is_success
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            logger.warning(
                "llm.health.failed",
                extra={"action": "llm.health.failed", "provider": "ollama", "error": str(e) or type(e).__name__},
            )
            return False

        if not healthy:
            logger.warning(
                "llm.health.failed",
                extra={"action": "llm.health.failed", "provider": "ollama", "status_code": resp.status_code},
            )
        return healthy


class AnthropicClient(_SessionStats):
    """
    Same contract over the Anthropic Messages API.

    SDK-level retries are disabled so that one generate() is one request.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        super().__init__()
        self.model = model or settings.anthropic_model
        self._max_tokens = max_tokens or settings.anthropic_max_tokens
        self._temperature = settings.generation_temperature if temperature is None else temperature
        self._client = client or anthropic.AsyncAnthropic(
            api_key=api_key or settings.anthropic_api_key,
            max_retries=0,
        )

        logger.info(
            "llm_client.initialized",
            extra={"action": "llm_client.initialized", "provider": "anthropic", "model": self.model},
        )

    async def aclose(self) -> None:
        await self._client.close()

    async def generate(self, prompt: str, timeout: float, purpose: str = "unknown") -> GenerationOutcome:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    model=self.model,
                    max_tokens=self._max_tokens,
                    temperature=self._temperature,
                    messages=[{"role": "user", "content": prompt}],
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, anthropic.APITimeoutError):
            return self._record_failure(
                GenerationFailure(kind=FailureKind.TIMEOUT, elapsed_ms=_elapsed_ms(start)), purpose
            )
        except anthropic.APIStatusError as e:
            return self._record_failure(
                GenerationFailure(
                    kind=FailureKind.REMOTE_ERROR,
                    elapsed_ms=_elapsed_ms(start),
                    status=e.status_code,
                    body_excerpt=str(e.message)[:BODY_EXCERPT_CHARS],
                ),
                purpose,
            )
        except anthropic.APIConnectionError as e:
            return self._record_failure(
                GenerationFailure(
                    kind=FailureKind.TRANSPORT_ERROR,
                    elapsed_ms=_elapsed_ms(start),
                    detail=str(e),
                ),
                purpose,
            )

        text = "".join(
            getattr(block, "text", "") for block in response.content
        ).strip()
        return self._record_success(
            GenerationResult(
                text=text,
                model=self.model,
                latency_ms=_elapsed_ms(start),
                input_tokens=_token_count(response.usage.input_tokens),
                output_tokens=_token_count(response.usage.output_tokens),
            ),
            purpose,
        )

    async def health(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(
                self._client.models.list(limit=1),
                timeout=timeout or settings.health_timeout_seconds,
            )
            return True
        except (asyncio.TimeoutError, anthropic.APIError) as e:
            logger.warning(
                "llm.health.failed",
                extra={"action": "llm.health.failed", "provider": "anthropic", "error": str(e) or type(e).__name__},
            )
            return False


def build_generation_client() -> GenerationClient:
    """Construct the client selected by `settings.generation_provider`."""
    if settings.generation_provider == "anthropic":
        return AnthropicClient()
    return OllamaClient()
