"""AI Resilience Layer — Providers, Retry, Circuit Breaker, Cache, Usage Estimates.

Every LLM call in the service goes through resilient_llm_call() (one
provider) or call_with_fallback() (an ordered provider chain). Deepseek,
OpenAI and Perplexity all speak the OpenAI chat-completions protocol, so a
single openai client pointed at each provider's base_url serves all three.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass

import openai

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


# ── Providers ───────────────────────────────────────────────

@dataclass(frozen=True)
class ProviderSpec:
    """Static description of an OpenAI-compatible provider."""
    name: str
    base_url: str | None
    key_setting: str
    model_setting: str
    default_model: str


@dataclass(frozen=True)
class LLMProvider:
    """A provider resolved against app config (key and model filled in)."""
    name: str
    model: str
    api_key: str
    base_url: str | None = None


PROVIDERS: dict[str, ProviderSpec] = {
    "deepseek": ProviderSpec(
        "deepseek", "https://api.deepseek.com", "DEEPSEEK_API_KEY", "DEEPSEEK_MODEL", "deepseek-chat",
    ),
    "openai": ProviderSpec(
        "openai", None, "OPENAI_API_KEY", "OPENAI_MODEL", "gpt-4o-mini",
    ),
    "perplexity": ProviderSpec(
        "perplexity", "https://api.perplexity.ai", "PERPLEXITY_API_KEY", "PERPLEXITY_MODEL", "sonar",
    ),
}


def provider_chain(config, names: list[str] | tuple[str, ...]) -> list[LLMProvider]:
    """Resolve provider names in order, dropping any without an API key."""
    chain: list[LLMProvider] = []
    for name in names:
        spec = PROVIDERS.get(name)
        if spec is None:
            raise ValueError(f"Unknown provider: {name}")
        api_key = config.get(spec.key_setting, "")
        if not api_key:
            continue
        chain.append(LLMProvider(
            name=spec.name,
            model=config.get(spec.model_setting) or spec.default_model,
            api_key=api_key,
            base_url=spec.base_url,
        ))
    return chain


# ── Response cache ──────────────────────────────────────────

def llm_cache_key(model: str, prompt: str, system: str = "") -> str:
    """Stable key for one (model, system, prompt) triple."""
    digest = hashlib.sha256(f"{model}\x1f{system}\x1f{prompt}".encode()).hexdigest()
    return f"llm:{digest}"


class TTLCache:
    """Thread-safe LRU of string values, each with its own expiry.

    The per-process backend behind cache_backend.InMemoryCache. At
    MAX_ENTRIES the least recently read or written entry is dropped.
    """

    MAX_ENTRIES = 1000

    def __init__(self) -> None:
        self._entries: OrderedDict[str, tuple[str, float]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            if time.monotonic() >= hit[1]:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return hit[0]

    def set(self, key: str, value: str, ttl_seconds: int = 86400) -> None:
        with self._lock:
            self._entries[key] = (value, time.monotonic() + ttl_seconds)
            self._entries.move_to_end(key)
            while len(self._entries) > self.MAX_ENTRIES:
                self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def cleanup(self) -> int:
        """Drop expired entries; returns how many went."""
        now = time.monotonic()
        with self._lock:
            stale = [k for k, (_, deadline) in self._entries.items() if now >= deadline]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ── Circuit breaker ─────────────────────────────────────────

CLOSED, OPEN, HALF_OPEN = "closed", "open", "half_open"


@dataclass
class _Circuit:
    failures: int = 0
    opened_at: float | None = None


class CircuitBreaker:
    """Per-provider breaker.

    FAILURE_THRESHOLD consecutive failures open the circuit. After
    RECOVERY_TIMEOUT seconds it is half open: calls go through again, a
    success closes it and a failure re-opens it straight away.
    """

    FAILURE_THRESHOLD = 3
    RECOVERY_TIMEOUT = 60.0

    def __init__(self) -> None:
        self._circuits: dict[str, _Circuit] = {}
        self._lock = threading.Lock()

    def _state(self, circuit: _Circuit) -> str:
        if circuit.opened_at is None:
            return CLOSED
        if time.monotonic() - circuit.opened_at < self.RECOVERY_TIMEOUT:
            return OPEN
        return HALF_OPEN

    def get_state(self, provider: str) -> str:
        with self._lock:
            return self._state(self._circuits.setdefault(provider, _Circuit()))

    def is_open(self, provider: str) -> bool:
        return self.get_state(provider) == OPEN

    def record_success(self, provider: str) -> None:
        with self._lock:
            self._circuits[provider] = _Circuit()

    def record_failure(self, provider: str) -> None:
        with self._lock:
            circuit = self._circuits.setdefault(provider, _Circuit())
            circuit.failures += 1
            half_open = self._state(circuit) == HALF_OPEN
            if half_open or circuit.failures >= self.FAILURE_THRESHOLD:
                if circuit.opened_at is None or half_open:
                    logger.warning("Circuit opened for LLM provider %s after %d failures",
                                   provider, circuit.failures)
                circuit.opened_at = time.monotonic()

    def reset(self) -> None:
        with self._lock:
            self._circuits.clear()


_circuit_breaker = CircuitBreaker()


# ── Usage estimates ─────────────────────────────────────────

# USD per million tokens, input and output blended
MODEL_PRICE_PER_MTOK: dict[str, float] = {
    "deepseek-chat": 0.7,
    "gpt-4o": 2.5,
    "gpt-4o-mini": 0.15,
    "sonar": 1.0,
}


def _approx_tokens(text: str) -> int:
    return max(1, len(text) // 4)


def estimate_usage(model: str, input_text: str, output_text: str, latency_ms: int) -> dict:
    """Character-based token counts and a cost estimate for one call."""
    tokens_in = _approx_tokens(input_text)
    tokens_out = _approx_tokens(output_text)
    price = MODEL_PRICE_PER_MTOK.get(model, 1.0)
    return {
        "model": model,
        "input_tokens_est": tokens_in,
        "output_tokens_est": tokens_out,
        "total_tokens_est": tokens_in + tokens_out,
        "cost_estimate_usd": round((tokens_in + tokens_out) * price / 1_000_000, 6),
        "latency_ms": latency_ms,
    }


# ── Errors ──────────────────────────────────────────────────

_RETRYABLE_TYPES = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
    ConnectionError,
    TimeoutError,
)

# Provider errors that only show up in the message text
_RETRYABLE_TEXT = re.compile(
    r"rate limit|\b(429|500|502|503)\b|overloaded|temporarily unavailable|timeout|connection",
    re.IGNORECASE,
)


def _is_transient(exc: BaseException) -> bool:
    """True for errors worth another attempt against the same provider."""
    return isinstance(exc, _RETRYABLE_TYPES) or bool(_RETRYABLE_TEXT.search(str(exc)))


class TransientLLMError(Exception):
    """A retryable provider failure (network, rate limit, 5xx)."""


class CircuitOpenError(RuntimeError):
    """The provider's circuit breaker is open; the call was not attempted."""


class MalformedLLMResponseError(Exception):
    """The provider answered, but with empty or unparseable content."""


class AllProvidersFailedError(Exception):
    """Every provider in a fallback chain failed (or none was configured)."""

    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        if errors:
            detail = "; ".join(f"{name}: {err}" for name, err in errors.items())
        else:
            detail = "no provider configured"
        super().__init__(f"All LLM providers failed ({detail})")


# ── Main entry points ───────────────────────────────────────

def _do_call(
    provider: LLMProvider,
    prompt: str,
    system: str,
    messages: list[dict] | None,
    max_tokens: int,
    temperature: float,
) -> str:
    """Execute the actual LLM API call (no retry, no cache)."""
    client = openai.OpenAI(api_key=provider.api_key, base_url=provider.base_url)
    chat_messages: list[dict] = []
    if system:
        chat_messages.append({"role": "system", "content": system})
    if messages:
        chat_messages.extend(messages)
    else:
        chat_messages.append({"role": "user", "content": prompt})
    response = client.chat.completions.create(
        model=provider.model,
        messages=chat_messages,
        max_tokens=max_tokens,
        temperature=temperature,
    )
    if not response.choices:
        raise MalformedLLMResponseError(f"{provider.name} returned no choices")
    content = (response.choices[0].message.content or "").strip()
    if not content:
        raise MalformedLLMResponseError(f"{provider.name} returned empty content")
    return content


@retry(
    retry=retry_if_exception_type(TransientLLMError),
    wait=wait_exponential(multiplier=1, min=1, max=30),
    stop=stop_after_attempt(3),
    reraise=True,
)
def _call_with_retry(
    provider: LLMProvider,
    prompt: str,
    system: str,
    messages: list[dict] | None,
    max_tokens: int,
    temperature: float,
) -> str:
    """Up to three attempts; only transient failures are retried."""
    try:
        return _do_call(provider, prompt, system, messages, max_tokens, temperature)
    except MalformedLLMResponseError:
        raise
    except Exception as exc:
        if not _is_transient(exc):
            raise
        logger.debug("Transient error from %s, will retry: %s", provider.name, exc)
        raise TransientLLMError(str(exc)) from exc


def resilient_llm_call(
    provider: LLMProvider,
    prompt: str,
    system: str = "",
    messages: list[dict] | None = None,
    cache_ttl: int = 0,
    max_tokens: int = 1024,
    temperature: float = 0.7,
) -> tuple[str, dict]:
    """Call one provider behind its circuit breaker.

    With cache_ttl > 0 the text is served from / stored in the shared
    cache_backend cache. Returns (text, metrics); metrics carries provider,
    model, token and cost estimates, latency_ms and cache_hit.

    Raises CircuitOpenError without calling out when the provider's circuit
    is open; any other failure is recorded against the circuit and re-raised.
    """
    if _circuit_breaker.is_open(provider.name):
        raise CircuitOpenError(f"Circuit breaker open for provider: {provider.name}")

    from cache_backend import get_cache

    cache = get_cache() if cache_ttl > 0 else None
    key = llm_cache_key(provider.model, prompt, system)
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            return cached, {
                "provider": provider.name,
                "model": provider.model,
                "cache_hit": True,
                "total_tokens_est": 0,
                "cost_estimate_usd": 0.0,
                "latency_ms": 0,
            }

    started = time.monotonic()
    try:
        text = _call_with_retry(provider, prompt, system, messages, max_tokens, temperature)
    except Exception:
        _circuit_breaker.record_failure(provider.name)
        raise
    _circuit_breaker.record_success(provider.name)

    if cache is not None:
        cache.set(key, text, cache_ttl)

    sent = system + prompt + (str(messages) if messages else "")
    metrics = estimate_usage(provider.model, sent, text, int((time.monotonic() - started) * 1000))
    metrics.update(cache_hit=False, provider=provider.name)
    return text, metrics


def call_with_fallback(
    chain: list[LLMProvider],
    prompt: str,
    system: str = "",
    cache_ttl: int = 0,
    max_tokens: int = 1024,
    temperature: float = 0.7,
) -> tuple[str, str, dict]:
    """Try each provider in order until one answers.

    Returns:
        (response_text, provider_name, metrics) from the first success.

    Raises:
        AllProvidersFailedError: if the chain is empty or every provider failed.
    """
    errors: dict[str, str] = {}
    for provider in chain:
        try:
            text, metrics = resilient_llm_call(
                provider, prompt, system=system, cache_ttl=cache_ttl,
                max_tokens=max_tokens, temperature=temperature,
            )
        except Exception as exc:
            errors[provider.name] = str(exc)
            logger.info("LLM provider %s failed, trying next: %s", provider.name, exc)
            continue
        return text, provider.name, metrics
    raise AllProvidersFailedError(errors)


def get_circuit_breaker() -> CircuitBreaker:
    """Access the module-level circuit breaker singleton."""
    return _circuit_breaker
