# blueprint/gateway.py
"""
Provider-agnostic model gateway.

generate() order of operations:
  1. cache lookup (a hit returns with no provider call and no rate-limit hit)
  2. rate-limit check-and-record, fail fast with RateLimitedError carrying reset_at
  3. provider call under a timeout, retried with exponential backoff
  4. usage metric per attempt, cache write on success
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Union

from blueprint.config import (
    LLM_CALL_WORKERS, MAX_TIMEOUT, RETRY_CONFIG, TIMEOUT_CONFIG, ModelSpec, RetryConfig,
)
from blueprint.errors import (
    GatewayError, GatewayTimeoutError, ProviderError, RateLimitedError,
)
from blueprint.llm_wrapper import ProviderResponse, default_providers, resolve_spec
from blueprint.monitoring import logger, observe_gateway_call, inc_gateway_retry
from blueprint.usage import UsageRecord, UsageRecorder, calculate_cost

# Provider calls run here so the caller can give up at the deadline. A call that
# is already running cannot be cancelled and keeps its worker until the SDK's own
# timeout ends it; providers build their clients with the same timeout and no
# SDK retries, so a worker is held for at most one timeout after abandonment.
_CALL_POOL = ThreadPoolExecutor(max_workers=LLM_CALL_WORKERS, thread_name_prefix="llm-call")


@dataclass
class ChatMessage:
    role: str  # "user" | "assistant"
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class GenerationOptions:
    cache_key: Optional[str] = None
    timeout: Optional[float] = None
    max_retries: Optional[int] = None
    track_cost: bool = True


MessageLike = Union[ChatMessage, Dict[str, str]]


def _as_dicts(messages: Sequence[MessageLike]) -> List[Dict[str, str]]:
    return [m.to_dict() if isinstance(m, ChatMessage) else dict(m) for m in messages]


class ModelGateway:
    def __init__(self, user_id: str, session_id: Optional[str] = None, cache=None,
                 limiter=None, recorder: Optional[UsageRecorder] = None,
                 providers: Optional[Dict[str, object]] = None,
                 retry_config: RetryConfig = RETRY_CONFIG,
                 sleep: Callable[[float], None] = time.sleep):
        self.user_id = user_id
        self.session_id = session_id
        self.cache = cache
        self.limiter = limiter
        self.recorder = recorder if recorder is not None else UsageRecorder()
        self.providers = providers if providers is not None else default_providers()
        self.retry_config = retry_config
        self.sleep = sleep

    # -- public ------------------------------------------------------------
    def generate(self, spec: ModelSpec, system_instruction: str,
                 messages: Sequence[MessageLike],
                 options: Optional[GenerationOptions] = None) -> str:
        options = options or GenerationOptions()

        cached = self._cache_get(options.cache_key)
        if cached is not None:
            return cached

        self._enforce_rate_limit()

        spec = resolve_spec(spec)
        provider = self.providers.get(spec.provider)
        if provider is None:
            raise ProviderError(f"Unsupported provider: {spec.provider}", retryable=False)

        timeout = min(options.timeout or TIMEOUT_CONFIG["default"], MAX_TIMEOUT)
        max_retries = self.retry_config.max_retries if options.max_retries is None else options.max_retries
        chat = _as_dicts(messages)

        for attempt in range(max_retries + 1):
            started = time.time()
            try:
                resp = self._call(provider, spec, system_instruction, chat, timeout)
            except GatewayError as e:
                observe_gateway_call(started, spec.provider, e.code)
                self._record(spec, None, started, options, error=e)
                if not e.retryable or attempt == max_retries:
                    logger.warning("gateway call failed", extra={
                        "user_id": self.user_id, "model": spec.model, "code": e.code,
                        "attempts": attempt + 1, "error": str(e),
                    })
                    raise
                delay = self.retry_config.delay_for(attempt)
                inc_gateway_retry(e.code)
                logger.info("gateway retry", extra={
                    "model": spec.model, "code": e.code, "attempt": attempt + 1, "delay": delay,
                })
                self.sleep(delay)
                continue

            observe_gateway_call(started, spec.provider, "success")
            self._record(spec, resp, started, options)
            if options.cache_key and resp.text:
                self._cache_set(options.cache_key, resp.text)
            return resp.text

        # range() always runs at least once and every path above returns or raises
        raise ProviderError("Failed to generate response")

    # -- internals ---------------------------------------------------------
    def _cache_get(self, key: Optional[str]) -> Optional[str]:
        if not key or self.cache is None:
            return None
        try:
            return self.cache.get(key)
        except Exception as e:
            logger.warning("cache read failed", extra={"key": key, "error": str(e)})
            return None

    def _cache_set(self, key: str, value: str) -> None:
        try:
            self.cache.set(key, value)
        except Exception as e:
            logger.warning("cache write failed", extra={"key": key, "error": str(e)})

    def _enforce_rate_limit(self) -> None:
        if self.limiter is None:
            return
        status = self.limiter.try_acquire(self.user_id)
        if status.blocked:
            wait = max(0.0, (status.reset_at - self.limiter.clock()).total_seconds())
            raise RateLimitedError(
                f"Rate limit exceeded. Reset at {status.reset_at.isoformat()}",
                reset_at=status.reset_at,
                retry_after=wait,
                detail=status.to_dict(),
            )

    def _call(self, provider, spec: ModelSpec, system_instruction: str,
              messages: List[Dict[str, str]], timeout: float) -> ProviderResponse:
        future = _CALL_POOL.submit(provider.complete, spec, system_instruction, messages, timeout)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            raise GatewayTimeoutError(f"Request timed out after {timeout:.0f}s")
        except GatewayError:
            raise
        except Exception as e:
            raise ProviderError(str(e) or e.__class__.__name__, retryable=True) from e

    def _record(self, spec: ModelSpec, resp: Optional[ProviderResponse], started: float,
                options: GenerationOptions, error: Optional[GatewayError] = None) -> None:
        if not options.track_cost:
            return
        in_tok = resp.input_tokens if resp else 0
        out_tok = resp.output_tokens if resp else 0
        self.recorder.record(UsageRecord(
            user_id=self.user_id,
            session_id=self.session_id,
            model_id=spec.model,
            input_tokens=in_tok,
            output_tokens=out_tok,
            cost=calculate_cost(spec.model, in_tok, out_tok),
            latency_ms=int((time.time() - started) * 1000),
            success=error is None,
            error_message=str(error) if error else None,
        ))
