# blueprint/llm_wrapper.py
"""
Provider adapters for the model gateway. Supports Anthropic, OpenAI and a mock.

Every adapter exposes `complete(spec, system_instruction, messages, timeout)`
and returns a ProviderResponse. SDK exceptions are translated into the gateway
error taxonomy (blueprint.errors) so retry decisions never look at SDK types.

Configuration (env vars):
  LLM_PROVIDER=openai|anthropic   force one provider for every call (optional)
  OPENAI_API_KEY=...
  ANTHROPIC_API_KEY=...
  MOCK_LLM=true                   (mock mode for dev/tests)

Usage:
  provider = default_providers()[spec.provider]
  resp = provider.complete(spec, "You are...", [{"role": "user", "content": "..."}], timeout=30)
  text = resp.text; tokens = resp.input_tokens + resp.output_tokens
"""

import hashlib
import os
from dataclasses import dataclass, replace
from typing import Dict, Any, Optional, List

from blueprint.config import ModelSpec, MOCK_LLM
from blueprint.errors import (
    GatewayError, GatewayTimeoutError, ProviderError, error_for_status,
)

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "").strip()

_explicit_provider = os.getenv("LLM_PROVIDER", "").strip().lower()
if _explicit_provider in ("anthropic", "claude"):
    LLM_PROVIDER = "anthropic"
elif _explicit_provider in ("openai", "gpt"):
    LLM_PROVIDER = "openai"
else:
    LLM_PROVIDER = ""

# Default models per provider, used when LLM_PROVIDER overrides a descriptor
_ANTHROPIC_DEFAULT = "claude-sonnet-4-20250514"
_OPENAI_DEFAULT = "gpt-4o-mini"


@dataclass
class ProviderResponse:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    response_id: Optional[str] = None
    model: Optional[str] = None


def _retry_after(exc) -> Optional[float]:
    headers = getattr(getattr(exc, "response", None), "headers", None) or {}
    raw = headers.get("retry-after") if hasattr(headers, "get") else None
    try:
        return float(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _translate(exc: Exception, sdk) -> GatewayError:
    """Map an anthropic/openai SDK exception onto the gateway taxonomy."""
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, sdk.APITimeoutError):
        return GatewayTimeoutError("Request timed out")
    if isinstance(exc, sdk.APIStatusError):
        body = getattr(exc, "body", None)
        return error_for_status(exc.status_code, str(exc), detail=body,
                                retry_after=_retry_after(exc))
    if isinstance(exc, sdk.APIConnectionError):
        return ProviderError(f"Connection error: {exc}", retryable=True)
    return ProviderError(str(exc) or exc.__class__.__name__, retryable=True)


# ---------------------------------------------------------------------------
# Anthropic backend
# ---------------------------------------------------------------------------
class AnthropicProvider:
    name = "anthropic"

    def __init__(self, api_key: str = ANTHROPIC_API_KEY):
        self.api_key = api_key

    def complete(self, spec: ModelSpec, system_instruction: str,
                 messages: List[Dict[str, str]], timeout: float) -> ProviderResponse:
        import anthropic

        client = anthropic.Anthropic(api_key=self.api_key, timeout=timeout, max_retries=0)

        # Anthropic uses a separate system param, not a system message in messages list
        chat_messages = [
            {"role": "user" if m["role"] == "user" else "assistant", "content": m["content"]}
            for m in messages if m["role"] != "system"
        ]
        kwargs: Dict[str, Any] = {
            "model": spec.model,
            "max_tokens": spec.max_tokens,
            "temperature": spec.temperature,
            "messages": chat_messages,
        }
        if system_instruction.strip():
            kwargs["system"] = system_instruction.strip()

        try:
            resp = client.messages.create(**kwargs)
        except Exception as e:
            raise _translate(e, anthropic) from e

        text = ""
        for block in resp.content:
            if hasattr(block, "text"):
                text += block.text
        usage = getattr(resp, "usage", None)
        return ProviderResponse(
            text=text,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
            response_id=getattr(resp, "id", None),
            model=spec.model,
        )


# ---------------------------------------------------------------------------
# OpenAI backend
# ---------------------------------------------------------------------------
class OpenAIProvider:
    name = "openai"

    def __init__(self, api_key: str = OPENAI_API_KEY):
        self.api_key = api_key

    def complete(self, spec: ModelSpec, system_instruction: str,
                 messages: List[Dict[str, str]], timeout: float) -> ProviderResponse:
        import openai

        client = openai.OpenAI(api_key=self.api_key, timeout=timeout, max_retries=0)
        chat = [{"role": "system", "content": system_instruction}] + list(messages)
        try:
            resp = client.chat.completions.create(
                model=spec.model,
                messages=chat,
                max_tokens=spec.max_tokens,
                temperature=spec.temperature,
            )
        except Exception as e:
            raise _translate(e, openai) from e

        choices = getattr(resp, "choices", [])
        text = (choices[0].message.content or "") if choices else ""
        usage = getattr(resp, "usage", None)
        return ProviderResponse(
            text=text,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            response_id=getattr(resp, "id", None),
            model=spec.model,
        )


# ---------------------------------------------------------------------------
# Mock backend
# ---------------------------------------------------------------------------
class MockProvider:
    """
    Deterministic mock used in dev/tests. Echoes the last user message under a
    heading and reports word counts as token usage.
    """

    name = "mock"

    def complete(self, spec: ModelSpec, system_instruction: str,
                 messages: List[Dict[str, str]], timeout: float) -> ProviderResponse:
        user_texts = [m["content"] for m in messages if m["role"] == "user"]
        prompt = user_texts[-1] if user_texts else ""
        title = prompt.strip().splitlines()[0][:80] if prompt.strip() else "Generated document"
        text = f"# {title}\n\n{prompt[:1000]}\n"
        digest = hashlib.sha256((spec.model + prompt).encode("utf-8")).hexdigest()[:12]
        return ProviderResponse(
            text=text,
            input_tokens=len((system_instruction + " " + prompt).split()),
            output_tokens=len(text.split()),
            response_id=f"mock-{spec.model}-{digest}",
            model=spec.model,
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def resolve_spec(spec: ModelSpec) -> ModelSpec:
    """Apply the LLM_PROVIDER override to a model descriptor."""
    if not LLM_PROVIDER or LLM_PROVIDER == spec.provider:
        return spec
    model = _ANTHROPIC_DEFAULT if LLM_PROVIDER == "anthropic" else _OPENAI_DEFAULT
    return replace(spec, provider=LLM_PROVIDER, model=model)


def default_providers(mock: Optional[bool] = None) -> Dict[str, Any]:
    """Provider registry keyed by ModelSpec.provider."""
    if MOCK_LLM if mock is None else mock:
        m = MockProvider()
        return {"anthropic": m, "openai": m, "mock": m}
    return {"anthropic": AnthropicProvider(), "openai": OpenAIProvider(), "mock": MockProvider()}
