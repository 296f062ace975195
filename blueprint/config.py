# blueprint/config.py
"""
Static configuration for the export pipeline.

Everything here is either a constant table (models, tier ceilings, token rates)
or a tunable read from the environment at import time. Tests override the
dataclass instances they need instead of touching env vars.

Env vars:
  REQUIRED_PHASES        (default: 12)
  MAX_FILE_BYTES         (default: 51200, 50 KiB per generated file)
  MAX_ARCHIVE_BYTES      (default: 52428800, 50 MiB per archive)
  CACHE_TTL_SECONDS      (default: 3600)
  CACHE_MAX_ENTRIES      (default: 100)
  CACHE_SWEEP_SECONDS    (default: 300)
  KNOWLEDGE_BASE_DIR     optional directory of *.md files added to AI context
  EXPORT_LLM_MODEL       override model id used for export documents
"""

import os
import pathlib
from dataclasses import dataclass
from typing import Dict, List


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ModelSpec:
    provider: str  # "anthropic" | "openai" | "mock"
    model: str
    max_tokens: int = 4000
    temperature: float = 0.7


_EXPORT_MODEL_ID = os.getenv("EXPORT_LLM_MODEL", "claude-3-5-sonnet-20241022")

AI_MODELS: Dict[str, ModelSpec] = {
    "workflow": ModelSpec("anthropic", "claude-3-5-haiku-20241022", 4000, 0.7),
    "export": ModelSpec("anthropic", _EXPORT_MODEL_ID, 8000, 0.3),
    "docs": ModelSpec("anthropic", "claude-sonnet-4-20250514", 8000, 0.3),
    "backup": ModelSpec("openai", "gpt-4o-mini", 4000, 0.7),
}

# USD per token
COST_PER_TOKEN: Dict[str, Dict[str, float]] = {
    "claude-3-5-haiku-20241022": {"input": 0.001 / 1000, "output": 0.005 / 1000},
    "claude-3-5-sonnet-20241022": {"input": 0.003 / 1000, "output": 0.015 / 1000},
    "claude-sonnet-4-20250514": {"input": 0.003 / 1000, "output": 0.015 / 1000},
    "gpt-4o-mini": {"input": 0.00015 / 1000, "output": 0.0006 / 1000},
    "gpt-4o": {"input": 0.0025 / 1000, "output": 0.01 / 1000},
}


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class TierLimits:
    per_minute: int
    per_hour: int
    per_day: int


RATE_LIMITS: Dict[str, TierLimits] = {
    "free": TierLimits(per_minute=3, per_hour=30, per_day=100),
    "pro": TierLimits(per_minute=10, per_hour=100, per_day=1000),
    "enterprise": TierLimits(per_minute=30, per_hour=500, per_day=5000),
}
DEFAULT_TIER = "free"

# (name, seconds) narrowest first
RATE_WINDOWS = (("minute", 60), ("hour", 3600), ("day", 86400))


# ---------------------------------------------------------------------------
# Retry / timeout / cache
# ---------------------------------------------------------------------------
@dataclass
class RetryConfig:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.initial_delay * (self.backoff_multiplier ** attempt))


# seconds
TIMEOUT_CONFIG: Dict[str, float] = {
    "default": 30.0,
    "plan_processing": 60.0,
    "export": 120.0,
}
MAX_TIMEOUT = 120.0
# worker threads for in-flight provider calls across all gateways
LLM_CALL_WORKERS = _env_int("LLM_CALL_WORKERS", 32)


@dataclass
class CacheConfig:
    ttl_seconds: int = _env_int("CACHE_TTL_SECONDS", 3600)
    max_entries: int = _env_int("CACHE_MAX_ENTRIES", 100)
    sweep_interval_seconds: int = _env_int("CACHE_SWEEP_SECONDS", 300)


RETRY_CONFIG = RetryConfig()
CACHE_CONFIG = CacheConfig()


# ---------------------------------------------------------------------------
# Export limits
# ---------------------------------------------------------------------------
@dataclass
class ExportLimits:
    required_phases: int = _env_int("REQUIRED_PHASES", 12)
    max_file_bytes: int = _env_int("MAX_FILE_BYTES", 50 * 1024)
    max_archive_bytes: int = _env_int("MAX_ARCHIVE_BYTES", 50 * 1024 * 1024)
    archive_warn_ratio: float = 0.8
    quota_file_count: int = 100
    quota_total_bytes: int = 500 * 1024 * 1024
    stale_processing_minutes: int = 15
    retention_days: int = 30


EXPORT_LIMITS = ExportLimits()

EXPORT_FORMATS: Dict[str, str] = {
    "archive": "application/zip",
    "raw-structured": "application/json",
    "plain-document": "text/markdown",
}

CORE_MODULES: List[str] = ["auth", "database", "api", "ui"]


# ---------------------------------------------------------------------------
# System instructions & knowledge base
# ---------------------------------------------------------------------------
SYSTEM_INSTRUCTIONS: Dict[str, str] = {
    "export": (
        "You are creating comprehensive documentation for a SaaS project.\n"
        "Generate clear, actionable content that can be used directly by developers.\n"
        "Include specific implementation details, code examples where appropriate, "
        "and clear next steps."
    ),
    "plan_processing": (
        "You transform SaaS blueprints into modular, executable documentation.\n"
        "Your output must:\n"
        "1. Be modular with files under 50KB each\n"
        "2. Include clear constraints and requirements\n"
        "3. Reference the integration servers each module needs\n"
        "4. Produce step-by-step build prompts\n"
        "5. Follow markdown formatting with a clear heading hierarchy"
    ),
}

DOCUMENT_TASKS: Dict[str, str] = {
    "overview": (
        "Write README.md for this project: a product overview, target audience, "
        "core features, tech stack and getting-started steps."
    ),
    "build_instructions": (
        "Write BUILD_INSTRUCTIONS.md: guidance for an AI coding assistant building this "
        "project, covering architecture, critical constraints, module order and commands."
    ),
    "plan": (
        "Write PLAN.md: a consolidated implementation plan that merges every phase of the "
        "questionnaire into milestones with concrete deliverables."
    ),
}

DEFAULT_KNOWLEDGE_BASE = """
## Blueprint methodology
- Every module documents its purpose, constraints, dependencies and features.
- Documentation files stay under 50KB so assistants can load them whole.
- Modules are implemented in dependency order; cycles are broken with stubs.
- Data access is isolated per tenant; secrets never live in the repository.
""".strip()


def load_knowledge_base() -> str:
    """Return knowledge-base context: *.md files from KNOWLEDGE_BASE_DIR, or the built-in text."""
    kb_dir = os.getenv("KNOWLEDGE_BASE_DIR", "").strip()
    if not kb_dir:
        return DEFAULT_KNOWLEDGE_BASE
    root = pathlib.Path(kb_dir)
    if not root.is_dir():
        return DEFAULT_KNOWLEDGE_BASE
    parts = []
    for path in sorted(root.glob("*.md")):
        parts.append(path.read_text(encoding="utf-8").strip())
    return "\n\n".join(p for p in parts if p) or DEFAULT_KNOWLEDGE_BASE


MOCK_LLM = _env_flag("MOCK_LLM", "true")
