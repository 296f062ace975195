# blueprint/modules.py
"""
Module catalog for generated bundles.

Each module kind owns a declarative entry: title, description, features,
constraints, integration servers, dependencies, questionnaire phases and the
scaffold files written next to its README. build_modules() resolves the
catalog against a session's answers once per export run.
"""

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from blueprint.config import CORE_MODULES


class ModuleKind(enum.Enum):
    AUTH = "auth"
    DATABASE = "database"
    API = "api"
    UI = "ui"
    PAYMENTS = "payments"
    ANALYTICS = "analytics"


@dataclass
class ModuleSpec:
    name: str
    title: str
    description: str
    kind: Optional[ModuleKind] = None
    features: List[str] = field(default_factory=list)
    constraints: List[str] = field(default_factory=list)
    servers: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    answers: List[Dict[str, str]] = field(default_factory=list)
    scaffold: Tuple[Tuple[str, str], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "kind": self.kind.value if self.kind else None,
            "features": list(self.features),
            "constraints": list(self.constraints),
            "servers": list(self.servers),
            "dependencies": list(self.dependencies),
        }


# ---------------------------------------------------------------------------
# Scaffold files, keyed by kind. Paths are relative to modules/<name>/.
# ---------------------------------------------------------------------------
_TS_INDEX = """// {{title}} module entry point
// Dependencies: {{#dependencies}}{{.}} {{/dependencies}}{{^dependencies}}none{{/dependencies}}

export * from './types'
"""

_TS_TYPES = """// Types for the {{title}} module
{{#features}}
// - {{.}}
{{/features}}

export interface {{type_name}}Config {
  enabled: boolean
}
"""

SCAFFOLD_FILES: Dict[ModuleKind, Tuple[Tuple[str, str], ...]] = {
    ModuleKind.AUTH: (
        ("index.ts", _TS_INDEX),
        ("types.ts", _TS_TYPES),
        ("middleware.ts", "// Route protection for {{title}}\n\nexport function requireSession() {\n  // verify the session cookie and load the user\n}\n"),
    ),
    ModuleKind.DATABASE: (
        ("index.ts", _TS_INDEX),
        ("schema.sql", "-- Schema for {{project_name}}\n-- Every table enables row level security.\n{{#features}}\n-- {{.}}\n{{/features}}\n"),
        ("migrations/001_initial.sql", "-- Initial migration\nBEGIN;\n-- create tables from schema.sql\nCOMMIT;\n"),
    ),
    ModuleKind.API: (
        ("index.ts", _TS_INDEX),
        ("routes.ts", "// Route table for {{title}}\n{{#features}}\n// {{.}}\n{{/features}}\nexport const routes = []\n"),
        ("validation.ts", "// Request validation schemas\nexport const schemas = {}\n"),
    ),
    ModuleKind.UI: (
        ("index.ts", _TS_INDEX),
        ("components/index.ts", "// Component library for {{project_name}}\nexport {}\n"),
        ("pages/index.tsx", "export default function Home() {\n  return <main>{{project_name}}</main>\n}\n"),
    ),
    ModuleKind.PAYMENTS: (
        ("index.ts", _TS_INDEX),
        ("plans.ts", "// Pricing plans\n{{#features}}\n// - {{.}}\n{{/features}}\nexport const plans = []\n"),
        ("webhooks.ts", "// Payment provider webhook handler\nexport async function handleWebhook(event: unknown) {}\n"),
    ),
    ModuleKind.ANALYTICS: (
        ("index.ts", _TS_INDEX),
        ("events.ts", "// Tracked events\n{{#features}}\n// - {{.}}\n{{/features}}\nexport const events = []\n"),
    ),
}

GENERIC_SCAFFOLD: Tuple[Tuple[str, str], ...] = (("index.ts", _TS_INDEX),)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------
_CATALOG: Dict[ModuleKind, Dict[str, Any]] = {
    ModuleKind.AUTH: {
        "title": "Authentication",
        "description": "User authentication and authorization",
        "features": ["User registration", "Login/logout", "Password reset", "Session management"],
        "constraints": ["use the hosted auth provider for credentials",
                        "enforce row level security on user data",
                        "support email/password and OAuth"],
        "servers": ["supabase"],
        "dependencies": [],
        "phases": (1, 2, 10),
    },
    ModuleKind.DATABASE: {
        "title": "Database",
        "description": "Database schema and data access layer",
        "features": ["Schema migrations", "Data models", "Query builders", "Connection pooling"],
        "constraints": ["use PostgreSQL", "index frequently queried columns",
                        "isolate tenant data with row level security"],
        "servers": ["supabase"],
        "dependencies": [],
        "phases": (3, 4, 5),
    },
    ModuleKind.API: {
        "title": "API",
        "description": "RESTful API endpoints",
        "features": ["CRUD operations", "Data validation", "Error handling", "Response formatting"],
        "constraints": ["return a consistent error envelope", "rate limit every public endpoint",
                        "validate request and response types"],
        "servers": [],
        "dependencies": ["auth", "database"],
        "phases": (6, 7),
    },
    ModuleKind.UI: {
        "title": "User Interface",
        "description": "Components and pages",
        "features": ["Component library", "Page layouts", "Forms and inputs", "Data visualization"],
        "constraints": ["implement responsive layouts", "meet accessibility standards"],
        "servers": ["playwright"],
        "dependencies": ["api", "auth"],
        "phases": (8, 9),
    },
    ModuleKind.PAYMENTS: {
        "title": "Payments",
        "description": "Subscription and payment processing",
        "features": ["Subscription management", "Payment processing", "Invoice generation",
                     "Usage tracking"],
        "constraints": ["use a PCI-compliant processor", "verify webhook signatures",
                        "support EU VAT"],
        "servers": ["stripe"],
        "dependencies": ["database", "api"],
        "phases": (11,),
    },
    ModuleKind.ANALYTICS: {
        "title": "Analytics",
        "description": "Usage tracking and analytics",
        "features": ["Event tracking", "User analytics", "Performance metrics", "Custom dashboards"],
        "constraints": ["keep tracking privacy-compliant", "aggregate raw events daily"],
        "servers": [],
        "dependencies": ["database", "api"],
        "phases": (12,),
    },
}

CORE_KINDS = tuple(ModuleKind(name) for name in CORE_MODULES)

SERVER_PURPOSES: Dict[str, str] = {
    "supabase": "Database operations, authentication and storage",
    "playwright": "End-to-end testing and browser automation",
    "stripe": "Payment processing and subscription management",
    "resend": "Transactional email",
}

TECH_STACK: List[Dict[str, str]] = [
    {"category": "Frontend", "technology": "Next.js with App Router"},
    {"category": "Styling", "technology": "Tailwind CSS"},
    {"category": "Database", "technology": "PostgreSQL (Supabase)"},
    {"category": "Authentication", "technology": "Supabase Auth"},
    {"category": "Payments", "technology": "Stripe"},
    {"category": "Language", "technology": "TypeScript"},
    {"category": "Deployment", "technology": "Vercel"},
]

ENV_VARS: List[Dict[str, str]] = [
    {"name": "NEXT_PUBLIC_SUPABASE_URL", "description": "Supabase project URL", "required": "Yes"},
    {"name": "NEXT_PUBLIC_SUPABASE_ANON_KEY", "description": "Supabase anonymous key", "required": "Yes"},
    {"name": "SUPABASE_SERVICE_ROLE_KEY", "description": "Supabase service role key", "required": "Yes"},
    {"name": "ANTHROPIC_API_KEY", "description": "Anthropic API key", "required": "Optional"},
    {"name": "STRIPE_SECRET_KEY", "description": "Stripe secret key", "required": "Optional"},
    {"name": "NEXT_PUBLIC_APP_URL", "description": "Public application URL", "required": "Yes"},
]

_PAYMENT_HINTS = re.compile(r"\b(subscription|one[- ]time|pricing|payments?|billing|stripe|checkout)\b", re.I)
_ANALYTICS_HINTS = re.compile(r"\b(analytics|tracking|metrics|dashboards?|telemetry)\b", re.I)
_NEGATIVE = re.compile(r"^\s*(no|none|n/?a|false|not yet)\b", re.I)


def _phase_text(answers: List[Dict[str, Any]], phase: int) -> List[str]:
    return [a.get("answer_text") or "" for a in answers if a.get("phase_number") == phase]


def _mentions(texts: List[str], pattern) -> bool:
    return any(t and not _NEGATIVE.match(t) and pattern.search(t) for t in texts)


def requires_payments(answers: List[Dict[str, Any]]) -> bool:
    return _mentions(_phase_text(answers, 11), _PAYMENT_HINTS)


def requires_analytics(answers: List[Dict[str, Any]]) -> bool:
    return _mentions(_phase_text(answers, 12), _ANALYTICS_HINTS)


def relevant_answers(kind: ModuleKind, answers: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    phases = _CATALOG[kind]["phases"]
    out = []
    for a in answers:
        if a.get("phase_number") in phases and (a.get("answer_text") or "").strip():
            out.append({
                "phase": a["phase_number"],
                "question": a.get("question_text") or a.get("question_id") or "",
                "answer": a["answer_text"].strip(),
            })
    return out


def module_from_kind(kind: ModuleKind, answers: List[Dict[str, Any]]) -> ModuleSpec:
    entry = _CATALOG[kind]
    return ModuleSpec(
        name=kind.value,
        title=entry["title"],
        description=entry["description"],
        kind=kind,
        features=list(entry["features"]),
        constraints=list(entry["constraints"]),
        servers=list(entry["servers"]),
        dependencies=list(entry["dependencies"]),
        answers=relevant_answers(kind, answers),
        scaffold=SCAFFOLD_FILES.get(kind, GENERIC_SCAFFOLD),
    )


def build_modules(answers: List[Dict[str, Any]]) -> List[ModuleSpec]:
    """Core modules always, payments/analytics when the answers call for them."""
    kinds = list(CORE_KINDS)
    if requires_payments(answers):
        kinds.append(ModuleKind.PAYMENTS)
    if requires_analytics(answers):
        kinds.append(ModuleKind.ANALYTICS)
    return [module_from_kind(k, answers) for k in kinds]


def collect_servers(modules: List[ModuleSpec]) -> List[str]:
    seen: List[str] = []
    for m in modules:
        for s in m.servers:
            if s not in seen:
                seen.append(s)
    return seen


def server_table(modules: List[ModuleSpec]) -> List[Dict[str, str]]:
    return [{"name": s, "purpose": SERVER_PURPOSES.get(s, "Custom integration server")}
            for s in collect_servers(modules)]
