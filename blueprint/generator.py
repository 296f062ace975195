# blueprint/generator.py
"""
Document generator: turns a session, its module set and the AI-written
documents into GeneratedArtifacts. Pure transformation, no I/O.

Every artifact is held to EXPORT_LIMITS.max_file_bytes (UTF-8 bytes).
Documents that must stay a single file are truncated with a note; the rest
are split at line boundaries into numbered parts with continuation markers.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from blueprint.config import EXPORT_LIMITS, ExportLimits
from blueprint.modules import ENV_VARS, TECH_STACK, ModuleSpec, server_table
from blueprint import templates as tpl

CONTINUED_NEXT = "\n\n---\n*Continued in next part...*\n"
CONTINUED_FROM = "*...continued from previous part*"
STUB_REASON = "Circular or external dependencies - implement with stubs"

BASE_CONSTRAINTS = [
    "Use TypeScript with strict mode in every module",
    "Protect data access with row level security",
    "Handle errors explicitly in every API endpoint",
    "Never commit environment variables",
    "Validate and sanitize all user input",
]


@dataclass
class GeneratedArtifact:
    path: str
    content: str
    kind: str = "doc"  # doc | code | config

    @property
    def data(self) -> bytes:
        return self.content.encode("utf-8")

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class OrderEntry:
    order: int
    name: str
    reason: str
    stub: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"order": self.order, "name": self.name, "reason": self.reason, "stub": self.stub}


def _nbytes(text: str) -> int:
    return len(text.encode("utf-8"))


# ---------------------------------------------------------------------------
# Dependency analysis
# ---------------------------------------------------------------------------
def build_dependency_order(modules: Sequence[ModuleSpec]) -> List[OrderEntry]:
    """
    Kahn-style ordering: modules without dependencies first, then each round
    the modules whose dependencies have all been emitted. Whatever is left when
    a round emits nothing (a cycle, or a dependency outside the set) is emitted
    in its original order and tagged for stub implementation.
    """
    order: List[OrderEntry] = []
    emitted = set()

    def emit(m: ModuleSpec, reason: str, stub: bool = False):
        order.append(OrderEntry(len(order) + 1, m.name, reason, stub))
        emitted.add(m.name)

    for m in modules:
        if not m.dependencies:
            emit(m, "No dependencies - can be implemented immediately")

    remaining = [m for m in modules if m.name not in emitted]
    while remaining:
        ready = [m for m in remaining if all(d in emitted for d in m.dependencies)]
        if not ready:
            for m in remaining:
                emit(m, STUB_REASON, stub=True)
            break
        for m in ready:
            emit(m, "Dependencies satisfied: " + ", ".join(m.dependencies))
        remaining = [m for m in remaining if m.name not in emitted]
    return order


def dependency_graph(modules: Sequence[ModuleSpec]) -> str:
    lines = []
    for m in modules:
        if m.dependencies:
            lines.append(f"{m.name}:")
            lines.extend(f"  -> {d}" for d in m.dependencies)
    return "\n".join(lines) if lines else "No inter-module dependencies"


def module_tree(modules: Sequence[ModuleSpec]) -> str:
    tree = [
        "project/",
        "├── README.md",
        "├── BUILD_INSTRUCTIONS.md",
        "├── PLAN.md",
        "├── package.json",
        "├── .env.example",
        "├── modules/",
    ]
    for i, m in enumerate(modules):
        last = i == len(modules) - 1
        branch, pad = ("└── ", "    ") if last else ("├── ", "│   ")
        tree.append(f"│   {branch}{m.name}/")
        tree.append(f"│   {pad}├── README.md")
        tree.append(f"│   {pad}└── ...")
    tree += [
        "├── prompts/",
        "│   ├── setup/",
        "│   ├── implementation/",
        "│   ├── testing/",
        "│   └── deployment/",
        "├── docs/",
        "│   ├── SETUP.md",
        "│   ├── ARCHITECTURE.md",
        "│   └── DEPLOYMENT.md",
        "└── config/",
    ]
    return "\n".join(tree)


def data_flow(modules: Sequence[ModuleSpec]) -> str:
    steps = ["User Request", "Frontend", "API Routes"]
    names = {m.name for m in modules}
    if "auth" in names:
        steps.append("Authentication")
    steps.append("Business Logic")
    if "payments" in names:
        steps.append("Payments")
    steps += ["Database", "Response"]
    return "\n     ↓\n".join(steps)


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-") or "project"


# ---------------------------------------------------------------------------
# Size enforcement
# ---------------------------------------------------------------------------
def _hard_wrap(line: str, budget: int) -> List[str]:
    """Cut a single over-long line into chunks of at most `budget` bytes."""
    chunks, current, size = [], [], 0
    for ch in line:
        n = _nbytes(ch)
        if size + n > budget and current:
            chunks.append("".join(current))
            current, size = [], 0
        current.append(ch)
        size += n
    if current:
        chunks.append("".join(current))
    return chunks


def _part_header(title: str, number: int) -> str:
    return f"# {title} (Part {number})\n\n{CONTINUED_FROM}\n\n"


def split_content(content: str, max_bytes: int, title: str) -> List[str]:
    """
    Split `content` into parts of at most `max_bytes` bytes each, breaking at
    line boundaries. Every part but the last ends with the "continued in next
    part" marker; every part but the first opens with a header carrying the
    "continued from previous part" marker. A line longer than a part's budget
    is the one case that gets cut mid-line.
    """
    if _nbytes(content) <= max_bytes:
        return [content]
    reserve = _nbytes(CONTINUED_NEXT) + _nbytes(_part_header(title, 99999))
    budget = max_bytes - reserve
    if budget <= 0:
        raise ValueError(f"max_bytes={max_bytes} leaves no room for content")

    lines: List[str] = []
    for line in content.splitlines(keepends=True):
        lines.extend(_hard_wrap(line, budget) if _nbytes(line) > budget else [line])

    bodies: List[str] = []
    current: List[str] = []
    size = 0
    for line in lines:
        n = _nbytes(line)
        if current and size + n > budget:
            bodies.append("".join(current))
            current, size = [], 0
        current.append(line)
        size += n
    if current:
        bodies.append("".join(current))

    parts = []
    for i, body in enumerate(bodies):
        text = body if i == 0 else _part_header(title, i + 1) + body
        if i < len(bodies) - 1:
            text = text.rstrip("\n") + CONTINUED_NEXT
        parts.append(text)
    return parts


def truncate_content(content: str, max_bytes: int) -> str:
    if _nbytes(content) <= max_bytes:
        return content
    note = f"\n\n---\n*Note: content truncated to meet the {max_bytes // 1024}KB file limit.*\n"
    budget = max_bytes - _nbytes(note)
    kept: List[str] = []
    size = 0
    for line in content.splitlines(keepends=True):
        n = _nbytes(line)
        if size + n > budget:
            if not kept:
                kept.append(_hard_wrap(line, budget)[0])
            break
        kept.append(line)
        size += n
    return "".join(kept).rstrip("\n") + note


def _part_path(path: str, number: int) -> str:
    stem, dot, ext = path.rpartition(".")
    if not dot or "/" in ext:
        return f"{path}-part-{number}"
    return f"{stem}-part-{number}.{ext}"


def enforce_size_limit(artifact: GeneratedArtifact, max_bytes: int,
                       title: Optional[str] = None, split: bool = True) -> List[GeneratedArtifact]:
    if artifact.size <= max_bytes:
        return [artifact]
    if not split:
        return [GeneratedArtifact(artifact.path, truncate_content(artifact.content, max_bytes),
                                  artifact.kind)]
    parts = split_content(artifact.content, max_bytes, title or artifact.path)
    return [GeneratedArtifact(_part_path(artifact.path, i + 1), part, artifact.kind)
            for i, part in enumerate(parts)]


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------
class DocumentGenerator:
    def __init__(self, limits: ExportLimits = EXPORT_LIMITS):
        self.limits = limits
        # parsed once per generator
        self._module_readme = tpl.parse(tpl.MODULE_README_TEMPLATE)
        self._module_impl = tpl.parse(tpl.MODULE_IMPLEMENTATION_TEMPLATE)

    def project_context(self, session: Dict[str, Any], modules: Sequence[ModuleSpec],
                        version: str, generated_at: str,
                        order: Optional[List[OrderEntry]] = None) -> Dict[str, Any]:
        order = order if order is not None else build_dependency_order(modules)
        constraints = list(BASE_CONSTRAINTS)
        for m in modules:
            for c in m.constraints:
                c = c[:1].upper() + c[1:]
                if c not in constraints:
                    constraints.append(c)
        name = session.get("name") or "Untitled project"
        return {
            "name": name,
            "summary": session.get("summary") or session.get("description") or name,
            "slug": slugify(name),
            "version": version,
            "generated_at": generated_at,
            "module_count": len(modules),
            "max_file_kb": self.limits.max_file_bytes // 1024,
            "module_tree": module_tree(modules),
            "data_flow": data_flow(modules),
            "dependency_graph": dependency_graph(modules),
            "implementation_order": [e.to_dict() for e in order],
            "stubbed": [e.name for e in order if e.stub],
            "constraints": constraints,
            "servers": server_table(modules),
            "tech_stack": TECH_STACK,
            "env_vars": ENV_VARS,
            "modules": [m.to_dict() for m in modules],
        }

    def _fit(self, artifact: GeneratedArtifact, title: str, split: bool = True):
        return enforce_size_limit(artifact, self.limits.max_file_bytes, title=title, split=split)

    # -- top level ---------------------------------------------------------
    def render_top_level(self, ctx: Dict[str, Any], ai_docs: Dict[str, str]) -> List[GeneratedArtifact]:
        docs = [
            ("README.md", tpl.README_TEMPLATE, "overview"),
            ("BUILD_INSTRUCTIONS.md", tpl.BUILD_INSTRUCTIONS_TEMPLATE, "build_instructions"),
            ("PLAN.md", tpl.PLAN_TEMPLATE, "plan"),
        ]
        out: List[GeneratedArtifact] = []
        for path, template, key in docs:
            content = tpl.render(template, dict(ctx, ai_content=ai_docs.get(key, "").strip()))
            out += self._fit(GeneratedArtifact(path, content), path, split=False)
        out += self._fit(GeneratedArtifact("package.json", self.package_json(ctx), "config"),
                         "package.json", split=False)
        out += self._fit(GeneratedArtifact(".env.example", tpl.render(tpl.ENV_EXAMPLE_TEMPLATE, ctx), "config"),
                         ".env.example", split=False)
        return out

    @staticmethod
    def package_json(ctx: Dict[str, Any]) -> str:
        manifest = {
            "name": ctx["slug"],
            "version": ctx["version"],
            "private": True,
            "description": ctx["summary"],
            "scripts": {"dev": "next dev", "build": "next build", "start": "next start",
                        "test": "jest"},
        }
        return json.dumps(manifest, indent=2, sort_keys=True) + "\n"

    # -- modules -----------------------------------------------------------
    def render_module(self, module: ModuleSpec, ctx: Dict[str, Any]) -> List[GeneratedArtifact]:
        """README, implementation notes and scaffold files for one module."""
        base = f"modules/{module.name}"
        mctx = dict(ctx)
        mctx.update(module.to_dict())
        mctx["answers"] = module.answers
        mctx["project_name"] = ctx.get("name", "")
        mctx["type_name"] = module.title.replace(" ", "")
        mctx["stub_note"] = (STUB_REASON if module.name in ctx.get("stubbed", ()) else "")
        files = ["README.md", "implementation.md"] + [p for p, _ in module.scaffold]
        mctx["file_structure"] = "\n".join([f"{module.name}/"] + [f"  {f}" for f in files])

        out: List[GeneratedArtifact] = []
        readme = GeneratedArtifact(f"{base}/README.md", tpl.render(self._module_readme, mctx))
        out += self._fit(readme, f"{module.title} Module", split=False)
        impl = GeneratedArtifact(f"{base}/implementation.md", tpl.render(self._module_impl, mctx))
        out += self._fit(impl, f"{module.title} Implementation")
        for rel, template in module.scaffold:
            art = GeneratedArtifact(f"{base}/{rel}", tpl.render(template, mctx), "code")
            out += self._fit(art, rel, split=False)
        return out

    # -- docs --------------------------------------------------------------
    def render_guides(self, ctx: Dict[str, Any]) -> List[GeneratedArtifact]:
        setup_ctx = dict(ctx)
        setup_ctx["prerequisites"] = [
            {"name": "Node.js", "version": "18+"},
            {"name": "npm", "version": "9+"},
            {"name": "Supabase CLI", "version": "latest"},
        ]
        setup_ctx["steps"] = [
            {"number": 1, "title": "Install dependencies", "description": "Install the project packages.",
             "commands": ["npm install"]},
            {"number": 2, "title": "Configure the environment",
             "description": "Create the local environment file from the template.",
             "commands": ["cp .env.example .env.local"]},
            {"number": 3, "title": "Prepare the database", "description": "Apply the initial migration.",
             "commands": ["npx supabase init", "npx supabase migration up"]},
            {"number": 4, "title": "Start the dev server", "description": "Run the app locally.",
             "commands": ["npm run dev"]},
        ]
        deploy_ctx = dict(ctx)
        deploy_ctx["checklist"] = [
            "All environment variables configured in the hosting dashboard",
            "Database migrations applied to production",
            "Endpoints verified in a staging environment",
            "Integration server connections verified",
        ]
        guides = [
            ("docs/SETUP.md", tpl.SETUP_GUIDE_TEMPLATE, setup_ctx, "Setup Guide"),
            ("docs/ARCHITECTURE.md", tpl.ARCHITECTURE_GUIDE_TEMPLATE, ctx, "Architecture"),
            ("docs/DEPLOYMENT.md", tpl.DEPLOYMENT_GUIDE_TEMPLATE, deploy_ctx, "Deployment Guide"),
        ]
        out: List[GeneratedArtifact] = []
        for path, template, gctx, title in guides:
            out += self._fit(GeneratedArtifact(path, tpl.render(template, gctx)), title)
        return out

    def render_config(self, ctx: Dict[str, Any]) -> List[GeneratedArtifact]:
        modules_doc = {
            "modules": ctx["modules"],
            "implementation_order": ctx["implementation_order"],
        }
        servers_doc = {"servers": {s["name"]: {"purpose": s["purpose"]} for s in ctx["servers"]}}
        out: List[GeneratedArtifact] = []
        for path, doc in (("config/modules.json", modules_doc), ("config/integrations.json", servers_doc)):
            art = GeneratedArtifact(path, json.dumps(doc, indent=2, sort_keys=True) + "\n", "config")
            out += self._fit(art, path, split=False)
        return out

    def generate(self, session: Dict[str, Any], modules: Sequence[ModuleSpec],
                 ai_docs: Dict[str, str], version: str, generated_at: str,
                 prompts: Sequence[GeneratedArtifact] = ()) -> List[GeneratedArtifact]:
        order = build_dependency_order(modules)
        ctx = self.project_context(session, modules, version, generated_at, order)
        artifacts = self.render_top_level(ctx, ai_docs)
        for m in modules:
            artifacts += self.render_module(m, ctx)
        for p in prompts:
            artifacts += self._fit(p, p.path)
        artifacts += self.render_guides(ctx)
        artifacts += self.render_config(ctx)
        return artifacts
