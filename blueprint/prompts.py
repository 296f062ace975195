# blueprint/prompts.py
"""Build-prompt files for a bundle, written under prompts/<category>/<id>.md."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from blueprint.config import AI_MODELS
from blueprint.generator import GeneratedArtifact
from blueprint.modules import ModuleSpec
from blueprint import templates as tpl

SUCCESS_CRITERIA: Dict[str, List[str]] = {
    "setup": ["Project builds without errors", "Environment variables configured",
              "Dependencies installed"],
    "implementation": ["Code compiles without errors", "All tests pass",
                       "Features work as described", "Endpoints respond with the documented shapes"],
    "testing": ["All tests pass", "Coverage meets the agreed threshold", "No flaky tests"],
    "deployment": ["Deployment succeeds", "Application reachable at its public URL",
                   "Error tracking receives events"],
}

COMMON_ISSUES: Dict[str, List[Dict[str, str]]] = {
    "setup": [
        {"issue": "Module not found errors", "solution": "Check package.json and run npm install"},
        {"issue": "Environment variables not loading",
         "solution": "Make sure .env.local exists and client-side names carry the public prefix"},
    ],
    "implementation": [
        {"issue": "Type errors", "solution": "Define interfaces for every boundary object"},
        {"issue": "Endpoints returning 404", "solution": "Check route file names and folders"},
    ],
    "testing": [
        {"issue": "Tests timing out", "solution": "Mock external services or raise the timeout"},
        {"issue": "Flaky end-to-end tests", "solution": "Wait on explicit conditions, not sleeps"},
    ],
    "deployment": [
        {"issue": "Build fails on the host", "solution": "Read the build log; check dependencies"},
        {"issue": "Variables missing in production", "solution": "Add them to the host and redeploy"},
    ],
}


@dataclass
class BuildPrompt:
    id: str
    category: str
    title: str
    description: str
    context: str
    prompt: str
    expected_output: str
    servers: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)

    @property
    def path(self) -> str:
        return f"prompts/{self.category}/{self.id}.md"


def _bullets(items: Sequence[str], empty: str = "- None") -> str:
    return "\n".join(f"- {i}" for i in items) if items else empty


class PromptGenerator:
    def __init__(self, modules: Sequence[ModuleSpec], project_name: str, summary: str):
        self.modules = list(modules)
        self.project_name = project_name
        self.summary = summary
        self.model = AI_MODELS["export"].model

    def setup_prompts(self) -> List[BuildPrompt]:
        prompts = [BuildPrompt(
            id="initial-setup", category="setup",
            title="Initial Project Setup",
            description="Create the project skeleton with strict typing and styling configured",
            context=f"New SaaS project: {self.project_name} - {self.summary}",
            prompt=(f"Create the project skeleton for {self.project_name}.\n\n"
                    "Include strict TypeScript configuration, linting and formatting, "
                    "an app/ directory, components/, lib/ and types/ folders, and "
                    "all configuration files needed to run the dev server."),
            expected_output="A runnable project skeleton with configuration files",
        )]
        if any(m.name == "database" for m in self.modules):
            prompts.append(BuildPrompt(
                id="database-schema", category="setup",
                title="Database Schema Creation",
                description="Create tables, indexes and row level security policies",
                context="Complete schema with relationships and tenant isolation",
                prompt=("Create tables for users, profiles, subscriptions and the domain "
                        "entities described in modules/database/README.md. Add foreign keys, "
                        "indexes on frequently queried columns, row level security policies "
                        "and created_at/updated_at audit columns."),
                expected_output="Migrations that create the full schema",
                servers=["supabase"],
                dependencies=["initial-setup"],
            ))
        return prompts

    def implementation_prompts(self) -> List[BuildPrompt]:
        prompts: List[BuildPrompt] = []
        for m in self.modules:
            prompts.append(BuildPrompt(
                id=f"implement-{m.name}", category="implementation",
                title=f"Implement {m.title} Module",
                description=m.description,
                context=f"Implementing the {m.name} module with its features and constraints",
                prompt=(f"Implement the {m.name} module.\n\n"
                        f"Features:\n{_bullets(m.features)}\n\n"
                        f"Constraints:\n{_bullets(m.constraints)}\n\n"
                        f"Dependencies:\n{_bullets([d + ' module must be working' for d in m.dependencies])}\n\n"
                        f"Read modules/{m.name}/implementation.md before starting."),
                expected_output=f"Complete {m.name} module with tests",
                servers=list(m.servers),
                dependencies=[f"implement-{d}" for d in m.dependencies],
            ))
            if m.name == "api" or any("API" in f for f in m.features):
                prompts.append(BuildPrompt(
                    id=f"api-{m.name}", category="implementation",
                    title=f"Create API Endpoints for {m.title}",
                    description=f"RESTful endpoints for {m.name}",
                    context="Type-safe routes with consistent error handling",
                    prompt=(f"Create list/get/create/update/delete endpoints under /api/{m.name}. "
                            "Validate every request body, check authorization, rate limit, and "
                            "return {success, data, error} envelopes."),
                    expected_output="Endpoints with validation and tests",
                    servers=list(m.servers),
                    dependencies=[f"implement-{m.name}"],
                ))
            if m.name == "ui" or any("component" in f.lower() for f in m.features):
                prompts.append(BuildPrompt(
                    id=f"ui-{m.name}", category="implementation",
                    title=f"Create UI Components for {m.title}",
                    description=f"Components for {m.name}",
                    context="Responsive, accessible components",
                    prompt=("Build one component per feature:\n"
                            + _bullets([f"{f} component" for f in m.features])
                            + "\n\nInclude loading and error states and ARIA attributes."),
                    expected_output="Typed components exported from an index file",
                    dependencies=[f"implement-{m.name}"],
                ))
        return prompts

    def testing_prompts(self) -> List[BuildPrompt]:
        return [
            BuildPrompt(
                id="unit-tests", category="testing",
                title="Create Unit Tests",
                description="Unit tests for every module",
                context="Test runner, helpers and mock data factories",
                prompt="Write unit tests for:\n" + _bullets(
                    [f"{m.name}: every exported function" for m in self.modules]),
                expected_output="Unit test suite with coverage reporting",
                dependencies=[f"implement-{m.name}" for m in self.modules],
            ),
            BuildPrompt(
                id="e2e-tests", category="testing",
                title="Create End-to-End Tests",
                description="Browser tests for the critical user flows",
                context="Browser automation through the playwright integration server",
                prompt=("Cover registration and login, the main feature workflow, payment "
                        "(when present) and data export. Seed and clean up test data per flow."),
                expected_output="End-to-end suite covering every critical path",
                servers=["playwright"],
                dependencies=["unit-tests"],
            ),
        ]

    def deployment_prompts(self) -> List[BuildPrompt]:
        return [
            BuildPrompt(
                id="production-config", category="deployment",
                title="Configure for Production",
                description="Harden and tune the application for production",
                context="Secrets, caching, security headers and monitoring",
                prompt=("Set up per-environment configuration, security headers, CORS, rate "
                        "limiting, production indexes, error tracking and structured logging."),
                expected_output="Production-ready configuration",
                dependencies=["e2e-tests"],
            ),
            BuildPrompt(
                id="deployment-setup", category="deployment",
                title="Deploy",
                description="Deploy the application with preview environments",
                context="CI/CD pipeline and hosting configuration",
                prompt=("Create the hosting configuration, build settings, environment variable "
                        "checklist and a post-deployment verification list."),
                expected_output="Deployment configuration and runbook",
                dependencies=["production-config"],
            ),
        ]

    def all_prompts(self) -> List[BuildPrompt]:
        return (self.setup_prompts() + self.implementation_prompts()
                + self.testing_prompts() + self.deployment_prompts())

    def render(self, prompt: BuildPrompt) -> GeneratedArtifact:
        ctx: Dict[str, Any] = {
            "title": prompt.title,
            "description": prompt.description,
            "context": prompt.context,
            "servers": prompt.servers,
            "model": self.model,
            "dependencies": prompt.dependencies,
            "prompt": prompt.prompt,
            "expected_output": prompt.expected_output,
            "success_criteria": SUCCESS_CRITERIA.get(prompt.category, []),
            "common_issues": COMMON_ISSUES.get(prompt.category, []),
            "category": prompt.category,
        }
        return GeneratedArtifact(prompt.path, tpl.render(tpl.PROMPT_TEMPLATE, ctx))

    def generate(self) -> List[GeneratedArtifact]:
        return [self.render(p) for p in self.all_prompts()]
