# tests/conftest.py
"""
Shared fixtures: a disposable SQLite DB per test and a seeded, completed
12-phase questionnaire session.
"""
import datetime

import pytest

from blueprint import db as dbmod

PHASE_TITLES = [
    "Vision", "Audience", "Authentication", "Data model", "Relationships", "Storage",
    "API design", "Integrations", "User interface", "Design system", "Monetization",
    "Analytics",
]

SAMPLE_ANSWERS = {
    1: "TaskFlow is a collaborative task tracker for small product teams.",
    2: "Product managers and engineers in teams of 5-50 people.",
    3: "Email/password login plus Google OAuth, with team invitations.",
    4: "Users, teams, projects, tasks, comments.",
    5: "Tasks belong to projects; projects belong to teams.",
    6: "Attachments up to 10MB stored in object storage.",
    7: "REST endpoints for projects and tasks with pagination.",
    8: "Slack notifications when a task is assigned.",
    9: "Kanban board, task detail drawer, team settings page.",
    10: "Tailwind with a neutral palette and dark mode.",
    11: "Monthly subscription billing with a free tier, handled through Stripe checkout.",
    12: "Track weekly active teams and task completion metrics on an internal dashboard.",
}


@pytest.fixture
def test_db(tmp_path):
    url = f"sqlite:///{tmp_path / 'blueprint_test.db'}"
    dbmod.reconfigure(url)
    dbmod.init_db()
    yield url


def seed_session(session_id="sess-1", user_id="user-1", name="TaskFlow", phases=12,
                 current_phase=None, answers=None):
    """Create a session with one answer per phase for the first `phases` phases."""
    answers = answers or SAMPLE_ANSWERS
    dbmod.create_session(session_id, user_id, name=name,
                         current_phase=phases if current_phase is None else current_phase,
                         status="completed" if phases >= 12 else "in_progress")
    for number, title in enumerate(PHASE_TITLES, start=1):
        dbmod.save_phase_template(number, title, f"{title} questions")
    for number in range(1, phases + 1):
        dbmod.save_answer(session_id, number, f"q{number}", f"Describe the {PHASE_TITLES[number - 1].lower()}",
                          answers.get(number, f"Answer for phase {number}"))
    return session_id


@pytest.fixture
def seeded_session(test_db):
    return seed_session()


@pytest.fixture
def seed(test_db):
    """The seeding helper, for tests that need more than one session."""
    return seed_session


class FakeClock:
    """Callable clock returning naive UTC datetimes; advance() moves it forward."""

    def __init__(self, now=None):
        self.now = now or datetime.datetime(2025, 1, 15, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += datetime.timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_orchestrator(tmp_path):
    """Factory for an orchestrator wired to local storage, in-memory cache and a mock provider."""
    from blueprint.cache import InMemoryCache
    from blueprint.config import ExportLimits
    from blueprint.llm_wrapper import MockProvider
    from blueprint.orchestrator import ExportOrchestrator
    from blueprint.rate_limit import InMemoryRateCounter, RateLimiter
    from blueprint.storage import LocalExportStorage

    def factory(provider=None, storage=None, limits=None, clock=None):
        provider = provider or MockProvider()
        kwargs = {"clock": clock} if clock is not None else {}
        return ExportOrchestrator(
            storage=storage or LocalExportStorage(tmp_path / "exports"),
            cache=InMemoryCache(),
            limiter=RateLimiter(counter=InMemoryRateCounter(), tier_resolver=lambda u: "enterprise"),
            providers={"anthropic": provider, "openai": provider, "mock": provider},
            limits=limits or ExportLimits(),
            sleep=lambda s: None,
            knowledge_base="Prefer typed boundaries.",
            **kwargs,
        )

    return factory
