import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before anything builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process rate limits and one-time tokens; no Redis server needed
os.environ["REDIS_URL"] = ""
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "whsec-test-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coursegate.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def store(runtime):
    return runtime.store


@pytest.fixture
def make_user(runtime):
    """Create a verified, active account with a password."""

    def _make(email="learner@example.com", password="CorrectHorse9!", **kwargs):
        kwargs.setdefault("email_verified", True)
        user = runtime.store.create_user(email, kwargs.pop("name", None), **kwargs)
        runtime.auth.save_password(user.id, password)
        return user

    return _make


@pytest.fixture
def campus(store):
    """An active university with one batch, a published course with a free and a paid lesson."""
    org = store.create_organization("North Campus University", "north-campus", ["ncu.edu"])
    batch = store.upsert_batch(org.id, "2026-A")
    course = store.create_course("Applied Statistics", "applied-statistics", is_published=True)
    module = store.create_module(course.id, "Foundations")
    free_lesson = store.create_lesson(module.id, "Welcome", 0, is_free=True)
    paid_lesson = store.create_lesson(module.id, "Sampling", 1)
    return {
        "org": org,
        "batch": batch,
        "course": course,
        "free_lesson": free_lesson,
        "paid_lesson": paid_lesson,
    }


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
