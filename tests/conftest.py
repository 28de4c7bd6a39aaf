import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before any import that builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("BACKEND_API_URL", "http://lms-backend.test/api")
# Tests always run against the in-memory quota store and the canned backend
os.environ["REDIS_URL"] = ""
os.environ["MODEL_BACKEND"] = "stub"

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from edulearn_chat.service.auth import encode_token  # noqa: E402
from edulearn_chat.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_SECRET = os.environ["JWT_SECRET"]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def make_auth_header():
    def _make(user_id: str = "student-1", **claims) -> dict:
        payload = {"userId": user_id, **claims}
        return {"Authorization": f"Bearer {encode_token(payload, TEST_SECRET)}"}

    return _make


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
