import asyncio
import inspect
import os
import shutil
import sys
import tempfile
from pathlib import Path

# Runtime settings are read at import time, so the environment is fixed first
_STATE_ROOT = tempfile.mkdtemp(prefix="peaceverse_test_")
for _name, _value in {
    "SHARED_FS_ROOT": _STATE_ROOT,
    "TEST_MODE": "true",
    "USE_MEMORY_STORE": "true",
    "ALLOW_REDIS_FALLBACK_DEV": "true",
    "ACCESS_TOKEN_SECRET": "access-secret-for-tests-only",
    "REFRESH_TOKEN_SECRET": "refresh-secret-for-tests-only",
    "UNVERIFIED_SWEEP_ENABLED": "false",
}.items():
    os.environ.setdefault(_name, _value)
# Sessions and rate limits stay in process; test_storage covers the Redis client
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from peaceverse.service.runtime import reset_runtime_for_tests  # noqa: E402


def _clear_state() -> None:
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)
    reset_runtime_for_tests()


@pytest.fixture(autouse=True)
def fresh_runtime():
    _clear_state()
    yield
    _clear_state()


def pytest_pyfunc_call(pyfuncitem):
    """Drive ``async def`` tests on a fresh event loop."""
    if not inspect.iscoroutinefunction(pyfuncitem.obj):
        return None
    argnames = pyfuncitem._fixtureinfo.argnames
    kwargs = {name: pyfuncitem.funcargs[name] for name in argnames}
    asyncio.run(pyfuncitem.obj(**kwargs))
    return True
