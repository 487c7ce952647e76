import asyncio
import inspect
import os
import sys
from pathlib import Path

# Set before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import fakeredis  # noqa: E402
import fakeredis.aioredis  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from festguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from festguard.storage.redis_cache import RedisCache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def redis_server():
    """Private in-memory Redis server per test."""
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def cache(redis_client):
    return RedisCache(client=redis_client, operation_timeout=2.0)


@pytest.fixture
def down_cache():
    """Store whose every call fails with a connection error."""
    server = fakeredis.FakeServer()
    server.connected = False
    client = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
    return RedisCache(client=client, operation_timeout=0.5)


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
