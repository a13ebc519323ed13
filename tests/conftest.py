import asyncio
import os
import tempfile
import threading
import time

# Must be set before widgetsmith is imported: settings and log handlers are built at import time
_TEST_ROOT = tempfile.mkdtemp(prefix="widgetsmith_tests_")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_DIR", os.path.join(_TEST_ROOT, "logs"))
os.environ.setdefault("SANDBOX_BASE_DIR", os.path.join(_TEST_ROOT, "sandbox"))
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("SANDBOX_MEM_LIMIT_MB", "0")
os.environ.setdefault("OPENAI_API_KEY", "")

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock

from widgetsmith.core.auth import create_access_token
from widgetsmith.core.config import Settings
from widgetsmith.crud.tool import ToolStore
from widgetsmith.main import create_app
from widgetsmith.models.base import Base, create_engine_and_sessionmaker
from widgetsmith.services.code_generator import GenerationOutcome
from widgetsmith.services.event_broker import ToolEventBroker
from widgetsmith.services.execution_engine import ExecutionEngine
from widgetsmith.services.locks import KeyedLocks
from widgetsmith.services.sandbox_executor import SubprocessSandbox

CLOCK_CODE = '''
def render(params):
    tz = params.get("tz1", "UTC")
    seconds = params.get("showSeconds", True)
    stamp = format_date(now(), "HH:mm:ss" if seconds else "HH:mm")
    html = create_element("div", {"class": "clock"}, escape_html(tz) + " " + stamp)
    return {"type": "html", "content": html}
'''

ECHO_CODE = '''
def render(params):
    return {"type": "json", "content": params}
'''


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        ENVIRONMENT="testing",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'widgetsmith.db'}",
        DB_RETRY_ATTEMPTS=1,
        DB_RETRY_DELAY=0,
        LOG_DIR=os.environ["LOG_DIR"],
        SANDBOX_BASE_DIR=str(tmp_path / "sandbox"),
        SANDBOX_BACKEND="subprocess",
        SANDBOX_MEM_LIMIT_MB=0,
        SANDBOX_TIMEOUT_SECONDS=5.0,
        MAX_TOOLS_PER_USER=10,
        OPENAI_API_KEY=None,
    )
    values.update(overrides)
    return Settings(**values)


class FakeGenerator:
    """
    Stands in for CodeGenerationService. Returns `outcome` for every call;
    while `gate` is not set the call blocks, which keeps a tool in `generating`.
    The gate is a threading.Event so tests running outside the app's event
    loop (TestClient) can release it.
    """

    def __init__(self, outcome: GenerationOutcome = None, delay: float = 0.0):
        self.outcome = outcome or GenerationOutcome(
            success=True,
            code=CLOCK_CODE,
            name="World Clock",
            parameters={"tz1": "Europe/Berlin", "showSeconds": True},
        )
        self.delay = delay
        self.gate = threading.Event()
        self.gate.set()
        self.calls = []

    async def generate(self, description: str) -> GenerationOutcome:
        self.calls.append(description)
        while not self.gate.is_set():
            await asyncio.sleep(0.01)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.outcome


def wait_until(predicate, timeout: float = 10.0, interval: float = 0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    raise AssertionError("condition not met in time")


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def trace_logger():
    mock_trace_logger = MagicMock()
    mock_trace_logger.log_event = AsyncMock()
    return mock_trace_logger


@pytest_asyncio.fixture
async def session_factory(settings):
    engine, factory = create_engine_and_sessionmaker(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield factory
    await engine.dispose()


@pytest.fixture
def tool_locks():
    return KeyedLocks("tool")


@pytest.fixture
def broker():
    return ToolEventBroker()


@pytest.fixture
def store(settings, trace_logger):
    return ToolStore(settings.MAX_TOOLS_PER_USER, KeyedLocks("owner"), trace_logger)


@pytest_asyncio.fixture
async def sandbox(settings):
    service = SubprocessSandbox(settings)
    await service.initialize()
    yield service
    await service.shutdown()


@pytest.fixture
def engine(session_factory, store, sandbox, broker, tool_locks, trace_logger):
    return ExecutionEngine(session_factory, store, sandbox, broker, tool_locks, trace_logger)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def client(settings, generator):
    app = create_app(settings=settings, generator=generator)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def owner_headers():
    return {"Authorization": f"Bearer {create_access_token('owner-1')}"}


@pytest.fixture
def other_headers():
    return {"Authorization": f"Bearer {create_access_token('owner-2')}"}


@pytest.fixture
def owner_token():
    return create_access_token("owner-1")
