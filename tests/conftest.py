"""Pytest configuration for serial chat relay tests."""

from __future__ import annotations

import asyncio
import importlib.util
import inspect
import logging
from unittest.mock import MagicMock

import pytest

from serialchat.config.settings import RuntimeConfig
from serialchat.hub import BroadcastHub
from serialchat.metrics import RelayMetrics

_HAS_PYTEST_ASYNCIO = importlib.util.find_spec("pytest_asyncio") is not None


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "asyncio: mark test to run on asyncio loop")


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Fallback asyncio runner when pytest-asyncio is unavailable."""
    if _HAS_PYTEST_ASYNCIO:
        return None
    if "asyncio" not in pyfuncitem.keywords:
        return None
    test_function = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_function):
        return None

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        kwargs = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
        loop.run_until_complete(test_function(**kwargs))
    finally:
        try:
            loop.run_until_complete(loop.shutdown_asyncgens())
        except (RuntimeError, ValueError):
            pass
        loop.close()
        asyncio.set_event_loop(None)
    return True


@pytest.fixture(autouse=True)
def reset_logging_handlers():
    """Close and remove all logging handlers after each test to prevent ResourceWarnings."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        try:
            handler.close()
        except (OSError, RuntimeError):
            pass
        root.removeHandler(handler)


@pytest.fixture(autouse=True)
def logging_mock_level_fix():
    """Ensure all handlers have a numeric level to avoid comparisons with MagicMock."""
    original_handlers = []
    loggers = [logging.getLogger(name) for name in logging.root.manager.loggerDict]
    loggers.append(logging.getLogger())

    for logger in loggers:
        for handler in getattr(logger, "handlers", []):
            if isinstance(handler.level, MagicMock):
                original_handlers.append((handler, handler.level))
                handler.level = logging.NOTSET

    yield

    for handler, level in original_handlers:
        handler.level = level


@pytest.fixture()
def runtime_config(tmp_path) -> RuntimeConfig:
    """Fast-ticking configuration pointing at a throwaway static dir."""
    static_dir = tmp_path / "static"
    static_dir.mkdir()
    (static_dir / "index.html").write_text("<html><body>chat</body></html>")
    return RuntimeConfig(
        serial_port="/dev/ttyTEST0",
        serial_poll_interval=0.01,
        serial_read_timeout=0.005,
        serial_write_timeout=0.2,
        serial_open_attempts=2,
        serial_open_retry_delay=0.0,
        hub_capacity=8,
        static_dir=str(static_dir),
        disconnect_poll_interval=0.01,
    )


@pytest.fixture()
def metrics() -> RelayMetrics:
    return RelayMetrics()


@pytest.fixture()
def hub() -> BroadcastHub:
    return BroadcastHub(capacity=8)
