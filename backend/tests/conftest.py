import asyncio
from collections.abc import Generator
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext import asyncio as sa_asyncio

from app.core import metrics
from app.core.config import settings


_TRACKED_ENGINES: list[sa_asyncio.AsyncEngine] = []
_ORIGINAL_CREATE_ASYNC_ENGINE = sa_asyncio.create_async_engine


def _tracked_create_async_engine(*args, **kwargs):  # type: ignore[no-untyped-def]
    engine = _ORIGINAL_CREATE_ASYNC_ENGINE(*args, **kwargs)
    _TRACKED_ENGINES.append(engine)
    return engine


sa_asyncio.create_async_engine = _tracked_create_async_engine  # type: ignore[assignment]


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _dispose_tracked_async_engines() -> Generator[None, None, None]:
    start_index = len(_TRACKED_ENGINES)
    yield
    pending = _TRACKED_ENGINES[start_index:]
    if not pending:
        return

    async def _dispose_all() -> None:
        for engine in pending:
            await engine.dispose()

    asyncio.run(_dispose_all())
    del _TRACKED_ENGINES[start_index:]


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture(autouse=True)
def _gateway_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_unit")
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
    monkeypatch.setattr(settings, "razorpay_key_id", "rzp_test_key")
    monkeypatch.setattr(settings, "razorpay_key_secret", "rzp_test_secret")
    monkeypatch.setattr(settings, "razorpay_webhook_secret", "rzp_webhook_secret")
    monkeypatch.setattr(settings, "smtp_enabled", False)


@pytest.fixture
def sent_notifications(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, Dict[str, Any]]]:
    """Record notification sends instead of rendering and mailing them."""
    sent: list[tuple[str, Dict[str, Any]]] = []

    async def fake_send(event, payload):
        sent.append((event.value, payload))
        return True

    monkeypatch.setattr("app.services.notifications.send", fake_send)
    return sent


@pytest.fixture
def test_app() -> Generator[Dict[str, object], None, None]:
    from app.db.base import Base
    from app.db.session import get_session
    from app.main import app

    engine = sa_asyncio.create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = sa_asyncio.async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal, "engine": engine}
    client.close()
    app.dependency_overrides.clear()


