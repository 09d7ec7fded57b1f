"""Fixtures compartidas: base SQLite en memoria y cliente HTTP de prueba."""

import json
from decimal import Decimal
from typing import List

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from cabinex.app.main import create_app
from cabinex.app.telegram import TelegramNotifier
from cabinex.config import Settings
from cabinex.database import build_engine, build_session_factory, init_models
from cabinex.models import Balance

CABINET_X = "Кабінет 1 UA"
CABINET_Y = "Кабінет 2 UA"
CABINET_Z = "Кабінет 1 ARS"
CABINETS = [CABINET_X, CABINET_Y, CABINET_Z]

BOT_TOKEN = "123456:TEST-TOKEN"
CHANNEL_ID = "-1001234567890"


@pytest_asyncio.fixture
async def engine():
    engine = build_engine("sqlite+aiosqlite://")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    """Sesión para llamar a los servicios (cada uno abre su propia transacción)."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def balance_xy(session_factory):
    """Fila (X -> Y) con 100.00, como en el ejemplo de liquidación."""
    async with session_factory() as session:
        async with session.begin():
            balance = Balance(cabinet_from=CABINET_X, cabinet_to=CABINET_Y, amount=Decimal("100.00"))
            session.add(balance)
    return balance


async def reload(session_factory, model, entity_id):
    """Lee la fila desde una sesión nueva (sin caché del identity map)."""
    async with session_factory() as session:
        return await session.get(model, entity_id)


class TelegramRecorder:
    """Transporte httpx falso que guarda cada sendMessage recibido."""

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.ok:
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})
        return httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"})

    @property
    def messages(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests]

    def notifier(self) -> TelegramNotifier:
        return TelegramNotifier(
            bot_token=BOT_TOKEN,
            channel_id=CHANNEL_ID,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def telegram_recorder():
    return TelegramRecorder()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite://",
        TELEGRAM_BOT_TOKEN=BOT_TOKEN,
        TELEGRAM_CHANNEL_ID=CHANNEL_ID,
        CABINETS=CABINETS,
    )


@pytest.fixture
def client(settings, telegram_recorder):
    app = create_app(settings, notifier=telegram_recorder.notifier())
    with TestClient(app) as test_client:
        yield test_client
