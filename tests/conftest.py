import itertools
import json
import os
import tempfile
from collections import defaultdict
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from beanie import init_beanie
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

# Settings are cached on first import, so the environment goes first
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "tryon_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("BFL_API_KEY", "test-bfl-key")
os.environ.setdefault("DISPATCH_BACKEND", "local")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("STORAGE_LOCAL_PATH", tempfile.mkdtemp(prefix="tryon-test-"))

from tryon_api.db.init import DOCUMENT_MODELS  # noqa: E402
from tryon_api.models.assets import Garment, ModelImage  # noqa: E402
from tryon_api.models.user import CreditAccount, User  # noqa: E402
from tryon_api.services import bfl  # noqa: E402
from tryon_api.services.bfl import BFLClient  # noqa: E402
from tryon_api.worker import dispatch  # noqa: E402
from tryon_api.worker.dispatch import LocalDispatcher  # noqa: E402

RESULT_URL = "https://delivery.example.com/results/out.jpg"
GARMENT_DATA_URL = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUg=="
IMAGE_BYTES = b"\xff\xd8\xff\xe0fake-jpeg"

_emails = itertools.count(1)


def pending(progress: float = 0.5) -> tuple[int, dict]:
    return 200, {"status": "Pending", "progress": progress}


def ready(url: str = RESULT_URL) -> tuple[int, dict]:
    return 200, {"status": "Ready", "result": {"sample": url}}


def failed(detail: str = "nsfw content") -> tuple[int, dict]:
    return 200, {"status": "Error", "details": {"reason": detail}}


def unavailable() -> tuple[int, dict]:
    return 503, {"detail": "overloaded"}


class FakeBFL:
    """In-memory stand-in for the BFL HTTP API, served through httpx.MockTransport.

    Each submission gets an id and a copy of next_script: the sequence of poll
    responses for that job. The last response repeats once the script runs out.
    """

    def __init__(self) -> None:
        self.next_script: list[tuple[int, dict]] = [pending(), ready()]
        self.submit_error: tuple[int, dict] | None = None
        self.scripts: dict[str, list[tuple[int, dict]]] = {}
        self.submitted: list[dict] = []
        self.submit_headers: list[httpx.Headers] = []
        self.download_headers: list[httpx.Headers] = []
        self.polls: dict[str, int] = defaultdict(int)
        self._counter = 0

    def add_job(self, external_id: str, script: list[tuple[int, dict]]) -> str:
        self.scripts[external_id] = list(script)
        return f"https://api.bfl.ai/v1/get_result?id={external_id}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            self.submitted.append(json.loads(request.content))
            self.submit_headers.append(request.headers)
            if self.submit_error is not None:
                code, body = self.submit_error
                return httpx.Response(code, json=body)
            self._counter += 1
            external_id = f"ext-{self._counter}"
            polling_url = self.add_job(external_id, self.next_script)
            return httpx.Response(200, json={"id": external_id, "polling_url": polling_url})
        if request.url.path.endswith("/get_result"):
            external_id = request.url.params["id"]
            self.polls[external_id] += 1
            script = self.scripts.get(external_id)
            if not script:
                return httpx.Response(404, json={"status": "Task not found"})
            code, body = script.pop(0) if len(script) > 1 else script[0]
            return httpx.Response(code, json=body)
        self.download_headers.append(request.headers)
        if "missing" in request.url.path:
            return httpx.Response(404, text="not found")
        if "notimage" in request.url.path:
            return httpx.Response(200, content=b"<html></html>", headers={"content-type": "text/html"})
        return httpx.Response(200, content=IMAGE_BYTES, headers={"content-type": "image/jpeg"})


@pytest_asyncio.fixture(autouse=True)
async def db():
    client = AsyncMongoMockClient()
    database = client["tryon_test"]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    yield database


@pytest.fixture
def fake_bfl() -> FakeBFL:
    return FakeBFL()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def bfl_client(fake_bfl, sleeps, monkeypatch) -> BFLClient:
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    client = BFLClient(
        "test-bfl-key",
        "https://api.bfl.ai/v1",
        transport=httpx.MockTransport(fake_bfl.handler),
        sleep=_sleep,
    )
    monkeypatch.setattr(bfl, "get_bfl_client", lambda: client)
    return client


@pytest_asyncio.fixture
async def dispatcher(monkeypatch) -> AsyncGenerator[LocalDispatcher, None]:
    d = LocalDispatcher()
    monkeypatch.setattr(dispatch, "get_dispatcher", lambda: d)
    yield d
    await d.drain()


@pytest.fixture
def make_user():
    async def _make(balance: int = 10, email: str | None = None, role: str = "user") -> User:
        user = User(
            email=email or f"user{next(_emails)}@example.com",
            name="Test",
            role=role,
            credits=CreditAccount(balance=balance, total_purchased=balance),
        )
        await user.insert()
        return user

    return _make


@pytest.fixture
def make_assets():
    async def _make(user: User, model_url: str = "https://cdn.example.com/models/m1.jpg") -> tuple[ModelImage, Garment]:
        model = ModelImage(user_id=user.id, name="Model", url=model_url)
        await model.insert()
        garment = Garment(user_id=user.id, name="Shirt", url=GARMENT_DATA_URL, category="shirt")
        await garment.insert()
        return model, garment

    return _make


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from tryon_api.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


def login(client: AsyncClient, user: User) -> None:
    from tryon_api.core.security import create_session_cookie
    from tryon_api.deps import SESSION_COOKIE_NAME
    client.cookies.set(
        SESSION_COOKIE_NAME,
        create_session_cookie({"user_id": str(user.id), "session_version": user.session_version}),
    )
