import json
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from budget_offline import ApiClient, OfflineStore, create_app

BASE_URL = "http://budget.test"
FORWARDED_HEADERS = ("accept", "content-type", "cookie")


class FlaskTransport(httpx.AsyncBaseTransport):
    """Routes httpx requests into the reference app's test client.

    ``offline`` makes every request fail before reaching the app; ``fail_with``
    maps (method, path) to a status returned instead of calling the app.
    """

    def __init__(self, app):
        self.client = app.test_client(use_cookies=False)
        self.calls = []
        self.offline = False
        self.fail_with = {}
        self.delay = None

    async def handle_async_request(self, request):
        if self.delay is not None:
            await self.delay()
        if self.offline:
            raise httpx.ConnectError("Network is unreachable", request=request)

        path = request.url.path
        query = request.url.query.decode()
        body = request.content
        self.calls.append((request.method, f"{path}?{query}" if query else path, json.loads(body) if body else None))

        forced = self.fail_with.get((request.method, path))
        if forced is not None:
            return httpx.Response(forced, json={"error": "Simulated failure"})

        headers = {key: value for key, value in request.headers.items() if key.lower() in FORWARDED_HEADERS}
        response = self.client.open(path, method=request.method, headers=headers, data=body, query_string=query)
        return httpx.Response(
            response.status_code,
            headers=list(response.headers.items()),
            content=response.get_data(),
        )

    def calls_to(self, method, path):
        return [call for call in self.calls if call[0] == method and call[1] == path]


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class Probe:
    def __init__(self, online=True):
        self.online = online
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.online


@pytest.fixture()
def app(tmp_path: Path):
    db_path = tmp_path / "server.sqlite"
    app = create_app({"TESTING": True, "SECRET_KEY": "test", "DATABASE": str(db_path)})

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def transport(app):
    return FlaskTransport(app)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def probe():
    return Probe()


@pytest_asyncio.fixture()
async def api(transport):
    api = ApiClient(BASE_URL, transport=transport)
    yield api
    await api.aclose()


@pytest_asyncio.fixture()
async def seeded(api, transport):
    await api.request("POST", "/api/auth/register", {"username": "user1", "password": "password"})
    assert await api.login("user1", "password")
    account = await api.request("POST", "/api/accounts", {"name": "Checking", "type": "checking", "balance": 100})
    groceries = await api.request("POST", "/api/categories", {"name": "Groceries", "type": "expense"})
    salary = await api.request("POST", "/api/categories", {"name": "Salary", "type": "income"})
    transport.calls.clear()
    return {
        "account_id": account.json()["id"],
        "category_id": groceries.json()["id"],
        "income_category_id": salary.json()["id"],
    }


@pytest.fixture()
def local_db(tmp_path: Path):
    return str(tmp_path / "cache.sqlite")


@pytest_asyncio.fixture()
async def offline_store(local_db, api, seeded, clock, probe):
    store = OfflineStore({"LOCAL_DATABASE": local_db, "POLL_INTERVAL": 0}, api=api, clock=clock, probe=probe)
    await store.init()
    await store.monitor.drain()
    yield store
    await store.dispose()


def transaction_payload(seeded, **overrides):
    payload = {
        "account_id": seeded["account_id"],
        "category_id": seeded["category_id"],
        "amount": -12.5,
        "description": "Corner Market",
        "date": "2024-03-01",
    }
    payload.update(overrides)
    return payload
