import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from core.api_client import ApiClient, ApiRequest, ApiResponse
from core.auth_gateway import AuthGateway
from core.models import ProxyCredentials, ProxyEntitlement, ProxyKind, ProxyProtocol, ProxyStatus, Role, Session
from core.session_store import SessionStore


def make_session(access: str = "access-1", refresh: str = "refresh-1",
                 roles=(Role.CUSTOMER,)) -> Session:
    return Session(
        subject_id="u1",
        display_name="alice",
        roles=frozenset(roles),
        access_token=access,
        refresh_token=refresh,
        expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
    )


def make_entitlement(id: str, plan_id: str = "P", ip: str = "1.1.1.1",
                     kind: ProxyKind = ProxyKind.ROTATING,
                     status: ProxyStatus = ProxyStatus.ACTIVE,
                     expires_at: Optional[datetime] = None) -> ProxyEntitlement:
    return ProxyEntitlement(
        id=id,
        plan_id=plan_id,
        ip=ip,
        port=8080,
        protocol=ProxyProtocol.HTTP,
        credentials=ProxyCredentials("user", "pass"),
        country="VN",
        kind=kind,
        status=status,
        expires_at=expires_at or datetime.now(timezone.utc) + timedelta(days=30),
    )


def ok(data: Any = None, status: int = 200) -> ApiResponse:
    return ApiResponse(status=status, body={"status": "success", "data": data})


def error(message: str, status: int) -> ApiResponse:
    return ApiResponse(status=status, body={"status": "error", "message": message})


@pytest.fixture
def store(tmp_path) -> SessionStore:
    return SessionStore(tmp_path / "session.json")


@pytest.fixture
def logged_in_store(store) -> SessionStore:
    store.commit(make_session())
    return store


class FakeGateway:
    """Подмена AuthGateway: (method, path) -> данные, исключение или корутина"""

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Any]] = None):
        self.routes: Dict[Tuple[str, str], Any] = dict(routes or {})
        self.calls: List[ApiRequest] = []

    def on(self, method: str, path: str, handler: Any) -> None:
        self.routes[(method, path)] = handler

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if (call.method, call.path) == (method, path))

    async def send(self, request: ApiRequest) -> Any:
        self.calls.append(request)
        handler = self.routes[(request.method, request.path)]
        result = handler(request) if callable(handler) else handler
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


class FakeAuthServer:
    """
    Имитация backend для ApiClient.dispatch: один действующий access token,
    refresh выдает новый (с задержкой, чтобы запросы успели пересечься).
    """

    def __init__(self, valid_access: str = "access-1", refresh_delay: float = 0.01):
        self.valid_access = valid_access
        self.refresh_delay = refresh_delay
        self.refresh_fails = False
        self.refresh_payload: Any = None
        self.refresh_calls = 0
        self.version = 1
        self.handlers: Dict[Tuple[str, str], Callable[[ApiRequest], ApiResponse]] = {}
        self.seen: List[Tuple[str, Optional[str]]] = []

    def expire_token(self) -> None:
        self.version += 1
        self.valid_access = f"access-{self.version}"

    async def dispatch(self, request: ApiRequest, token: Optional[str] = None) -> ApiResponse:
        self.seen.append((request.path, token))
        await asyncio.sleep(0)
        if request.path == "/auth/refresh-token":
            self.refresh_calls += 1
            await asyncio.sleep(self.refresh_delay)
            if self.refresh_fails:
                return error("Invalid refresh token", 401)
            if self.refresh_payload is not None:
                return ok(self.refresh_payload)
            self.version += 1
            self.valid_access = f"access-{self.version}"
            return ok({"access_token": self.valid_access, "expires_in": 3600})
        if request.path == "/auth/logout":
            return ok(None)
        if token != self.valid_access:
            return error("Token expired", 401)
        handler = self.handlers.get((request.method, request.path))
        if handler is None:
            return error("Not found", 404)
        return handler(request)


@pytest.fixture
def auth_server() -> FakeAuthServer:
    return FakeAuthServer()


@pytest.fixture
def gateway(auth_server, logged_in_store) -> AuthGateway:
    api = ApiClient("http://backend.invalid/api/v1")
    api.dispatch = auth_server.dispatch
    return AuthGateway(api, logged_in_store)


# ---------------------------------------------------------------------------
# Настоящий HTTP backend на aiohttp.web для сквозных тестов
# ---------------------------------------------------------------------------

class ShopBackend:
    """Минимальный backend магазина в памяти"""

    def __init__(self):
        self.access = "access-1"
        self.version = 1
        self.refresh_calls = 0
        self.balance = 300000
        self.orders: List[Dict[str, Any]] = []
        self.proxies: List[Dict[str, Any]] = [{
            "_id": "px1", "plan_id": "P", "ip": "1.1.1.1", "port": 8080,
            "protocol": "http", "username": "user", "password": "pass",
            "country": "VN", "type": "rotating", "status": "active",
        }]
        self.slow_delay = 0.0

    def expire_token(self) -> None:
        self.version += 1
        self.access = f"access-{self.version}"

    @staticmethod
    def envelope(data: Any, status: int = 200) -> web.Response:
        return web.json_response({"status": "success", "data": data}, status=status)

    @staticmethod
    def failure(message: str, status: int) -> web.Response:
        return web.json_response({"status": "error", "message": message}, status=status)

    def authorized(self, request: web.Request) -> bool:
        return request.headers.get("Authorization") == f"Bearer {self.access}"

    async def login(self, request: web.Request) -> web.Response:
        body = await request.json()
        if body.get("username") != "alice" or body.get("password") != "secret":
            return self.failure("Invalid credentials", 401)
        return self.envelope({
            "access_token": self.access,
            "refresh_token": "refresh-1",
            "expires_in": 3600,
            "user": {"_id": "u1", "username": "alice", "roles": ["customer"]},
        })

    async def refresh(self, request: web.Request) -> web.Response:
        self.refresh_calls += 1
        body = await request.json()
        if body.get("refresh_token") != "refresh-1":
            return self.failure("Invalid refresh token", 401)
        self.expire_token()
        return self.envelope({"access_token": self.access, "expires_in": 3600})

    async def check(self, request: web.Request) -> web.Response:
        if not self.authorized(request):
            return self.failure("Token expired", 401)
        return self.envelope({"is_active": True, "last_check": "2026-10-19T10:00:00Z"})

    async def wallet(self, request: web.Request) -> web.Response:
        if not self.authorized(request):
            return self.failure("Token expired", 401)
        return self.envelope({"balance": self.balance})

    async def list_proxies(self, request: web.Request) -> web.Response:
        if not self.authorized(request):
            return self.failure("Token expired", 401)
        return self.envelope({"proxies": self.proxies, "pagination": {"total": len(self.proxies)}})

    async def create_order(self, request: web.Request) -> web.Response:
        if not self.authorized(request):
            return self.failure("Token expired", 401)
        body = await request.json()
        total = 100000 * sum(item["quantity"] for item in body["items"])
        if total > self.balance:
            return self.failure("Insufficient balance", 400)
        self.balance -= total
        order = {"_id": f"o{len(self.orders) + 1}", "total_amount": total,
                 "payment_method": body["payment_source"], "status": "completed"}
        self.orders.append(order)
        return self.envelope({"order": order, "message": "Order completed successfully"}, status=201)

    async def slow(self, request: web.Request) -> web.Response:
        await asyncio.sleep(self.slow_delay)
        return self.envelope({})

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/v1/auth/login", self.login)
        app.router.add_post("/api/v1/auth/refresh-token", self.refresh)
        app.router.add_post("/api/v1/proxies/{id}/check", self.check)
        app.router.add_get("/api/v1/proxies", self.list_proxies)
        app.router.add_get("/api/v1/wallet", self.wallet)
        app.router.add_post("/api/v1/orders", self.create_order)
        app.router.add_get("/api/v1/slow", self.slow)
        return app


@pytest_asyncio.fixture
async def shop_backend():
    backend = ShopBackend()
    server = TestServer(backend.app())
    await server.start_server()
    backend.base_url = str(server.make_url("/api/v1"))
    try:
        yield backend
    finally:
        await server.close()
