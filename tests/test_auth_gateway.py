import asyncio

import pytest

from core.api_client import ApiClient, ApiRequest
from core.auth_gateway import AuthGateway
from core.errors import (
    ApplicationError,
    NetworkError,
    PermissionDenied,
    SessionExpired,
    Unauthenticated,
    ValidationError,
)
from core.models import Role
from core.session_store import SessionStore

from tests.conftest import error, make_session, ok

WALLET = ApiRequest("GET", "/wallet")


@pytest.fixture
def wallet_route(auth_server):
    auth_server.handlers[("GET", "/wallet")] = lambda request: ok({"balance": 200000})
    return auth_server


async def test_request_without_session_is_not_sent(store, auth_server):
    api = ApiClient("http://backend.invalid/api/v1")
    api.dispatch = auth_server.dispatch
    gateway = AuthGateway(api, store)

    with pytest.raises(Unauthenticated):
        await gateway.send(WALLET)
    assert auth_server.seen == []


async def test_valid_token_passes_through(gateway, wallet_route):
    assert await gateway.send(WALLET) == {"balance": 200000}
    assert wallet_route.refresh_calls == 0


async def test_401_renews_and_retries_once(gateway, wallet_route, logged_in_store):
    wallet_route.expire_token()

    assert await gateway.send(WALLET) == {"balance": 200000}

    assert wallet_route.refresh_calls == 1
    assert logged_in_store.current().access_token == wallet_route.valid_access
    # исходный токен, обновление, повтор с новым токеном
    assert wallet_route.seen == [
        ("/wallet", "access-1"),
        ("/auth/refresh-token", None),
        ("/wallet", "access-3"),
    ]


async def test_concurrent_401s_share_one_renewal(gateway, wallet_route):
    wallet_route.expire_token()

    results = await asyncio.gather(*(gateway.send(WALLET) for _ in range(5)))

    assert results == [{"balance": 200000}] * 5
    assert wallet_route.refresh_calls == 1
    assert gateway.renewal_count == 1
    retried = [token for path, token in wallet_route.seen[5:] if path == "/wallet"]
    assert retried == [wallet_route.valid_access] * 5


async def test_renewed_session_is_persisted(gateway, wallet_route, logged_in_store):
    wallet_route.expire_token()
    await gateway.send(WALLET)

    restored = SessionStore(logged_in_store.storage_path).initialize()
    assert restored.access_token == wallet_route.valid_access
    assert restored.refresh_token == "refresh-1"


async def test_second_401_ends_session(gateway, auth_server, logged_in_store):
    # сервер отвергает запрос даже с новым токеном
    auth_server.handlers[("GET", "/wallet")] = lambda request: error("Token revoked", 401)

    with pytest.raises(SessionExpired):
        await gateway.send(WALLET)

    assert auth_server.refresh_calls == 1
    assert logged_in_store.current() is None
    assert not logged_in_store.storage_path.exists()


async def test_renewal_failure_fails_every_waiter(gateway, wallet_route, logged_in_store):
    wallet_route.expire_token()
    wallet_route.refresh_fails = True

    results = await asyncio.gather(*(gateway.send(WALLET) for _ in range(3)), return_exceptions=True)

    assert all(isinstance(result, SessionExpired) for result in results)
    assert wallet_route.refresh_calls == 1
    assert logged_in_store.current() is None

    with pytest.raises(Unauthenticated):
        await gateway.send(WALLET)


@pytest.mark.parametrize("payload", [["access-2"], "access-2", {"access_token": "access-2", "expires_in": "soon"}])
async def test_malformed_renewal_payload_ends_session(gateway, wallet_route, logged_in_store, payload):
    wallet_route.expire_token()
    wallet_route.refresh_payload = payload

    results = await asyncio.gather(*(gateway.send(WALLET) for _ in range(2)), return_exceptions=True)

    assert all(isinstance(result, SessionExpired) for result in results)
    assert wallet_route.refresh_calls == 1
    assert logged_in_store.current() is None


async def test_non_auth_errors_are_not_retried(gateway, auth_server):
    auth_server.handlers[("POST", "/orders")] = lambda request: error("Invalid items", 400)
    auth_server.handlers[("GET", "/orders/x")] = lambda request: error("Not found", 404)

    with pytest.raises(ValidationError):
        await gateway.send(ApiRequest("POST", "/orders", json={"items": []}))
    with pytest.raises(ApplicationError) as exc:
        await gateway.send(ApiRequest("GET", "/orders/x"))

    assert exc.value.status_code == 404
    assert auth_server.refresh_calls == 0


async def test_cancelled_waiter_does_not_cancel_shared_renewal(gateway, wallet_route):
    wallet_route.expire_token()
    wallet_route.refresh_delay = 0.05

    first = asyncio.ensure_future(gateway.send(WALLET))
    second = asyncio.ensure_future(gateway.send(WALLET))
    await asyncio.sleep(0.01)
    first.cancel()

    assert await second == {"balance": 200000}
    with pytest.raises(asyncio.CancelledError):
        await first
    assert wallet_route.refresh_calls == 1


async def test_logout_during_renewal_does_not_resurrect_session(gateway, wallet_route, logged_in_store):
    wallet_route.expire_token()
    wallet_route.refresh_delay = 0.05

    pending = asyncio.ensure_future(gateway.send(WALLET))
    await asyncio.sleep(0.01)
    await gateway.logout()

    with pytest.raises(SessionExpired):
        await pending
    assert logged_in_store.current() is None
    assert not logged_in_store.storage_path.exists()


async def test_login_and_logout(store, auth_server):
    api = ApiClient("http://backend.invalid/api/v1")
    gateway = AuthGateway(api, store)

    async def dispatch(request, token=None):
        if request.path == "/auth/login":
            return ok({
                "access_token": "access-1", "refresh_token": "refresh-1", "expires_in": 3600,
                "user": {"_id": "u1", "username": "alice", "roles": ["customer"]},
            })
        return await auth_server.dispatch(request, token)

    api.dispatch = dispatch

    session = await gateway.login("alice", "secret")
    assert session.display_name == "alice"
    assert gateway.is_authenticated()
    assert store.storage_path.exists()

    await gateway.logout()
    assert not gateway.is_authenticated()
    assert auth_server.seen == [("/auth/logout", "access-1")]


async def test_logout_clears_session_even_if_backend_fails(gateway, logged_in_store):
    async def unreachable(request, token=None):
        raise NetworkError("down")

    gateway.api.dispatch = unreachable

    await gateway.logout()
    assert logged_in_store.current() is None


def test_require_role(store):
    gateway = AuthGateway(ApiClient("http://backend.invalid"), store)
    with pytest.raises(Unauthenticated):
        gateway.require_role(Role.ADMIN)

    store.commit(make_session(roles=(Role.CUSTOMER,)))
    with pytest.raises(PermissionDenied):
        gateway.require_role(Role.ADMIN, Role.MANAGER)

    store.commit(make_session(roles=(Role.MANAGER,)))
    assert gateway.require_role(Role.ADMIN, Role.MANAGER).has_role(Role.MANAGER)
