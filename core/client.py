"""
ProxyShopClient - сборка всех компонентов клиента.

Один ApiClient (один пул соединений) и один SessionStore на клиент;
компоненты получают их явно через конструктор.
"""

import logging
from typing import Optional

from core.admin import AdminInventory
from core.api_client import ApiClient
from core.auth_gateway import AuthGateway
from core.cart import CartAggregator
from core.catalog import Catalog
from core.checkout import CheckoutOrchestrator
from core.config_manager import ConfigManager, get_config
from core.models import Session
from core.proxy_tracker import ProxyStateTracker
from core.session_store import SessionStore
from core.wallet import WalletLedger

logger = logging.getLogger(__name__)


class ProxyShopClient:
    def __init__(self, api: ApiClient, store: SessionStore, payment_source: str = 'wallet'):
        self.api = api
        self.store = store
        self.gateway = AuthGateway(api, store)
        self.cart = CartAggregator()
        self.wallet = WalletLedger(self.gateway)
        self.proxies = ProxyStateTracker(self.gateway)
        self.catalog = Catalog(self.gateway)
        self.admin = AdminInventory(self.gateway)
        self.checkout = CheckoutOrchestrator(
            self.gateway, self.cart, self.wallet, self.proxies, payment_source=payment_source
        )

    @classmethod
    def from_config(cls, config: Optional[ConfigManager] = None) -> "ProxyShopClient":
        config = config or get_config()
        api_config = config.get_api_config()
        api = ApiClient(
            base_url=api_config.get('base_url', 'http://localhost:3001/api/v1'),
            timeout=api_config.get('timeout', 30),
            verify_ssl=api_config.get('verify_ssl', True),
        )
        store = SessionStore(config.get_session_path())
        return cls(api, store, payment_source=config.get('checkout.payment_source', 'wallet'))

    def initialize(self) -> Optional[Session]:
        """Восстановить сохраненную сессию (без сети)"""
        session = self.store.initialize()
        if session is None:
            logger.info("No stored session, login required")
        return session

    async def login(self, username: str, password: str) -> Session:
        session = await self.gateway.login(username, password)
        # корзина живет в пределах сессии
        self.cart.clear()
        return session

    async def logout(self) -> None:
        await self.gateway.logout()
        self.cart.clear()

    async def close(self) -> None:
        await self.api.close()

    async def __aenter__(self) -> "ProxyShopClient":
        self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
