"""
Административный инвентарь: прокси (/admin/proxies) и пулы (/proxy-pools).

Доступен ролям admin и manager. Порты и диапазоны портов проверяются до
отправки запроса.
"""

import logging
from typing import Any, Dict, List, Optional

from core.api_client import ApiRequest
from core.auth_gateway import AuthGateway
from core.models import InventoryProxy, Page, ProxyPool, Role, parse_list
from utils.port_utils import validate_port, validate_port_range

logger = logging.getLogger(__name__)

ADMIN_ROLES = (Role.ADMIN, Role.MANAGER)


class AdminInventory:
    def __init__(self, gateway: AuthGateway):
        self.gateway = gateway

    async def _send(self, request: ApiRequest) -> Any:
        self.gateway.require_role(*ADMIN_ROLES)
        return await self.gateway.send(request)

    # ------------------------------------------------------------------
    # Прокси
    # ------------------------------------------------------------------

    async def list_proxies(self, page: int = 1, limit: int = 20,
                           filters: Optional[Dict[str, Any]] = None) -> Page:
        params = dict(filters or {})
        params.update({'page': page, 'limit': limit})
        data = await self._send(ApiRequest('GET', '/admin/proxies', params=params))
        items = parse_list(data, InventoryProxy.from_dict)
        return Page(items=tuple(items), page=page, size=limit)

    async def create_proxy(self, proxy: InventoryProxy) -> InventoryProxy:
        data = await self._send(ApiRequest('POST', '/admin/proxies', json=proxy.to_payload()))
        created = InventoryProxy.from_dict(data or {})
        logger.info(f"✅ Proxy created: {created.proxy_id} ({created.host}:{created.port})")
        return created

    async def update_proxy(self, proxy_id: str, changes: Dict[str, Any]) -> InventoryProxy:
        """Частичное обновление. port (если есть) проверяется локально"""
        if 'port' in changes:
            validate_port(changes['port'])
        data = await self._send(ApiRequest('PUT', f'/admin/proxies/{proxy_id}', json=changes))
        return InventoryProxy.from_dict(data or {})

    async def delete_proxy(self, proxy_id: str) -> None:
        await self._send(ApiRequest('DELETE', f'/admin/proxies/{proxy_id}'))
        logger.info(f"🗑️ Proxy deleted: {proxy_id}")

    async def check_proxy(self, proxy_id: str) -> Dict[str, Any]:
        data = await self._send(ApiRequest('GET', f'/admin/proxies/{proxy_id}/check'))
        return data or {}

    async def rotate_proxy(self, proxy_id: str) -> Dict[str, Any]:
        data = await self._send(ApiRequest('POST', f'/admin/proxies/{proxy_id}/rotate'))
        return data or {}

    # ------------------------------------------------------------------
    # Пулы
    # ------------------------------------------------------------------

    async def list_pools(self, page: int = 1, limit: int = 20) -> List[ProxyPool]:
        data = await self._send(ApiRequest(
            'GET', '/proxy-pools', params={'page': page, 'limit': limit}
        ))
        return parse_list(data, ProxyPool.from_dict)

    async def get_pool(self, pool_id: str) -> ProxyPool:
        data = await self._send(ApiRequest('GET', f'/proxy-pools/{pool_id}'))
        return ProxyPool.from_dict(data or {})

    async def create_pool(self, pool: ProxyPool) -> ProxyPool:
        data = await self._send(ApiRequest('POST', '/proxy-pools', json=pool.to_payload()))
        created = ProxyPool.from_dict(data or {})
        logger.info(f"✅ Proxy pool created: {created.pool_id} ({created.name})")
        return created

    async def update_pool(self, pool_id: str, changes: Dict[str, Any]) -> ProxyPool:
        port_range = changes.get('port_range')
        if port_range is not None:
            validate_port_range(port_range.get('start'), port_range.get('end'))
        data = await self._send(ApiRequest('PUT', f'/proxy-pools/{pool_id}', json=changes))
        return ProxyPool.from_dict(data or {})

    async def delete_pool(self, pool_id: str) -> None:
        await self._send(ApiRequest('DELETE', f'/proxy-pools/{pool_id}'))
        logger.info(f"🗑️ Proxy pool deleted: {pool_id}")

    async def pool_stats(self, pool_id: str) -> Dict[str, Any]:
        data = await self._send(ApiRequest('GET', f'/proxy-pools/{pool_id}/stats'))
        return data or {}

    async def set_pool_active(self, pool_id: str, active: bool) -> ProxyPool:
        data = await self._send(ApiRequest(
            'PATCH', f'/proxy-pools/{pool_id}/status', json={'active': active}
        ))
        return ProxyPool.from_dict(data or {})
