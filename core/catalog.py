"""Каталог пакетов и история заказов (только чтение)"""

import logging
from typing import List, Optional

from core.api_client import ApiRequest
from core.auth_gateway import AuthGateway
from core.models import Order, Page, ServicePackage, ServiceKind, pagination_total, parse_list

logger = logging.getLogger(__name__)


class Catalog:
    def __init__(self, gateway: AuthGateway):
        self.gateway = gateway

    async def list_packages(self, kind: Optional[ServiceKind] = None,
                            active: Optional[bool] = True) -> List[ServicePackage]:
        """GET /packages с фильтром по типу и активности"""
        params = {'active': active}
        if kind is not None:
            params['type'] = 'rotating' if kind == ServiceKind.ROTATING else 'static'
        data = await self.gateway.send(ApiRequest('GET', '/packages', params=params))
        packages = parse_list(data, ServicePackage.from_dict)
        if kind is not None:
            # type на сервере не различает ipv4/ipv6
            packages = [package for package in packages if package.service_kind == kind]
        logger.debug(f"Loaded {len(packages)} package(s)")
        return packages

    async def get_package(self, package_id: str) -> ServicePackage:
        data = await self.gateway.send(ApiRequest('GET', f'/packages/{package_id}'))
        return ServicePackage.from_dict(data or {})

    async def list_orders(self, page: int = 1, limit: int = 10) -> Page:
        """GET /orders - история заказов текущего пользователя"""
        data = await self.gateway.send(ApiRequest(
            'GET', '/orders', params={'page': page, 'limit': limit}
        ))
        orders = parse_list(data, Order.from_dict)
        return Page(items=tuple(orders), page=page, size=limit, total=pagination_total(data))
