# core/api_client.py
"""
HTTP транспорт к backend API на aiohttp.

Знает только про HTTP: пул соединений, таймауты, разбор JSON и envelope
{status, data, message}. Авторизацией и повтором занимается AuthGateway.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from aiohttp import ClientConnectorError, ClientError, ClientSession, ClientTimeout, ServerTimeoutError, TCPConnector

from core.errors import ApplicationError, NetworkError, PermissionDenied, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApiRequest:
    method: str
    path: str
    json: Optional[Dict[str, Any]] = None
    params: Optional[Dict[str, Any]] = None

    def describe(self) -> str:
        return f"{self.method} {self.path}"


@dataclass(frozen=True)
class ApiResponse:
    status: int
    body: Any = None

    @property
    def is_auth_failure(self) -> bool:
        return self.status == 401

    def unwrap(self) -> Any:
        """Вернуть data из envelope или бросить ошибку по статусу"""
        body = self.body if isinstance(self.body, dict) else {}
        if 200 <= self.status < 300 and body.get('status') == 'success':
            return body.get('data')

        message = body.get('message') or f"HTTP {self.status}"
        if self.status in (400, 422):
            raise ValidationError(message)
        if self.status == 403:
            raise PermissionDenied(message)
        raise ApplicationError(message, status_code=self.status, payload=self.body)


class ApiClient:
    def __init__(self, base_url: str, timeout: float = 30, verify_ssl: bool = True):
        """
        Args:
            base_url: URL backend API (например, http://localhost:3001/api/v1)
            timeout: Общий таймаут одного запроса, секунд
            verify_ssl: Проверять ли сертификат backend
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.verify_ssl = verify_ssl

        # Connection pool для переиспользования соединений
        self.connector: Optional[TCPConnector] = None
        self.session: Optional[ClientSession] = None

        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'errors': 0
        }

    async def initialize(self):
        """Ленивая инициализация connection pool"""
        if self.connector is None:
            self.connector = TCPConnector(
                ssl=None if self.verify_ssl else False,
                limit=100,
                limit_per_host=50,
                ttl_dns_cache=300,
                keepalive_timeout=60,
                enable_cleanup_closed=True
            )

        if self.session is None:
            self.session = ClientSession(
                connector=self.connector,
                timeout=ClientTimeout(total=self.timeout, connect=min(10, self.timeout))
            )

    async def close(self):
        """Очистка ресурсов"""
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    async def dispatch(self, request: ApiRequest, token: Optional[str] = None) -> ApiResponse:
        """
        Отправить запрос как есть, без повторов.

        Args:
            request: Описание запроса
            token: Access token для заголовка Authorization

        Returns:
            ApiResponse с HTTP статусом и разобранным телом

        Raises:
            NetworkError: Backend недоступен или не ответил за timeout
        """
        await self.initialize()
        self.stats['total_requests'] += 1

        headers = {'Accept': 'application/json'}
        if token:
            headers['Authorization'] = f"Bearer {token}"

        url = f"{self.base_url}/{request.path.lstrip('/')}"
        logger.debug(f"➡️ {request.describe()}")

        try:
            async with self.session.request(
                method=request.method,
                url=url,
                json=request.json,
                params=_clean_params(request.params),
                headers=headers,
                allow_redirects=False
            ) as response:
                text = await response.text()
                self.stats['total_responses'] += 1
                logger.debug(f"⬅️ {request.describe()} -> {response.status}")
                return ApiResponse(status=response.status, body=_parse_body(text))

        except ClientConnectorError as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Backend недоступен: {e}")
            raise NetworkError(f"Cannot connect to backend: {e}") from e

        except (ServerTimeoutError, asyncio.TimeoutError) as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Таймаут запроса {request.describe()} (>{self.timeout}s)")
            raise NetworkError(f"Request timed out: {request.describe()}") from e

        except ClientError as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Request error {request.describe()}: {e}")
            raise NetworkError(f"Request error: {e}") from e

    async def check_backend_health(self) -> Dict[str, Any]:
        """
        Проверяет состояние backend через /health (вне envelope, без токена)

        Returns:
            dict: {'status': 'healthy'|'degraded'|'unhealthy'|'unreachable', 'error': str or None}
        """
        try:
            response = await self.dispatch(ApiRequest('GET', '/health'))
        except NetworkError as e:
            logger.debug(f"Backend health check failed: {e}")
            return {'status': 'unreachable', 'error': 'Connection failed'}

        if response.status != 200:
            return {'status': 'unreachable', 'error': f'HTTP {response.status}'}
        body = response.body if isinstance(response.body, dict) else {}
        return {'status': body.get('status', 'unknown'), 'error': None}

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)


def _parse_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {'message': text[:200]}


def _clean_params(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    # aiohttp не принимает None и bool в query string
    if not params:
        return None
    cleaned = {}
    for key, value in params.items():
        if value is None:
            continue
        cleaned[key] = str(value).lower() if isinstance(value, bool) else str(value)
    return cleaned
