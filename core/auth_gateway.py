"""
AuthGateway - все исходящие запросы к API проходят через него.

Подставляет access token текущей сессии, а на 401 один раз обновляет токен
и повторяет исходный запрос. Обновление общее: N одновременных 401 дают
ровно один вызов POST /auth/refresh-token.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Optional

from core.api_client import ApiClient, ApiRequest
from core.errors import PermissionDenied, ProxyShopError, SessionExpired, Unauthenticated
from core.models import Role, Session
from core.session_store import SessionStore

logger = logging.getLogger(__name__)


class AttemptState(Enum):
    """Состояние одного запроса: отправлен впервые / повторен / завершен"""
    FRESH = "fresh"
    RETRIED = "retried"
    TERMINAL = "terminal"


class AuthGateway:
    """Авторизованная отправка запросов с единственным обновлением токена"""

    def __init__(self, api: ApiClient, store: SessionStore):
        """
        Args:
            api: HTTP транспорт
            store: Хранилище сессии (передается явно, без глобального состояния)
        """
        self.api = api
        self.store = store
        self._renewal: Optional[asyncio.Task] = None
        self.renewal_count = 0

    async def send(self, request: ApiRequest) -> Any:
        """
        Отправить запрос от имени текущей сессии.

        Args:
            request: Запрос к API

        Returns:
            data из envelope ответа

        Raises:
            Unauthenticated: Сессии нет, запрос не отправлялся
            SessionExpired: Обновление не удалось или повтор снова получил 401
            NetworkError, ValidationError, ApplicationError: Без изменений
        """
        session = self.store.current()
        if session is None:
            raise Unauthenticated()

        state = AttemptState.FRESH
        token = session.access_token

        while True:
            response = await self.api.dispatch(request, token=token)
            if not response.is_auth_failure:
                return response.unwrap()

            if state is AttemptState.RETRIED:
                state = AttemptState.TERMINAL
                logger.error(f"❌ {request.describe()} rejected again after renewal, ending session")
                self.store.clear()
                raise SessionExpired()

            logger.info(f"🔐 {request.describe()} got 401, renewing credentials")
            token = await self._renewed_token(failed_token=token)
            state = AttemptState.RETRIED

    async def _renewed_token(self, failed_token: str) -> str:
        """Токен после обновления: свой, общий (in-flight) или уже готовый"""
        session = self.store.current()
        if session is None:
            # сессию уже завершил другой запрос
            raise SessionExpired()

        if session.access_token != failed_token:
            # другой запрос успел обновить токен, пока этот ждал ответа
            return session.access_token

        if self._renewal is None or self._renewal.done():
            self._renewal = asyncio.ensure_future(self._renew(session))
            self._renewal.add_done_callback(self._renewal_finished)
        else:
            logger.debug("🔄 Joining in-flight session renewal")

        # shield: отмена одного ожидающего не должна отменять общее обновление
        renewed = await asyncio.shield(self._renewal)
        return renewed.access_token

    async def _renew(self, session: Session) -> Session:
        self.renewal_count += 1
        try:
            response = await self.api.dispatch(ApiRequest(
                'POST', '/auth/refresh-token', json={'refresh_token': session.refresh_token}
            ))
            renewed = session.renewed(response.unwrap() or {})
        except ProxyShopError as e:
            logger.error(f"❌ Session renewal failed: {e}")
            if self.store.current() is session:
                self.store.clear()
            raise SessionExpired() from e

        current = self.store.current()
        if current is None:
            # logout случился во время обновления - не воскрешаем сессию
            raise SessionExpired()
        if current is not session:
            # новая сессия (повторный login) важнее результата обновления
            return current

        self.store.commit(renewed)
        logger.info(f"✅ Session renewed for user={renewed.display_name}")
        return renewed

    def _renewal_finished(self, task: asyncio.Task) -> None:
        if self._renewal is task:
            self._renewal = None
        if not task.cancelled():
            # исключение уже получили ожидающие; здесь только помечаем его прочитанным
            task.exception()

    async def login(self, username: str, password: str) -> Session:
        """
        Аутентификация и сохранение сессии

        Returns:
            Session: Новая сессия

        Raises:
            ApplicationError: Неверные учетные данные
        """
        response = await self.api.dispatch(ApiRequest(
            'POST', '/auth/login', json={'username': username, 'password': password}
        ))
        session = Session.from_login(response.unwrap() or {})
        self.store.commit(session)

        logger.info(
            f"✅ Authentication successful: "
            f"user={session.display_name}, "
            f"roles={sorted(role.value for role in session.roles)}, "
            f"expires_at={session.expires_at}"
        )
        return session

    async def logout(self) -> None:
        """Logout на backend (best effort) и удаление локальной сессии"""
        session = self.store.current()
        if session is None:
            return

        try:
            response = await self.api.dispatch(
                ApiRequest('POST', '/auth/logout'), token=session.access_token
            )
            if response.status >= 400:
                logger.warning(f"⚠️ Logout rejected by backend: HTTP {response.status}")
        except ProxyShopError as e:
            logger.warning(f"⚠️ Logout request failed: {e}")
        finally:
            self.store.clear()

        logger.info("✅ Logged out successfully")

    def require_role(self, *roles: Role) -> Session:
        """Проверить, что текущая сессия имеет одну из ролей"""
        session = self.store.current()
        if session is None:
            raise Unauthenticated()
        if not session.has_role(*roles):
            raise PermissionDenied(
                f"Requires one of roles: {', '.join(role.value for role in roles)}"
            )
        return session

    def is_authenticated(self) -> bool:
        """Проверить локальный статус аутентификации"""
        return self.store.current() is not None
