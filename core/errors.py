"""
Иерархия ошибок клиента прокси-магазина
"""

from typing import Any, Optional


class ProxyShopError(Exception):
    """Базовая ошибка клиента"""


class Unauthenticated(ProxyShopError):
    """Нет активной сессии - запрос не отправлялся"""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class SessionExpired(ProxyShopError):
    """Обновление токена не удалось, сессия удалена"""

    def __init__(self, message: str = "Session expired, please log in again"):
        super().__init__(message)


class NetworkError(ProxyShopError):
    """Транспортная ошибка или таймаут. Повтор только по действию пользователя"""


class ValidationError(ProxyShopError):
    """Некорректный запрос (локальная проверка или HTTP 400/422)"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InsufficientBalance(ProxyShopError):
    """Баланса кошелька не хватает для оплаты корзины"""

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient balance: required {required}, available {available}"
        )
        self.required = required
        self.available = available


class ApplicationError(ProxyShopError):
    """Бизнес-ошибка, о которой сообщил сервер (envelope status != success)"""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.message} (HTTP {self.status_code})"
        return self.message


class PermissionDenied(ApplicationError):
    """Роль текущего пользователя не позволяет выполнить операцию"""

    def __init__(self, message: str = "Permission denied"):
        super().__init__(message, status_code=403)
