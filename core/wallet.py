"""
WalletLedger - read model кошелька.

Баланс никогда не уменьшается локально: его заменяет только ответ GET /wallet.
После покупки или депозита баланс считается устаревшим до следующего sync().
"""

import logging
from typing import Any, Dict, Optional

from core.api_client import ApiRequest
from core.auth_gateway import AuthGateway
from core.errors import ValidationError
from core.models import DepositRequest, Page, WalletAccount, WalletTransaction, pagination_total, parse_list

logger = logging.getLogger(__name__)


class WalletLedger:
    def __init__(self, gateway: AuthGateway):
        self.gateway = gateway
        self.account: Optional[WalletAccount] = None
        self._stale = True

    @property
    def balance(self) -> int:
        """Последний подтвержденный сервером баланс (0 до первого sync)"""
        return self.account.balance if self.account else 0

    @property
    def is_stale(self) -> bool:
        return self._stale

    def mark_stale(self) -> None:
        self._stale = True

    async def sync(self) -> WalletAccount:
        """Загрузить баланс с сервера - единственный способ его изменить"""
        data = await self.gateway.send(ApiRequest('GET', '/wallet'))
        self.account = WalletAccount.from_dict(data or {})
        self._stale = False
        logger.info(f"💰 Wallet synced: balance={self.account.balance}")
        return self.account

    async def transactions_page(self, page: int = 1, size: int = 10) -> Page:
        """История операций, страница за страницей, без локальной агрегации"""
        if page < 1 or size < 1:
            raise ValidationError("Page and size must be >= 1", field="page")

        data = await self.gateway.send(ApiRequest(
            'GET', '/wallet/transactions', params={'page': page, 'limit': size}
        ))
        items = parse_list(data, WalletTransaction.from_dict)
        return Page(items=tuple(items), page=page, size=size, total=pagination_total(data))

    async def deposit(self, amount: int, payment_method: str = 'bank_transfer',
                      payment_details: Optional[Dict[str, Any]] = None) -> DepositRequest:
        """
        Создать заявку на пополнение. Баланс изменится только после
        подтверждения оператором и следующего sync().
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"Deposit amount must be a positive integer, got {amount!r}",
                                  field="amount")

        data = await self.gateway.send(ApiRequest('POST', '/wallet/deposit', json={
            'amount': amount,
            'payment_method': payment_method,
            'payment_details': payment_details or {},
        }))
        self.mark_stale()
        request = DepositRequest.from_dict(data or {}, amount=amount, payment_method=payment_method)
        logger.info(f"💰 Deposit request created: amount={amount}, status={request.status}")
        return request
