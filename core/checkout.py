"""
CheckoutOrchestrator - оформление заказа как явная машина состояний.

    IDLE -> REVIEWING -> AWAITING_PAYMENT -> SETTLING -> COMPLETED | FAILED

Работает со снимком корзины: правки корзины после open() не попадают в
уже оформляемый заказ. Покупка необратима, поэтому после подтверждения
сервером сверка кошелька и прокси доводится до конца, даже если UI ушел
со страницы (detach()).
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

from core.api_client import ApiRequest
from core.auth_gateway import AuthGateway
from core.cart import CartAggregator, CartSnapshot
from core.errors import InsufficientBalance, NetworkError, ProxyShopError, ValidationError
from core.models import Order, OrderItem, OrderStatus, ProxyEntitlement, parse_list
from core.proxy_tracker import ProxyStateTracker
from core.wallet import WalletLedger

logger = logging.getLogger(__name__)


class CheckoutState(Enum):
    IDLE = "idle"
    REVIEWING = "reviewing"
    AWAITING_PAYMENT = "awaiting_payment"
    SETTLING = "settling"
    COMPLETED = "completed"
    FAILED = "failed"


Listener = Callable[[CheckoutState], None]


class CheckoutOrchestrator:
    def __init__(self, gateway: AuthGateway, cart: CartAggregator, wallet: WalletLedger,
                 tracker: ProxyStateTracker, payment_source: str = 'wallet'):
        self.gateway = gateway
        self.cart = cart
        self.wallet = wallet
        self.tracker = tracker
        self.payment_source = payment_source

        self.state = CheckoutState.IDLE
        self.snapshot: Optional[CartSnapshot] = None
        self.order: Optional[Order] = None
        self.error: Optional[ProxyShopError] = None
        self.reconcile_error: Optional[ProxyShopError] = None
        self.reconciliation: Optional[asyncio.Future] = None

        self._listeners: List[Listener] = []
        self._detached = False

    # ------------------------------------------------------------------
    # Подписка UI
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def detach(self) -> None:
        """UI ушел со страницы: уведомления прекращаются, сверка продолжается"""
        self._detached = True
        logger.debug("Checkout detached from UI")

    def _transition(self, new_state: CheckoutState) -> None:
        old_state = self.state
        self.state = new_state
        logger.debug(f"Checkout: {old_state.value} -> {new_state.value}")
        if self._detached:
            return
        for listener in list(self._listeners):
            listener(new_state)

    def _require(self, *states: CheckoutState) -> None:
        if self.state not in states:
            raise ValidationError(
                f"Checkout is {self.state.value}, expected {' or '.join(s.value for s in states)}",
                field="state",
            )

    # ------------------------------------------------------------------
    # Переходы
    # ------------------------------------------------------------------

    def open(self) -> CartSnapshot:
        """
        Начать оформление: снимок корзины и переход в REVIEWING.

        Из COMPLETED / FAILED начинается новый цикл.
        """
        if self.state == CheckoutState.SETTLING:
            raise ValidationError("Order submission is already in progress", field="state")
        if self.cart.is_empty():
            raise ValidationError("Cart is empty", field="cart")

        self.snapshot = self.cart.snapshot()
        self.order = None
        self.error = None
        self.reconcile_error = None
        self._detached = False
        self._transition(CheckoutState.REVIEWING)
        logger.info(f"🛒 Checkout opened: {len(self.snapshot)} item(s), total={self.snapshot.total()}")
        return self.snapshot

    async def confirm(self) -> None:
        """
        REVIEWING -> AWAITING_PAYMENT, если баланс покрывает сумму снимка.

        Raises:
            InsufficientBalance: Баланса не хватает, состояние остается REVIEWING
        """
        self._require(CheckoutState.REVIEWING)

        if self.wallet.is_stale:
            await self.wallet.sync()

        required = self.snapshot.total()
        available = self.wallet.balance
        if available < required:
            logger.warning(f"⚠️ Insufficient balance: required={required}, available={available}")
            raise InsufficientBalance(required=required, available=available)

        self._transition(CheckoutState.AWAITING_PAYMENT)

    async def submit(self, payment_source: Optional[str] = None) -> Order:
        """
        AWAITING_PAYMENT -> SETTLING -> COMPLETED | FAILED

        После того как сервер принял заказ, checkout всегда завершается
        COMPLETED: ни ошибка разбора ответа, ни отмена во время сверки
        не превращают оплаченный заказ в FAILED.

        Returns:
            Order: Подтвержденный сервером заказ

        Raises:
            ProxyShopError: Ошибка отправки (состояние FAILED, корзина не тронута)
        """
        self._require(CheckoutState.AWAITING_PAYMENT)
        source = payment_source or self.payment_source
        items = tuple(
            OrderItem(item.package_id, item.quantity, dict(item.custom_config))
            for item in self.snapshot.items
        )

        self._transition(CheckoutState.SETTLING)
        try:
            data = await self.gateway.send(ApiRequest('POST', '/orders', json={
                'items': self.snapshot.to_order_items(),
                'payment_source': source,
            }))
        except ProxyShopError as e:
            self._fail(e)
            raise
        except asyncio.CancelledError:
            # результат на сервере неизвестен - баланс точно нужно перечитать
            self.wallet.mark_stale()
            self._fail(NetworkError("Order submission was cancelled, outcome unknown"))
            raise

        # заказ принят: деньги списаны, купленное уходит из корзины
        self.wallet.mark_stale()
        self.cart.remove_purchased(self.snapshot)
        data = data if isinstance(data, dict) else {}
        raw_order = data.get('order') or data
        try:
            order = Order.from_dict(raw_order, items=items)
        except ProxyShopError as e:
            order = self._unparsed_order(raw_order, items, source)
            self.reconcile_error = e
            logger.error(f"❌ Order accepted but response is malformed: {e}")

        logger.info(f"✅ Order {order.order_id} accepted: total={order.total_amount}, status={order.status.value}")
        self.order = order
        self.reconciliation = asyncio.ensure_future(self._reconcile(data))
        try:
            # shield: отмена submit не прерывает сверку оплаченного заказа
            await asyncio.shield(self.reconciliation)
        finally:
            self._transition(CheckoutState.COMPLETED)
        return order

    async def run(self, payment_source: Optional[str] = None) -> Order:
        """open + confirm + submit одним вызовом"""
        self.open()
        await self.confirm()
        return await self.submit(payment_source)

    # ------------------------------------------------------------------

    def _fail(self, error: ProxyShopError) -> None:
        self.error = error
        logger.error(f"❌ Checkout failed: {error}")
        self._transition(CheckoutState.FAILED)

    async def _reconcile(self, data: Any) -> None:
        """Перечитать кошелек и зарегистрировать купленные прокси"""
        try:
            await self.wallet.sync()
            if data.get('proxies') is not None:
                self.tracker.register(parse_list(data['proxies'], ProxyEntitlement.from_dict))
            else:
                await self.tracker.refresh()
        except ProxyShopError as e:
            # заказ уже оплачен - это не провал checkout
            if self.reconcile_error is None:
                self.reconcile_error = e
            logger.error(f"❌ Post-purchase reconciliation failed: {e}")

    def _unparsed_order(self, raw: Any, items: Tuple[OrderItem, ...], source: str) -> Order:
        """Заказ из снимка, когда ответ сервера не удалось разобрать"""
        raw_id = raw.get('_id', raw.get('id')) if isinstance(raw, dict) else None
        return Order(
            order_id=str(raw_id) if raw_id is not None else '',
            items=items,
            total_amount=self.snapshot.total(),
            payment_source=source,
            status=OrderStatus.PENDING,
        )

    @property
    def is_finished(self) -> bool:
        return self.state in (CheckoutState.COMPLETED, CheckoutState.FAILED)
