"""Корзина: локальная коллекция позиций до покупки, без сети"""

import logging
from dataclasses import replace
from typing import Dict, Iterator, Tuple

from core.errors import ValidationError
from core.models import CartItem

logger = logging.getLogger(__name__)


class CartAggregator:
    """Упорядоченная корзина, уникальная по package_id"""

    def __init__(self):
        # dict сохраняет порядок добавления
        self._items: Dict[str, CartItem] = {}

    def add(self, item: CartItem) -> CartItem:
        """Добавить позицию. Повторное добавление того же пакета суммирует количество"""
        existing = self._items.get(item.package_id)
        if existing is not None:
            item = replace(existing, quantity=existing.quantity + item.quantity)
        self._items[item.package_id] = item
        logger.debug(f"🛒 Cart: {item.package_id} x{item.quantity}")
        return item

    def remove(self, package_id: str) -> None:
        self._items.pop(package_id, None)

    def set_quantity(self, package_id: str, quantity: int) -> CartItem:
        if package_id not in self._items:
            raise ValidationError(f"Package {package_id} is not in the cart", field="package_id")
        item = replace(self._items[package_id], quantity=quantity)
        self._items[package_id] = item
        return item

    def clear(self) -> None:
        self._items.clear()

    def remove_purchased(self, snapshot: "CartSnapshot") -> None:
        """Убрать купленное по снимку. Добавленное после open() остается в корзине"""
        for bought in snapshot.items:
            current = self._items.get(bought.package_id)
            if current is None:
                continue
            remaining = current.quantity - bought.quantity
            if remaining > 0:
                self._items[bought.package_id] = replace(current, quantity=remaining)
            else:
                del self._items[bought.package_id]

    def total(self) -> int:
        return sum(item.unit_price * item.quantity for item in self._items.values())

    def items(self) -> Tuple[CartItem, ...]:
        return tuple(self._items.values())

    def snapshot(self) -> "CartSnapshot":
        """Неизменяемый снимок для оформления заказа"""
        return CartSnapshot(tuple(
            replace(item, custom_config=dict(item.custom_config)) for item in self._items.values()
        ))

    def is_empty(self) -> bool:
        return not self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[CartItem]:
        return iter(self.items())

    def __contains__(self, package_id: str) -> bool:
        return package_id in self._items


class CartSnapshot:
    """Копия корзины на момент открытия checkout. Позиции - frozen dataclass"""

    def __init__(self, items: Tuple[CartItem, ...]):
        self.items = items

    def total(self) -> int:
        return sum(item.subtotal for item in self.items)

    def to_order_items(self):
        return [item.to_order_item() for item in self.items]

    def __len__(self) -> int:
        return len(self.items)
