"""
Модели данных клиента: сессия, корзина, заказы, кошелек, прокси и инвентарь.

Все разборы ответов сервера собраны в from_dict(), чтобы остальной код
работал только с типизированными объектами.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Type, TypeVar

from core.errors import ValidationError
from utils.port_utils import validate_port, validate_port_range

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """ISO 8601 строка (в т.ч. с 'Z') или timestamp -> aware datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValidationError(f"Invalid timestamp: {value!r}") from e
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationError(f"Invalid datetime: {value!r}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    try:
        return enum_cls(value)
    except ValueError as e:
        raise ValidationError(
            f"Unexpected {field_name}: {value!r}", field=field_name
        ) from e


def _entity_id(data: Dict[str, Any]) -> str:
    raw = data.get("_id", data.get("id"))
    if raw is None:
        raise ValidationError("Missing id in server payload", field="id")
    return str(raw)


def _require(data: Dict[str, Any], key: str) -> Any:
    if data.get(key) is None:
        raise ValidationError(f"Missing field: {key}", field=key)
    return data[key]


def _mapping(data: Any, what: str) -> Dict[str, Any]:
    """Ответ сервера должен быть объектом, иначе ValidationError"""
    if not isinstance(data, dict):
        raise ValidationError(f"Malformed {what} payload: expected an object, got {type(data).__name__}",
                              field=what)
    return data


def _as_int(value: Any, field_name: str) -> int:
    """Целое из ответа сервера ("100000" и 100000.0 допустимы)"""
    if isinstance(value, bool):
        raise ValidationError(f"Expected an integer {field_name}, got {value!r}", field=field_name)
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise ValidationError(f"Expected an integer {field_name}, got {value!r}", field=field_name) from e


def _optional_int(value: Any, field_name: str) -> Optional[int]:
    return _as_int(value, field_name) if value is not None else None


def pagination_total(data: Any) -> Optional[int]:
    """total из {pagination: {total}} или {total}"""
    if not isinstance(data, dict):
        return None
    pagination = data.get("pagination") or {}
    if not isinstance(pagination, dict):
        pagination = {}
    return _optional_int(pagination.get("total", data.get("total")), "total")


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    RESELLER = "reseller"
    CUSTOMER = "customer"


def parse_roles(raw: Any) -> FrozenSet[Role]:
    roles = set()
    for item in raw or []:
        try:
            roles.add(Role(item))
        except ValueError:
            logger.debug(f"Ignoring unknown role: {item!r}")
    return frozenset(roles)


@dataclass(frozen=True)
class Session:
    subject_id: str
    display_name: str
    roles: FrozenSet[Role]
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_at: Optional[datetime] = None

    @classmethod
    def from_login(cls, data: Dict[str, Any]) -> "Session":
        """Собрать сессию из data ответа POST /auth/login"""
        data = _mapping(data, "login")
        user = _mapping(data.get("user") or {}, "user")
        expires_in = data.get("expires_in")
        return cls(
            subject_id=_entity_id(user),
            display_name=user.get("username") or user.get("email") or "",
            roles=parse_roles(user.get("roles")),
            access_token=str(_require(data, "access_token")),
            refresh_token=str(_require(data, "refresh_token")),
            expires_at=utcnow() + timedelta(seconds=_as_int(expires_in, "expires_in")) if expires_in else None,
        )

    def renewed(self, data: Dict[str, Any]) -> "Session":
        """Новая сессия после POST /auth/refresh-token.

        Сервер может не вернуть новый refresh token - тогда сохраняем старый.
        """
        data = _mapping(data, "refresh")
        expires_in = data.get("expires_in")
        return replace(
            self,
            access_token=str(_require(data, "access_token")),
            refresh_token=str(data.get("refresh_token") or self.refresh_token),
            expires_at=utcnow() + timedelta(seconds=_as_int(expires_in, "expires_in")) if expires_in else None,
        )

    def has_role(self, *roles: Role) -> bool:
        return any(role in self.roles for role in roles)

    def to_record(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "user": {
                "_id": self.subject_id,
                "username": self.display_name,
                "roles": sorted(role.value for role in self.roles),
                "expires_at": format_datetime(self.expires_at),
            },
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Session":
        user = _mapping(record["user"], "user")
        access_token = record["accessToken"]
        refresh_token = record["refreshToken"]
        if not isinstance(access_token, str) or not isinstance(refresh_token, str):
            raise ValidationError("Stored credentials are not strings")
        return cls(
            subject_id=_entity_id(user),
            display_name=user.get("username", ""),
            roles=parse_roles(user.get("roles")),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=parse_datetime(user.get("expires_at")),
        )


# ---------------------------------------------------------------------------
# Catalogue and cart
# ---------------------------------------------------------------------------

class ServiceKind(str, Enum):
    STATIC_IPV4 = "static-ipv4"
    STATIC_IPV6 = "static-ipv6"
    ROTATING = "rotating"


@dataclass(frozen=True)
class CartItem:
    package_id: str
    package_name: str
    unit_price: int
    quantity: int = 1
    service_kind: ServiceKind = ServiceKind.STATIC_IPV4
    custom_config: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.quantity, int) or self.quantity < 1:
            raise ValidationError(f"Quantity must be >= 1, got {self.quantity!r}", field="quantity")
        if not isinstance(self.unit_price, int) or self.unit_price < 0:
            raise ValidationError(f"Unit price must be a non-negative integer, got {self.unit_price!r}",
                                  field="unit_price")

    @property
    def subtotal(self) -> int:
        return self.unit_price * self.quantity

    def to_order_item(self) -> Dict[str, Any]:
        return {
            "package_id": self.package_id,
            "quantity": self.quantity,
            "custom_config": dict(self.custom_config),
        }


@dataclass(frozen=True)
class ServicePackage:
    package_id: str
    name: str
    price: int
    service_kind: ServiceKind
    description: str = ""
    countries: Tuple[str, ...] = ()
    duration_days: Optional[int] = None
    active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServicePackage":
        data = _mapping(data, "package")
        if data.get("service_kind"):
            kind = parse_enum(ServiceKind, data["service_kind"], "service_kind")
        elif data.get("type") == "rotating":
            kind = ServiceKind.ROTATING
        elif data.get("ip_version") == "ipv6":
            kind = ServiceKind.STATIC_IPV6
        else:
            kind = ServiceKind.STATIC_IPV4
        return cls(
            package_id=_entity_id(data),
            name=data.get("name", ""),
            price=_as_int(_require(data, "price"), "price"),
            service_kind=kind,
            description=data.get("description") or "",
            countries=tuple(data.get("countries") or ()),
            duration_days=data.get("duration_days"),
            active=bool(data.get("active", True)),
        )

    def to_cart_item(self, quantity: int = 1, custom_config: Optional[Dict[str, str]] = None) -> CartItem:
        return CartItem(
            package_id=self.package_id,
            package_name=self.name,
            unit_price=self.price,
            quantity=quantity,
            service_kind=self.service_kind,
            custom_config=dict(custom_config or {}),
        )


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class OrderItem:
    package_id: str
    quantity: int
    custom_config: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderItem":
        data = _mapping(data, "order item")
        package = data.get("package_id")
        if isinstance(package, dict):
            package = _entity_id(package)
        return cls(
            package_id=str(package),
            quantity=_as_int(data.get("quantity", 1), "quantity"),
            custom_config=dict(data.get("custom_config") or {}),
        )


@dataclass(frozen=True)
class Order:
    order_id: str
    items: Tuple[OrderItem, ...]
    total_amount: int
    payment_source: str
    status: OrderStatus
    created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], items: Optional[Tuple[OrderItem, ...]] = None) -> "Order":
        """Разбор заказа. items передаются явно, если сервер их не вернул"""
        data = _mapping(data, "order")
        if data.get("items") is not None:
            items = tuple(OrderItem.from_dict(item) for item in data["items"])
        return cls(
            order_id=_entity_id(data),
            items=items or (),
            total_amount=_as_int(data.get("total_amount", 0), "total_amount"),
            payment_source=data.get("payment_source") or data.get("payment_method") or "",
            status=parse_enum(OrderStatus, data.get("status", "pending"), "order status"),
            created_at=parse_datetime(data.get("created_at")),
        )


# ---------------------------------------------------------------------------
# Wallet
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WalletAccount:
    balance: int
    last_synced_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalletAccount":
        data = _mapping(data, "wallet")
        return cls(balance=_as_int(_require(data, "balance"), "balance"), last_synced_at=utcnow())


@dataclass(frozen=True)
class WalletTransaction:
    transaction_id: str
    kind: str
    amount: int
    balance_after: Optional[int] = None
    description: str = ""
    created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalletTransaction":
        data = _mapping(data, "transaction")
        balance_after = data.get("balance_after")
        return cls(
            transaction_id=_entity_id(data),
            kind=data.get("type") or data.get("kind") or "",
            amount=_as_int(data.get("amount", 0), "amount"),
            balance_after=_optional_int(balance_after, "balance_after"),
            description=data.get("description") or "",
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass(frozen=True)
class Page:
    items: Tuple[Any, ...]
    page: int
    size: int
    total: Optional[int] = None

    @property
    def has_next(self) -> bool:
        if self.total is None:
            return len(self.items) == self.size
        return self.page * self.size < self.total


@dataclass(frozen=True)
class DepositRequest:
    deposit_id: Optional[str]
    amount: int
    payment_method: str
    status: str = "pending"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], amount: int, payment_method: str) -> "DepositRequest":
        data = _mapping(data, "deposit")
        raw_id = data.get("_id", data.get("id"))
        return cls(
            deposit_id=str(raw_id) if raw_id is not None else None,
            amount=_as_int(data.get("amount", amount), "amount"),
            payment_method=data.get("payment_method", payment_method),
            status=data.get("status", "pending"),
        )


# ---------------------------------------------------------------------------
# Proxy entitlements
# ---------------------------------------------------------------------------

class ProxyProtocol(str, Enum):
    HTTP = "http"
    HTTPS = "https"
    SOCKS4 = "socks4"
    SOCKS5 = "socks5"


class ProxyKind(str, Enum):
    STATIC = "static"
    ROTATING = "rotating"


class ProxyStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ProxyCredentials:
    username: str = ""
    password: str = ""

    def __repr__(self) -> str:
        return f"ProxyCredentials(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class ProxyEntitlement:
    id: str
    plan_id: str
    ip: str
    port: int
    protocol: ProxyProtocol
    credentials: ProxyCredentials
    country: str
    kind: ProxyKind
    status: ProxyStatus
    expires_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProxyEntitlement":
        data = _mapping(data, "proxy")
        creds = _mapping(data.get("credentials") or {}, "credentials")
        kind = data.get("kind") or ("rotating" if data.get("type") == "rotating" else "static")
        port = _as_int(_require(data, "port"), "port")
        validate_port(port)
        return cls(
            id=_entity_id(data),
            plan_id=str(data.get("plan_id") or ""),
            ip=str(data.get("ip") or data.get("host") or ""),
            port=port,
            protocol=parse_enum(ProxyProtocol, data.get("protocol", "http"), "protocol"),
            credentials=ProxyCredentials(
                username=creds.get("username", data.get("username", "")),
                password=creds.get("password", data.get("password", "")),
            ),
            country=data.get("country") or "",
            kind=parse_enum(ProxyKind, kind, "proxy kind"),
            status=parse_enum(ProxyStatus, data.get("status", "pending"), "proxy status"),
            expires_at=parse_datetime(data.get("expires_at") or data.get("end_date")),
            last_checked_at=parse_datetime(data.get("last_checked_at") or data.get("last_check")),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.status == ProxyStatus.EXPIRED:
            return True
        return self.expires_at is not None and self.expires_at <= (now or utcnow())


def connection_string(entitlement: ProxyEntitlement) -> str:
    """protocol://username:password@ip:port (без учетных данных, если их нет)"""
    creds = entitlement.credentials
    auth = f"{creds.username}:{creds.password}@" if creds.username else ""
    return f"{entitlement.protocol.value}://{auth}{entitlement.ip}:{entitlement.port}"


@dataclass(frozen=True)
class HealthResult:
    entitlement_id: str
    status: ProxyStatus
    last_checked_at: datetime
    response_time_ms: Optional[int] = None

    @classmethod
    def from_dict(cls, entitlement_id: str, data: Dict[str, Any]) -> "HealthResult":
        data = _mapping(data, "health check")
        if data.get("status") in {s.value for s in ProxyStatus}:
            status = ProxyStatus(data["status"])
        elif "is_active" in data:
            status = ProxyStatus.ACTIVE if data["is_active"] else ProxyStatus.INACTIVE
        else:
            raise ValidationError("Health check response has no status", field="status")
        response_time = data.get("response_time")
        return cls(
            entitlement_id=entitlement_id,
            status=status,
            last_checked_at=parse_datetime(
                data.get("last_checked_at") or data.get("last_check")
            ) or utcnow(),
            response_time_ms=_optional_int(response_time, "response_time"),
        )


@dataclass(frozen=True)
class RotationResult:
    plan_id: str
    previous_ip: str
    new_ip: str

    @classmethod
    def from_dict(cls, plan_id: str, data: Dict[str, Any]) -> "RotationResult":
        data = _mapping(data, "rotation")
        return cls(
            plan_id=plan_id,
            previous_ip=str(_require(data, "previous_ip")),
            new_ip=str(_require(data, "new_ip")),
        )


class ReasonCode(str, Enum):
    SLOW_SPEED = "slow_speed"
    FREQUENT_BLOCK = "frequent_block"
    NOT_WORKING = "not_working"
    WRONG_LOCATION = "wrong_location"
    OTHER = "other"


class ReplacementStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ReplacementRequest:
    entitlement_id: str
    reason_code: ReasonCode
    free_text: str
    submitted_at: datetime
    status: ReplacementStatus = ReplacementStatus.PENDING
    request_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != ReplacementStatus.PENDING


# ---------------------------------------------------------------------------
# Admin inventory
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PortRange:
    start: int
    end: int

    def __post_init__(self):
        validate_port_range(self.start, self.end)

    def __contains__(self, port: int) -> bool:
        return self.start <= port <= self.end

    def to_dict(self) -> Dict[str, int]:
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class ProxyPool:
    pool_id: Optional[str]
    name: str
    group: str
    entry_point: str
    port_range: PortRange
    username: str = ""
    password: str = ""
    description: str = ""
    countries: Tuple[str, ...] = ()
    connection_types: Tuple[str, ...] = ("datacenter",)
    is_bandwidth_pool: bool = False
    active: bool = True
    proxy_count: int = 0
    active_proxy_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProxyPool":
        data = _mapping(data, "proxy pool")
        port_range = _mapping(data.get("port_range") or {}, "port_range")
        raw_id = data.get("_id", data.get("id"))
        return cls(
            pool_id=str(raw_id) if raw_id is not None else None,
            name=data.get("name", ""),
            group=data.get("group", ""),
            entry_point=data.get("entry_point", ""),
            port_range=PortRange(_as_int(port_range.get("start", 0), "port_range.start"),
                                 _as_int(port_range.get("end", 0), "port_range.end")),
            username=data.get("username", ""),
            description=data.get("description") or "",
            countries=tuple(data.get("countries") or ()),
            connection_types=tuple(data.get("connection_types") or ("datacenter",)),
            is_bandwidth_pool=bool(data.get("is_bandwidth_pool", False)),
            active=bool(data.get("active", True)),
            proxy_count=_as_int(data.get("proxy_count", 0), "proxy_count"),
            active_proxy_count=_as_int(data.get("active_proxy_count", 0), "active_proxy_count"),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "name": self.name,
            "group": self.group,
            "entry_point": self.entry_point,
            "port_range": self.port_range.to_dict(),
            "username": self.username,
            "description": self.description,
            "countries": list(self.countries),
            "connection_types": list(self.connection_types),
            "is_bandwidth_pool": self.is_bandwidth_pool,
            "active": self.active,
        }
        # пароль пула сервер не возвращает, отправляем только если задан
        if self.password:
            payload["password"] = self.password
        return payload


@dataclass(frozen=True)
class InventoryProxy:
    proxy_id: Optional[str]
    host: str
    port: int
    protocol: ProxyProtocol = ProxyProtocol.HTTP
    kind: str = "datacenter"
    country: str = ""
    status: str = "active"
    username: str = ""
    password: str = ""

    def __post_init__(self):
        validate_port(self.port)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InventoryProxy":
        data = _mapping(data, "inventory proxy")
        raw_id = data.get("_id", data.get("id"))
        return cls(
            proxy_id=str(raw_id) if raw_id is not None else None,
            host=data.get("host") or data.get("ip") or "",
            port=_as_int(_require(data, "port"), "port"),
            protocol=parse_enum(ProxyProtocol, data.get("protocol", "http"), "protocol"),
            kind=data.get("type", "datacenter"),
            country=data.get("country") or "",
            status=data.get("status", "active"),
            username=data.get("username", ""),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "host": self.host,
            "port": self.port,
            "protocol": self.protocol.value,
            "type": self.kind,
            "country": self.country,
            "status": self.status,
            "username": self.username,
        }
        if self.password:
            payload["password"] = self.password
        return payload


def parse_list(raw: Any, parser) -> List[Any]:
    """data может быть списком или {items/proxies/...: [...]}"""
    if isinstance(raw, dict):
        for key in ("items", "proxies", "packages", "orders", "transactions", "pools", "docs"):
            if raw.get(key) is not None:
                raw = raw[key]
                break
        else:
            raw = []
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(f"Expected a list, got {type(raw).__name__}")
    return [parser(item) for item in raw]
