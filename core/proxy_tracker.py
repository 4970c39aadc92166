"""
ProxyStateTracker - купленные прокси клиента и их наблюдаемый статус.

Коллекция хранится по id (а не по индексу в списке). Каждый запрос, который
может изменить прокси (check / rotate), резервирует номер в очереди этой
сущности при отправке, а результат применяется строго в порядке номеров:
медленный ответ check не перезапишет более поздний rotate, а быстрый ответ
подождет, пока применятся более ранние.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from functools import partial
from typing import Callable, Dict, Iterable, List, Optional, Union

from core.api_client import ApiRequest
from core.auth_gateway import AuthGateway
from core.errors import ProxyShopError, ValidationError
from core.models import (
    HealthResult,
    Page,
    ProxyEntitlement,
    ProxyKind,
    ReasonCode,
    ReplacementRequest,
    ReplacementStatus,
    RotationResult,
    pagination_total,
    parse_enum,
    parse_list,
    utcnow,
)

logger = logging.getLogger(__name__)

Mutation = Optional[Callable[[], None]]


class WriteSequencer:
    """Применение изменений одной сущности в порядке выдачи номеров"""

    def __init__(self):
        self.next_issue = 0
        self.next_apply = 0
        self.pending: Dict[int, Mutation] = {}

    def reserve(self) -> int:
        seq = self.next_issue
        self.next_issue += 1
        return seq

    def deliver(self, seq: int, mutation: Mutation) -> None:
        """Сдать результат запроса seq (None - запрос не удался, слот освобождается)"""
        self.pending[seq] = mutation
        while self.next_apply in self.pending:
            ready = self.pending.pop(self.next_apply)
            self.next_apply += 1
            if ready is not None:
                ready()

    @property
    def in_flight(self) -> int:
        return self.next_issue - self.next_apply


@dataclass(frozen=True)
class OperationFailure:
    operation: str
    error: ProxyShopError
    failed_at: datetime


class ProxyStateTracker:
    def __init__(self, gateway: AuthGateway, page_size: int = 50):
        self.gateway = gateway
        self.page_size = page_size
        self._entitlements: Dict[str, ProxyEntitlement] = {}
        self._sequencers: Dict[str, WriteSequencer] = {}
        self.replacements: Dict[str, ReplacementRequest] = {}
        self.failures: Dict[str, OperationFailure] = {}

    # ------------------------------------------------------------------
    # Чтение
    # ------------------------------------------------------------------

    def get(self, entitlement_id: str) -> Optional[ProxyEntitlement]:
        return self._entitlements.get(entitlement_id)

    def entitlements(self, plan_id: Optional[str] = None) -> List[ProxyEntitlement]:
        return [
            entitlement for entitlement in self._entitlements.values()
            if plan_id is None or entitlement.plan_id == plan_id
        ]

    def __len__(self) -> int:
        return len(self._entitlements)

    # ------------------------------------------------------------------
    # Загрузка с сервера
    # ------------------------------------------------------------------

    def register(self, entitlements: Iterable[ProxyEntitlement]) -> None:
        """Добавить или заменить прокси, подтвержденные сервером"""
        count = 0
        for entitlement in entitlements:
            self._entitlements[entitlement.id] = entitlement
            count += 1
        if count:
            logger.info(f"📦 Registered {count} proxy entitlement(s)")

    async def load_page(self, page: int = 1, limit: Optional[int] = None) -> Page:
        """GET /proxies - одна страница, найденные прокси добавляются в коллекцию"""
        limit = limit or self.page_size
        data = await self.gateway.send(ApiRequest(
            'GET', '/proxies', params={'page': page, 'limit': limit}
        ))
        items = parse_list(data, ProxyEntitlement.from_dict)
        self.register(items)
        return Page(items=tuple(items), page=page, size=limit, total=pagination_total(data))

    async def refresh(self) -> List[ProxyEntitlement]:
        """Полная синхронизация: все страницы, пропавшие на сервере прокси удаляются"""
        fresh: Dict[str, ProxyEntitlement] = {}
        page_number = 1
        while True:
            page = await self.load_page(page_number)
            fresh.update((item.id, item) for item in page.items)
            if not page.items or not page.has_next:
                break
            page_number += 1

        removed = set(self._entitlements) - set(fresh)
        self._entitlements = fresh
        self._drop_idle_sequencers(removed)
        if removed:
            logger.info(f"🧹 {len(removed)} proxy entitlement(s) no longer on server")
        return list(fresh.values())

    async def fetch(self, entitlement_id: str) -> ProxyEntitlement:
        """GET /proxies/{id} - подробности одного прокси"""
        data = await self.gateway.send(ApiRequest('GET', f'/proxies/{entitlement_id}'))
        entitlement = ProxyEntitlement.from_dict(data or {})
        self._entitlements[entitlement.id] = entitlement
        return entitlement

    def prune_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Удалить истекшие прокси, вернуть их id"""
        now = now or utcnow()
        expired = [eid for eid, entitlement in self._entitlements.items() if entitlement.is_expired(now)]
        for eid in expired:
            del self._entitlements[eid]
        self._drop_idle_sequencers(expired)
        if expired:
            logger.info(f"⌛ Pruned {len(expired)} expired proxy entitlement(s)")
        return expired

    # ------------------------------------------------------------------
    # Операции
    # ------------------------------------------------------------------

    async def check_status(self, entitlement_id: str) -> HealthResult:
        """
        Проверка прокси на сервере. Статус берется только из ответа сервера.

        Returns:
            HealthResult

        Raises:
            ProxyShopError: Ошибка запроса (записывается в failures)
        """
        sequencer = self._sequencer(entitlement_id)
        seq = sequencer.reserve()
        mutation: Mutation = None
        try:
            data = await self.gateway.send(ApiRequest('POST', f'/proxies/{entitlement_id}/check'))
            result = HealthResult.from_dict(entitlement_id, data or {})
            mutation = partial(self._apply_health, result)
        except ProxyShopError as e:
            self._record_failure([entitlement_id], 'check', e)
            raise
        finally:
            sequencer.deliver(seq, mutation)
            self._drop_idle_sequencers([entitlement_id])

        self.failures.pop(entitlement_id, None)
        logger.info(f"🩺 Proxy {entitlement_id} checked: {result.status.value}")
        return result

    async def rotate(self, plan_id: str) -> RotationResult:
        """
        Сменить IP rotating прокси плана.

        Обновляются все прокси плана, у которых ip == previous_ip на момент
        применения результата.

        Raises:
            ValidationError: План неизвестен или не rotating
        """
        plan = self.entitlements(plan_id)
        if not plan:
            raise ValidationError(f"Unknown plan: {plan_id}", field="plan_id")
        if any(entitlement.kind != ProxyKind.ROTATING for entitlement in plan):
            raise ValidationError(f"Plan {plan_id} is not a rotating plan", field="plan_id")

        reservations = {
            entitlement.id: self._sequencer(entitlement.id).reserve() for entitlement in plan
        }
        mutations: Dict[str, Mutation] = {}
        try:
            data = await self.gateway.send(ApiRequest('POST', f'/proxies/{plan_id}/rotate'))
            result = RotationResult.from_dict(plan_id, data or {})
            mutations = {eid: partial(self._apply_rotation, eid, result) for eid in reservations}
        except ProxyShopError as e:
            self._record_failure(reservations, 'rotate', e)
            raise
        finally:
            for eid, seq in reservations.items():
                self._sequencer(eid).deliver(seq, mutations.get(eid))
            self._drop_idle_sequencers(reservations)

        for eid in reservations:
            self.failures.pop(eid, None)
        logger.info(f"🔄 Plan {plan_id} rotated: {result.previous_ip} -> {result.new_ip}")
        return result

    async def request_replacement(self, entitlement_id: str,
                                  reason_code: Union[ReasonCode, str],
                                  free_text: str = "") -> ReplacementRequest:
        """
        Заявка на замену прокси. Статус самого прокси не меняется - он
        остается рабочим, пока сервер не обработает заявку.
        """
        reason = parse_enum(ReasonCode, reason_code, "reason_code")
        try:
            data = await self.gateway.send(ApiRequest(
                'POST', f'/proxies/{entitlement_id}/replace',
                json={'reason': reason.value, 'details': free_text}
            ))
        except ProxyShopError as e:
            self._record_failure([entitlement_id], 'replace', e)
            raise

        data = data if isinstance(data, dict) else {}
        raw_id = data.get('_id', data.get('id'))
        status = data.get('status')
        request = ReplacementRequest(
            entitlement_id=entitlement_id,
            reason_code=reason,
            free_text=free_text,
            submitted_at=utcnow(),
            status=ReplacementStatus(status) if status in {s.value for s in ReplacementStatus}
            else ReplacementStatus.PENDING,
            request_id=str(raw_id) if raw_id is not None else None,
        )
        self.replacements[entitlement_id] = request
        self.failures.pop(entitlement_id, None)
        logger.info(f"📝 Replacement requested for proxy {entitlement_id}: {reason.value}")
        return request

    def apply_replacement_outcome(self, entitlement_id: str,
                                  status: Union[ReplacementStatus, str],
                                  replacement: Optional[ProxyEntitlement] = None) -> ReplacementRequest:
        """
        Применить решение сервера по заявке: accepted - старый прокси удаляется,
        новый регистрируется; rejected - заявка закрывается.
        """
        status = parse_enum(ReplacementStatus, status, "replacement status")
        if status == ReplacementStatus.PENDING:
            raise ValidationError("Replacement outcome must be accepted or rejected", field="status")

        request = self.replacements.get(entitlement_id)
        if request is None:
            raise ValidationError(f"No replacement request for proxy {entitlement_id}",
                                  field="entitlement_id")
        if request.is_terminal:
            return request

        request = replace(request, status=status)
        self.replacements[entitlement_id] = request

        if status == ReplacementStatus.ACCEPTED:
            self._entitlements.pop(entitlement_id, None)
            self._drop_idle_sequencers([entitlement_id])
            if replacement is not None:
                self.register([replacement])
            logger.info(f"✅ Proxy {entitlement_id} replaced"
                        + (f" by {replacement.id}" if replacement else ""))
        else:
            logger.info(f"⚠️ Replacement for proxy {entitlement_id} rejected")
        return request

    # ------------------------------------------------------------------
    # Применение результатов
    # ------------------------------------------------------------------

    def _sequencer(self, entitlement_id: str) -> WriteSequencer:
        sequencer = self._sequencers.get(entitlement_id)
        if sequencer is None:
            sequencer = self._sequencers[entitlement_id] = WriteSequencer()
        return sequencer

    def _drop_idle_sequencers(self, entitlement_ids: Iterable[str]) -> None:
        """Очередь удаленного прокси без запросов в полете больше не нужна"""
        for eid in list(entitlement_ids):
            sequencer = self._sequencers.get(eid)
            if sequencer is not None and sequencer.in_flight == 0 and eid not in self._entitlements:
                del self._sequencers[eid]

    def _apply_health(self, result: HealthResult) -> None:
        entitlement = self._entitlements.get(result.entitlement_id)
        if entitlement is None:
            return
        self._entitlements[entitlement.id] = replace(
            entitlement, status=result.status, last_checked_at=result.last_checked_at
        )

    def _apply_rotation(self, entitlement_id: str, result: RotationResult) -> None:
        entitlement = self._entitlements.get(entitlement_id)
        if entitlement is None or entitlement.plan_id != result.plan_id:
            return
        if entitlement.ip != result.previous_ip:
            return
        self._entitlements[entitlement_id] = replace(entitlement, ip=result.new_ip)
        logger.debug(f"Proxy {entitlement_id}: ip {result.previous_ip} -> {result.new_ip}")

    def _record_failure(self, entitlement_ids: Iterable[str], operation: str, error: ProxyShopError) -> None:
        failure = OperationFailure(operation=operation, error=error, failed_at=utcnow())
        for eid in entitlement_ids:
            self.failures[eid] = failure
        logger.error(f"❌ Proxy {operation} failed: {error}")
