"""Alert rule evaluation, trigger bookkeeping and alert lifecycle operations."""
from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Iterable, Optional

import constants
from alerts.events import EventPublisher
from alerts.models import AlertConditions, AlertTrigger, NotificationRequest
from automation.bid_assessor import is_bid_unsafe
from errors import AlertNotFoundError, InvalidAlertError
from storage.models import (
    ALERT_TYPE_ORDER,
    ALERT_TYPE_PRIORITY,
    Alert,
    AlertChannels,
    AlertStatus,
    AlertType,
)
from work_queue import TopicQueues

if TYPE_CHECKING:
    from storage.sqlite_repository import SQLiteRepository

COOLDOWN = timedelta(minutes=constants.ALERT_COOLDOWN_MINUTES)

_ADDRESS = re.compile(r'^0x[0-9a-fA-F]{40}$')


def validate_alert_value(alert_type: AlertType, value: Any) -> Optional[str]:
    """Normalises an alert value for its type, raising InvalidAlertError when it does not fit."""
    if value is None or value == '':
        if alert_type is AlertType.LOW_GAS:
            raise InvalidAlertError("lowGas alerts need a positive wei threshold")
        return None

    if alert_type is AlertType.NO_GAS:
        return None
    if alert_type is AlertType.EVICTION:
        text = str(value).strip()
        if not _ADDRESS.match(text):
            raise InvalidAlertError(f"Eviction alert value must be a contract address, got {value!r}")
        return text.lower()

    try:
        number = int(str(value).strip())
    except ValueError:
        raise InvalidAlertError(f"Invalid alert value for {alert_type.value}: {value!r}") from None
    if alert_type is AlertType.LOW_GAS:
        if number <= 0:
            raise InvalidAlertError(f"lowGas threshold must be positive, got {number}")
    elif not constants.MIN_BID_SAFETY_VALUE <= number <= constants.MAX_BID_SAFETY_VALUE:
        raise InvalidAlertError(
            f"bidSafety value must be between {constants.MIN_BID_SAFETY_VALUE} and "
            f"{constants.MAX_BID_SAFETY_VALUE}, got {number}"
        )
    return str(number)


def cooldown_elapsed(alert: Alert, now: datetime) -> bool:
    return alert.last_triggered_at is None or now - alert.last_triggered_at > COOLDOWN


class AlertEngine:
    """
    Per (user, alert) state machine: active -> triggered -> active.

    An alert fires when its condition holds, its cooldown has elapsed and it
    is still under MAX_TRIGGERED_COUNT. The counter, timestamp and status are
    written in one compare-and-set so overlapping evaluations cannot fire the
    same alert twice.
    """

    def __init__(self, repository: "SQLiteRepository", publisher: EventPublisher, queues: TopicQueues) -> None:
        self.repository = repository
        self.publisher = publisher
        self.queues = queues
        self.logger = logging.getLogger(__name__)

    # --- Evaluation ---

    def submit(self, conditions: AlertConditions) -> None:
        self.queues.enqueue(constants.QUEUE_ALERT_PROCESSING, conditions)

    async def process_pending(self, now: Optional[datetime] = None) -> list[AlertTrigger]:
        """Evaluates every AlertConditions waiting on the alert-processing topic."""
        return await self.evaluate_all(self.queues.drain(constants.QUEUE_ALERT_PROCESSING), now=now)

    async def evaluate_all(self, batch: Iterable[AlertConditions], now: Optional[datetime] = None) -> list[AlertTrigger]:
        triggers: list[AlertTrigger] = []
        for conditions in batch:
            try:
                triggers.extend(await self.evaluate(conditions, now=now))
            except Exception as exc:
                self.logger.error("Alert evaluation failed for user %s: %s", conditions.user_id, exc)
                await self.publisher.publish(constants.EVENT_MONITORING_ERROR, {
                    'user_id': conditions.user_id,
                    'blockchain_id': conditions.blockchain_id,
                    'error': str(exc),
                })
        return triggers

    async def evaluate(self, conditions: AlertConditions, now: Optional[datetime] = None) -> list[AlertTrigger]:
        now = now or datetime.now(timezone.utc)
        alerts = await self.repository.fetch_alerts(conditions.user_id)
        order = {alert_type: index for index, alert_type in enumerate(ALERT_TYPE_ORDER)}
        alerts.sort(key=lambda alert: (order[alert.type], alert.id))

        triggers: list[AlertTrigger] = []
        for alert in alerts:
            if not alert.is_active or alert.status is AlertStatus.PAUSED:
                continue
            if alert.triggered_count >= constants.MAX_TRIGGERED_COUNT:
                continue
            if not cooldown_elapsed(alert, now):
                continue

            matched = self._condition(alert, conditions)
            if matched is None:
                continue
            details, contracts = matched
            trigger = await self._fire(alert, now, details, contracts)
            if trigger is not None:
                triggers.append(trigger)
        return triggers

    def _condition(self, alert: Alert, conditions: AlertConditions) -> Optional[tuple[str, tuple[str, ...]]]:
        """Returns (details, contracts) when the alert's condition holds, else None."""
        if alert.type is AlertType.EVICTION:
            evicted = {address.lower() for address in conditions.evicted_contracts}
            if alert.value:
                evicted &= {alert.value.lower()}
            if evicted:
                contracts = tuple(sorted(evicted))
                return f"{len(contracts)} contract(s) evicted from the cache: {', '.join(contracts)}", contracts
            return None

        if alert.type is AlertType.NO_GAS:
            if conditions.gas_balance is not None and conditions.gas_balance == 0:
                return "Automation balance is empty; bids will not be placed", ()
            return None

        if alert.type is AlertType.LOW_GAS:
            if conditions.gas_balance is None or not alert.value:
                return None
            threshold = int(alert.value)
            if 0 < conditions.gas_balance < threshold:
                return f"Automation balance {conditions.gas_balance} wei is below {threshold} wei", ()
            return None

        # bidSafety
        unsafe = {a.contract_address for a in conditions.bid_assessments if not a.is_eligible}
        if alert.value:
            percent = int(alert.value)
            for address, state in conditions.contract_states.items():
                if state.is_cached and state.current_bid is not None and is_bid_unsafe(state.current_bid, state.min_bid, percent):
                    unsafe.add(address.lower())
        if unsafe:
            contracts = tuple(sorted(unsafe))
            return f"{len(contracts)} contract(s) bidding unsafely close to eviction: {', '.join(contracts)}", contracts
        return None

    async def _fire(
        self,
        alert: Alert,
        now: datetime,
        details: str,
        contracts: tuple[str, ...],
    ) -> Optional[AlertTrigger]:
        updated = await self.repository.mark_alert_triggered(alert.id, alert.triggered_count, now)
        if not updated:
            self.logger.info("Alert %s changed concurrently; not firing.", alert.id)
            return None

        alert.triggered_count += 1
        alert.last_triggered_at = now
        alert.status = AlertStatus.TRIGGERED

        trigger = AlertTrigger(
            alert_id=alert.id,
            user_id=alert.user_id,
            alert_type=alert.type,
            triggered_at=now,
            triggered_count=alert.triggered_count,
            details=details,
            contracts=contracts,
        )
        self.logger.info("Alert %s (%s) triggered for %s: %s", alert.id, alert.type.value, alert.user_id, details)
        await self.publisher.publish(constants.EVENT_ALERT_TRIGGERED, {
            'alert_id': alert.id,
            'user_id': alert.user_id,
            'type': alert.type.value,
            'triggered_count': alert.triggered_count,
            'details': details,
            'contracts': list(contracts),
        })
        self.queues.enqueue(constants.QUEUE_ALERTS, trigger)

        priority = ALERT_TYPE_PRIORITY[alert.type]
        for channel in alert.channels.enabled():
            self.queues.enqueue(constants.QUEUE_NOTIFICATIONS, NotificationRequest(
                alert_id=alert.id,
                alert_type=alert.type,
                channel=channel,
                user_id=alert.user_id,
                message=details,
                priority=priority,
                destination=alert.destinations.get(channel),
            ))
        return trigger

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Re-arms triggered alerts whose cooldown has elapsed. Returns how many changed."""
        now = now or datetime.now(timezone.utc)
        count = await self.repository.rearm_alerts(now - COOLDOWN)
        if count:
            self.logger.info("Re-armed %s alert(s)", count)
        return count

    # --- Lifecycle ---

    async def create_alert(
        self,
        user_id: str,
        alert_type: AlertType | str,
        value: Any = None,
        channels: Optional[AlertChannels] = None,
        destinations: Optional[dict[str, str]] = None,
        is_active: bool = True,
    ) -> Alert:
        try:
            alert_type = AlertType(alert_type)
        except ValueError:
            raise InvalidAlertError(
                f"Invalid alert type {alert_type!r}. Must be one of: "
                + ', '.join(t.value for t in AlertType)
            ) from None
        destinations = dict(destinations or {})
        _check_destinations(destinations)

        alert = Alert(
            id=str(uuid.uuid4()),
            user_id=user_id.lower(),
            type=alert_type,
            value=validate_alert_value(alert_type, value),
            is_active=is_active,
            channels=channels or AlertChannels(),
            destinations=destinations,
        )
        await self.repository.save_alert(alert)
        await self.publisher.publish(constants.EVENT_ALERT_CREATED, {
            'alert_id': alert.id, 'user_id': alert.user_id, 'type': alert.type.value,
        })
        return alert

    async def update_alert(self, alert_id: str, **changes: Any) -> Alert:
        alert = await self._get(alert_id)
        unknown = set(changes) - {'value', 'is_active', 'channels', 'destinations'}
        if unknown:
            raise InvalidAlertError(f"Cannot update alert field(s): {', '.join(sorted(unknown))}")

        if 'value' in changes:
            alert.value = validate_alert_value(alert.type, changes['value'])
        if 'channels' in changes:
            alert.channels = changes['channels']
        if 'destinations' in changes:
            _check_destinations(changes['destinations'])
            alert.destinations = dict(changes['destinations'])
        if 'is_active' in changes:
            alert.is_active = bool(changes['is_active'])

        await self.repository.save_alert(alert)
        await self.publisher.publish(constants.EVENT_ALERT_UPDATED, {
            'alert_id': alert.id, 'user_id': alert.user_id, 'changes': sorted(changes),
        })
        return alert

    async def pause_alert(self, alert_id: str) -> Alert:
        alert = await self._get(alert_id)
        alert.status = AlertStatus.PAUSED
        await self.repository.save_alert(alert)
        await self.publisher.publish(constants.EVENT_ALERT_UPDATED, {
            'alert_id': alert.id, 'user_id': alert.user_id, 'status': alert.status.value,
        })
        return alert

    async def resume_alert(self, alert_id: str) -> Alert:
        alert = await self._get(alert_id)
        alert.status = AlertStatus.ACTIVE
        alert.is_active = True
        await self.repository.save_alert(alert)
        await self.publisher.publish(constants.EVENT_ALERT_UPDATED, {
            'alert_id': alert.id, 'user_id': alert.user_id, 'status': alert.status.value,
        })
        return alert

    async def delete_alert(self, alert_id: str) -> None:
        alert = await self._get(alert_id)
        await self.repository.delete_alert(alert_id)
        await self.publisher.publish(constants.EVENT_ALERT_DELETED, {
            'alert_id': alert.id, 'user_id': alert.user_id,
        })

    async def _get(self, alert_id: str) -> Alert:
        alert = await self.repository.fetch_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert not found: {alert_id}")
        return alert


def _check_destinations(destinations: dict[str, str]) -> None:
    unknown = set(destinations) - set(constants.NOTIFICATION_CHANNELS)
    if unknown:
        raise InvalidAlertError(f"Unknown notification channel(s): {', '.join(sorted(unknown))}")
