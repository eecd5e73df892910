from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

import constants
from alerts.alert_engine import AlertEngine, validate_alert_value
from alerts.events import EventPublisher
from alerts.models import AlertConditions
from automation.bid_assessor import assess
from errors import AlertNotFoundError, InvalidAlertError
from polling.models import ContractState
from storage import SQLiteRepository
from storage.models import Alert, AlertChannels, AlertStatus, AlertType, ContractSelectionCriteria
from work_queue import TopicQueues

USER = '0x' + 'aa' * 20
OTHER_USER = '0x' + 'bb' * 20
CONTRACT = '0x' + 'cc' * 20
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path):
    repository = SQLiteRepository(db_path=tmp_path / "alerts.db")
    publisher = EventPublisher()
    events = []
    publisher.subscribe('*', events.append)
    alert_engine = AlertEngine(repository, publisher, TopicQueues())
    alert_engine.events = events
    yield alert_engine
    await repository.close()


def eviction_conditions(user=USER):
    return AlertConditions(user_id=user, evicted_contracts={CONTRACT})


@pytest.mark.asyncio
async def test_eviction_triggers_and_notifies_each_channel(engine):
    alert = await engine.create_alert(
        USER, 'eviction',
        channels=AlertChannels(telegram=True, webhook=True),
        destinations={'webhook': 'https://hooks.example/cm'},
    )

    triggers = await engine.evaluate(eviction_conditions(), now=T0)

    assert len(triggers) == 1
    assert triggers[0].alert_id == alert.id
    assert triggers[0].contracts == (CONTRACT,)
    stored = await engine.repository.fetch_alert(alert.id)
    assert stored.status is AlertStatus.TRIGGERED
    assert stored.triggered_count == 1
    assert stored.last_triggered_at == T0

    requests = engine.queues.drain(constants.QUEUE_NOTIFICATIONS)
    assert sorted(r.channel for r in requests) == ['telegram', 'webhook']
    webhook = next(r for r in requests if r.channel == 'webhook')
    assert webhook.destination == 'https://hooks.example/cm'
    assert webhook.priority == 'critical'
    assert len(engine.queues.drain(constants.QUEUE_ALERTS)) == 1
    assert [e.name for e in engine.events] == [constants.EVENT_ALERT_CREATED, constants.EVENT_ALERT_TRIGGERED]


@pytest.mark.asyncio
async def test_cooldown_suppresses_repeat_within_window(engine):
    alert = await engine.create_alert(USER, 'eviction', channels=AlertChannels(email=True))

    assert len(await engine.evaluate(eviction_conditions(), now=T0)) == 1
    assert await engine.evaluate(eviction_conditions(), now=T0 + timedelta(minutes=3)) == []
    again = await engine.evaluate(eviction_conditions(), now=T0 + timedelta(minutes=6))

    assert len(again) == 1
    stored = await engine.repository.fetch_alert(alert.id)
    assert stored.triggered_count == 2
    assert stored.last_triggered_at == T0 + timedelta(minutes=6)


@pytest.mark.asyncio
async def test_exactly_at_cooldown_does_not_retrigger(engine):
    await engine.create_alert(USER, 'eviction')
    await engine.evaluate(eviction_conditions(), now=T0)
    assert await engine.evaluate(eviction_conditions(), now=T0 + timedelta(minutes=5)) == []


@pytest.mark.asyncio
async def test_eviction_value_scopes_to_one_contract(engine):
    await engine.create_alert(USER, 'eviction', value='0x' + 'dd' * 20)
    assert await engine.evaluate(eviction_conditions(), now=T0) == []


@pytest.mark.asyncio
async def test_trigger_cap(engine):
    alert = Alert(id='capped', user_id=USER, type=AlertType.EVICTION,
                  triggered_count=constants.MAX_TRIGGERED_COUNT - 1)
    await engine.repository.save_alert(alert)

    assert len(await engine.evaluate(eviction_conditions(), now=T0)) == 1
    assert await engine.evaluate(eviction_conditions(), now=T0 + timedelta(hours=1)) == []
    stored = await engine.repository.fetch_alert('capped')
    assert stored.triggered_count == constants.MAX_TRIGGERED_COUNT


@pytest.mark.asyncio
async def test_paused_alert_is_skipped_until_resumed(engine):
    alert = await engine.create_alert(USER, 'eviction')
    await engine.pause_alert(alert.id)
    assert await engine.evaluate(eviction_conditions(), now=T0) == []

    await engine.resume_alert(alert.id)
    assert len(await engine.evaluate(eviction_conditions(), now=T0)) == 1


@pytest.mark.asyncio
async def test_gas_alerts(engine):
    await engine.create_alert(USER, 'noGas')
    await engine.create_alert(USER, 'lowGas', value=1000)

    low = await engine.evaluate(AlertConditions(user_id=USER, gas_balance=500), now=T0)
    assert [t.alert_type for t in low] == [AlertType.LOW_GAS]

    empty = await engine.evaluate(AlertConditions(user_id=USER, gas_balance=0), now=T0 + timedelta(minutes=10))
    assert [t.alert_type for t in empty] == [AlertType.NO_GAS]

    unknown = await engine.evaluate(AlertConditions(user_id=USER, gas_balance=None), now=T0 + timedelta(hours=1))
    assert unknown == []


@pytest.mark.asyncio
async def test_bid_safety_from_assessment_and_threshold(engine):
    await engine.create_alert(USER, 'bidSafety', value=10)

    ineligible = assess(
        CONTRACT,
        ContractSelectionCriteria(contract_address=CONTRACT, min_bid=0, max_bid=50),
        current_market_bid=100,
    )
    triggers = await engine.evaluate(AlertConditions(user_id=USER, bid_assessments=[ineligible]), now=T0)
    assert triggers[0].contracts == (CONTRACT,)

    cached = ContractState(address=CONTRACT, code_hash='0x01', code_size=10, is_cached=True,
                           current_bid=1050, min_bid=1000)
    later = await engine.evaluate(
        AlertConditions(user_id=USER, contract_states={CONTRACT: cached}),
        now=T0 + timedelta(minutes=6),
    )
    assert len(later) == 1


@pytest.mark.asyncio
async def test_bid_safety_ignores_cached_contract_with_unknown_bid(engine):
    await engine.create_alert(USER, 'bidSafety', value=10)
    unknown = ContractState(address=CONTRACT, code_hash='0x01', code_size=10, is_cached=True,
                            current_bid=None, min_bid=1000)

    triggers = await engine.evaluate(AlertConditions(user_id=USER, contract_states={CONTRACT: unknown}), now=T0)

    assert triggers == []


@pytest.mark.asyncio
async def test_evaluation_order_within_one_input(engine):
    await engine.create_alert(USER, 'bidSafety', value=10)
    await engine.create_alert(USER, 'noGas')
    await engine.create_alert(USER, 'eviction')
    cached = ContractState(address=CONTRACT, code_hash='0x01', code_size=10, is_cached=True,
                           current_bid=1000, min_bid=1000)

    triggers = await engine.evaluate(AlertConditions(
        user_id=USER, evicted_contracts={CONTRACT}, gas_balance=0, contract_states={CONTRACT: cached},
    ), now=T0)

    assert [t.alert_type for t in triggers] == [AlertType.EVICTION, AlertType.NO_GAS, AlertType.BID_SAFETY]


@pytest.mark.asyncio
async def test_sweep_rearms_after_cooldown(engine):
    alert = await engine.create_alert(USER, 'eviction')
    await engine.evaluate(eviction_conditions(), now=T0)

    assert await engine.sweep(now=T0 + timedelta(minutes=2)) == 0
    assert await engine.sweep(now=T0 + timedelta(minutes=6)) == 1
    stored = await engine.repository.fetch_alert(alert.id)
    assert stored.status is AlertStatus.ACTIVE
    assert stored.triggered_count == 1


@pytest.mark.asyncio
async def test_error_for_one_user_does_not_stop_others(engine):
    await engine.create_alert(OTHER_USER, 'eviction')
    real_fetch = engine.repository.fetch_alerts

    async def fetch(user_id):
        if user_id == USER:
            raise RuntimeError("db locked")
        return await real_fetch(user_id)

    engine.repository.fetch_alerts = AsyncMock(side_effect=fetch)
    engine.submit(eviction_conditions(USER))
    engine.submit(eviction_conditions(OTHER_USER))

    triggers = await engine.process_pending(now=T0)

    assert [t.user_id for t in triggers] == [OTHER_USER]
    errors = [e for e in engine.events if e.name == constants.EVENT_MONITORING_ERROR]
    assert errors[0].payload['user_id'] == USER


@pytest.mark.asyncio
async def test_update_and_delete_publish_events(engine):
    alert = await engine.create_alert(USER, 'lowGas', value='500')
    updated = await engine.update_alert(alert.id, value=800, channels=AlertChannels(slack=True))
    assert updated.value == '800'

    stored = await engine.repository.fetch_alert(alert.id)
    assert stored.channels.slack is True

    await engine.delete_alert(alert.id)
    assert await engine.repository.fetch_alert(alert.id) is None
    assert [e.name for e in engine.events][-2:] == [constants.EVENT_ALERT_UPDATED, constants.EVENT_ALERT_DELETED]

    with pytest.raises(AlertNotFoundError):
        await engine.delete_alert(alert.id)


@pytest.mark.asyncio
async def test_invalid_alerts_rejected(engine):
    with pytest.raises(InvalidAlertError):
        await engine.create_alert(USER, 'gasless')
    with pytest.raises(InvalidAlertError):
        await engine.create_alert(USER, 'lowGas')
    with pytest.raises(InvalidAlertError):
        await engine.create_alert(USER, 'eviction', destinations={'pager': 'x'})


@pytest.mark.parametrize("alert_type, value", [
    (AlertType.BID_SAFETY, 0),
    (AlertType.BID_SAFETY, 101),
    (AlertType.LOW_GAS, -5),
    (AlertType.EVICTION, 'not-an-address'),
])
def test_validate_alert_value_rejects(alert_type, value):
    with pytest.raises(InvalidAlertError):
        validate_alert_value(alert_type, value)


def test_validate_alert_value_normalises():
    assert validate_alert_value(AlertType.BID_SAFETY, '1') == '1'
    assert validate_alert_value(AlertType.BID_SAFETY, 100) == '100'
    assert validate_alert_value(AlertType.NO_GAS, 'anything') is None
    assert validate_alert_value(AlertType.EVICTION, CONTRACT.upper().replace('0X', '0x')) == CONTRACT
