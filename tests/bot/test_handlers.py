from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from alerts.models import AlertTrigger
from bot.handlers import alerts_command, metrics_command, status_command
from polling.metrics import MetricsCollector
from storage.models import AlertType, Blockchain, PollingSession


def make_update():
    update = MagicMock()
    update.message.reply_html = AsyncMock()
    update.message.reply_text = AsyncMock()
    return update


def make_context(**bot_data):
    return SimpleNamespace(application=SimpleNamespace(bot_data=bot_data))


@pytest.mark.asyncio
async def test_status_lists_checkpoints_and_activity():
    repository = MagicMock()
    repository.fetch_enabled_blockchains = AsyncMock(return_value=[Blockchain(
        id='arb-one', name='Arbitrum <One>', rpc_url='http://x', chain_id=42161,
        cache_manager_address='0x1', arb_wasm_cache_address='0x2', last_synced_block=110,
    )])
    scheduler = MagicMock()
    scheduler.in_flight.return_value = ['arb-one']
    pipeline = MagicMock()
    pipeline.batches_in_flight.return_value = []
    update = make_update()

    await status_command(update, make_context(repository=repository, scheduler=scheduler, pipeline=pipeline))

    text = update.message.reply_html.await_args.args[0]
    assert 'Arbitrum &lt;One&gt;' in text
    assert '<code>110</code> (polling)' in text


@pytest.mark.asyncio
async def test_status_before_initialisation():
    update = make_update()
    await status_command(update, make_context())
    assert 'not initialised' in update.message.reply_html.await_args.args[0]


@pytest.mark.asyncio
async def test_metrics_renders_polling_rates():
    metrics = MetricsCollector()
    now = datetime.now(timezone.utc)
    metrics.record_session(PollingSession(blockchain_id='arb-one', start_time=now, end_time=now, duration=0.5, success=True))
    update = make_update()

    await metrics_command(update, make_context(metrics=metrics))

    text = update.message.reply_html.await_args.args[0]
    assert 'arb-one' in text and '1/1 ok' in text


@pytest.mark.asyncio
async def test_alerts_shows_newest_first():
    dispatcher = SimpleNamespace(recent_triggers=[
        AlertTrigger(alert_id=str(i), user_id='0xu', alert_type=AlertType.NO_GAS,
                     triggered_at=datetime(2026, 1, 1, 12, i, tzinfo=timezone.utc),
                     triggered_count=1, details=f'detail {i}')
        for i in range(2)
    ])
    update = make_update()

    await alerts_command(update, make_context(dispatcher=dispatcher))

    text = update.message.reply_html.await_args.args[0]
    assert text.index('detail 1') < text.index('detail 0')


@pytest.mark.asyncio
async def test_alerts_when_empty():
    update = make_update()
    await alerts_command(update, make_context())
    update.message.reply_text.assert_awaited_once_with("No alerts triggered yet.")
