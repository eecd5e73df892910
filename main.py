#!/usr/bin/env python3
import asyncio
import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Optional

import aiohttp
from telegram import BotCommand
from telegram.ext import Application, CommandHandler
from telegram.error import TimedOut, TelegramError

import constants
from alerts.alert_engine import AlertEngine, validate_alert_value
from alerts.events import DomainEvent, EventPublisher
from automation.batch_scheduler import BatchScheduler
from automation.contract_selector import ContractSelector
from automation.models import AutomationResult
from automation.orchestrator import AutomationPipeline
from bot.handlers import alerts_command, help_command, metrics_command, status_command
from config import AppConfig, load_config, parse_bool
from errors import ConfigError
from polling.metrics import MetricsCollector
from polling.scheduler import PollScheduler
from polling.state_poller import StatePoller
from services.chain_state_client import Web3ChainStateClient
from services.engine_client import EngineClient
from services.notification_dispatcher import NotificationDispatcher
from storage import SQLiteRepository
from storage.models import (
    Alert,
    AlertChannels,
    AlertType,
    Blockchain,
    ContractSelectionCriteria,
    MonitoredContract,
)
from work_queue import TopicQueues

SWEEP_INTERVAL_SECONDS = 60

logger = logging.getLogger(__name__)


async def load_seed(repository: SQLiteRepository, seed_file: str) -> None:
    """Upserts blockchains, contracts, criteria and alerts from a JSON seed file."""
    data = json.loads(Path(seed_file).read_text())

    for entry in data.get('blockchains', []):
        await repository.upsert_blockchain(Blockchain(
            id=entry['id'],
            name=entry.get('name', entry['id']),
            rpc_url=entry['rpc_url'],
            chain_id=int(entry['chain_id']),
            cache_manager_address=entry['cache_manager_address'],
            arb_wasm_cache_address=entry['arb_wasm_cache_address'],
            cache_manager_automation_address=entry.get('cache_manager_automation_address'),
            last_synced_block=int(entry.get('last_synced_block', 0)),
            enabled=parse_bool('enabled', entry.get('enabled', True)),
            settings=entry.get('settings', {}),
        ))

    for entry in data.get('contracts', []):
        await repository.upsert_contract(MonitoredContract(
            address=entry['address'],
            blockchain_id=entry['blockchain_id'],
            owner_user_id=entry['owner_user_id'],
            name=entry.get('name'),
        ))
        if 'min_bid' in entry or 'max_bid' in entry:
            if 'max_bid' not in entry:
                raise ConfigError(f"Contract {entry['address']} sets min_bid without max_bid")
            await repository.upsert_criteria(ContractSelectionCriteria(
                contract_address=entry['address'],
                min_bid=int(entry.get('min_bid', 0)),
                max_bid=int(entry['max_bid']),
                enabled=parse_bool('automation_enabled', entry.get('automation_enabled', True)),
            ))

    for entry in data.get('alerts', []):
        alert_type = AlertType(entry['type'])
        user_id = entry['user_id'].lower()
        alert_id = entry.get('id') or str(uuid.uuid5(uuid.NAMESPACE_URL, f"{user_id}:{alert_type.value}"))
        channels = entry.get('channels', {})
        await repository.save_alert(Alert(
            id=alert_id,
            user_id=user_id,
            type=alert_type,
            value=validate_alert_value(alert_type, entry.get('value')),
            is_active=parse_bool('is_active', entry.get('is_active', True)),
            channels=AlertChannels(**{name: bool(channels.get(name)) for name in constants.NOTIFICATION_CHANNELS}),
            destinations=entry.get('destinations', {}),
        ))


def build_components(config: AppConfig, session: aiohttp.ClientSession, bot: Any = None) -> dict[str, Any]:
    """Creates the shared objects. Keys match the application's bot_data."""
    repository = SQLiteRepository(config.db_path)
    metrics = MetricsCollector()
    publisher = EventPublisher()
    queues = TopicQueues()

    batch_scheduler: Optional[BatchScheduler] = None
    try:
        submitter = EngineClient(
            session,
            config.engine_base_url,
            config.engine_backend_wallet_address,
            config.engine_auth_token,
            timeout=config.automation.processing_timeout_seconds,
        )
        batch_scheduler = BatchScheduler(submitter, metrics)
    except ConfigError as exc:
        print(f"{constants.C_YELLOW}{exc}. Bid submission is disabled.{constants.C_RESET}")

    poller = StatePoller(
        Web3ChainStateClient(timeout=config.rpc_timeout),
        repository,
        metrics,
        processing_timeout=config.automation.processing_timeout_seconds,
    )
    alert_engine = AlertEngine(repository, publisher, queues)
    pipeline = AutomationPipeline(
        repository=repository,
        poller=poller,
        selector=ContractSelector(config.eviction_margin_bps),
        batch_scheduler=batch_scheduler,
        alert_engine=alert_engine,
        automation_defaults=config.automation,
        parallel_batches=config.parallel_batches,
    )
    dispatcher = NotificationDispatcher(
        queues,
        session=session,
        bot=bot,
        default_chat_id=config.telegram_chat_id,
        slack_webhook_url=config.slack_webhook_url,
    )

    async def on_result(blockchain, result):
        await pipeline.handle_poll_result(blockchain, result)
        await dispatcher.dispatch_pending()

    scheduler = PollScheduler(poller, repository, config.polling_interval, config.polling_jitter, on_result)

    def log_event(event: DomainEvent) -> None:
        logger.info("Event %s: %s", event.name, event.payload)

    publisher.subscribe('*', log_event)

    return {
        'repository': repository,
        'metrics': metrics,
        'publisher': publisher,
        'queues': queues,
        'poller': poller,
        'alert_engine': alert_engine,
        'pipeline': pipeline,
        'dispatcher': dispatcher,
        'scheduler': scheduler,
    }


async def sweep_alerts(alert_engine: AlertEngine) -> None:
    while True:
        await asyncio.sleep(SWEEP_INTERVAL_SECONDS)
        try:
            await alert_engine.sweep()
        except Exception as exc:
            print(f"{constants.C_RED}Alert sweep failed: {exc}{constants.C_RESET}")


def start_background_tasks(components: dict[str, Any]) -> list[asyncio.Task]:
    return [
        asyncio.create_task(components['scheduler'].run_forever(), name='poll-scheduler'),
        asyncio.create_task(components['dispatcher'].run_forever(), name='notification-dispatcher'),
        asyncio.create_task(sweep_alerts(components['alert_engine']), name='alert-sweep'),
    ]


async def stop_components(components: dict[str, Any], tasks: list[asyncio.Task]) -> None:
    await components['scheduler'].stop()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await components['pipeline'].wait_for_batches()
    await components['repository'].close()


async def post_init_hook(application: Application) -> None:
    """A hook that runs after the bot is initialized to set up shared clients and tasks."""
    session = aiohttp.ClientSession(headers={'User-Agent': 'CacheMonitor/1.0'})
    application.bot_data['http_session'] = session

    config: AppConfig = application.bot_data['config']
    components = build_components(config, session, bot=application.bot)
    application.bot_data.update(components)

    if config.seed_file:
        await load_seed(components['repository'], config.seed_file)
        print(f"Seed data loaded from {config.seed_file}.")

    commands = [
        BotCommand("status", "Check monitor status"),
        BotCommand("metrics", "Polling and batch metrics"),
        BotCommand("alerts", "Recently triggered alerts"),
        BotCommand("help", "Show help message"),
    ]
    try:
        await application.bot.set_my_commands(commands)
    except (TimedOut, TelegramError) as exc:
        print(
            f"{constants.C_YELLOW}Warning: unable to set Telegram bot commands ({exc})."
            f" Continuing startup without updating commands.{constants.C_RESET}"
        )

    application.bot_data['background_tasks'] = start_background_tasks(components)


async def post_shutdown_hook(application: Application) -> None:
    """A hook that runs on application shutdown to clean up resources."""
    if 'scheduler' in application.bot_data:
        await stop_components(application.bot_data, application.bot_data.get('background_tasks', []))
    session = application.bot_data.get('http_session')
    if session:
        await session.close()


async def run_headless(config: AppConfig) -> Optional[AutomationResult]:
    """Runs without Telegram: either one automation pass (--once) or the scheduler until interrupted."""
    async with aiohttp.ClientSession(headers={'User-Agent': 'CacheMonitor/1.0'}) as session:
        components = build_components(config, session)
        if config.seed_file:
            await load_seed(components['repository'], config.seed_file)

        if config.run_once:
            try:
                result = await components['pipeline'].execute_automation()
                await components['dispatcher'].dispatch_pending()
            finally:
                await components['repository'].close()
            return result

        tasks = start_background_tasks(components)
        try:
            await asyncio.gather(*tasks)
        finally:
            await stop_components(components, tasks)
    return None


def _print_automation_result(result: AutomationResult) -> None:
    stats = result.stats
    colour = constants.C_GREEN if result.success else constants.C_RED
    print(f"{colour}Automation {'succeeded' if result.success else 'finished with errors'}{constants.C_RESET}")
    print(f"  Blockchains: {stats.processed_blockchains}/{stats.total_blockchains}")
    print(f"  Contracts:   {stats.processed_contracts}/{stats.total_contracts} processed")
    print(f"  Batches:     {stats.successful_batches} ok, {stats.failed_batches} failed")
    print(f"  Duration:    {stats.duration:.2f}s")
    for error in result.errors:
        print(f"  {constants.C_RED}[{error.blockchain}] {error.error}{constants.C_RESET}")


def main() -> None:
    """The main synchronous entry point for the application."""
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    if config.run_once or not config.telegram_enabled or not config.telegram_bot_token:
        if not config.run_once:
            print("Telegram is not configured. The monitor will run in CLI-only mode.")
        try:
            result = asyncio.run(run_headless(config))
        except KeyboardInterrupt:
            print("Stopped.")
            return
        if result is not None:
            _print_automation_result(result)
            if not result.success:
                raise SystemExit(1)
        return

    application = (
        Application.builder()
        .token(config.telegram_bot_token)
        .post_init(post_init_hook)
        .post_shutdown(post_shutdown_hook)
        .build()
    )

    application.bot_data['config'] = config
    application.bot_data['start_time'] = time.time()

    application.add_handler(CommandHandler("start", help_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("status", status_command))
    application.add_handler(CommandHandler("metrics", metrics_command))
    application.add_handler(CommandHandler("alerts", alerts_command))

    application.run_polling()


if __name__ == "__main__":
    main()
