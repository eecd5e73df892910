#!/usr/bin/env python3
import os
import re
import argparse
from typing import Any, Mapping, NamedTuple, Optional

import constants
from errors import ConfigError


class AutomationConfig(NamedTuple):
    """Per-blockchain automation settings. Delays and timeouts are in milliseconds."""
    enabled: bool = True
    batch_size: int = constants.DEFAULT_BATCH_SIZE
    pagination_limit: int = constants.DEFAULT_PAGINATION_LIMIT
    max_retries: int = constants.DEFAULT_MAX_RETRIES
    retry_delay: int = constants.DEFAULT_RETRY_DELAY_MS
    processing_timeout: int = constants.DEFAULT_PROCESSING_TIMEOUT_MS

    @property
    def retry_delay_seconds(self) -> float:
        return self.retry_delay / 1000

    @property
    def processing_timeout_seconds(self) -> float:
        return self.processing_timeout / 1000

    def merged(self, overrides: Optional[Mapping[str, Any]]) -> "AutomationConfig":
        """Returns a validated copy with per-blockchain overrides applied."""
        if not overrides:
            return self
        overrides = {constants.AUTOMATION_SETTING_ALIASES.get(key, key): value for key, value in overrides.items()}
        unknown = set(overrides) - set(self._fields)
        if unknown:
            raise ConfigError(f"Unknown automation setting(s): {', '.join(sorted(unknown))}")
        values = self._asdict()
        for key, raw in overrides.items():
            if key == 'enabled':
                values[key] = parse_bool(key, raw)
            else:
                values[key] = validate_range(key, raw)
        return AutomationConfig(**values)


class AppConfig(NamedTuple):
    """Typed configuration object."""
    db_path: str
    seed_file: Optional[str]
    polling_cron: str
    polling_interval: int
    polling_jitter: float
    automation: AutomationConfig
    parallel_batches: int
    rpc_timeout: float
    eviction_margin_bps: int
    run_once: bool
    log_level: str
    telegram_enabled: bool
    telegram_bot_token: Optional[str]
    telegram_chat_id: Optional[str]
    engine_base_url: Optional[str]
    engine_backend_wallet_address: Optional[str]
    engine_auth_token: Optional[str]
    slack_webhook_url: Optional[str]


def validate_range(name: str, value: Any) -> int:
    """Parses an integer setting and checks it against AUTOMATION_LIMITS."""
    try:
        num = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid {name}: {value!r}. Must be an integer") from None
    low, high = constants.AUTOMATION_LIMITS[name]
    if num < low or num > high:
        raise ConfigError(f"Invalid {name}: {value}. Must be between {low} and {high}")
    return num


def parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered not in {'true', 'false'}:
        raise ConfigError(f"Invalid {name}: {value}. Must be 'true' or 'false'")
    return lowered == 'true'


_STEP_FIELD = re.compile(r'^\*/([1-9][0-9]?)$')


def cron_interval_seconds(expression: str) -> int:
    """
    Converts the supported cron forms into a fixed tick interval.

    Supported: '* * * * *', '*/N * * * *', '0 * * * *' and '0 */N * * *'.
    Anything else is rejected rather than approximated.
    """
    fields = expression.split()
    if len(fields) != 5 or any(field != '*' for field in fields[2:]):
        raise ConfigError(f"Invalid polling cron expression: {expression!r}")

    minute, hour = fields[0], fields[1]
    if hour == '*':
        if minute == '*':
            return 60
        if minute == '0':
            return 3600
        match = _STEP_FIELD.match(minute)
        if match and int(match.group(1)) <= 59:
            return int(match.group(1)) * 60
    elif minute == '0':
        match = _STEP_FIELD.match(hour)
        if match and int(match.group(1)) <= 23:
            return int(match.group(1)) * 3600
    raise ConfigError(f"Unsupported polling cron expression: {expression!r}")


def load_automation_config(environ: Mapping[str, str]) -> AutomationConfig:
    """Builds the global automation defaults from CMA_* environment variables."""
    return AutomationConfig(
        enabled=parse_bool('automation_enabled', environ.get(constants.CMA_AUTOMATION_ENABLED_ENV_VAR, 'true')),
        batch_size=validate_range('batch_size', environ.get(constants.CMA_BATCH_SIZE_ENV_VAR, constants.DEFAULT_BATCH_SIZE)),
        pagination_limit=validate_range('pagination_limit', environ.get(constants.CMA_PAGINATION_LIMIT_ENV_VAR, constants.DEFAULT_PAGINATION_LIMIT)),
        max_retries=validate_range('max_retries', environ.get(constants.CMA_MAX_RETRIES_ENV_VAR, constants.DEFAULT_MAX_RETRIES)),
        retry_delay=validate_range('retry_delay', environ.get(constants.CMA_RETRY_DELAY_ENV_VAR, constants.DEFAULT_RETRY_DELAY_MS)),
        processing_timeout=validate_range('processing_timeout', environ.get(constants.CMA_PROCESSING_TIMEOUT_ENV_VAR, constants.DEFAULT_PROCESSING_TIMEOUT_MS)),
    )


def load_config(argv: Optional[list[str]] = None) -> AppConfig:
    """
    Parses command-line arguments and loads environment variables to create a configuration object.
    """
    parser = argparse.ArgumentParser(
        description="Poll cache manager state, place automated bids and raise alerts for monitored contracts.",
        epilog="Example: ./main.py --db data/monitor.db --seed seed.json --parallel-batches 2"
    )
    parser.add_argument('--db', default='data/cache_monitor.db', help='SQLite database path (default: data/cache_monitor.db).')
    parser.add_argument('--seed', help='JSON file with blockchains, contracts, criteria and alerts to upsert on startup.')
    parser.add_argument('--cron', help=f'Polling cron expression (default: {constants.DEFAULT_POLLING_CRON}).')
    parser.add_argument('--jitter', type=float, default=0.0, help='Max random delay in seconds added to each tick (default: 0).')
    parser.add_argument('--parallel-batches', type=int, default=1, help='Batches submitted concurrently per run (default: 1).')
    parser.add_argument('--rpc-timeout', type=float, default=10.0, help='Per-request RPC timeout in seconds (default: 10).')
    parser.add_argument('--eviction-margin-bps', type=int, default=constants.DEFAULT_EVICTION_MARGIN_BPS,
                        help='Cached contracts whose bid is within this many basis points of the minimum bid are re-bid (default: 1000).')
    parser.add_argument('--once', action='store_true', help='Run a single automation pass over all blockchains and exit.')
    parser.add_argument('--log-level', default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Logging level (default: INFO).')
    parser.add_argument('--telegram-enabled', action='store_true', help='Enable the Telegram bot and Telegram alert delivery.')

    args = parser.parse_args(argv)

    environ = os.environ
    telegram_bot_token = environ.get(constants.TELEGRAM_BOT_TOKEN_ENV_VAR)
    telegram_chat_id = environ.get(constants.TELEGRAM_CHAT_ID_ENV_VAR)

    if args.telegram_enabled and not (telegram_bot_token and telegram_chat_id):
        parser.error(f"Telegram is enabled, but {constants.TELEGRAM_BOT_TOKEN_ENV_VAR} or {constants.TELEGRAM_CHAT_ID_ENV_VAR} are not set.")
    if args.parallel_batches < 1:
        parser.error('--parallel-batches must be at least 1.')
    if args.eviction_margin_bps < 0:
        parser.error('--eviction-margin-bps cannot be negative.')

    polling_cron = args.cron or environ.get(constants.POLLING_INTERVAL_ENV_VAR) or constants.DEFAULT_POLLING_CRON
    try:
        polling_interval = cron_interval_seconds(polling_cron)
        automation = load_automation_config(environ)
    except ConfigError as exc:
        parser.error(str(exc))

    return AppConfig(
        db_path=args.db,
        seed_file=args.seed,
        polling_cron=polling_cron,
        polling_interval=polling_interval,
        polling_jitter=max(args.jitter, 0.0),
        automation=automation,
        parallel_batches=args.parallel_batches,
        rpc_timeout=args.rpc_timeout,
        eviction_margin_bps=args.eviction_margin_bps,
        run_once=args.once,
        log_level=args.log_level,
        telegram_enabled=args.telegram_enabled,
        telegram_bot_token=telegram_bot_token,
        telegram_chat_id=telegram_chat_id,
        engine_base_url=environ.get(constants.ENGINE_BASE_URL_ENV_VAR),
        engine_backend_wallet_address=environ.get(constants.ENGINE_BACKEND_WALLET_ADDRESS_ENV_VAR),
        engine_auth_token=environ.get(constants.ENGINE_AUTH_TOKEN_ENV_VAR),
        slack_webhook_url=environ.get(constants.SLACK_WEBHOOK_URL_ENV_VAR),
    )
