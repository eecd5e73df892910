import pytest

import constants
from config import AutomationConfig, cron_interval_seconds, load_config, validate_range
from errors import ConfigError

ENV_VARS = [
    constants.TELEGRAM_BOT_TOKEN_ENV_VAR,
    constants.TELEGRAM_CHAT_ID_ENV_VAR,
    constants.ENGINE_BASE_URL_ENV_VAR,
    constants.ENGINE_BACKEND_WALLET_ADDRESS_ENV_VAR,
    constants.ENGINE_AUTH_TOKEN_ENV_VAR,
    constants.SLACK_WEBHOOK_URL_ENV_VAR,
    constants.CMA_BATCH_SIZE_ENV_VAR,
    constants.CMA_PAGINATION_LIMIT_ENV_VAR,
    constants.CMA_MAX_RETRIES_ENV_VAR,
    constants.CMA_RETRY_DELAY_ENV_VAR,
    constants.CMA_PROCESSING_TIMEOUT_ENV_VAR,
    constants.CMA_AUTOMATION_ENABLED_ENV_VAR,
    constants.POLLING_INTERVAL_ENV_VAR,
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = load_config([])
    assert config.polling_cron == '*/1 * * * *'
    assert config.polling_interval == 60
    assert config.automation == AutomationConfig()
    assert config.automation.batch_size == 50
    assert config.automation.retry_delay_seconds == 1.0
    assert config.parallel_batches == 1
    assert config.run_once is False
    assert config.engine_base_url is None


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv(constants.CMA_BATCH_SIZE_ENV_VAR, '25')
    monkeypatch.setenv(constants.CMA_MAX_RETRIES_ENV_VAR, '0')
    monkeypatch.setenv(constants.CMA_AUTOMATION_ENABLED_ENV_VAR, 'false')
    monkeypatch.setenv(constants.POLLING_INTERVAL_ENV_VAR, '*/5 * * * *')
    monkeypatch.setenv(constants.ENGINE_BASE_URL_ENV_VAR, 'https://engine.local')

    config = load_config(['--once', '--parallel-batches', '3'])

    assert config.automation.batch_size == 25
    assert config.automation.max_retries == 0
    assert config.automation.enabled is False
    assert config.polling_interval == 300
    assert config.parallel_batches == 3
    assert config.run_once is True
    assert config.engine_base_url == 'https://engine.local'


def test_cli_cron_takes_precedence_over_env(monkeypatch):
    monkeypatch.setenv(constants.POLLING_INTERVAL_ENV_VAR, '*/5 * * * *')
    config = load_config(['--cron', '0 */2 * * *'])
    assert config.polling_interval == 7200


def test_out_of_range_setting_exits(monkeypatch):
    monkeypatch.setenv(constants.CMA_BATCH_SIZE_ENV_VAR, '101')
    with pytest.raises(SystemExit):
        load_config([])


def test_telegram_enabled_requires_credentials():
    with pytest.raises(SystemExit):
        load_config(['--telegram-enabled'])


@pytest.mark.parametrize("expression, seconds", [
    ('* * * * *', 60),
    ('*/1 * * * *', 60),
    ('*/15 * * * *', 900),
    ('0 * * * *', 3600),
    ('0 */6 * * *', 21600),
])
def test_supported_cron_forms(expression, seconds):
    assert cron_interval_seconds(expression) == seconds


@pytest.mark.parametrize("expression", ['5 4 * * *', '*/0 * * * *', '* * * *', '0 0 1 * *', 'hourly'])
def test_unsupported_cron_forms_rejected(expression):
    with pytest.raises(ConfigError):
        cron_interval_seconds(expression)


def test_validate_range_bounds_are_inclusive():
    assert validate_range('retry_delay', 100) == 100
    assert validate_range('retry_delay', '60000') == 60000
    with pytest.raises(ConfigError):
        validate_range('retry_delay', 99)
    with pytest.raises(ConfigError):
        validate_range('processing_timeout', 'soon')


def test_merged_applies_blockchain_overrides():
    merged = AutomationConfig().merged({'batch_size': '10', 'enabled': 'false'})
    assert merged.batch_size == 10
    assert merged.enabled is False
    assert merged.max_retries == constants.DEFAULT_MAX_RETRIES

    camel = AutomationConfig().merged({'batchSize': 25, 'retryDelay': 500})
    assert (camel.batch_size, camel.retry_delay) == (25, 500)

    with pytest.raises(ConfigError):
        AutomationConfig().merged({'bogus': 1})
    with pytest.raises(ConfigError):
        AutomationConfig().merged({'max_retries': 11})
