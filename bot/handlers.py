# bot/handlers.py
import html
import time

from telegram import Update
from telegram.ext import ContextTypes

# --- Command Handlers ---

async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Displays a help message with all available commands."""
    help_text = """
    <b>Cache Manager Monitor</b>

    Polls the cache manager, places automated bids and raises alerts for your contracts.

    <b><u>Available Commands:</u></b>
    /status - Scheduler state and per-chain checkpoints
    /metrics - Polling and batch submission metrics
    /alerts - Recently triggered alerts
    /help - Show this help message
    """
    await update.message.reply_html(help_text)


async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Reports uptime, scheduler state and each blockchain's checkpoint."""
    bot_data = context.application.bot_data
    config = bot_data.get('config')
    start_time = bot_data.get('start_time', 0)
    repository = bot_data.get('repository')
    scheduler = bot_data.get('scheduler')
    pipeline = bot_data.get('pipeline')

    uptime_seconds = time.time() - start_time
    uptime_str = time.strftime('%H:%M:%S', time.gmtime(uptime_seconds))

    status_text = (
        f"<b>🤖 Monitor Status</b>\n"
        f"Uptime: <code>{uptime_str}</code>\n"
    )
    if config:
        status_text += f"Polling: <code>{config.polling_cron}</code> ({config.polling_interval}s)\n"

    if repository is None:
        status_text += "\n⚠️ Monitor not initialised yet."
        await update.message.reply_html(status_text)
        return

    polling = set(scheduler.in_flight()) if scheduler else set()
    submitting = set(pipeline.batches_in_flight()) if pipeline else set()
    blockchains = await repository.fetch_enabled_blockchains()
    status_text += "\n<b>⛓ Blockchains</b>\n"
    if not blockchains:
        status_text += "None configured.\n"
    for blockchain in blockchains:
        flags = []
        if blockchain.id in polling:
            flags.append("polling")
        if blockchain.id in submitting:
            flags.append("submitting")
        flag_str = f" ({', '.join(flags)})" if flags else ""
        status_text += (
            f"{html.escape(blockchain.name)}: block <code>{blockchain.last_synced_block}</code>{flag_str}\n"
        )

    await update.message.reply_html(status_text)


async def metrics_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Shows polling success rates and aggregate batch statistics."""
    metrics = context.application.bot_data.get('metrics')
    if metrics is None:
        await update.message.reply_text("Metrics are not available yet.")
        return

    text = "<b>📊 Polling</b>\n"
    all_metrics = metrics.all_metrics()
    if not all_metrics:
        text += "No polls recorded yet.\n"
    for item in all_metrics:
        text += (
            f"<b>{html.escape(item.blockchain_id)}</b>: {item.successful_polls}/{item.total_polls} ok "
            f"({item.success_rate:.1f}%), avg <code>{item.average_polling_time:.2f}s</code>\n"
        )

    stats = metrics.batch_stats()
    text += (
        f"\n<b>📦 Batches</b>\n"
        f"Runs: <code>{stats.total_runs}</code>, batches: <code>{stats.total_batches}</code>\n"
        f"Success: <code>{stats.success_rate:.1f}%</code>, errors: <code>{stats.error_rate:.1f}%</code>\n"
        f"Retries/batch: <code>{stats.retry_rate:.2f}</code>, throughput: <code>{stats.throughput:.2f}/s</code>\n"
    )
    await update.message.reply_html(text)


async def alerts_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Lists the most recent alert triggers."""
    dispatcher = context.application.bot_data.get('dispatcher')
    triggers = list(dispatcher.recent_triggers)[-10:] if dispatcher else []
    if not triggers:
        await update.message.reply_text("No alerts triggered yet.")
        return

    lines = ["<b>🚨 Recent Alerts</b>"]
    for trigger in reversed(triggers):
        lines.append(
            f"<code>{trigger.triggered_at:%Y-%m-%d %H:%M}</code> {trigger.alert_type.value} "
            f"for <code>{html.escape(trigger.user_id)}</code>: {html.escape(trigger.details)}"
        )
    await update.message.reply_html("\n".join(lines))
