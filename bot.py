"""
TradeGuard - marketplace messaging enforcement bot entrypoint.
Runs in webhook mode when WEBHOOK_URL is set, otherwise long polling.
"""
import logging
import traceback

from telegram import Update
from telegram.ext import (
    Application,
    CommandHandler,
    MessageHandler,
    ContextTypes,
    filters,
)

from config import (
    ADMIN_ID,
    BOT_TOKEN,
    LOG_LEVEL,
    PORT,
    RECONCILE_INTERVAL_MINUTES,
    SWEEP_INTERVAL_MINUTES,
    WEBHOOK_URL,
)
from tradeguard.logging import configure_logging
from tradeguard.handlers.commands import (
    start_command,
    help_command,
    mystatus_command,
    appeal_command,
    review_command,
    dismiss_command,
    history_command,
    flaguser_command,
    scan_command,
    scanall_command,
    scanrecent_command,
    flag_command,
    modstats_command,
    stats_command,
)
from tradeguard.handlers.messages import handle_text_message
from tradeguard.services.enforcement import reconcile_pending
from tradeguard.services.notifications import Notifier
from tradeguard.services.sweeper import ConversationSweeper
from violation_db import init_db


logger = configure_logging(LOG_LEVEL)


async def error_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Log and handle errors gracefully without crashing the bot."""
    try:
        logger.error(f"Error while handling update {update}: {context.error}")
        if context.error:
            logger.error(
                "".join(traceback.format_exception(type(context.error), context.error, context.error.__traceback__))
            )
    except Exception as e:
        logger.error(f"Error handler failed: {e}", exc_info=True)


async def sweep_recent_job(context: ContextTypes.DEFAULT_TYPE):
    sweeper = context.bot_data["sweeper"]
    try:
        await sweeper.scan_recent(resume=True)
    except Exception as e:
        logger.error(f"Scheduled sweep failed: {e}", exc_info=True)


async def reconcile_job(context: ContextTypes.DEFAULT_TYPE):
    try:
        outcomes = await reconcile_pending(notifier=context.bot_data.get("notifier"))
    except Exception as e:
        logger.error(f"Reconciliation failed: {e}", exc_info=True)
        return
    if outcomes:
        logger.info(f"Reconciled {len(outcomes)} pending violations")


async def post_init(application: Application):
    notifier = application.bot_data["notifier"]
    notifier.init(application.bot)
    logger.info(f"Notifier ready: {notifier.ready}")


async def post_shutdown(application: Application):
    sweeper = application.bot_data.get("sweeper")
    if sweeper:
        sweeper.cancel()
    notifier = application.bot_data.get("notifier")
    if notifier:
        await notifier.shutdown()


def build_application(token: str) -> Application:
    application = (
        Application.builder()
        .token(token)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )
    application.bot_data["notifier"] = Notifier()
    application.bot_data["sweeper"] = ConversationSweeper()

    # Commands
    application.add_handler(CommandHandler("start", start_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("mystatus", mystatus_command))
    application.add_handler(CommandHandler("appeal", appeal_command))
    application.add_handler(CommandHandler("review", review_command))
    application.add_handler(CommandHandler("dismiss", dismiss_command))
    application.add_handler(CommandHandler("history", history_command))
    application.add_handler(CommandHandler("flaguser", flaguser_command))
    application.add_handler(CommandHandler("scan", scan_command))
    application.add_handler(CommandHandler("scanall", scanall_command))
    application.add_handler(CommandHandler("scanrecent", scanrecent_command))
    application.add_handler(CommandHandler("flag", flag_command))
    application.add_handler(CommandHandler("modstats", modstats_command))
    application.add_handler(CommandHandler("stats", stats_command))

    # Messages
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text_message))

    # Errors
    application.add_error_handler(error_handler)

    job_queue = application.job_queue
    if job_queue:
        job_queue.run_repeating(sweep_recent_job, interval=SWEEP_INTERVAL_MINUTES * 60, first=SWEEP_INTERVAL_MINUTES * 60)
        job_queue.run_repeating(reconcile_job, interval=RECONCILE_INTERVAL_MINUTES * 60, first=60)
    else:
        logger.warning("Job queue unavailable; scheduled sweeps and reconciliation are disabled")

    return application


def main():
    if not BOT_TOKEN:
        logger.error("BOT_TOKEN not set in environment variables!")
        exit(1)
    if not ADMIN_ID:
        logger.error("ADMIN_ID not set in environment variables!")
        exit(1)

    init_db()
    application = build_application(BOT_TOKEN)
    logger.info("=== ALL HANDLERS REGISTERED ===")

    if WEBHOOK_URL:
        url_path = f"webhook/{BOT_TOKEN}"
        logger.info(f"Starting bot in webhook mode on port {PORT}...")
        application.run_webhook(
            listen="0.0.0.0",
            port=PORT,
            url_path=url_path,
            webhook_url=f"{WEBHOOK_URL}/{url_path}",
        )
    else:
        logger.info("Starting bot in polling mode...")
        application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
