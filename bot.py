#!/usr/bin/env python3
"""
ENS Bridge Bot - Single Event Loop Implementation
Runs the PTB Application, the aiohttp webhook server and every saga continuation in one asyncio loop
"""

import os
import logging
import asyncio
import sys
import signal
from typing import Any, Dict, Optional
from telegram.ext import Application, CommandHandler, CallbackQueryHandler, ContextTypes, Defaults

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)

# Prevent httpx from logging URLs with bot tokens
logging.getLogger("httpx").setLevel(logging.WARNING)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from chain_config import ChainConfig, Settings, get_settings
from handlers import (
    start_command,
    register_command,
    test_register_command,
    bridge_register_command,
    retry_register_command,
    test_transfer_command,
    test_wallet_pick_command,
    assign_subdomain_command,
    handle_callback,
)
from admin_alerts import send_critical_alert, set_admin_alert_bot_application
from services.across import AcrossService
from services.bridge_orchestrator import BridgeOrchestrator
from services.correlation_store import SagaStores
from services.dispatcher import ResponseDispatcher
from services.ens_registry import ENSService
from services.funding_orchestrator import FundingOrchestrator
from services.interaction_gateway import InteractionGateway
from services.registration_orchestrator import RegistrationOrchestrator
from services.scheduler import TaskScheduler
from services.subdomain_orchestrator import SubdomainOrchestrator
from services.transfer_orchestrator import TransferOrchestrator
from services.wallets import WalletService
from utils.environment import get_webhook_url
from webhook_handler import queue_user_message, set_bot_application, start_webhook_server, stop_webhook_server

# Global shutdown flag
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global shutdown_requested
    shutdown_requested = True
    logger.info(f"🛑 Shutdown signal received ({signum}), initiating graceful shutdown...")


def build_services(settings: Settings) -> Dict[str, Any]:
    """Wire stores, collaborators and orchestrators together"""
    stores = SagaStores.from_settings(settings)
    scheduler = TaskScheduler()

    gateway = InteractionGateway(
        settings.signing_gateway_url,
        api_key=settings.signing_gateway_api_key,
        callback_url=get_webhook_url('interaction'),
        message_sink=queue_user_message,
        token_ttl=settings.selection_ttl,
    )
    ens_services = {
        'mainnet': ENSService(ChainConfig.get_network('mainnet'), settings.mainnet_rpc_url),
        'sepolia': ENSService(ChainConfig.get_network('sepolia'), settings.sepolia_rpc_url),
    }
    wallets = WalletService(settings.mainnet_rpc_url, settings.base_rpc_url)
    across = AcrossService(settings.across_api_url, fill_deadline_buffer=settings.bridge_fill_deadline)

    registration = RegistrationOrchestrator(stores, gateway, ens_services, scheduler, settings)
    bridge = BridgeOrchestrator(stores, gateway, across, wallets, registration, scheduler, settings)
    funding = FundingOrchestrator(stores, gateway, ens_services['mainnet'], wallets, across,
                                  registration, bridge, settings)
    subdomains = SubdomainOrchestrator(stores, gateway, ens_services['mainnet'], wallets)
    transfers = TransferOrchestrator(stores, gateway, ens_services['sepolia'], wallets)
    dispatcher = ResponseDispatcher(gateway, registration, bridge, funding, subdomains, transfers)

    return {
        'settings': settings,
        'stores': stores,
        'scheduler': scheduler,
        'gateway': gateway,
        'registration': registration,
        'bridge': bridge,
        'funding': funding,
        'subdomains': subdomains,
        'transfers': transfers,
        'dispatcher': dispatcher,
    }


async def setup_periodic_jobs(app: Application, services: Dict[str, Any]):
    """Set up periodic maintenance jobs"""
    job_queue = app.job_queue
    if not job_queue:
        logger.warning("⚠️ Job queue not available - skipping periodic jobs")
        return

    stores: SagaStores = services['stores']
    gateway: InteractionGateway = services['gateway']

    async def safe_sweep_job(context: ContextTypes.DEFAULT_TYPE):
        try:
            swept = stores.sweep_all()
            tokens = gateway.tokens.sweep()
            if swept or tokens:
                logger.info(f"🧹 Periodic sweep: {swept} saga records, {tokens} callback tokens")
        except Exception as sweep_error:
            logger.warning(f"⚠️ Sweep job error: {sweep_error}")

    interval = services['settings'].store_sweep_interval
    job_queue.run_repeating(safe_sweep_job, interval=interval, first=interval)
    logger.info(f"✅ Periodic store sweep scheduled every {interval}s")


async def configure_telegram_webhook(app: Application) -> bool:
    """Point Telegram at /webhook/telegram"""
    webhook_secret = os.getenv('TELEGRAM_WEBHOOK_SECRET_TOKEN')
    if not webhook_secret:
        logger.error("❌ TELEGRAM_WEBHOOK_SECRET_TOKEN not set")
        return False

    url = get_webhook_url('telegram')
    logger.info(f"🌐 Setting Telegram webhook URL: {url}")
    try:
        webhook_result = await app.bot.set_webhook(url=url, secret_token=webhook_secret, max_connections=100)
    except Exception as webhook_config_error:
        logger.error(f"❌ Webhook configuration failed: {webhook_config_error}")
        return False

    if webhook_result:
        logger.info("✅ Telegram webhook configured successfully!")
    else:
        logger.error("❌ Failed to configure Telegram webhook")
    return bool(webhook_result)


def register_handlers(app: Application):
    app.add_handler(CommandHandler(["start", "help"], start_command))
    app.add_handler(CommandHandler("register", register_command))
    app.add_handler(CommandHandler("test_register", test_register_command))
    app.add_handler(CommandHandler("bridge_register", bridge_register_command))
    app.add_handler(CommandHandler("retry_register", retry_register_command))
    app.add_handler(CommandHandler("test_transfer", test_transfer_command))
    app.add_handler(CommandHandler("test_wallet_pick", test_wallet_pick_command))
    app.add_handler(CommandHandler("assign_subdomain", assign_subdomain_command))
    app.add_handler(CallbackQueryHandler(handle_callback))


async def main_bot_loop():
    """Main bot event loop - runs everything in single asyncio loop"""
    global shutdown_requested

    app: Optional[Application] = None
    webhook_runner = None
    services: Dict[str, Any] = {}

    try:
        token = os.getenv('TELEGRAM_BOT_TOKEN')
        if not token or len(token) < 10:
            logger.error("❌ TELEGRAM_BOT_TOKEN not found or invalid")
            sys.exit(1)

        settings = get_settings()
        services = build_services(settings)

        defaults = Defaults(parse_mode='HTML')
        app = Application.builder().token(token).defaults(defaults).build()
        app.bot_data.update(services)

        async def global_error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
            """Global error handler for unhandled exceptions"""
            logger.warning(f"⚠️ Unhandled application error: {context.error}")

        app.add_error_handler(global_error_handler)
        register_handlers(app)
        logger.info("✅ All command handlers registered in main event loop")

        set_admin_alert_bot_application(app)
        services['gateway'].set_bot(app.bot)

        await app.initialize()
        await app.start()
        logger.info("✅ Application initialized and started successfully")

        set_bot_application(app)
        webhook_runner = await start_webhook_server(
            services['dispatcher'],
            stores=services['stores'],
            interaction_secret=settings.interaction_webhook_secret,
            port=settings.port,
        )

        if not await configure_telegram_webhook(app):
            logger.error("❌ Failed to configure Telegram webhook")
            sys.exit(1)

        await setup_periodic_jobs(app, services)

        logger.info("✅ Bot started in consolidated event loop mode")
        status_counter = 0
        while not shutdown_requested:
            await asyncio.sleep(1)
            status_counter += 1
            if status_counter % 300 == 0:
                stats = services['stores'].stats()
                logger.info(f"⏰ Bot running - in-flight sagas: {stats}")

        logger.info("🛑 Shutdown requested - cleaning up...")
        return True

    except KeyboardInterrupt:
        logger.info("🛑 Received keyboard interrupt")
        return True
    except Exception as runtime_error:
        logger.error(f"❌ Application runtime error: {runtime_error}", exc_info=True)
        await send_critical_alert("Bot", f"Application runtime error: {runtime_error}")
        logger.error("💥 FAIL FAST: Exiting for supervisor restart")
        sys.exit(1)
    finally:
        try:
            if 'scheduler' in services:
                await services['scheduler'].shutdown()
            if app is not None:
                await app.stop()
                await app.shutdown()
            if webhook_runner is not None:
                await stop_webhook_server()
            logger.info("✅ Cleanup completed")
        except Exception as cleanup_error:
            logger.warning(f"⚠️ Cleanup error: {cleanup_error}")


def main():
    """Main entry point"""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("🚀 Starting ENS Bridge Bot with Single Event Loop...")

    try:
        result = asyncio.run(main_bot_loop())
        logger.info("✅ Bot stopped normally" if result else "⚠️ Bot stopped with error")
        return result
    except Exception as e:
        logger.error(f"💥 Critical bot failure: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
