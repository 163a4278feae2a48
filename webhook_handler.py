"""
Webhook handler for signing gateway callbacks
aiohttp server receiving transaction confirmations plus the user message queue
"""

import json
import logging
import asyncio
import hmac
import os
import time
from typing import Dict, Any, Optional
from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response
from telegram import Update

from admin_alerts import get_admin_alert_system, send_warning_alert
from performance_monitor import get_performance_stats
from services.interaction_gateway import sign_payload
from services.models import InteractionEvent

logger = logging.getLogger(__name__)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

DISPATCHER_KEY = web.AppKey("dispatcher", object)
STORES_KEY = web.AppKey("stores", object)
SECRET_KEY = web.AppKey("interaction_secret", str)

# Webhook failure tracking for alerting
_webhook_failure_count = 0
_last_successful_webhook = 0.0
_webhook_failure_threshold = 5  # Alert after 5 consecutive auth failures

# Global application references
_bot_application = None
_message_queue: Optional[asyncio.Queue] = None
_queue_task: Optional[asyncio.Task] = None
_webhook_server = None


def set_bot_application(application):
    """Set the global bot application reference"""
    global _bot_application
    _bot_application = application
    if application is not None:
        logger.info("✅ Bot application set with asyncio-based message queue")


def get_bot_application():
    """Get the global bot application reference"""
    return _bot_application


def _get_queue() -> asyncio.Queue:
    global _message_queue
    if _message_queue is None:
        _message_queue = asyncio.Queue()
    return _message_queue


async def queue_user_message(chat_id: Any, text: str, parse_mode: str = 'HTML'):
    """Queue a message to be sent to a Telegram chat"""
    await _get_queue().put({
        'chat_id': chat_id,
        'text': text,
        'parse_mode': parse_mode
    })


async def _deliver(message_data: Dict[str, Any]) -> bool:
    if _bot_application is None or not getattr(_bot_application, 'bot', None):
        logger.error(f"❌ Bot not ready, dropping message for chat {message_data['chat_id']}")
        return False
    try:
        await _bot_application.bot.send_message(
            chat_id=message_data['chat_id'],
            text=message_data['text'],
            parse_mode=message_data.get('parse_mode', 'HTML'),
            disable_web_page_preview=True
        )
        return True
    except Exception as e:
        logger.error(f"❌ Failed to send message to chat {message_data['chat_id']}: {e}")
        return False


async def _process_message_queue():
    """Deliver queued messages in order"""
    queue = _get_queue()
    logger.info("✅ Asyncio message queue processor started")

    while True:
        message_data = await queue.get()
        try:
            if message_data is None:  # Shutdown signal
                break
            await _deliver(message_data)
        finally:
            queue.task_done()


def verify_interaction_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check the X-Signature header of an inbound event; open when no secret is configured"""
    if not secret:
        return True
    if not signature:
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Missing X-Signature header")
        return False
    if not hmac.compare_digest(sign_payload(secret, body), signature):
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Signature mismatch")
        return False
    return True


async def alert_webhook_authentication_failure():
    """Count consecutive auth failures and alert once the threshold is reached"""
    global _webhook_failure_count
    _webhook_failure_count += 1
    if _webhook_failure_count == _webhook_failure_threshold:
        await send_warning_alert(
            "WebhookHandler",
            f"{_webhook_failure_count} consecutive interaction webhooks failed authentication",
            "security",
            {'last_success': _last_successful_webhook}
        )


def record_successful_webhook():
    global _webhook_failure_count, _last_successful_webhook
    _webhook_failure_count = 0
    _last_successful_webhook = time.time()


def verify_telegram_webhook_secret(request_headers) -> bool:
    """Verify the Telegram webhook secret token"""
    received_token = request_headers.get('X-Telegram-Bot-Api-Secret-Token')
    expected_token = os.getenv('TELEGRAM_WEBHOOK_SECRET_TOKEN')

    if not expected_token:
        logger.error("🛡️ WEBHOOK AUTH FAILURE: TELEGRAM_WEBHOOK_SECRET_TOKEN not set in environment")
        return False
    if not received_token:
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Missing X-Telegram-Bot-Api-Secret-Token header")
        return False
    if not hmac.compare_digest(received_token, expected_token):
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Secret token mismatch")
        return False
    return True


async def telegram_webhook_handler(request: Request) -> Response:
    """POST /webhook/telegram: bot updates processed on this event loop"""
    if _bot_application is None:
        logger.warning("⚠️ APPLICATION NOT READY: Rejecting webhook")
        return web.json_response({'error': 'Service unavailable'}, status=503)

    if not verify_telegram_webhook_secret(request.headers):
        await alert_webhook_authentication_failure()
        return web.json_response({'error': 'Webhook authentication failed'}, status=403)

    record_successful_webhook()
    try:
        update_data = await request.json()
        update = Update.de_json(update_data, _bot_application.bot)
        if update:
            await _bot_application.process_update(update)
    except Exception as e:
        logger.error(f"❌ Error processing Telegram update: {e}", exc_info=True)
        return web.json_response({'ok': False, 'error': str(e)}, status=500)
    return web.json_response({'ok': True})


async def interaction_webhook_handler(request: Request) -> Response:
    """POST /webhook/interaction: confirmation and selection events"""
    body = await request.read()
    secret = request.app.get(SECRET_KEY, '')

    if not verify_interaction_signature(secret, body, request.headers.get('X-Signature')):
        await alert_webhook_authentication_failure()
        return web.json_response({'error': 'Unauthorized'}, status=401)

    try:
        event = InteractionEvent.from_payload(json.loads(body or b'{}'))
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning(f"⚠️ WEBHOOK: malformed interaction event: {e}")
        return web.json_response({'error': 'Invalid payload'}, status=400)

    record_successful_webhook()
    dispatcher = request.app[DISPATCHER_KEY]
    result = await dispatcher.dispatch(event)
    return web.json_response({'status': result.get('status'), 'success': result.get('success', False)})


async def health_handler(request: Request) -> Response:
    """Health check with store sizes, process stats and alert counters"""
    stores = request.app.get(STORES_KEY)
    response_data = {
        'status': 'healthy',
        'service': 'ens_bridge_bot',
        'timestamp': time.time(),
        'bot_ready': _bot_application is not None,
        'queued_messages': _get_queue().qsize(),
        'stores': stores.stats() if stores is not None else {},
        'performance': get_performance_stats(),
        'alerts': get_admin_alert_system().get_alert_stats(),
    }
    return web.json_response(response_data)


def create_app(dispatcher, stores=None, interaction_secret: str = '') -> web.Application:
    app = web.Application()
    app[DISPATCHER_KEY] = dispatcher
    app[STORES_KEY] = stores
    app[SECRET_KEY] = interaction_secret

    app.router.add_get('/', health_handler)
    app.router.add_get('/health', health_handler)
    app.router.add_get('/healthz', health_handler)
    app.router.add_post('/webhook/interaction', interaction_webhook_handler)
    app.router.add_post('/webhook/telegram', telegram_webhook_handler)
    return app


async def start_webhook_server(dispatcher, stores=None, interaction_secret: str = '',
                               port: int = 5000) -> web.AppRunner:
    """Start the aiohttp webhook server in the same event loop"""
    global _webhook_server, _queue_task

    try:
        app = create_app(dispatcher, stores, interaction_secret)
        _queue_task = asyncio.create_task(_process_message_queue())

        runner = web.AppRunner(app)
        await runner.setup()

        site = web.TCPSite(runner, '0.0.0.0', port)
        await site.start()

        _webhook_server = runner

        logger.info(f"✅ Webhook server started on IPv4 http://0.0.0.0:{port}")
        logger.info("🔗 Endpoints: /health, POST /webhook/interaction")
        if not interaction_secret:
            logger.warning("⚠️ INTERACTION_WEBHOOK_SECRET not set - inbound events are not authenticated")
        return runner

    except Exception as e:
        logger.error(f"❌ Failed to start webhook server: {e}")
        raise


async def stop_webhook_server():
    """Stop the webhook server and cleanup"""
    global _webhook_server, _queue_task

    # Signal shutdown to message queue processor
    await _get_queue().put(None)
    if _queue_task is not None:
        await _queue_task
        _queue_task = None

    if _webhook_server:
        await _webhook_server.cleanup()
        _webhook_server = None

    logger.info("✅ Webhook server stopped")
