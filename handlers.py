"""
Telegram command handlers for the ENS bridge bot
Parse arguments, hand off to the orchestrators, route inline-keyboard presses
"""

import logging
from typing import Any, Optional

from telegram import Update
from telegram.ext import ContextTypes

from message_utils import create_error_message, create_info_message, format_bold, format_inline_code
from services.models import InteractionEvent

logger = logging.getLogger(__name__)

# Selection outcomes that leave the form usable
_KEEP_FORM_STATUSES = {'no_selection', 'invalid_selection'}

HELP_TEXT = (
    f"🌐 {format_bold('ENS Bridge Bot')}\n\n"
    f"{format_bold('Registration')}\n"
    f"{format_inline_code('/register name [years]')} Register name.eth on Mainnet with your default wallet\n"
    f"{format_inline_code('/bridge_register name [years]')} Pick a wallet; funds are bridged from Base when needed\n"
    f"{format_inline_code('/retry_register [test] name')} Re-send a failed registration step\n\n"
    f"{format_bold('Subdomains')}\n"
    f"{format_inline_code('/assign_subdomain sub.parent.eth recipient')} Create a subdomain for an address or ENS name\n\n"
    f"{format_bold('Testnet')}\n"
    f"{format_inline_code('/test_register name [years]')} Register on Sepolia\n"
    f"{format_inline_code('/test_transfer name recipient')} Transfer a Sepolia name\n"
    f"{format_inline_code('/test_wallet_pick')} Send a zero-value test transaction from a chosen wallet"
)


def _service(context: ContextTypes.DEFAULT_TYPE, name: str) -> Any:
    return context.application.bot_data[name]


def _ids(update: Update) -> Optional[tuple]:
    user = update.effective_user
    chat = update.effective_chat
    message = update.effective_message
    if not user or not chat or not message:
        logger.error("Missing user, chat or message in command update")
        return None
    return chat.id, user.id, message


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /start and /help"""
    message = update.effective_message
    if not message:
        logger.error("Missing message in start command")
        return
    await message.reply_text(HELP_TEXT, disable_web_page_preview=True)


async def _registration_command(update: Update, context: ContextTypes.DEFAULT_TYPE, testnet: bool):
    ids = _ids(update)
    if ids is None:
        return
    chat_id, user_id, message = ids
    command = '/test_register' if testnet else '/register'

    args = context.args or []
    if not args:
        await message.reply_text(create_info_message("Usage", f"{command} name [years]"))
        return

    years = args[1] if len(args) > 1 else None
    logger.info(f"🎯 COMMAND: {command} {args[0]} from user {user_id}")
    await _service(context, 'registration').start_registration(
        chat_id, user_id, args[0], years=years, testnet=testnet
    )


async def register_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /register <name> [years]"""
    await _registration_command(update, context, testnet=False)


async def test_register_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /test_register <name> [years]"""
    await _registration_command(update, context, testnet=True)


async def bridge_register_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /bridge_register <name> [years]"""
    ids = _ids(update)
    if ids is None:
        return
    chat_id, user_id, message = ids

    args = context.args or []
    if not args:
        await message.reply_text(create_info_message("Usage", "/bridge_register name [years]"))
        return

    years = args[1] if len(args) > 1 else None
    logger.info(f"🎯 COMMAND: /bridge_register {args[0]} from user {user_id}")
    await _service(context, 'funding').start_bridge_register(chat_id, user_id, args[0], years=years)


async def retry_register_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /retry_register [test] <name>"""
    ids = _ids(update)
    if ids is None:
        return
    chat_id, user_id, message = ids

    args = list(context.args or [])
    testnet = bool(args) and args[0].lower() == 'test'
    if testnet:
        args = args[1:]
    if not args:
        await message.reply_text(create_info_message("Usage", "/retry_register [test] name"))
        return

    await _service(context, 'registration').retry_reveal(chat_id, user_id, args[0], testnet=testnet)


async def test_transfer_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /test_transfer <name> <recipient>"""
    ids = _ids(update)
    if ids is None:
        return
    chat_id, user_id, message = ids

    args = context.args or []
    if len(args) < 2:
        await message.reply_text(create_info_message("Usage", "/test_transfer name recipient"))
        return

    await _service(context, 'transfers').start_test_transfer(chat_id, user_id, args[0], args[1])


async def test_wallet_pick_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /test_wallet_pick"""
    ids = _ids(update)
    if ids is None:
        return
    chat_id, user_id, _ = ids
    await _service(context, 'transfers').start_wallet_pick(chat_id, user_id)


async def assign_subdomain_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /assign_subdomain <sub.parent.eth> <recipient>"""
    ids = _ids(update)
    if ids is None:
        return
    chat_id, user_id, message = ids

    args = context.args or []
    if len(args) < 2:
        await message.reply_text(create_info_message("Usage", "/assign_subdomain sub.parent.eth recipient"))
        return

    await _service(context, 'subdomains').start_assignment(chat_id, user_id, args[0], args[1])


async def handle_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Turn an inline-keyboard press into a selection event for the dispatcher"""
    query = update.callback_query
    if not query:
        logger.error("Missing callback query in handle_callback")
        return

    user = query.from_user
    logger.info(f"Callback received from user {user.id if user else 'unknown'}: {query.data}")

    try:
        await query.answer()
    except Exception as e:
        # Expired queries after a restart are common
        logger.debug(f"Callback answer error: {e}")

    gateway = _service(context, 'gateway')
    resolved = gateway.tokens.resolve(user.id, query.data) if user else None
    if resolved is None:
        await query.edit_message_text(create_error_message("This selection has expired", "Please run the command again."))
        return

    request_id, option_id = resolved
    chat_id = query.message.chat.id if query.message else user.id
    event = InteractionEvent(
        request_id=request_id,
        channel_id=str(chat_id),
        user_id=str(user.id),
        selected_option_id=option_id,
    )

    result = await _service(context, 'dispatcher').dispatch(event)
    if result.get('status') not in _KEEP_FORM_STATUSES:
        gateway.tokens.discard_request(request_id)
        try:
            await query.edit_message_reply_markup(reply_markup=None)
        except Exception as e:
            logger.debug(f"Could not remove keyboard: {e}")
