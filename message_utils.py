"""
Message formatting and escaping utilities for the ENS bot

Consistent HTML formatting and escaping for every bot message so that
domain names, addresses and error text cannot break Telegram parsing.
"""

import html
import logging
from decimal import Decimal
from typing import Optional

from chain_config import WEI_PER_ETH, ChainConfig

logger = logging.getLogger(__name__)


def escape_html(text: str) -> str:
    """
    Escape HTML special characters for safe display in Telegram HTML mode.

    Args:
        text: Raw text to escape

    Returns:
        HTML-escaped text safe for Telegram
    """
    if not text:
        return ""
    return html.escape(str(text))


def format_inline_code(text: str) -> str:
    if not text:
        return "<code></code>"
    return f"<code>{escape_html(text)}</code>"


def format_bold(text: str) -> str:
    if not text:
        return ""
    return f"<b>{escape_html(text)}</b>"


def format_link(text: str, url: str) -> str:
    """
    Format a clickable link in HTML.

    Args:
        text: Link text to display
        url: URL to link to
    """
    if not text or not url:
        return escape_html(text) if text else ""
    return f'<a href="{escape_html(url)}">{escape_html(text)}</a>'


def truncate_with_ellipsis(text: str, max_length: int = 50) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return f"{text[:max_length-3]}..."


def create_error_message(title: str, details: Optional[str] = None) -> str:
    message = f"❌ {format_bold(title)}"
    if details:
        message += f"\n\n{escape_html(details)}"
    return message


def create_info_message(title: str, details: Optional[str] = None) -> str:
    message = f"ℹ️ {format_bold(title)}"
    if details:
        message += f"\n\n{escape_html(details)}"
    return message


# ====================================================================
# CHAIN VALUES
# ====================================================================

def format_eth(wei: int, places: int = 6) -> str:
    """
    Render a wei amount as ETH, trimming trailing zeros.

    format_eth(22000000000000000) -> '0.022'
    """
    amount = Decimal(int(wei)) / Decimal(WEI_PER_ETH)
    text = f"{amount:.{places}f}".rstrip('0').rstrip('.')
    return text or "0"


def short_address(address: str) -> str:
    if not address or len(address) < 12:
        return address or ""
    return f"{address[:6]}...{address[-4:]}"


def format_wallet_line(address: str, kind_label: str, destination_balance: int, source_balance: int,
                       destination_chain: int = ChainConfig.MAINNET_CHAIN_ID,
                       source_chain: int = ChainConfig.BASE_CHAIN_ID) -> str:
    """One wallet in a balance listing"""
    return (
        f"{format_inline_code(short_address(address))} ({escape_html(kind_label)})\n"
        f"   {ChainConfig.get_chain_name(destination_chain)}: {format_eth(destination_balance)} ETH"
        f" | {ChainConfig.get_chain_name(source_chain)}: {format_eth(source_balance)} ETH"
    )


def format_wallet_option(address: str, path_code: str, estimated_cost: int) -> str:
    """Button label for a wallet-selection form; Telegram caps these at 64 chars"""
    return truncate_with_ellipsis(f"{short_address(address)} · Path {path_code} · {format_eth(estimated_cost)} ETH", 64)


def format_duration(seconds: int) -> str:
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes, rem = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {rem}s" if rem else f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"
