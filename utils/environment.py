"""Public webhook URL construction"""

import os
import logging

from chain_config import get_settings

logger = logging.getLogger(__name__)


def get_webhook_base_url() -> str:
    """
    Public base URL of the aiohttp server

    WEBHOOK_PUBLIC_URL wins; a Replit dev domain is used when present,
    otherwise localhost.
    """
    configured = os.getenv('WEBHOOK_PUBLIC_URL')
    if configured:
        return configured.rstrip('/')

    dev_domain = os.getenv('REPLIT_DOMAINS') or os.getenv('REPLIT_DEV_DOMAIN')
    if dev_domain:
        return f"https://{dev_domain.split(',')[0].strip()}"

    settings = get_settings()
    logger.warning(f"⚠️ No public domain configured, using {settings.webhook_public_url}")
    return settings.webhook_public_url


def get_webhook_url(endpoint: str) -> str:
    """
    Get the complete webhook URL for a specific endpoint

    Args:
        endpoint: The endpoint path ('telegram' or 'interaction')

    Returns:
        str: Complete webhook URL
    """
    return f"{get_webhook_base_url()}/webhook/{endpoint}"
