"""
Interaction gateway

The single outbound seam of the orchestrators:

- user messages, delivered through the webhook message queue to Telegram
- transaction requests, posted to the signing gateway which asks the user's
  wallet to sign and later calls /webhook/interaction back
- selection forms, rendered as Telegram inline keyboards whose buttons carry
  short "c:<token>" callback data
- wallet linkage lookups served by the signing gateway
"""

import hmac
import hashlib
import json
import logging
import secrets
import string
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from performance_monitor import OperationTimer
from services.errors import ExternalServiceError
from services.models import FormRequest, TransactionRequest
from utils.abi import checksum

logger = logging.getLogger(__name__)

MessageSink = Callable[[Any, str], Awaitable[None]]

TOKEN_PREFIX = "c:"
TOKEN_ALPHABET = string.ascii_letters + string.digits


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 used on both directions of the signing gateway link"""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class CallbackTokenStore:
    """
    Maps short callback tokens to (request id, option id) pairs.

    Telegram limits callback_data to 64 bytes, far less than a correlation
    key plus an address, so buttons only carry a token.
    """

    def __init__(self, ttl: int = 600, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._tokens: Dict[str, Dict[str, Any]] = {}

    def issue(self, user_id: str, request_id: str, option_id: str) -> str:
        token = ''.join(secrets.choice(TOKEN_ALPHABET) for _ in range(16))
        self._tokens[token] = {
            'user_id': str(user_id),
            'request_id': request_id,
            'option_id': option_id,
            'expires': self._clock() + self.ttl,
        }
        return f"{TOKEN_PREFIX}{token}"

    def resolve(self, user_id: str, callback_data: str) -> Optional[Tuple[str, str]]:
        """Return (request_id, option_id) for a live token issued to user_id"""
        if not callback_data or not callback_data.startswith(TOKEN_PREFIX):
            return None
        entry = self._tokens.get(callback_data[len(TOKEN_PREFIX):])
        if entry is None or entry['expires'] <= self._clock():
            logger.warning("⚠️ GATEWAY: callback token not found or expired")
            return None
        if entry['user_id'] != str(user_id):
            logger.warning(f"🛡️ GATEWAY: callback token used by another user ({user_id})")
            return None
        return entry['request_id'], entry['option_id']

    def discard_request(self, request_id: str) -> int:
        """Drop every token issued for one form"""
        stale = [t for t, entry in self._tokens.items() if entry['request_id'] == request_id]
        for token in stale:
            del self._tokens[token]
        return len(stale)

    def sweep(self) -> int:
        now = self._clock()
        expired = [t for t, entry in self._tokens.items() if entry['expires'] <= now]
        for token in expired:
            del self._tokens[token]
        return len(expired)

    def __len__(self) -> int:
        return len(self._tokens)


class InteractionGateway:
    """Outbound messages, action requests and wallet lookups"""

    def __init__(self, gateway_url: str, api_key: str = '', callback_url: str = '',
                 message_sink: Optional[MessageSink] = None, bot=None,
                 token_ttl: int = 600, timeout: float = 15.0):
        self.gateway_url = (gateway_url or '').rstrip('/')
        self.api_key = api_key
        self.callback_url = callback_url
        self.timeout = timeout
        self.tokens = CallbackTokenStore(ttl=token_ttl)
        self._message_sink = message_sink
        self._bot = bot
        if self.gateway_url:
            logger.info(f"🔧 Interaction gateway initialized ({self.gateway_url})")
        else:
            logger.warning("⚠️ SIGNING_GATEWAY_URL not configured - transaction requests will fail")

    def set_bot(self, bot) -> None:
        self._bot = bot

    def set_message_sink(self, sink: MessageSink) -> None:
        self._message_sink = sink

    def is_available(self) -> bool:
        return bool(self.gateway_url)

    def _headers(self, body: Optional[bytes] = None) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"
            if body is not None:
                headers['X-Signature'] = sign_payload(self.api_key, body)
        return headers

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send_message(self, channel_id: Any, text: str) -> None:
        if self._message_sink is None:
            logger.warning(f"⚠️ GATEWAY: no message sink, dropping message for {channel_id}")
            return
        await self._message_sink(channel_id, text)

    # ------------------------------------------------------------------
    # External action requests
    # ------------------------------------------------------------------

    async def request_transaction(self, channel_id: Any, user_id: Any, request: TransactionRequest) -> None:
        """Ask the signing gateway to have the user sign one transaction"""
        if not self.gateway_url:
            raise ExternalServiceError("Transaction signing is not configured.")

        body = json.dumps({
            'channelId': str(channel_id),
            'userId': str(user_id),
            'callbackUrl': self.callback_url,
            'request': request.to_payload(),
        }).encode()
        try:
            with OperationTimer("gateway_transaction_request"):
                async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                    response = await client.post(
                        f"{self.gateway_url}/requests/transaction",
                        content=body,
                        headers=self._headers(body),
                    )
                    response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"❌ GATEWAY: transaction request {request.id} failed: {e}")
            raise ExternalServiceError("Could not send the transaction request. Please try again.") from e

        logger.info(f"📤 GATEWAY: transaction request {request.id} -> chain {request.chain_id}")

    async def request_selection(self, channel_id: Any, user_id: Any, form: FormRequest) -> None:
        """Render a form as an inline keyboard, one button per option"""
        if self._bot is None:
            raise ExternalServiceError("Bot is not ready to show selection forms.")

        rows = [
            [InlineKeyboardButton(option.label, callback_data=self.tokens.issue(user_id, form.id, option.id))]
            for option in form.options
        ]
        try:
            await self._bot.send_message(
                chat_id=channel_id,
                text=form.title,
                parse_mode='HTML',
                reply_markup=InlineKeyboardMarkup(rows),
            )
        except Exception as e:
            self.tokens.discard_request(form.id)
            logger.error(f"❌ GATEWAY: failed to show form {form.id}: {e}")
            raise ExternalServiceError("Could not show the selection form. Please try again.") from e

        logger.info(f"📤 GATEWAY: form {form.id} with {len(form.options)} options")

    # ------------------------------------------------------------------
    # Wallet linkage
    # ------------------------------------------------------------------

    async def _get_wallet_profile(self, user_id: Any) -> Dict[str, Any]:
        if not self.gateway_url:
            raise ExternalServiceError("Wallet linkage is not configured.")
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                response = await client.get(f"{self.gateway_url}/users/{user_id}/wallets",
                                            headers=self._headers())
                if response.status_code == 404:
                    return {}
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            logger.error(f"❌ GATEWAY: wallet lookup failed for user {user_id}: {e}")
            raise ExternalServiceError("Could not fetch your linked wallets. Please try again later.") from e

    async def get_linked_wallets(self, user_id: Any) -> List[str]:
        """Every address linked to the user, de-duplicated, in gateway order"""
        profile = await self._get_wallet_profile(user_id)
        seen = set()
        wallets = []
        for address in profile.get('wallets') or []:
            try:
                normalized = checksum(address)
            except ValueError:
                logger.warning(f"⚠️ GATEWAY: ignoring malformed linked wallet {address!r}")
                continue
            if normalized not in seen:
                seen.add(normalized)
                wallets.append(normalized)
        return wallets

    async def get_default_wallet(self, user_id: Any) -> Optional[str]:
        profile = await self._get_wallet_profile(user_id)
        default = profile.get('default') or profile.get('defaultWallet')
        if default:
            return checksum(default)
        wallets = profile.get('wallets') or []
        return checksum(wallets[0]) if wallets else None
