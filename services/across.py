"""
Across Protocol bridge service

Fee quotes and deposit status from the Across API, plus the depositV3
instruction a depositor signs on the source chain.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from chain_config import ChainConfig, ZERO_ADDRESS
from performance_monitor import OperationTimer
from services.errors import BridgeQuoteError, ExternalServiceError
from utils.abi import checksum, encode_call

logger = logging.getLogger(__name__)

DEPOSIT_V3_TYPES = [
    'address', 'address', 'address', 'address', 'uint256', 'uint256',
    'uint256', 'address', 'uint32', 'uint32', 'uint32', 'bytes',
]

DEPOSIT_STATUSES = ('pending', 'filled', 'expired')


@dataclass
class BridgeQuote:
    fee_wei: int
    estimated_fill_seconds: int
    is_amount_too_low: bool
    quote_timestamp: int
    spoke_pool: str
    exclusive_relayer: str = ZERO_ADDRESS
    exclusivity_deadline: int = 0
    fill_deadline: Optional[int] = None


@dataclass
class BridgeInstruction:
    to: str
    value: int
    data: str


class AcrossService:
    """Across API client"""

    def __init__(self, api_url: str, timeout: float = 15.0, fill_deadline_buffer: int = 10800):
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self.fill_deadline_buffer = fill_deadline_buffer
        logger.info(f"🔧 Across service initialized ({self.api_url})")

    async def get_quote(self, amount: int, origin_chain: int = ChainConfig.BASE_CHAIN_ID,
                        destination_chain: int = ChainConfig.MAINNET_CHAIN_ID) -> BridgeQuote:
        """
        Fetch the relay fee for bridging amount wei of ETH.

        Raises BridgeQuoteError when the API fails or reports the amount as
        too low. No bridge instruction may be built without a quote.
        """
        params = {
            'inputToken': ChainConfig.get_weth(origin_chain),
            'outputToken': ChainConfig.get_weth(destination_chain),
            'originChainId': str(origin_chain),
            'destinationChainId': str(destination_chain),
            'amount': str(amount),
            'skipAmountLimit': 'false',
        }
        try:
            with OperationTimer("across_suggested_fees"):
                async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                    response = await client.get(f"{self.api_url}/suggested-fees", params=params)
                    response.raise_for_status()
                    data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"❌ ACROSS: quote request failed: {e}")
            raise BridgeQuoteError("Could not get a bridge quote right now. Please try again later.") from e
        except ValueError as e:
            logger.error(f"❌ ACROSS: malformed quote response: {e}")
            raise BridgeQuoteError("Bridge quote service returned an invalid response.") from e

        quote = self._parse_quote(data, origin_chain)
        if quote.is_amount_too_low:
            logger.warning(f"⚠️ ACROSS: amount {amount} below route minimum")
            raise BridgeQuoteError("The amount is too low to bridge on this route.", amount_too_low=True)

        logger.info(f"✅ ACROSS: quote fee={quote.fee_wei} fill≈{quote.estimated_fill_seconds}s")
        return quote

    def _parse_quote(self, data: Dict[str, Any], origin_chain: int) -> BridgeQuote:
        try:
            relay_fee = data.get('totalRelayFee') or {}
            fill_deadline = data.get('fillDeadline')
            return BridgeQuote(
                fee_wei=int(relay_fee.get('total') or 0),
                estimated_fill_seconds=int(data.get('estimatedFillTimeSec') or 60),
                is_amount_too_low=bool(data.get('isAmountTooLow', False)),
                quote_timestamp=int(data.get('timestamp') or time.time()),
                spoke_pool=data.get('spokePoolAddress') or ChainConfig.get_spoke_pool(origin_chain),
                exclusive_relayer=data.get('exclusiveRelayer') or ZERO_ADDRESS,
                exclusivity_deadline=int(data.get('exclusivityDeadline') or 0),
                fill_deadline=int(fill_deadline) if fill_deadline else None,
            )
        except (TypeError, ValueError) as e:
            raise BridgeQuoteError("Bridge quote service returned an invalid response.") from e

    def build_deposit(self, quote: BridgeQuote, depositor: str, recipient: str, input_amount: int,
                      output_amount: int, origin_chain: int = ChainConfig.BASE_CHAIN_ID,
                      destination_chain: int = ChainConfig.MAINNET_CHAIN_ID) -> BridgeInstruction:
        """Native ETH depositV3 call; value is wrapped by the spoke pool"""
        if input_amount <= 0:
            raise ValueError("Bridge input amount must be positive")
        fill_deadline = quote.fill_deadline or quote.quote_timestamp + self.fill_deadline_buffer
        data = encode_call('depositV3', DEPOSIT_V3_TYPES, [
            checksum(depositor),
            checksum(recipient),
            checksum(ChainConfig.get_weth(origin_chain)),
            checksum(ChainConfig.get_weth(destination_chain)),
            input_amount,
            output_amount,
            destination_chain,
            checksum(quote.exclusive_relayer),
            quote.quote_timestamp,
            fill_deadline,
            quote.exclusivity_deadline,
            b'',
        ])
        return BridgeInstruction(to=checksum(quote.spoke_pool), value=input_amount, data=data)

    async def get_deposit_status(self, deposit_tx_hash: str, origin_chain: int = ChainConfig.BASE_CHAIN_ID) -> str:
        """One of 'pending', 'filled', 'expired'"""
        params = {'originChainId': str(origin_chain), 'depositTxHash': deposit_tx_hash}
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                response = await client.get(f"{self.api_url}/deposit/status", params=params)
                if response.status_code == 404:
                    # Not indexed yet
                    return 'pending'
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalServiceError(f"Bridge status check failed: {e}") from e

        status = str(data.get('status', 'pending')).lower()
        if status not in DEPOSIT_STATUSES:
            logger.debug(f"🔍 ACROSS: treating status {status!r} as pending")
            return 'pending'
        return status
