"""
Wallet balance and account-kind lookups

Balances are always fetched fresh; they can change between a prompt and
the user's answer.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

from web3 import AsyncHTTPProvider, AsyncWeb3

from chain_config import ChainConfig
from performance_monitor import OperationTimer, monitor_performance
from services.errors import ExternalServiceError
from services.models import WalletSnapshot
from utils.abi import checksum

logger = logging.getLogger(__name__)


class WalletService:
    """Balance and bytecode oracle over the destination and source chains"""

    def __init__(self, destination_rpc_url: str, source_rpc_url: str,
                 destination_chain: int = ChainConfig.MAINNET_CHAIN_ID,
                 source_chain: int = ChainConfig.BASE_CHAIN_ID,
                 destination_w3: Optional[AsyncWeb3] = None,
                 source_w3: Optional[AsyncWeb3] = None):
        self.destination_chain = destination_chain
        self.source_chain = source_chain
        self._w3 = {
            destination_chain: destination_w3 or AsyncWeb3(AsyncHTTPProvider(destination_rpc_url)),
            source_chain: source_w3 or AsyncWeb3(AsyncHTTPProvider(source_rpc_url)),
        }

    def _client(self, chain_id: int) -> AsyncWeb3:
        try:
            return self._w3[chain_id]
        except KeyError:
            raise ValueError(f"No RPC configured for chain {chain_id}")

    async def get_balance(self, address: str, chain_id: int) -> int:
        """Balance in wei"""
        try:
            with OperationTimer(f"balance_{ChainConfig.get_chain_name(chain_id)}"):
                return int(await self._client(chain_id).eth.get_balance(checksum(address)))
        except ValueError:
            raise
        except Exception as e:
            logger.error(f"❌ WALLETS: balance lookup failed for {address} on {chain_id}: {e}")
            raise ExternalServiceError("Could not fetch wallet balances. Please try again later.") from e

    async def is_smart_account(self, address: str, chain_id: Optional[int] = None) -> bool:
        """True when the address has bytecode on the chain (source chain by default)"""
        chain_id = chain_id or self.source_chain
        try:
            code = await self._client(chain_id).eth.get_code(checksum(address))
        except Exception as e:
            logger.error(f"❌ WALLETS: bytecode lookup failed for {address}: {e}")
            raise ExternalServiceError("Could not determine wallet types. Please try again later.") from e
        return len(code) > 0

    async def snapshot(self, address: str) -> WalletSnapshot:
        destination, source, is_smart = await asyncio.gather(
            self.get_balance(address, self.destination_chain),
            self.get_balance(address, self.source_chain),
            self.is_smart_account(address),
        )
        return WalletSnapshot(
            address=checksum(address),
            is_eoa=not is_smart,
            destination_balance=destination,
            source_balance=source,
        )

    @monitor_performance("wallet_snapshots")
    async def snapshot_all(self, addresses: Sequence[str]) -> List[WalletSnapshot]:
        return list(await asyncio.gather(*(self.snapshot(address) for address in addresses)))

    async def filter_eoas(self, addresses: Sequence[str], chain_id: Optional[int] = None) -> List[str]:
        flags = await asyncio.gather(*(self.is_smart_account(a, chain_id) for a in addresses))
        return [address for address, is_smart in zip(addresses, flags) if not is_smart]
