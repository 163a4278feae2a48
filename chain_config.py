"""
Unified Chain Configuration for the ENS Bridge Bot
Network constants (chain ids, ENS and Across contract addresses) plus the
environment-driven runtime settings shared by every orchestrator.
"""

import os
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

WEI_PER_ETH = 10 ** 18
SECONDS_PER_YEAR = 31557600
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ETH_NODE = "0x93cdeb708b7545dc668eb9280176169d1c33cfd8ed6f04690a0bcc88a93fc4ae"

MIN_LABEL_LENGTH = 3
MIN_YEARS = 1
MAX_YEARS = 10


@dataclass(frozen=True)
class NetworkConfig:
    """ENS deployment on one chain"""
    key: str
    name: str
    chain_id: int
    currency: str
    explorer_url: str
    registrar_controller: str
    base_registrar: str
    ens_registry: str
    public_resolver: str
    is_testnet: bool = False

    def tx_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url}/tx/{tx_hash}"


class ChainConfig:
    """Static chain and contract registry"""

    MAINNET_CHAIN_ID = 1
    BASE_CHAIN_ID = 8453
    SEPOLIA_CHAIN_ID = 11155111

    NETWORKS: Dict[str, NetworkConfig] = {
        'mainnet': NetworkConfig(
            key='mainnet',
            name='Ethereum Mainnet',
            chain_id=1,
            currency='ETH',
            explorer_url='https://etherscan.io',
            registrar_controller='0x253553366Da8546fC250F225fe3d25d0C782303b',
            base_registrar='0x57f1887a8BF19b14fC0dF6Fd9B2acc9Af147eA85',
            ens_registry='0x00000000000C2E074eC69A0dFb2997BA6C7d2e1e',
            public_resolver='0x231b0Ee14048e9dCcD1d247744d114a4EB5E8E63',
        ),
        'sepolia': NetworkConfig(
            key='sepolia',
            name='Sepolia Testnet',
            chain_id=11155111,
            currency='SepoliaETH',
            explorer_url='https://sepolia.etherscan.io',
            registrar_controller='0xFED6a969AaA60E4961FCD3EBF1A2e8913ac65B72',
            base_registrar='0x57f1887a8BF19b14fC0dF6Fd9B2acc9Af147eA85',
            ens_registry='0x00000000000C2E074eC69A0dFb2997BA6C7d2e1e',
            public_resolver='0xE99638b40E4Fff0129D56f03b55b6bbC4BBE49b5',
            is_testnet=True,
        ),
    }

    # Across Protocol deployment
    SPOKE_POOLS = {
        1: '0x5c7BCd6E7De5423a257D81B442095A1a6ced35C5',
        8453: '0x09aea4b2242abC8bb4BB78D537A67a245A7bEC64',
    }
    WETH = {
        1: '0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2',
        8453: '0x4200000000000000000000000000000000000006',
    }

    CHAIN_NAMES = {
        1: 'Mainnet',
        8453: 'Base',
        11155111: 'Sepolia',
    }

    @classmethod
    def get_network(cls, key: str) -> NetworkConfig:
        """Get ENS network config by key ('mainnet' or 'sepolia')"""
        network = cls.NETWORKS.get(key.lower())
        if network is None:
            raise KeyError(f"Unknown network: {key}")
        return network

    @classmethod
    def get_chain_name(cls, chain_id: int) -> str:
        return cls.CHAIN_NAMES.get(chain_id, str(chain_id))

    @classmethod
    def get_spoke_pool(cls, chain_id: int) -> str:
        return cls.SPOKE_POOLS[chain_id]

    @classmethod
    def get_weth(cls, chain_id: int) -> str:
        return cls.WETH[chain_id]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {raw!r}")


def _eth_env(name: str, default: str) -> int:
    """Read an ETH amount and return it in wei"""
    raw = os.getenv(name, default)
    try:
        return int(Decimal(raw) * WEI_PER_ETH)
    except ArithmeticError:
        raise ValueError(f"Invalid ETH amount for {name}: {raw!r}")


def _int_list_env(name: str) -> List[int]:
    ids = []
    for part in os.getenv(name, '').split(','):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            logger.warning(f"⚠️ Ignoring invalid id in {name}: {part}")
    return ids


@dataclass
class Settings:
    """Runtime settings read from the environment"""
    mainnet_rpc_url: str
    base_rpc_url: str
    sepolia_rpc_url: str
    across_api_url: str
    signing_gateway_url: str
    signing_gateway_api_key: str
    interaction_webhook_secret: str
    required_buffer_percent: int
    gas_reserve_wei: int
    min_commitment_age: int
    max_commitment_age: int
    selection_ttl: int
    bridge_ttl: int
    subdomain_ttl: int
    bridge_poll_interval: int
    bridge_max_wait: int
    bridge_fill_deadline: int
    store_sweep_interval: int
    webhook_public_url: str
    port: int
    admin_user_ids: List[int]

    @classmethod
    def from_env(cls) -> 'Settings':
        admin_ids = _int_list_env('ADMIN_USER_ID') + _int_list_env('ADDITIONAL_ADMIN_USER_IDS')
        settings = cls(
            mainnet_rpc_url=os.getenv('MAINNET_RPC_URL', 'https://ethereum-rpc.publicnode.com'),
            base_rpc_url=os.getenv('BASE_RPC_URL', 'https://mainnet.base.org'),
            sepolia_rpc_url=os.getenv('SEPOLIA_RPC_URL', 'https://ethereum-sepolia-rpc.publicnode.com'),
            across_api_url=os.getenv('ACROSS_API_URL', 'https://app.across.to/api').rstrip('/'),
            signing_gateway_url=os.getenv('SIGNING_GATEWAY_URL', '').rstrip('/'),
            signing_gateway_api_key=os.getenv('SIGNING_GATEWAY_API_KEY', ''),
            interaction_webhook_secret=os.getenv('INTERACTION_WEBHOOK_SECRET', ''),
            required_buffer_percent=_int_env('REQUIRED_BUFFER_PERCENT', 10),
            gas_reserve_wei=_eth_env('GAS_RESERVE_ETH', '0.01'),
            min_commitment_age=_int_env('MIN_COMMITMENT_AGE_SECONDS', 60),
            max_commitment_age=_int_env('MAX_COMMITMENT_AGE_SECONDS', 86400),
            selection_ttl=_int_env('SELECTION_TTL_SECONDS', 600),
            bridge_ttl=_int_env('BRIDGE_TTL_SECONDS', 7200),
            subdomain_ttl=_int_env('SUBDOMAIN_TTL_SECONDS', 3600),
            bridge_poll_interval=_int_env('BRIDGE_POLL_INTERVAL_SECONDS', 10),
            bridge_max_wait=_int_env('BRIDGE_MAX_WAIT_SECONDS', 600),
            bridge_fill_deadline=_int_env('BRIDGE_FILL_DEADLINE_SECONDS', 10800),
            store_sweep_interval=_int_env('STORE_SWEEP_INTERVAL_SECONDS', 300),
            webhook_public_url=os.getenv('WEBHOOK_PUBLIC_URL', 'http://localhost:5000').rstrip('/'),
            port=_int_env('PORT', 5000),
            admin_user_ids=admin_ids,
        )
        if settings.required_buffer_percent < 0:
            raise ValueError("REQUIRED_BUFFER_PERCENT must not be negative")
        if settings.min_commitment_age >= settings.max_commitment_age:
            raise ValueError("MIN_COMMITMENT_AGE_SECONDS must be below MAX_COMMITMENT_AGE_SECONDS")
        return settings


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide settings, reading the environment on first use"""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
        logger.info(f"✅ Settings loaded: buffer={_settings.required_buffer_percent}%, "
                    f"commit_age={_settings.min_commitment_age}s")
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None


chain_config = ChainConfig()
