"""
Shared test fixtures for the ENS bridge bot test suite
Fakes for every collaborator, a manual scheduler and wallet factories
"""

import os
import logging
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import factory
import pytest
from eth_utils import to_checksum_address

from chain_config import ChainConfig, Settings, ZERO_ADDRESS
from services.across import AcrossService, BridgeQuote
from services.bridge_orchestrator import BridgeOrchestrator
from services.correlation_store import SagaStores
from services.dispatcher import ResponseDispatcher
from services.ens_registry import is_valid_address
from services.errors import ExternalServiceError, ValidationError
from services.funding_orchestrator import FundingOrchestrator
from services.interaction_gateway import CallbackTokenStore
from services.models import WalletSnapshot
from services.registration_orchestrator import RegistrationOrchestrator
from services.scheduler import DeferredTask
from services.subdomain_orchestrator import SubdomainOrchestrator
from services.transfer_orchestrator import TransferOrchestrator
from utils.abi import checksum

logging.basicConfig(level=logging.DEBUG)

# Alerts are logged only during tests
os.environ.setdefault('ADMIN_ALERTS_ENABLED', 'true')
os.environ.pop('ADMIN_USER_ID', None)


def eth(amount: str) -> int:
    """ETH string to wei"""
    return int(Decimal(amount) * 10 ** 18)


def address(n: int) -> str:
    return to_checksum_address(f"0x{n:040x}")


CHANNEL = 1001
USER = 42


# ====================================================================
# FACTORIES
# ====================================================================

class WalletSnapshotFactory(factory.Factory):  # type: ignore[misc]
    """Factory for wallet snapshots; EOAs with empty balances by default"""
    class Meta:  # type: ignore[misc]
        model = WalletSnapshot

    address = factory.Sequence(lambda n: address(0x1000 + n))
    is_eoa = True
    destination_balance = 0
    source_balance = 0


class SmartAccountFactory(WalletSnapshotFactory):
    is_eoa = False


# ====================================================================
# FAKES
# ====================================================================

class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualScheduler:
    """Records continuations; tests run them explicitly instead of sleeping"""

    def __init__(self):
        self.handles: List[DeferredTask] = []
        self._ran = set()

    def schedule(self, delay, callback, name=''):
        handle = DeferredTask(name, delay)
        handle.callback = callback
        self.handles.append(handle)
        return handle

    def pending(self) -> List[DeferredTask]:
        return [h for h in self.handles if not h.cancelled and id(h) not in self._ran]

    async def run_pending(self) -> List[Any]:
        results = []
        for handle in self.pending():
            self._ran.add(id(handle))
            results.append(await handle.callback())
        return results

    async def shutdown(self) -> None:
        for handle in self.pending():
            handle.cancel()


class FakeGateway:
    """Records outbound messages and action requests"""

    def __init__(self):
        self.messages: List[tuple] = []
        self.transactions: List[tuple] = []
        self.forms: List[tuple] = []
        self.linked: Dict[str, List[str]] = {}
        self.defaults: Dict[str, str] = {}
        self.fail_transactions = False
        self.tokens = CallbackTokenStore()

    async def send_message(self, channel_id, text):
        self.messages.append((channel_id, text))

    async def request_transaction(self, channel_id, user_id, request):
        if self.fail_transactions:
            raise ExternalServiceError("Could not send the transaction request. Please try again.")
        self.transactions.append((channel_id, user_id, request))

    async def request_selection(self, channel_id, user_id, form):
        self.forms.append((channel_id, user_id, form))

    async def get_linked_wallets(self, user_id):
        return list(self.linked.get(str(user_id), []))

    async def get_default_wallet(self, user_id):
        if str(user_id) in self.defaults:
            return self.defaults[str(user_id)]
        wallets = self.linked.get(str(user_id), [])
        return wallets[0] if wallets else None

    def link(self, user_id, *addresses):
        self.linked[str(user_id)] = list(addresses)

    @property
    def last_transaction(self):
        return self.transactions[-1][2]

    @property
    def last_form(self):
        return self.forms[-1][2]

    @property
    def last_message(self) -> str:
        return self.messages[-1][1]


class FakeENS:
    def __init__(self, network_key: str = 'mainnet', cost: int = eth('0.01')):
        self.network = ChainConfig.get_network(network_key)
        self.available = True
        self.cost = cost
        self.owners: Dict[str, str] = {}
        self.registry_owners: Dict[bytes, str] = {}
        self.names: Dict[str, str] = {}
        self.cost_calls = 0
        self.error: Optional[Exception] = None

    async def check_availability(self, label):
        if self.error:
            raise self.error
        return self.available

    async def get_registration_cost(self, label, years):
        self.cost_calls += 1
        return self.cost * years

    async def get_owner(self, label):
        return self.owners.get(label)

    async def get_registry_owner(self, node):
        return self.registry_owners.get(node, ZERO_ADDRESS)

    async def resolve_recipient(self, recipient):
        if is_valid_address(recipient):
            return checksum(recipient)
        if recipient in self.names:
            return self.names[recipient]
        raise ValidationError(f'Failed to resolve ENS name "{recipient}"')


class FakeAcross(AcrossService):
    """Real instruction builder, canned quotes and statuses"""

    def __init__(self, fee: int = eth('0.001')):
        super().__init__('https://across.test')
        self.fee = fee
        self.quote_error: Optional[Exception] = None
        self.statuses: List[Any] = []
        self.quote_calls = 0

    async def get_quote(self, amount, origin_chain=ChainConfig.BASE_CHAIN_ID,
                        destination_chain=ChainConfig.MAINNET_CHAIN_ID):
        self.quote_calls += 1
        if self.quote_error:
            raise self.quote_error
        return BridgeQuote(
            fee_wei=self.fee,
            estimated_fill_seconds=60,
            is_amount_too_low=False,
            quote_timestamp=1_700_000_000,
            spoke_pool=ChainConfig.get_spoke_pool(origin_chain),
        )

    async def get_deposit_status(self, deposit_tx_hash, origin_chain=ChainConfig.BASE_CHAIN_ID):
        if not self.statuses:
            return 'pending'
        status = self.statuses.pop(0)
        if isinstance(status, Exception):
            raise status
        return status


class FakeWallets:
    def __init__(self):
        self.snapshots: Dict[str, WalletSnapshot] = {}

    def add(self, *snapshots: WalletSnapshot) -> List[str]:
        for snapshot in snapshots:
            self.snapshots[snapshot.address] = snapshot
        return [s.address for s in snapshots]

    async def get_balance(self, address, chain_id):
        snapshot = self.snapshots[checksum(address)]
        if chain_id == ChainConfig.BASE_CHAIN_ID:
            return snapshot.source_balance
        return snapshot.destination_balance

    async def is_smart_account(self, address, chain_id=None):
        return not self.snapshots[checksum(address)].is_eoa

    async def snapshot(self, address):
        return self.snapshots[checksum(address)]

    async def snapshot_all(self, addresses):
        return [self.snapshots[checksum(a)] for a in addresses]

    async def filter_eoas(self, addresses, chain_id=None):
        return [a for a in addresses if self.snapshots[checksum(a)].is_eoa]


# ====================================================================
# FIXTURES
# ====================================================================

@pytest.fixture
def settings():
    return Settings(
        mainnet_rpc_url='http://mainnet.test',
        base_rpc_url='http://base.test',
        sepolia_rpc_url='http://sepolia.test',
        across_api_url='https://across.test',
        signing_gateway_url='https://gateway.test',
        signing_gateway_api_key='gateway-key',
        interaction_webhook_secret='',
        required_buffer_percent=10,
        gas_reserve_wei=eth('0.01'),
        min_commitment_age=60,
        max_commitment_age=86400,
        selection_ttl=600,
        bridge_ttl=7200,
        subdomain_ttl=3600,
        bridge_poll_interval=10,
        bridge_max_wait=600,
        bridge_fill_deadline=10800,
        store_sweep_interval=300,
        webhook_public_url='http://localhost:5000',
        port=5000,
        admin_user_ids=[],
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def saga(settings, clock):
    """Every orchestrator wired to fakes"""
    stores = SagaStores(
        commitment_ttl=settings.max_commitment_age,
        bridge_ttl=settings.bridge_ttl,
        selection_ttl=settings.selection_ttl,
        subdomain_ttl=settings.subdomain_ttl,
        clock=clock,
    )
    scheduler = ManualScheduler()
    gateway = FakeGateway()
    ens = {'mainnet': FakeENS('mainnet'), 'sepolia': FakeENS('sepolia')}
    across = FakeAcross()
    wallets = FakeWallets()

    registration = RegistrationOrchestrator(stores, gateway, ens, scheduler, settings, clock=clock)
    bridge = BridgeOrchestrator(stores, gateway, across, wallets, registration, scheduler, settings, clock=clock)
    funding = FundingOrchestrator(stores, gateway, ens['mainnet'], wallets, across, registration, bridge,
                                  settings, clock=clock)
    subdomains = SubdomainOrchestrator(stores, gateway, ens['mainnet'], wallets, clock=clock)
    transfers = TransferOrchestrator(stores, gateway, ens['sepolia'], wallets, clock=clock)
    dispatcher = ResponseDispatcher(gateway, registration, bridge, funding, subdomains, transfers)

    return SimpleNamespace(
        settings=settings, clock=clock, stores=stores, scheduler=scheduler, gateway=gateway,
        ens=ens, across=across, wallets=wallets, registration=registration, bridge=bridge,
        funding=funding, subdomains=subdomains, transfers=transfers, dispatcher=dispatcher,
    )
