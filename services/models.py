"""
Saga records and interaction payloads

Process-local state only; nothing here is persisted.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from chain_config import SECONDS_PER_YEAR


class FundingPath(Enum):
    """Funding strategies, in order of preference"""
    DIRECT = "A"
    BRIDGE = "B"
    TRANSFER_THEN_BRIDGE = "C"

    @property
    def rank(self) -> int:
        return _PATH_RANK[self]


_PATH_RANK = {
    FundingPath.DIRECT: 0,
    FundingPath.BRIDGE: 1,
    FundingPath.TRANSFER_THEN_BRIDGE: 2,
}


class BridgeStatus(Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    FILLED = "filled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (BridgeStatus.FILLED, BridgeStatus.EXPIRED)


_BRIDGE_STATUS_ORDER = {
    BridgeStatus.PENDING: 0,
    BridgeStatus.SUBMITTED: 1,
    BridgeStatus.FILLED: 2,
    BridgeStatus.EXPIRED: 2,
}


class BridgeStage(Enum):
    """Which external action a bridge saga is waiting on"""
    FUNDING_TRANSFER = "funding_transfer"
    DEPOSIT = "deposit"


@dataclass
class WalletSnapshot:
    """Balances of one linked wallet, fetched fresh per request"""
    address: str
    is_eoa: bool
    destination_balance: int
    source_balance: int

    @property
    def kind_label(self) -> str:
        return "EOA" if self.is_eoa else "Smart Account"


@dataclass
class RegistrationCommitment:
    """Commit-reveal state for one registration"""
    user_id: str
    channel_id: str
    label: str
    domain: str
    commitment: str
    secret: str
    owner: str
    duration: int
    network: str
    resolver: str
    reverse_record: bool = False
    signer_wallet: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    commit_tx_hash: Optional[str] = None
    commit_confirmed_at: Optional[float] = None
    reveal_requested: bool = False

    @property
    def years(self) -> int:
        return max(1, self.duration // SECONDS_PER_YEAR)


@dataclass
class BridgeOperation:
    """Cross-chain value transfer feeding a registration"""
    user_id: str
    channel_id: str
    label: str
    domain: str
    years: int
    source_chain: int
    destination_chain: int
    amount: int
    output_amount: int
    recipient: str
    depositor: str
    path: FundingPath
    stage: BridgeStage = BridgeStage.DEPOSIT
    status: BridgeStatus = BridgeStatus.PENDING
    funding_source: Optional[str] = None
    deposit_tx_hash: Optional[str] = None
    funding_tx_hash: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError("Bridge amount must be positive")

    def advance(self, status: BridgeStatus) -> None:
        """Move status forward; regressions and changes after a terminal state are refused"""
        if self.status.is_terminal:
            raise ValueError(f"Bridge already {self.status.value}")
        if _BRIDGE_STATUS_ORDER[status] < _BRIDGE_STATUS_ORDER[self.status]:
            raise ValueError(f"Cannot move bridge from {self.status.value} to {status.value}")
        self.status = status


@dataclass
class PendingSelection:
    """Wallet-selection prompt waiting for a human response"""
    user_id: str
    channel_id: str
    candidates: List[WalletSnapshot]
    label: str = ''
    domain: str = ''
    years: int = 0
    required_amount: int = 0
    bridge_fee: int = 0
    created_at: float = field(default_factory=time.time)

    def find(self, address: str) -> Optional[WalletSnapshot]:
        for wallet in self.candidates:
            if wallet.address.lower() == address.lower():
                return wallet
        return None


@dataclass
class SubdomainAssignment:
    user_id: str
    channel_id: str
    subdomain: str
    parent: str
    full_name: str
    recipient: str
    owner_wallet: str
    created_at: float = field(default_factory=time.time)


@dataclass
class DomainTransfer:
    user_id: str
    channel_id: str
    label: str
    domain: str
    sender: str
    recipient: str
    network: str
    created_at: float = field(default_factory=time.time)


@dataclass
class TransactionRequest:
    """External action request asking a signer to submit a transaction"""
    id: str
    title: str
    chain_id: int
    to: str
    value: int
    data: str
    signer_wallet: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            'id': self.id,
            'title': self.title,
            'chainId': str(self.chain_id),
            'to': self.to,
            'value': str(self.value),
            'data': self.data,
        }
        if self.signer_wallet:
            payload['signerWallet'] = self.signer_wallet
        return payload


@dataclass
class FormOption:
    id: str
    label: str


@dataclass
class FormRequest:
    """External action request asking the user to pick one option"""
    id: str
    title: str
    options: List[FormOption]


@dataclass
class InteractionEvent:
    """Confirmation or selection coming back from the signing collaborator"""
    request_id: str
    channel_id: str
    user_id: str = ''
    tx_hash: Optional[str] = None
    selected_option_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return bool(self.tx_hash)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> 'InteractionEvent':
        request_id = data.get('requestId') or data.get('request_id')
        if not request_id:
            raise ValueError("Interaction event without requestId")
        return cls(
            request_id=str(request_id),
            channel_id=str(data.get('channelId') or data.get('channel_id') or ''),
            user_id=str(data.get('userId') or data.get('user_id') or ''),
            tx_hash=data.get('txHash') or data.get('tx_hash') or None,
            selected_option_id=data.get('selectedOptionId') or data.get('selected_option_id') or None,
        )
