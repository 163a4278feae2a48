"""
Funding path analysis

Given wallet snapshots on the source and destination chains, decide which
externally-owned wallets can pay for a registration and how:

    A  direct         destination balance >= required
    B  bridge         EOA source balance >= required + fee
    C  transfer+bridge  a smart account holds required + fee on the source
                      chain and drains it into the EOA, which then bridges

Only EOAs are surfaced as signers. Pure functions, no I/O.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from services.models import FundingPath, WalletSnapshot

logger = logging.getLogger(__name__)


def calculate_required_amount(registration_cost: int, gas_reserve: int, buffer_percent: int) -> int:
    """
    Destination-chain amount needed for a registration.

    (registration_cost + gas_reserve) inflated by buffer_percent, in wei.
    Rounded down to the wei.
    """
    if registration_cost < 0 or gas_reserve < 0 or buffer_percent < 0:
        raise ValueError("Amounts and buffer must not be negative")
    total = registration_cost + gas_reserve
    return total + (total * buffer_percent) // 100


def bridge_output_amount(required: int, fee: int) -> int:
    """Amount delivered on the destination chain after the relay fee"""
    return max(required - fee, 0)


@dataclass
class WalletCapability:
    """One EOA and the cheapest way it can fund the registration"""
    wallet: WalletSnapshot
    path: FundingPath
    estimated_cost: int
    funding_source: Optional[WalletSnapshot] = None

    @property
    def address(self) -> str:
        return self.wallet.address


@dataclass
class FundingAnalysis:
    required_amount: int
    bridge_fee: int
    capabilities: List[WalletCapability] = field(default_factory=list)
    eoa_count: int = 0

    @property
    def has_funds(self) -> bool:
        return bool(self.capabilities)

    @property
    def status(self) -> str:
        if self.eoa_count == 0:
            return 'no_eoa'
        if not self.capabilities:
            return 'no_funds'
        return 'ok'

    def best(self) -> Optional[WalletCapability]:
        return self.capabilities[0] if self.capabilities else None

    def for_address(self, address: str) -> Optional[WalletCapability]:
        for capability in self.capabilities:
            if capability.address.lower() == address.lower():
                return capability
        return None


def _find_funding_source(wallets: Sequence[WalletSnapshot], needed: int) -> Optional[WalletSnapshot]:
    for wallet in wallets:
        if not wallet.is_eoa and wallet.source_balance >= needed:
            return wallet
    return None


def determine_path(wallet: WalletSnapshot, all_wallets: Sequence[WalletSnapshot],
                   required: int, fee: int) -> Optional[WalletCapability]:
    """Cheapest viable path for one wallet, or None. Smart accounts never sign."""
    if not wallet.is_eoa:
        return None

    if wallet.destination_balance >= required:
        return WalletCapability(wallet, FundingPath.DIRECT, required)

    needed_on_source = required + fee
    if wallet.source_balance >= needed_on_source:
        return WalletCapability(wallet, FundingPath.BRIDGE, needed_on_source)

    source = _find_funding_source(all_wallets, needed_on_source)
    if source is not None:
        return WalletCapability(wallet, FundingPath.TRANSFER_THEN_BRIDGE, needed_on_source, funding_source=source)

    return None


def analyze_funding(wallets: Sequence[WalletSnapshot], required: int, fee: int) -> FundingAnalysis:
    """
    Rank every EOA that has a viable path.

    Ordering is by path preference only (A before B before C); wallets with
    the same path keep their input order. The final choice is left to the
    user. An empty result is a normal outcome, never an exception.
    """
    analysis = FundingAnalysis(required_amount=required, bridge_fee=fee)
    eoas = [w for w in wallets if w.is_eoa]
    analysis.eoa_count = len(eoas)

    for wallet in eoas:
        capability = determine_path(wallet, wallets, required, fee)
        if capability is not None:
            analysis.capabilities.append(capability)

    # sorted() is stable, so input order is kept inside each path
    analysis.capabilities = sorted(analysis.capabilities, key=lambda c: c.path.rank)

    logger.info(f"💡 FUNDING: {len(wallets)} wallets, {len(eoas)} EOAs, "
                f"{len(analysis.capabilities)} capable (required={required}, fee={fee})")
    return analysis
