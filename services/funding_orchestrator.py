"""
Funding Orchestrator - the /bridge_register entry point

1. validate the name, check availability and price it
2. compute the buffered required amount
3. snapshot every linked wallet on both chains
4. quote the bridge fee and rank funding paths
5. store a PendingSelection and show one button per capable EOA

When the user picks a wallet the balances are fetched again and the path is
recomputed before any transaction is requested; the prompt-time analysis is
only a suggestion.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from chain_config import Settings
from message_utils import (
    escape_html, format_bold, format_eth, format_inline_code, format_wallet_line,
    format_wallet_option, short_address,
)
from services.across import AcrossService, BridgeQuote
from services.bridge_orchestrator import BridgeOrchestrator
from services.correlation_store import CorrelationKey, SagaKind, SagaStores
from services.ens_registry import ENSService, normalize_label, parse_years
from services.errors import BridgeQuoteError, OrchestrationError
from services.funding_analyzer import FundingAnalysis, analyze_funding, calculate_required_amount
from services.models import (
    FormOption, FormRequest, FundingPath, InteractionEvent, PendingSelection, WalletSnapshot,
)
from services.registration_orchestrator import RegistrationOrchestrator
from services.wallets import WalletService

logger = logging.getLogger(__name__)

PATH_DESCRIPTIONS = {
    FundingPath.DIRECT: "Direct registration on Mainnet",
    FundingPath.BRIDGE: "Bridge from Base, then register",
    FundingPath.TRANSFER_THEN_BRIDGE: "Move funds from your Smart Account, bridge, then register",
}


class FundingOrchestrator:
    """Wallet analysis and selection ahead of a mainnet registration"""

    def __init__(self, stores: SagaStores, gateway, ens: ENSService, wallets: WalletService,
                 across: AcrossService, registration: RegistrationOrchestrator, bridge: BridgeOrchestrator,
                 settings: Settings, clock: Callable[[], float] = time.time):
        self.stores = stores
        self.gateway = gateway
        self.ens = ens
        self.wallets = wallets
        self.across = across
        self.registration = registration
        self.bridge = bridge
        self.settings = settings
        self._clock = clock

    async def _fail(self, channel_id: Any, status: str, message: str, **extra) -> Dict[str, Any]:
        await self.gateway.send_message(channel_id, message)
        result = {'success': False, 'status': status, 'message': message}
        result.update(extra)
        return result

    async def _analyze(self, user_id: Any, required: int) -> Tuple[List[WalletSnapshot], FundingAnalysis,
                                                                   Optional[BridgeQuote], Optional[BridgeQuoteError]]:
        """
        Fresh snapshots, a fresh quote and the ranked paths.

        Without a quote only direct funding is offered, since no bridge
        instruction may be built without one.
        """
        linked = await self.gateway.get_linked_wallets(user_id)
        snapshots = await self.wallets.snapshot_all(linked) if linked else []

        quote: Optional[BridgeQuote] = None
        quote_error: Optional[BridgeQuoteError] = None
        if any(w.is_eoa for w in snapshots):
            try:
                quote = await self.across.get_quote(required)
            except BridgeQuoteError as e:
                quote_error = e

        fee = quote.fee_wei if quote else 0
        analysis = analyze_funding(snapshots, required, fee)
        if quote is None:
            analysis.capabilities = [c for c in analysis.capabilities if c.path is FundingPath.DIRECT]
        return snapshots, analysis, quote, quote_error

    # ------------------------------------------------------------------
    # Initiating request
    # ------------------------------------------------------------------

    async def start_bridge_register(self, channel_id: Any, user_id: Any, domain_name: str,
                                    years: Optional[Any] = None) -> Dict[str, Any]:
        try:
            label = normalize_label(domain_name)
            years = parse_years(None if years is None else str(years))
        except OrchestrationError as e:
            return await self._fail(channel_id, 'invalid', f"⚠️ {escape_html(e.message)}")

        domain = f"{label}.eth"
        logger.info(f"🎯 FUNDING: bridge_register {domain} ({years}y) for user {user_id}")
        await self.gateway.send_message(channel_id, f"🔍 Checking availability for {format_bold(domain)}...")

        try:
            if not await self.ens.check_availability(label):
                return await self._fail(channel_id, 'unavailable',
                                        f"❌ {format_bold(domain)} is not available for registration.")

            cost = await self.ens.get_registration_cost(label, years)
            required = calculate_required_amount(cost, self.settings.gas_reserve_wei,
                                                 self.settings.required_buffer_percent)

            snapshots, analysis, quote, quote_error = await self._analyze(user_id, required)
        except OrchestrationError as e:
            return await self._fail(channel_id, 'service_error', f"❌ {escape_html(e.message)}")

        if not snapshots:
            return await self._fail(
                channel_id, 'no_wallets',
                "⚠️ No linked wallets found.\n\nPlease link an EOA wallet (MetaMask, Coinbase, ...) and try again.",
            )

        if analysis.status == 'no_eoa':
            return await self._fail(
                channel_id, 'no_eoa',
                f"⚠️ {format_bold('No EOA wallets found')}\n\n"
                f"You have {len(snapshots)} linked wallet(s), but they are all smart accounts. "
                f"Please link an EOA wallet to use this feature.",
            )

        if not analysis.has_funds:
            if quote_error is not None:
                return await self._fail(channel_id, 'quote_failed', f"❌ {escape_html(quote_error.message)}")
            return await self._report_no_funds(channel_id, snapshots, required, quote.fee_wei if quote else 0)

        key = CorrelationKey.build(SagaKind.WALLET_SELECT, channel_id, user_id,
                                   timestamp=int(self._clock() * 1000))
        selection = PendingSelection(
            user_id=str(user_id),
            channel_id=str(channel_id),
            candidates=[c.wallet for c in analysis.capabilities],
            label=label,
            domain=domain,
            years=years,
            required_amount=required,
            bridge_fee=analysis.bridge_fee,
            created_at=self._clock(),
        )
        self.stores.selections.put(key, selection)

        form = FormRequest(
            id=str(key),
            title="Select Wallet for Registration",
            options=[
                FormOption(id=c.address, label=format_wallet_option(c.address, c.path.value, c.estimated_cost))
                for c in analysis.capabilities
            ],
        )

        summary = (
            f"✅ {format_bold('Wallet Analysis Complete!')}\n\n"
            f"Found {len(analysis.capabilities)} capable EOA wallet(s).\n\n"
            f"Domain: {format_bold(domain)}\n"
            f"Duration: {years} year{'s' if years > 1 else ''}\n"
            f"Cost: {format_eth(cost)} ETH\n"
            f"Required on Mainnet (incl. gas and buffer): {format_eth(required)} ETH"
        )
        if quote_error is not None:
            summary += "\n\n⚠️ Bridge quotes are unavailable right now, so only direct registration is offered."
        await self.gateway.send_message(channel_id, summary)

        try:
            await self.gateway.request_selection(channel_id, user_id, form)
        except OrchestrationError as e:
            self.stores.selections.delete(key)
            return await self._fail(channel_id, 'service_error', f"❌ {escape_html(e.message)}")

        logger.info(f"📤 FUNDING: selection {key} with {len(form.options)} options")
        return {
            'success': True,
            'status': 'selection_requested',
            'correlation_key': str(key),
            'required_amount': required,
            'bridge_fee': analysis.bridge_fee,
            'paths': {c.address: c.path.value for c in analysis.capabilities},
        }

    async def _report_no_funds(self, channel_id: Any, snapshots: Sequence[WalletSnapshot],
                               required: int, fee: int) -> Dict[str, Any]:
        wallet_lines = "\n\n".join(
            format_wallet_line(w.address, w.kind_label, w.destination_balance, w.source_balance)
            for w in snapshots
        )
        return await self._fail(
            channel_id, 'no_funds',
            f"❌ {format_bold('No capable wallets found')}\n\n"
            f"Required: {format_eth(required)} ETH on Mainnet OR {format_eth(required + fee)} ETH on Base\n\n"
            f"{format_bold('Your Wallets:')}\n{wallet_lines}\n\n"
            f"Please fund one of your EOA wallets and try again.",
            required_amount=required,
        )

    # ------------------------------------------------------------------
    # Selection response
    # ------------------------------------------------------------------

    async def handle_selection(self, key: CorrelationKey, event: InteractionEvent) -> Dict[str, Any]:
        selection: Optional[PendingSelection] = self.stores.selections.get(key)
        if selection is None:
            return await self._fail(event.channel_id, 'expired',
                                    "⚠️ Selection expired. Please run /bridge_register again.")

        if not event.selected_option_id:
            return await self._fail(selection.channel_id, 'no_selection',
                                    "⚠️ No wallet selected. Please try again.")

        chosen = selection.find(event.selected_option_id)
        if chosen is None:
            return await self._fail(selection.channel_id, 'invalid_selection',
                                    "⚠️ Invalid wallet selection. Please try again.")

        # Consumed exactly once from here on
        self.stores.selections.delete(key)

        try:
            _, analysis, quote, quote_error = await self._analyze(selection.user_id, selection.required_amount)
        except OrchestrationError as e:
            return await self._fail(selection.channel_id, 'service_error', f"❌ {escape_html(e.message)}")

        capability = analysis.for_address(chosen.address)
        if capability is None:
            if quote_error is not None:
                return await self._fail(selection.channel_id, 'quote_failed',
                                        f"❌ {escape_html(quote_error.message)}")
            logger.info(f"💡 FUNDING: {short_address(chosen.address)} no longer capable for {selection.domain}")
            return await self._fail(
                selection.channel_id, 'insufficient_funds',
                "⚠️ Selected wallet no longer has sufficient funds. Please run /bridge_register again.",
            )

        await self.gateway.send_message(
            selection.channel_id,
            f"✅ {format_bold('Wallet Selected:')} {format_inline_code(short_address(chosen.address))}\n\n"
            f"Path {capability.path.value}: {escape_html(PATH_DESCRIPTIONS[capability.path])}\n"
            f"Domain: {format_bold(selection.domain)}\n\n"
            f"Proceeding...",
        )

        if capability.path is FundingPath.DIRECT:
            result = await self.registration.start_registration(
                selection.channel_id, selection.user_id, selection.label,
                years=selection.years, owner=chosen.address, signer_wallet=chosen.address,
            )
        elif capability.path is FundingPath.BRIDGE:
            result = await self.bridge.start_bridge(
                selection.channel_id, selection.user_id, selection.label, selection.years,
                wallet=chosen.address, required_amount=selection.required_amount, quote=quote,
            )
        else:
            result = await self.bridge.start_funded_bridge(
                selection.channel_id, selection.user_id, selection.label, selection.years,
                wallet=chosen.address, funding_source=capability.funding_source.address,
                required_amount=selection.required_amount, bridge_fee=analysis.bridge_fee,
            )

        result = dict(result)
        result['path'] = capability.path.value
        return result
