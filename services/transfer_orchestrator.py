"""
Testnet tooling: Sepolia domain transfer and the test wallet picker

/test_transfer moves a Sepolia .eth name from the user's default wallet
with BaseRegistrar.safeTransferFrom. /test_wallet_pick lists every linked
wallet as a form and sends a zero-value self-transfer on Base from the
chosen one, to check that pinned signing works for that wallet.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from chain_config import ChainConfig
from message_utils import (
    escape_html, format_bold, format_eth, format_inline_code, format_link, short_address, truncate_with_ellipsis,
)
from services.correlation_store import CorrelationKey, SagaKind, SagaStores
from services.ens_registry import ENSService, encode_safe_transfer, normalize_label
from services.errors import OrchestrationError, ValidationError
from services.models import (
    DomainTransfer, FormOption, FormRequest, InteractionEvent, PendingSelection, TransactionRequest,
)
from services.wallets import WalletService

logger = logging.getLogger(__name__)

# Confirmations for these ids are not routed anywhere
TEST_TX_PREFIX = "test-tx-"


class TransferOrchestrator:

    def __init__(self, stores: SagaStores, gateway, ens: ENSService, wallets: WalletService,
                 clock: Callable[[], float] = time.time):
        self.stores = stores
        self.gateway = gateway
        self.ens = ens
        self.wallets = wallets
        self._clock = clock

    async def _fail(self, channel_id: Any, status: str, message: str) -> Dict[str, Any]:
        await self.gateway.send_message(channel_id, message)
        return {'success': False, 'status': status, 'message': message}

    # ------------------------------------------------------------------
    # Sepolia transfer
    # ------------------------------------------------------------------

    async def start_test_transfer(self, channel_id: Any, user_id: Any, domain_name: str,
                                  recipient: str) -> Dict[str, Any]:
        network = ChainConfig.get_network('sepolia')
        try:
            label = normalize_label(domain_name)
            domain = f"{label}.eth"

            sender = await self.gateway.get_default_wallet(user_id)
            if not sender:
                return await self._fail(channel_id, 'no_wallet', "❌ No linked wallet found for your account.")

            owner = await self.ens.get_owner(label)
            if owner is None:
                return await self._fail(channel_id, 'not_registered',
                                        f"❌ {format_bold(domain)} is not registered on Sepolia.")
            if owner.lower() != sender.lower():
                return await self._fail(
                    channel_id, 'not_owner',
                    f"❌ {format_bold(domain)} is owned by {format_inline_code(short_address(owner))}, "
                    f"not by your wallet.",
                )

            resolved = await self.ens.resolve_recipient(recipient)
            if resolved.lower() == sender.lower():
                raise ValidationError("The recipient already owns this domain.")
        except OrchestrationError as e:
            status = 'invalid' if isinstance(e, ValidationError) else 'service_error'
            return await self._fail(channel_id, status, f"❌ {escape_html(e.message)}")

        key = CorrelationKey.build(SagaKind.TEST_TRANSFER, channel_id, user_id, label)
        self.stores.transfers.put(key, DomainTransfer(
            user_id=str(user_id),
            channel_id=str(channel_id),
            label=label,
            domain=domain,
            sender=sender,
            recipient=resolved,
            network=network.key,
            created_at=self._clock(),
        ))

        request = TransactionRequest(
            id=str(key),
            title=f"Transfer {domain} (Sepolia)",
            chain_id=network.chain_id,
            to=network.base_registrar,
            value=0,
            data=encode_safe_transfer(sender, resolved, label),
        )
        try:
            await self.gateway.request_transaction(channel_id, user_id, request)
        except OrchestrationError as e:
            self.stores.transfers.delete(key)
            return await self._fail(channel_id, 'service_error', f"❌ {escape_html(e.message)}")

        await self.gateway.send_message(
            channel_id,
            f"✅ {format_bold('Transfer validation passed!')}\n\n"
            f"• Network: {escape_html(network.name)}\n"
            f"• Domain: {format_bold(domain)}\n"
            f"• From: {format_inline_code(short_address(sender))}\n"
            f"• To: {format_inline_code(short_address(resolved))}\n\n"
            f"📤 Please approve the transfer in your wallet.",
        )
        logger.info(f"📤 TRANSFER: {domain} {sender} -> {resolved} requested ({key})")
        return {'success': True, 'status': 'transfer_requested', 'correlation_key': str(key)}

    async def handle_transfer_confirmation(self, key: CorrelationKey, event: InteractionEvent) -> Dict[str, Any]:
        transfer: Optional[DomainTransfer] = self.stores.transfers.pop(key)
        if transfer is None:
            return await self._fail(event.channel_id, 'expired',
                                    "⌛ This transfer has expired. Please run /test_transfer again.")

        if not event.succeeded:
            return await self._fail(
                transfer.channel_id, 'cancelled',
                f"❌ Transfer transaction was cancelled or failed.\n\n"
                f"No changes were made to {format_bold(transfer.domain)} ownership.",
            )

        network = ChainConfig.get_network(transfer.network)
        await self.gateway.send_message(
            transfer.channel_id,
            f"🎉 {format_bold('Transfer successful on Sepolia!')}\n\n"
            f"{format_bold(transfer.domain)} now belongs to {format_inline_code(short_address(transfer.recipient))}.\n"
            f"Transaction: {format_link('View on Sepolia Etherscan', network.tx_url(event.tx_hash))}",
        )
        logger.info(f"✅ TRANSFER: {transfer.domain} transferred ({event.tx_hash})")
        return {'success': True, 'status': 'transferred', 'domain': transfer.domain}

    # ------------------------------------------------------------------
    # Test wallet pick
    # ------------------------------------------------------------------

    async def start_wallet_pick(self, channel_id: Any, user_id: Any) -> Dict[str, Any]:
        try:
            linked = await self.gateway.get_linked_wallets(user_id)
            if not linked:
                return await self._fail(channel_id, 'no_wallets', "⚠️ No linked wallets found.")
            snapshots = await self.wallets.snapshot_all(linked)
        except OrchestrationError as e:
            return await self._fail(channel_id, 'service_error', f"❌ {escape_html(e.message)}")

        key = CorrelationKey.build(SagaKind.TEST_WALLET_PICK, channel_id, user_id,
                                   timestamp=int(self._clock() * 1000))
        self.stores.selections.put(key, PendingSelection(
            user_id=str(user_id),
            channel_id=str(channel_id),
            candidates=snapshots,
            created_at=self._clock(),
        ))

        form = FormRequest(
            id=str(key),
            title="🧪 Pick a wallet for a zero-value test transaction",
            options=[
                FormOption(
                    id=w.address,
                    label=truncate_with_ellipsis(
                        f"{short_address(w.address)} · {w.kind_label} · {format_eth(w.source_balance)} ETH", 64),
                )
                for w in snapshots
            ],
        )
        try:
            await self.gateway.request_selection(channel_id, user_id, form)
        except OrchestrationError as e:
            self.stores.selections.delete(key)
            return await self._fail(channel_id, 'service_error', f"❌ {escape_html(e.message)}")

        return {'success': True, 'status': 'selection_requested', 'correlation_key': str(key)}

    async def handle_wallet_pick(self, key: CorrelationKey, event: InteractionEvent) -> Dict[str, Any]:
        selection: Optional[PendingSelection] = self.stores.selections.get(key)
        if selection is None:
            return await self._fail(event.channel_id, 'expired',
                                    "⚠️ Selection expired. Please run /test_wallet_pick again.")

        wallet = selection.find(event.selected_option_id or '')
        if wallet is None:
            return await self._fail(selection.channel_id, 'invalid_selection',
                                    "⚠️ Invalid wallet selection. Please try again.")
        self.stores.selections.delete(key)

        tx_id = f"{TEST_TX_PREFIX}{selection.channel_id}-{int(self._clock() * 1000)}"
        request = TransactionRequest(
            id=tx_id,
            title="Test Transaction (Zero Value)",
            chain_id=ChainConfig.BASE_CHAIN_ID,
            to=wallet.address,
            value=0,
            data='0x',
            signer_wallet=wallet.address,
        )
        try:
            await self.gateway.request_transaction(selection.channel_id, selection.user_id, request)
        except OrchestrationError as e:
            return await self._fail(selection.channel_id, 'service_error', f"❌ {escape_html(e.message)}")

        await self.gateway.send_message(
            selection.channel_id,
            f"✅ {format_bold('Wallet Selected!')}\n\n"
            f"• Address: {format_inline_code(short_address(wallet.address))}\n"
            f"• Type: {escape_html(wallet.kind_label)}\n"
            f"• Mainnet Balance: {format_eth(wallet.destination_balance)} ETH\n"
            f"• Base Balance: {format_eth(wallet.source_balance)} ETH\n\n"
            f"📤 Please approve the zero-value test transaction (gas only).",
        )
        return {'success': True, 'status': 'test_tx_requested', 'request_id': tx_id}
