"""
Bridge Orchestrator - moves ETH from Base to mainnet ahead of a registration

Path B: one Across deposit from the chosen EOA to itself.
Path C: a sub-saga of two confirmed steps. The smart account first sends
required + fee to the EOA (bridge-fund- key). Only after that transfer is
confirmed, and the EOA balance re-read, is a fresh quote taken and the
deposit requested under the bridge-eoa- key.

After a confirmed deposit the fill status is polled. A fill hands the EOA
to the Registration Saga as owner and pinned signer.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from admin_alerts import send_error_alert, send_warning_alert
from chain_config import ChainConfig, Settings
from message_utils import escape_html, format_bold, format_duration, format_eth, format_inline_code, short_address
from services.across import AcrossService, BridgeQuote
from services.correlation_store import CorrelationKey, SagaKind, SagaStores
from services.errors import ExternalServiceError, OrchestrationError
from services.funding_analyzer import bridge_output_amount
from services.models import (
    BridgeOperation, BridgeStage, BridgeStatus, FundingPath, InteractionEvent, TransactionRequest,
)
from services.registration_orchestrator import RegistrationOrchestrator
from services.scheduler import DeferredTask, TaskScheduler
from services.wallets import WalletService

logger = logging.getLogger(__name__)


class BridgeOrchestrator:
    """Across bridge saga feeding the Registration Saga"""

    def __init__(self, stores: SagaStores, gateway, across: AcrossService, wallets: WalletService,
                 registration: RegistrationOrchestrator, scheduler: TaskScheduler, settings: Settings,
                 clock: Callable[[], float] = time.time):
        self.stores = stores
        self.gateway = gateway
        self.across = across
        self.wallets = wallets
        self.registration = registration
        self.scheduler = scheduler
        self.settings = settings
        self._clock = clock
        self._pollers: Dict[CorrelationKey, DeferredTask] = {}
        stores.bridges.on_evict(self._on_bridge_evicted)

    def _cancel_poller(self, key: CorrelationKey) -> None:
        handle = self._pollers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _on_bridge_evicted(self, key: CorrelationKey, operation: BridgeOperation) -> None:
        logger.info(f"🧹 BRIDGE: {key} expired in status {operation.status.value}")
        self._cancel_poller(key)

    async def _fail(self, channel_id: Any, status: str, message: str, **extra) -> Dict[str, Any]:
        await self.gateway.send_message(channel_id, message)
        result = {'success': False, 'status': status, 'message': message}
        result.update(extra)
        return result

    def _store(self, key: CorrelationKey, operation: BridgeOperation) -> None:
        if self.stores.bridges.put(key, operation) is not None:
            logger.info(f"🔁 BRIDGE: {key} superseded an earlier bridge")
            self._cancel_poller(key)

    # ------------------------------------------------------------------
    # Path B
    # ------------------------------------------------------------------

    async def start_bridge(self, channel_id: Any, user_id: Any, label: str, years: int, wallet: str,
                           required_amount: int, quote: Optional[BridgeQuote] = None) -> Dict[str, Any]:
        """
        Bridge required_amount from wallet on Base to the same wallet on mainnet.

        A quote is fetched when none is given; any quote failure stops the
        saga before a transaction is requested.
        """
        try:
            if quote is None:
                quote = await self.across.get_quote(required_amount)
        except OrchestrationError as e:
            return await self._fail(channel_id, 'quote_failed', f"❌ {escape_html(e.message)}")

        operation = BridgeOperation(
            user_id=str(user_id),
            channel_id=str(channel_id),
            label=label,
            domain=f"{label}.eth",
            years=years,
            source_chain=ChainConfig.BASE_CHAIN_ID,
            destination_chain=ChainConfig.MAINNET_CHAIN_ID,
            amount=required_amount,
            output_amount=bridge_output_amount(required_amount, quote.fee_wei),
            recipient=wallet,
            depositor=wallet,
            path=FundingPath.BRIDGE,
            created_at=self._clock(),
        )
        key = CorrelationKey.build(SagaKind.BRIDGE_DEPOSIT, channel_id, user_id, label)
        self._store(key, operation)
        return await self._request_deposit(key, operation, quote)

    async def _request_deposit(self, key: CorrelationKey, operation: BridgeOperation,
                               quote: BridgeQuote) -> Dict[str, Any]:
        instruction = self.across.build_deposit(
            quote,
            depositor=operation.depositor,
            recipient=operation.recipient,
            input_amount=operation.amount,
            output_amount=operation.output_amount,
            origin_chain=operation.source_chain,
            destination_chain=operation.destination_chain,
        )
        request = TransactionRequest(
            id=str(key),
            title=f"Bridge {format_eth(operation.amount)} ETH to Mainnet",
            chain_id=operation.source_chain,
            to=instruction.to,
            value=instruction.value,
            data=instruction.data,
            signer_wallet=operation.depositor,
        )
        try:
            await self.gateway.request_transaction(operation.channel_id, operation.user_id, request)
        except OrchestrationError as e:
            self.stores.bridges.delete(key)
            return await self._fail(operation.channel_id, 'service_error', f"❌ {escape_html(e.message)}")

        await self.gateway.send_message(
            operation.channel_id,
            f"🌉 {format_bold('Bridge transaction sent!')}\n\n"
            f"• From: Base {format_inline_code(short_address(operation.depositor))}\n"
            f"• To: Mainnet {format_inline_code(short_address(operation.recipient))}\n"
            f"• Amount: {format_eth(operation.amount)} ETH\n"
            f"• Bridge fee: ~{format_eth(operation.amount - operation.output_amount)} ETH\n"
            f"• You'll receive: ~{format_eth(operation.output_amount)} ETH on Mainnet\n\n"
            f"Please approve the bridge from your Base wallet. Registration starts once the funds arrive.",
        )
        logger.info(f"📤 BRIDGE: deposit requested {key} amount={operation.amount} output={operation.output_amount}")
        return {
            'success': True,
            'status': 'bridge_requested',
            'correlation_key': str(key),
            'amount': operation.amount,
            'output_amount': operation.output_amount,
        }

    # ------------------------------------------------------------------
    # Path C
    # ------------------------------------------------------------------

    async def start_funded_bridge(self, channel_id: Any, user_id: Any, label: str, years: int, wallet: str,
                                  funding_source: str, required_amount: int, bridge_fee: int) -> Dict[str, Any]:
        """First step of Path C: drain required + fee from the smart account into the EOA"""
        transfer_amount = required_amount + bridge_fee
        operation = BridgeOperation(
            user_id=str(user_id),
            channel_id=str(channel_id),
            label=label,
            domain=f"{label}.eth",
            years=years,
            source_chain=ChainConfig.BASE_CHAIN_ID,
            destination_chain=ChainConfig.MAINNET_CHAIN_ID,
            amount=required_amount,
            output_amount=bridge_output_amount(required_amount, bridge_fee),
            recipient=wallet,
            depositor=wallet,
            path=FundingPath.TRANSFER_THEN_BRIDGE,
            stage=BridgeStage.FUNDING_TRANSFER,
            funding_source=funding_source,
            created_at=self._clock(),
        )
        key = CorrelationKey.build(SagaKind.BRIDGE_FUNDING, channel_id, user_id, label)
        self._store(key, operation)

        request = TransactionRequest(
            id=str(key),
            title=f"Move {format_eth(transfer_amount)} ETH to your EOA",
            chain_id=operation.source_chain,
            to=wallet,
            value=transfer_amount,
            data='0x',
            signer_wallet=funding_source,
        )
        try:
            await self.gateway.request_transaction(channel_id, user_id, request)
        except OrchestrationError as e:
            self.stores.bridges.delete(key)
            return await self._fail(channel_id, 'service_error', f"❌ {escape_html(e.message)}")

        await self.gateway.send_message(
            channel_id,
            f"🔄 {format_bold('Step 1/2: Fund your EOA')}\n\n"
            f"• From: Smart Account {format_inline_code(short_address(funding_source))}\n"
            f"• To: EOA {format_inline_code(short_address(wallet))}\n"
            f"• Amount: {format_eth(transfer_amount)} ETH on Base\n\n"
            f"After this transfer confirms you will be asked to approve the bridge.",
        )
        logger.info(f"📤 BRIDGE: funding transfer requested {key} amount={transfer_amount}")
        return {'success': True, 'status': 'funding_requested', 'correlation_key': str(key),
                'amount': transfer_amount}

    async def handle_funding_confirmation(self, key: CorrelationKey, event: InteractionEvent) -> Dict[str, Any]:
        operation: Optional[BridgeOperation] = self.stores.bridges.get(key)
        if operation is None:
            return await self._fail(
                event.channel_id, 'expired',
                "⌛ This bridge request has expired or was already handled. Please run /bridge_register again.",
            )

        if not event.succeeded:
            self.stores.bridges.delete(key)
            return await self._fail(
                operation.channel_id, 'funding_failed',
                f"❌ Funding transfer was cancelled or failed. Registration of "
                f"{format_bold(operation.domain)} cancelled.",
            )

        operation.funding_tx_hash = event.tx_hash
        self.stores.bridges.delete(key)

        try:
            balance = await self.wallets.get_balance(operation.depositor, operation.source_chain)
            if balance < operation.amount:
                logger.warning(f"⚠️ BRIDGE: {key} EOA holds {balance} after funding, needs {operation.amount}")
                return await self._fail(
                    operation.channel_id, 'insufficient_funds',
                    f"⚠️ Your EOA holds {format_eth(balance)} ETH on Base after the transfer but "
                    f"{format_eth(operation.amount)} ETH is needed. Please run /bridge_register again.",
                )
            quote = await self.across.get_quote(operation.amount)
        except OrchestrationError as e:
            return await self._fail(operation.channel_id, 'quote_failed', f"❌ {escape_html(e.message)}")

        operation.output_amount = bridge_output_amount(operation.amount, quote.fee_wei)
        operation.stage = BridgeStage.DEPOSIT
        deposit_key = CorrelationKey(SagaKind.BRIDGE_DEPOSIT, key.body)
        self._store(deposit_key, operation)

        await self.gateway.send_message(
            operation.channel_id,
            f"✅ {format_bold('Funding transfer confirmed!')}\n\n🌉 Step 2/2: bridging to Mainnet.",
        )
        return await self._request_deposit(deposit_key, operation, quote)

    # ------------------------------------------------------------------
    # Deposit confirmation and fill polling
    # ------------------------------------------------------------------

    async def handle_deposit_confirmation(self, key: CorrelationKey, event: InteractionEvent) -> Dict[str, Any]:
        operation: Optional[BridgeOperation] = self.stores.bridges.get(key)
        if operation is None:
            return await self._fail(
                event.channel_id, 'expired',
                "⌛ This bridge request has expired or was already handled. Please run /bridge_register again.",
            )

        if operation.status is not BridgeStatus.PENDING:
            logger.warning(f"⚠️ BRIDGE: duplicate deposit confirmation for {key}")
            return {'success': True, 'status': 'duplicate', 'correlation_key': str(key)}

        if not event.succeeded:
            self.stores.bridges.delete(key)
            return await self._fail(
                operation.channel_id, 'bridge_failed',
                f"❌ Bridge transaction was cancelled or failed. No funds were moved for "
                f"{format_bold(operation.domain)}.",
            )

        operation.deposit_tx_hash = event.tx_hash
        operation.advance(BridgeStatus.SUBMITTED)
        self._schedule_poll(key, self._clock())

        await self.gateway.send_message(
            operation.channel_id,
            f"✅ {format_bold('Bridge deposit confirmed on Base!')}\n\n"
            f"⏳ Waiting for the funds to arrive on Mainnet. I'll start the registration of "
            f"{format_bold(operation.domain)} automatically.",
        )
        logger.info(f"🌉 BRIDGE: {key} submitted ({event.tx_hash})")
        return {'success': True, 'status': 'submitted', 'correlation_key': str(key)}

    def _schedule_poll(self, key: CorrelationKey, started_at: float) -> None:
        self._cancel_poller(key)
        self._pollers[key] = self.scheduler.schedule(
            self.settings.bridge_poll_interval,
            lambda: self.poll_fill_status(key, started_at),
            name=f"bridge-poll:{key}",
        )

    async def poll_fill_status(self, key: CorrelationKey, started_at: float) -> Dict[str, Any]:
        """One polling round; reschedules itself while the deposit is pending"""
        self._pollers.pop(key, None)
        operation: Optional[BridgeOperation] = self.stores.bridges.get(key)
        if operation is None:
            logger.info(f"🔍 BRIDGE: {key} gone, polling stopped")
            return {'success': False, 'status': 'expired'}

        try:
            try:
                status = await self.across.get_deposit_status(operation.deposit_tx_hash, operation.source_chain)
            except ExternalServiceError as e:
                # A failed status read is not a failed bridge
                logger.warning(f"⚠️ BRIDGE: status check failed for {key}: {e}")
                status = 'pending'

            if status == 'filled':
                return await self._on_filled(key, operation)
            if status == 'expired':
                return await self._on_expired(key, operation)

            if self._clock() - started_at >= self.settings.bridge_max_wait:
                self.stores.bridges.delete(key)
                await send_warning_alert(
                    "BridgeOrchestrator",
                    f"Bridge fill not observed within {self.settings.bridge_max_wait}s",
                    "bridge",
                    {'correlation_key': str(key), 'deposit_tx': operation.deposit_tx_hash},
                )
                return await self._fail(
                    operation.channel_id, 'timeout',
                    f"⏳ The bridge is taking longer than expected. Once the funds arrive on Mainnet, "
                    f"run /register {escape_html(operation.label)} to finish.",
                )

            self._schedule_poll(key, started_at)
            return {'success': True, 'status': 'pending', 'correlation_key': str(key)}

        except Exception as e:
            logger.error(f"❌ BRIDGE: polling failed for {key}: {e}", exc_info=True)
            self.stores.bridges.delete(key)
            await send_error_alert(
                "BridgeOrchestrator",
                f"Bridge polling crashed for {operation.domain}: {e}",
                "bridge",
                {'correlation_key': str(key)},
            )
            return await self._fail(
                operation.channel_id, 'error',
                "❌ An error occurred while tracking your bridge. Check your Mainnet balance and "
                "use /register once the funds arrive.",
            )

    async def _on_filled(self, key: CorrelationKey, operation: BridgeOperation) -> Dict[str, Any]:
        operation.advance(BridgeStatus.FILLED)
        self.stores.bridges.delete(key)
        elapsed = int(self._clock() - operation.created_at)
        await self.gateway.send_message(
            operation.channel_id,
            f"🎉 {format_bold('Bridge complete!')}\n\n"
            f"~{format_eth(operation.output_amount)} ETH arrived on Mainnet after {format_duration(elapsed)}.\n"
            f"Starting the registration of {format_bold(operation.domain)}...",
        )
        logger.info(f"✅ BRIDGE: {key} filled, handing off to registration")

        result = await self.registration.start_registration(
            operation.channel_id,
            operation.user_id,
            operation.label,
            years=operation.years,
            owner=operation.recipient,
            signer_wallet=operation.recipient,
        )
        return {'success': result.get('success', False), 'status': 'filled', 'registration': result}

    async def _on_expired(self, key: CorrelationKey, operation: BridgeOperation) -> Dict[str, Any]:
        operation.advance(BridgeStatus.EXPIRED)
        self.stores.bridges.delete(key)
        logger.warning(f"⚠️ BRIDGE: {key} expired without a fill")
        return await self._fail(
            operation.channel_id, 'bridge_expired',
            f"⌛ The bridge deposit expired without being filled. Across refunds the deposit to "
            f"{format_inline_code(short_address(operation.depositor))} on Base.",
        )
