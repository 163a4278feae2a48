"""
ENS Registration Orchestrator - commit-reveal saga

State machine per correlation key:

    Idle -> CommitSubmitted -> CommitConfirmed (waiting) -> RevealSubmitted -> Complete | Failed

- The commitment record is stored under the commit key before the commit
  request leaves, and the secret is generated once per record.
- A confirmed commit schedules the reveal after the minimum commitment age
  through a cancellable DeferredTask; nothing else can issue the reveal early.
- The reveal key shares the commit key's body, so its confirmation finds the
  original record.
- A failed commit deletes the record. A failed reveal keeps it: the
  commitment stays valid on-chain until the maximum commitment age and the
  user can retry with /retry_register.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from admin_alerts import send_error_alert
from chain_config import ChainConfig, NetworkConfig, Settings
from message_utils import escape_html, format_bold, format_duration, format_eth, format_link, format_inline_code
from services.correlation_store import CorrelationKey, SagaKind, SagaStores
from services.ens_registry import (
    ENSService, encode_commit, encode_register, generate_secret, make_commitment,
    normalize_label, parse_years, years_to_duration,
)
from services.errors import OrchestrationError
from services.models import InteractionEvent, RegistrationCommitment, TransactionRequest
from services.scheduler import DeferredTask, TaskScheduler

logger = logging.getLogger(__name__)


class RegistrationOrchestrator:
    """Drives commit-reveal registrations on mainnet and Sepolia"""

    def __init__(self, stores: SagaStores, gateway, ens_services: Dict[str, ENSService],
                 scheduler: TaskScheduler, settings: Settings, clock: Callable[[], float] = time.time):
        self.stores = stores
        self.gateway = gateway
        self.ens_services = ens_services
        self.scheduler = scheduler
        self.settings = settings
        self._clock = clock
        self._timers: Dict[CorrelationKey, DeferredTask] = {}
        stores.commitments.on_evict(self._on_commitment_evicted)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _commit_kind(testnet: bool) -> SagaKind:
        return SagaKind.TEST_COMMIT if testnet else SagaKind.COMMIT

    @staticmethod
    def _network(testnet: bool) -> NetworkConfig:
        return ChainConfig.get_network('sepolia' if testnet else 'mainnet')

    def _ens(self, network: NetworkConfig) -> ENSService:
        return self.ens_services[network.key]

    def _cancel_timer(self, key: CorrelationKey) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _on_commitment_evicted(self, key: CorrelationKey, record: RegistrationCommitment) -> None:
        logger.info(f"🧹 REGISTRATION: commitment {key} expired")
        self._cancel_timer(key)

    def has_pending_timer(self, key: CorrelationKey) -> bool:
        handle = self._timers.get(key)
        return handle is not None and not handle.cancelled and not handle.done()

    async def _fail(self, channel_id: Any, status: str, message: str, **extra) -> Dict[str, Any]:
        await self.gateway.send_message(channel_id, message)
        result = {'success': False, 'status': status, 'message': message}
        result.update(extra)
        return result

    # ------------------------------------------------------------------
    # Idle -> CommitSubmitted
    # ------------------------------------------------------------------

    async def start_registration(
        self,
        channel_id: Any,
        user_id: Any,
        domain_name: str,
        years: Optional[Any] = None,
        owner: Optional[str] = None,
        signer_wallet: Optional[str] = None,
        testnet: bool = False,
    ) -> Dict[str, Any]:
        """
        Begin a registration: validate, check availability, store the
        commitment and request the commit transaction.

        Args:
            channel_id: Chat the saga reports to
            user_id: Requesting user
            domain_name: 'label' or 'label.eth'
            years: Duration in years (int or raw string), default 1
            owner: Owner address; the user's default wallet when omitted
            signer_wallet: Pin both transactions to this wallet
            testnet: Run against Sepolia with the test key prefixes

        Returns:
            Dict with 'success', 'status' and the correlation key when started
        """
        network = self._network(testnet)
        try:
            label = normalize_label(domain_name)
            years = parse_years(None if years is None else str(years))
        except OrchestrationError as e:
            return await self._fail(channel_id, 'invalid', f"❌ {escape_html(e.message)}")

        domain = f"{label}.eth"
        logger.info(f"🎯 REGISTRATION: start {domain} on {network.key} for user {user_id}")

        try:
            ens = self._ens(network)
            if not await ens.check_availability(label):
                return await self._fail(
                    channel_id, 'unavailable',
                    f"❌ {format_bold(domain)} is not available for registration.",
                )

            if owner is None:
                owner = await self.gateway.get_default_wallet(user_id)
            if not owner:
                return await self._fail(
                    channel_id, 'no_wallet',
                    "❌ No linked wallet found. Link a wallet and try again.",
                )

            cost = await ens.get_registration_cost(label, years)
        except OrchestrationError as e:
            return await self._fail(channel_id, 'service_error', f"❌ {escape_html(e.message)}")

        key = CorrelationKey.build(self._commit_kind(testnet), channel_id, user_id, label)
        duration = years_to_duration(years)
        secret = generate_secret()
        resolver = network.public_resolver
        commitment = make_commitment(label, owner, duration, secret, resolver, reverse_record=True)

        record = RegistrationCommitment(
            user_id=str(user_id),
            channel_id=str(channel_id),
            label=label,
            domain=domain,
            commitment=commitment,
            secret=secret,
            owner=owner,
            duration=duration,
            network=network.key,
            resolver=resolver,
            reverse_record=True,
            signer_wallet=signer_wallet,
            created_at=self._clock(),
        )

        superseded = self.stores.commitments.put(key, record)
        if superseded is not None:
            logger.info(f"🔁 REGISTRATION: {key} superseded an earlier request")
            self._cancel_timer(key)

        request = TransactionRequest(
            id=str(key),
            title=f"Commit {domain}" + (" (Sepolia)" if testnet else ""),
            chain_id=network.chain_id,
            to=network.registrar_controller,
            value=0,
            data=encode_commit(commitment),
            signer_wallet=signer_wallet,
        )
        try:
            await self.gateway.request_transaction(channel_id, user_id, request)
        except OrchestrationError as e:
            self.stores.commitments.delete(key)
            return await self._fail(channel_id, 'service_error', f"❌ {escape_html(e.message)}")

        await self.gateway.send_message(
            channel_id,
            f"🔐 {format_bold(f'Step 1/2: Commit {domain}')}\n\n"
            f"Network: {escape_html(network.name)}\n"
            f"Owner: {format_inline_code(owner)}\n"
            f"Estimated cost: {format_eth(cost)} {escape_html(network.currency)}\n\n"
            f"Please approve the commitment transaction. After it confirms there is a "
            f"{format_duration(self.settings.min_commitment_age)} wait before the final step.",
        )
        logger.info(f"📤 REGISTRATION: commit requested {key}")
        return {
            'success': True,
            'status': 'commit_requested',
            'correlation_key': str(key),
            'domain': domain,
            'cost': cost,
        }

    # ------------------------------------------------------------------
    # CommitSubmitted -> CommitConfirmed | Failed
    # ------------------------------------------------------------------

    async def handle_commit_confirmation(self, key: CorrelationKey, event: InteractionEvent) -> Dict[str, Any]:
        record: Optional[RegistrationCommitment] = self.stores.commitments.get(key)
        if record is None:
            logger.warning(f"⚠️ REGISTRATION: no commitment for {key}")
            return await self._fail(
                event.channel_id, 'expired',
                "⌛ This registration has expired or was already handled. Please start again.",
            )

        if record.commit_tx_hash is not None:
            # Late or repeated events must not touch a confirmed commitment or its timer
            logger.warning(f"⚠️ REGISTRATION: duplicate commit confirmation for {key}")
            return {'success': True, 'status': 'duplicate', 'correlation_key': str(key)}

        if not event.succeeded:
            self.stores.commitments.delete(key)
            self._cancel_timer(key)
            logger.info(f"🚫 REGISTRATION: commit declined {key}")
            return await self._fail(
                record.channel_id, 'commit_failed',
                f"❌ Commit transaction was not confirmed. Registration of {format_bold(record.domain)} cancelled.",
            )

        record.commit_tx_hash = event.tx_hash
        record.commit_confirmed_at = self._clock()
        # The on-chain commitment lifetime starts now, not when the commit was requested
        self.stores.commitments.put(key, record)

        delay = self.settings.min_commitment_age
        self._cancel_timer(key)
        self._timers[key] = self.scheduler.schedule(
            delay, lambda: self._reveal_after_delay(key), name=f"reveal:{key}"
        )

        network = ChainConfig.get_network(record.network)
        await self.gateway.send_message(
            record.channel_id,
            f"✅ {format_bold('Commit transaction confirmed!')}\n\n"
            f"Transaction: {format_link('View on explorer', network.tx_url(event.tx_hash))}\n\n"
            f"⏳ Waiting {format_duration(delay)} before the registration step. "
            f"ENS requires this delay to prevent front-running.",
        )
        logger.info(f"⏱️ REGISTRATION: {key} waiting {delay}s before reveal")
        return {'success': True, 'status': 'waiting', 'correlation_key': str(key), 'delay': delay}

    # ------------------------------------------------------------------
    # CommitConfirmed -> RevealSubmitted
    # ------------------------------------------------------------------

    async def _reveal_after_delay(self, key: CorrelationKey) -> None:
        self._timers.pop(key, None)
        record: Optional[RegistrationCommitment] = self.stores.commitments.get(key)
        if record is None:
            logger.info(f"🔍 REGISTRATION: {key} gone before reveal, nothing to do")
            return

        try:
            await self._issue_reveal(key, record)
        except Exception as e:
            logger.error(f"❌ REGISTRATION: reveal preparation failed for {key}: {e}", exc_info=True)
            self.stores.commitments.delete(key)
            command = '/test_register' if record.network == 'sepolia' else '/register'
            await self.gateway.send_message(
                record.channel_id,
                f"❌ An error occurred while preparing the registration transaction for "
                f"{format_bold(record.domain)}. Please start again with {command}.",
            )
            await send_error_alert(
                "RegistrationOrchestrator",
                f"Reveal continuation failed for {record.domain}: {e}",
                "domain_registration",
                {'correlation_key': str(key), 'network': record.network},
            )

    async def _issue_reveal(self, key: CorrelationKey, record: RegistrationCommitment) -> Dict[str, Any]:
        network = ChainConfig.get_network(record.network)
        # Premiums decay, so the price is read again right before the reveal
        cost = await self._ens(network).get_registration_cost(record.label, record.years)
        reveal_key = key.reveal_key()

        request = TransactionRequest(
            id=str(reveal_key),
            title=f"Register {record.domain}" + (" (Sepolia)" if network.is_testnet else ""),
            chain_id=network.chain_id,
            to=network.registrar_controller,
            value=cost,
            data=encode_register(record.label, record.owner, record.duration, record.secret,
                                 record.resolver, reverse_record=record.reverse_record),
            signer_wallet=record.signer_wallet,
        )
        await self.gateway.request_transaction(record.channel_id, record.user_id, request)
        record.reveal_requested = True

        await self.gateway.send_message(
            record.channel_id,
            f"⏰ {format_bold('Step 2/2: Final registration transaction')}\n\n"
            f"Please approve the registration of {format_bold(record.domain)}.\n"
            f"💰 Amount to pay: {format_eth(cost)} {escape_html(network.currency)}",
        )
        logger.info(f"📤 REGISTRATION: reveal requested {reveal_key} value={cost}")
        return {'success': True, 'status': 'reveal_requested', 'correlation_key': str(reveal_key), 'cost': cost}

    # ------------------------------------------------------------------
    # RevealSubmitted -> Complete | Failed
    # ------------------------------------------------------------------

    async def handle_reveal_confirmation(self, key: CorrelationKey, event: InteractionEvent) -> Dict[str, Any]:
        commit_key = key.commit_key()
        record: Optional[RegistrationCommitment] = self.stores.commitments.get(commit_key)
        if record is None:
            logger.warning(f"⚠️ REGISTRATION: no commitment for reveal {key}")
            return await self._fail(
                event.channel_id, 'expired',
                "⌛ This registration has expired or was already handled. Please start again.",
            )

        if record.commit_tx_hash is None or not record.reveal_requested:
            logger.warning(f"⚠️ REGISTRATION: reveal event {key} before any reveal was requested, ignoring")
            return {'success': False, 'status': 'out_of_order', 'correlation_key': str(key)}

        if not event.succeeded:
            logger.info(f"🚫 REGISTRATION: reveal declined {key}, commitment kept")
            command = '/retry_register' + (' test' if record.network == 'sepolia' else '')
            return await self._fail(
                record.channel_id, 'reveal_failed',
                f"❌ Registration transaction was not confirmed.\n\n"
                f"The commitment for {format_bold(record.domain)} is still valid for "
                f"{format_duration(self.settings.max_commitment_age)}. "
                f"Use {escape_html(command)} {escape_html(record.label)} to try again.",
            )

        self.stores.commitments.delete(commit_key)
        self._cancel_timer(commit_key)
        network = ChainConfig.get_network(record.network)

        lines = [
            f"🎉 {format_bold('Registration successful!')}",
            "",
            f"{format_bold(record.domain)} is now registered on {escape_html(network.name)}.",
            "",
            f"• Owner: {format_inline_code(record.owner)}",
            f"• Duration: {record.years} year(s)",
            f"• Registration Tx: {format_link('View on explorer', network.tx_url(event.tx_hash))}",
        ]
        if record.commit_tx_hash:
            lines.append(f"• Commitment Tx: {format_link('View on explorer', network.tx_url(record.commit_tx_hash))}")
        await self.gateway.send_message(record.channel_id, "\n".join(lines))

        logger.info(f"✅ REGISTRATION: {record.domain} registered ({event.tx_hash})")
        return {'success': True, 'status': 'registered', 'domain': record.domain, 'tx_hash': event.tx_hash}

    # ------------------------------------------------------------------
    # Reveal retry
    # ------------------------------------------------------------------

    async def retry_reveal(self, channel_id: Any, user_id: Any, domain_name: str,
                           testnet: bool = False) -> Dict[str, Any]:
        """Re-issue the reveal for a kept commitment inside its validity window"""
        try:
            label = normalize_label(domain_name)
        except OrchestrationError as e:
            return await self._fail(channel_id, 'invalid', f"❌ {escape_html(e.message)}")

        key = CorrelationKey.build(self._commit_kind(testnet), channel_id, user_id, label)
        record: Optional[RegistrationCommitment] = self.stores.commitments.get(key)
        if record is None:
            return await self._fail(
                channel_id, 'not_found',
                f"❌ No pending commitment for {format_bold(label + '.eth')}. Start a new registration.",
            )

        if record.commit_confirmed_at is None:
            return await self._fail(
                channel_id, 'not_confirmed',
                "⏳ The commit transaction has not been confirmed yet.",
            )

        if self.has_pending_timer(key):
            return await self._fail(
                channel_id, 'waiting',
                "⏳ The registration step will be sent automatically once the waiting period ends.",
            )

        age = self._clock() - record.commit_confirmed_at
        if age < self.settings.min_commitment_age:
            remaining = int(self.settings.min_commitment_age - age) + 1
            return await self._fail(
                channel_id, 'too_early',
                f"⏳ Please wait {format_duration(remaining)} more before retrying.",
                remaining=remaining,
            )
        if age > self.settings.max_commitment_age:
            self.stores.commitments.delete(key)
            return await self._fail(
                channel_id, 'commitment_expired',
                f"⌛ The commitment for {format_bold(record.domain)} has expired. Please start again.",
            )

        try:
            return await self._issue_reveal(key, record)
        except OrchestrationError as e:
            return await self._fail(channel_id, 'service_error', f"❌ {escape_html(e.message)}")
