"""
Subdomain assignment saga

/assign_subdomain alice.parent.eth <recipient> issues a single
setSubnodeRecord transaction on the ENS registry, signed by the linked EOA
that owns parent.eth, which creates the subnode, sets its owner and points
it at the public resolver in one step.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from chain_config import ChainConfig, ZERO_ADDRESS
from message_utils import escape_html, format_bold, format_inline_code, format_link, short_address
from services.correlation_store import CorrelationKey, SagaKind, SagaStores
from services.ens_registry import ENSService, encode_set_subnode_record, eth_child_node, namehash, parse_subdomain
from services.errors import OrchestrationError, ValidationError
from services.models import InteractionEvent, SubdomainAssignment, TransactionRequest
from services.wallets import WalletService

logger = logging.getLogger(__name__)


class SubdomainOrchestrator:

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

    async def start_assignment(self, channel_id: Any, user_id: Any, name: str, recipient: str) -> Dict[str, Any]:
        network = ChainConfig.get_network('mainnet')
        try:
            parsed = parse_subdomain(name)
            subdomain, parent, full_name = parsed['subdomain'], parsed['parent'], parsed['full_name']

            owner = await self.ens.get_owner(parent)
            if owner is None:
                return await self._fail(channel_id, 'parent_not_registered',
                                        f"❌ Domain {format_bold(parent + '.eth')} is not registered or has expired.")

            linked = await self.gateway.get_linked_wallets(user_id)
            if not linked:
                return await self._fail(channel_id, 'no_wallets', "❌ No linked wallets found for your account.")

            eoas = await self.wallets.filter_eoas(linked, network.chain_id)
            if not eoas:
                return await self._fail(channel_id, 'no_eoa',
                                        "❌ No EOA wallets found. Only EOA wallets can own ENS domains.")

            owner_wallet = next((w for w in eoas if w.lower() == owner.lower()), None)
            if owner_wallet is None:
                return await self._fail(
                    channel_id, 'not_owner',
                    f"❌ You don't own {format_bold(parent + '.eth')}. "
                    f"Current owner: {format_inline_code(short_address(owner))}",
                )

            resolved = await self.ens.resolve_recipient(recipient)

            parent_node = eth_child_node(parent)
            existing = await self.ens.get_registry_owner(namehash(full_name))
            if existing and existing.lower() != ZERO_ADDRESS:
                return await self._fail(
                    channel_id, 'already_exists',
                    f"❌ Subdomain {format_bold(full_name)} already exists and is owned by "
                    f"{format_inline_code(short_address(existing))}",
                )
        except OrchestrationError as e:
            status = 'invalid' if isinstance(e, ValidationError) else 'service_error'
            return await self._fail(channel_id, status, f"❌ {escape_html(e.message)}")

        key = CorrelationKey.build(SagaKind.SUBDOMAIN, channel_id, timestamp=int(self._clock() * 1000))
        assignment = SubdomainAssignment(
            user_id=str(user_id),
            channel_id=str(channel_id),
            subdomain=subdomain,
            parent=parent,
            full_name=full_name,
            recipient=resolved,
            owner_wallet=owner_wallet,
            created_at=self._clock(),
        )
        self.stores.subdomains.put(key, assignment)

        request = TransactionRequest(
            id=str(key),
            title=f"Assign {full_name}",
            chain_id=network.chain_id,
            to=network.ens_registry,
            value=0,
            data=encode_set_subnode_record(parent_node, subdomain, resolved, network.public_resolver),
            signer_wallet=owner_wallet,
        )
        try:
            await self.gateway.request_transaction(channel_id, user_id, request)
        except OrchestrationError as e:
            self.stores.subdomains.delete(key)
            return await self._fail(channel_id, 'service_error', f"❌ {escape_html(e.message)}")

        await self.gateway.send_message(
            channel_id,
            f"✅ {format_bold('Validation Passed!')}\n\n"
            f"• Subdomain: {format_bold(full_name)}\n"
            f"• Owner Wallet: {format_inline_code(short_address(owner_wallet))}\n"
            f"• Recipient: {format_inline_code(short_address(resolved))}\n\n"
            f"📤 Please approve the transaction to create and configure the subdomain.",
        )
        logger.info(f"📤 SUBDOMAIN: {full_name} -> {resolved} requested ({key})")
        return {'success': True, 'status': 'assignment_requested', 'correlation_key': str(key),
                'full_name': full_name, 'recipient': resolved}

    async def handle_confirmation(self, key: CorrelationKey, event: InteractionEvent) -> Dict[str, Any]:
        assignment: Optional[SubdomainAssignment] = self.stores.subdomains.pop(key)
        if assignment is None:
            return await self._fail(event.channel_id, 'expired',
                                    "⌛ This subdomain assignment has expired. Please run /assign_subdomain again.")

        if not event.succeeded:
            return await self._fail(
                assignment.channel_id, 'cancelled',
                f"❌ {format_bold('Transaction cancelled')}\n\n"
                f"Subdomain assignment for {format_bold(assignment.full_name)} has been cancelled.\n"
                f"You can try again with /assign_subdomain {escape_html(assignment.full_name)} "
                f"{escape_html(assignment.recipient)}",
            )

        network = ChainConfig.get_network('mainnet')
        await self.gateway.send_message(
            assignment.channel_id,
            f"🎉 {format_bold('Subdomain assignment complete!')}\n\n"
            f"• Subdomain: {format_bold(assignment.full_name)}\n"
            f"• Owner: {format_inline_code(short_address(assignment.recipient))}\n"
            f"• Resolver: ENS Public Resolver\n"
            f"• Transaction: {format_link('View on Etherscan', network.tx_url(event.tx_hash))}",
        )
        logger.info(f"✅ SUBDOMAIN: {assignment.full_name} assigned ({event.tx_hash})")
        return {'success': True, 'status': 'assigned', 'full_name': assignment.full_name}
