"""
Response Dispatcher

Single entry point for confirmation and selection events. The correlation
key's saga kind picks the handler; the handler does its own store lookup
with the full key, so a consumed or expired key reaches the handler and
comes back as an 'expired' outcome.
"""

import logging
from typing import Any, Awaitable, Callable, Dict

from admin_alerts import send_error_alert
from performance_monitor import OperationTimer
from services.bridge_orchestrator import BridgeOrchestrator
from services.correlation_store import CorrelationKey, SagaKind
from services.funding_orchestrator import FundingOrchestrator
from services.models import InteractionEvent
from services.registration_orchestrator import RegistrationOrchestrator
from services.subdomain_orchestrator import SubdomainOrchestrator
from services.transfer_orchestrator import TransferOrchestrator

logger = logging.getLogger(__name__)

Handler = Callable[[CorrelationKey, InteractionEvent], Awaitable[Dict[str, Any]]]


class ResponseDispatcher:

    def __init__(self, gateway, registration: RegistrationOrchestrator, bridge: BridgeOrchestrator,
                 funding: FundingOrchestrator, subdomains: SubdomainOrchestrator,
                 transfers: TransferOrchestrator):
        self.gateway = gateway
        self._routes: Dict[SagaKind, Handler] = {
            SagaKind.COMMIT: registration.handle_commit_confirmation,
            SagaKind.TEST_COMMIT: registration.handle_commit_confirmation,
            SagaKind.REGISTER: registration.handle_reveal_confirmation,
            SagaKind.TEST_REGISTER: registration.handle_reveal_confirmation,
            SagaKind.BRIDGE_DEPOSIT: bridge.handle_deposit_confirmation,
            SagaKind.BRIDGE_FUNDING: bridge.handle_funding_confirmation,
            SagaKind.WALLET_SELECT: funding.handle_selection,
            SagaKind.TEST_WALLET_PICK: transfers.handle_wallet_pick,
            SagaKind.SUBDOMAIN: subdomains.handle_confirmation,
            SagaKind.TEST_TRANSFER: transfers.handle_transfer_confirmation,
        }

    async def dispatch(self, event: InteractionEvent) -> Dict[str, Any]:
        key = CorrelationKey.parse(event.request_id)
        if key is None:
            # Other subsystems share the event stream
            logger.debug(f"🔍 DISPATCH: ignoring unrecognised request id {event.request_id}")
            return {'success': False, 'status': 'ignored', 'request_id': event.request_id}

        handler = self._routes[key.kind]
        logger.info(f"📨 DISPATCH: {key.kind.name} event for {key} (tx={event.tx_hash or '-'})")
        try:
            with OperationTimer(f"dispatch_{key.kind.name.lower()}"):
                result = await handler(key, event)
        except Exception as e:
            logger.error(f"❌ DISPATCH: handler for {key} failed: {e}", exc_info=True)
            await send_error_alert(
                "ResponseDispatcher",
                f"Unhandled error while processing {key.kind.name} event: {e}",
                "webhook",
                {'correlation_key': str(key), 'tx_hash': event.tx_hash},
            )
            if event.channel_id:
                await self.gateway.send_message(
                    event.channel_id,
                    "❌ Something went wrong while processing your response. Please try again.",
                )
            return {'success': False, 'status': 'error', 'error': str(e), 'correlation_key': str(key)}

        result = dict(result)
        result.setdefault('correlation_key', str(key))
        logger.info(f"✅ DISPATCH: {key} -> {result.get('status')}")
        return result
