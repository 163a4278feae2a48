"""
/bridge_register flow tests
Wallet analysis, selection prompt and path dispatch
"""

import pytest

from conftest import CHANNEL, USER, SmartAccountFactory, WalletSnapshotFactory, eth
from services.correlation_store import CorrelationKey, SagaKind
from services.errors import BridgeQuoteError, ExternalServiceError
from services.models import InteractionEvent

REQUIRED = eth('0.022')


def pick(key, option):
    return InteractionEvent(request_id=str(key), channel_id=str(CHANNEL), user_id=str(USER),
                            selected_option_id=option)


def link(saga, *snapshots):
    saga.wallets.add(*snapshots)
    saga.gateway.link(USER, *[s.address for s in snapshots])


async def prompt(saga, name='abc'):
    result = await saga.funding.start_bridge_register(CHANNEL, USER, name)
    return result, CorrelationKey.parse(result.get('correlation_key', '')) if result['success'] else None


class TestStartBridgeRegister:

    async def test_selection_lists_capable_eoas(self, saga):
        direct = WalletSnapshotFactory(destination_balance=eth('0.1'))
        bridge = WalletSnapshotFactory(source_balance=eth('0.1'))
        broke = WalletSnapshotFactory()
        link(saga, direct, bridge, broke)

        result, key = await prompt(saga)

        assert result['status'] == 'selection_requested'
        assert key.kind is SagaKind.WALLET_SELECT
        assert result['required_amount'] == REQUIRED
        assert result['paths'] == {direct.address: 'A', bridge.address: 'B'}

        form = saga.gateway.last_form
        assert form.id == str(key)
        assert [o.id for o in form.options] == [direct.address, bridge.address]
        assert saga.stores.selections.get(key).required_amount == REQUIRED

    async def test_path_c_offered_through_smart_account(self, saga):
        eoa = WalletSnapshotFactory()
        smart = SmartAccountFactory(source_balance=eth('0.1'))
        link(saga, eoa, smart)

        result, _ = await prompt(saga)

        assert result['paths'] == {eoa.address: 'C'}

    async def test_no_wallets(self, saga):
        result, _ = await prompt(saga)
        assert result['status'] == 'no_wallets'
        assert len(saga.stores.selections) == 0

    async def test_only_smart_accounts(self, saga):
        link(saga, SmartAccountFactory(source_balance=eth('1')))
        result, _ = await prompt(saga)
        assert result['status'] == 'no_eoa'
        assert saga.across.quote_calls == 0

    async def test_no_funds_lists_wallets(self, saga):
        wallet = WalletSnapshotFactory(destination_balance=eth('0.001'))
        link(saga, wallet)

        result, _ = await prompt(saga)

        assert result['status'] == 'no_funds'
        assert 'Required: 0.022 ETH on Mainnet OR 0.023 ETH on Base' in saga.gateway.last_message
        assert len(saga.stores.selections) == 0

    async def test_quote_failure_without_direct_funds(self, saga):
        link(saga, WalletSnapshotFactory(source_balance=eth('1')))
        saga.across.quote_error = BridgeQuoteError("Could not get a bridge quote right now.")

        result, _ = await prompt(saga)

        assert result['status'] == 'quote_failed'
        assert saga.gateway.forms == []

    async def test_quote_failure_offers_direct_only(self, saga):
        direct = WalletSnapshotFactory(destination_balance=eth('0.1'))
        bridge = WalletSnapshotFactory(source_balance=eth('0.1'))
        link(saga, direct, bridge)
        saga.across.quote_error = BridgeQuoteError("Could not get a bridge quote right now.")

        result, _ = await prompt(saga)

        assert result['paths'] == {direct.address: 'A'}
        assert any('only direct registration' in text for _, text in saga.gateway.messages)

    async def test_unavailable_name(self, saga):
        link(saga, WalletSnapshotFactory(destination_balance=eth('1')))
        saga.ens['mainnet'].available = False
        result, _ = await prompt(saga)
        assert result['status'] == 'unavailable'

    async def test_registry_error(self, saga):
        saga.ens['mainnet'].error = ExternalServiceError("Could not check availability right now.")
        result, _ = await prompt(saga)
        assert result['status'] == 'service_error'

    async def test_invalid_name(self, saga):
        result, _ = await prompt(saga, 'ab')
        assert result['status'] == 'invalid'


class TestHandleSelection:

    async def test_path_a_starts_registration_with_pinned_signer(self, saga):
        direct = WalletSnapshotFactory(destination_balance=eth('0.1'))
        link(saga, direct)
        _, key = await prompt(saga)

        result = await saga.dispatcher.dispatch(pick(key, direct.address))

        assert result['path'] == 'A'
        assert result['status'] == 'commit_requested'
        assert saga.gateway.last_transaction.signer_wallet == direct.address
        assert saga.stores.selections.get(key) is None

    async def test_path_b_starts_bridge(self, saga):
        wallet = WalletSnapshotFactory(source_balance=eth('0.1'))
        link(saga, wallet)
        _, key = await prompt(saga)

        result = await saga.dispatcher.dispatch(pick(key, wallet.address))

        assert result['path'] == 'B'
        assert result['status'] == 'bridge_requested'
        assert saga.gateway.last_transaction.value == REQUIRED

    async def test_path_c_starts_funding_transfer(self, saga):
        eoa = WalletSnapshotFactory()
        smart = SmartAccountFactory(source_balance=eth('0.1'))
        link(saga, eoa, smart)
        _, key = await prompt(saga)

        result = await saga.dispatcher.dispatch(pick(key, eoa.address))

        assert result['path'] == 'C'
        assert result['status'] == 'funding_requested'
        assert saga.gateway.last_transaction.signer_wallet == smart.address

    async def test_balances_are_rechecked_on_selection(self, saga):
        wallet = WalletSnapshotFactory(destination_balance=eth('0.1'))
        link(saga, wallet)
        _, key = await prompt(saga)
        wallet.destination_balance = 0

        result = await saga.dispatcher.dispatch(pick(key, wallet.address))

        assert result['status'] == 'insufficient_funds'
        assert saga.gateway.transactions == []

    async def test_path_can_change_after_recheck(self, saga):
        wallet = WalletSnapshotFactory(destination_balance=eth('0.1'))
        link(saga, wallet)
        _, key = await prompt(saga)
        wallet.destination_balance = 0
        wallet.source_balance = eth('0.1')

        result = await saga.dispatcher.dispatch(pick(key, wallet.address))

        assert result['path'] == 'B'

    @pytest.mark.parametrize("option,status", [(None, 'no_selection'), ('0xnotoffered', 'invalid_selection')])
    async def test_bad_choice_keeps_selection(self, saga, option, status):
        link(saga, WalletSnapshotFactory(destination_balance=eth('0.1')))
        _, key = await prompt(saga)

        result = await saga.dispatcher.dispatch(pick(key, option))

        assert result['status'] == status
        assert saga.stores.selections.get(key) is not None

    async def test_selection_consumed_once(self, saga):
        wallet = WalletSnapshotFactory(destination_balance=eth('0.1'))
        link(saga, wallet)
        _, key = await prompt(saga)

        await saga.dispatcher.dispatch(pick(key, wallet.address))
        again = await saga.dispatcher.dispatch(pick(key, wallet.address))

        assert again['status'] == 'expired'
        assert len(saga.gateway.transactions) == 1

    async def test_expired_selection(self, saga):
        wallet = WalletSnapshotFactory(destination_balance=eth('0.1'))
        link(saga, wallet)
        _, key = await prompt(saga)

        saga.clock.advance(saga.settings.selection_ttl)
        result = await saga.dispatcher.dispatch(pick(key, wallet.address))

        assert result['status'] == 'expired'
        assert saga.gateway.transactions == []
