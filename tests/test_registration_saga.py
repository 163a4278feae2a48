"""
Commit-reveal registration saga tests
"""

import pytest

from conftest import CHANNEL, USER, address, eth
from services.correlation_store import CorrelationKey, SagaKind
from services.ens_registry import encode_commit, make_commitment
from services.models import InteractionEvent

OWNER = address(0xA11CE)


def confirmation(key, tx_hash='0xabc'):
    return InteractionEvent(request_id=str(key), channel_id=str(CHANNEL), user_id=str(USER), tx_hash=tx_hash)


@pytest.fixture
def linked(saga):
    saga.gateway.link(USER, OWNER)
    return saga


async def start(saga, name='abc', **kwargs):
    return await saga.registration.start_registration(CHANNEL, USER, name, **kwargs)


class TestStartRegistration:

    async def test_commit_requested(self, linked):
        result = await start(linked)

        assert result['status'] == 'commit_requested'
        assert result['correlation_key'] == f"commit-{CHANNEL}-{USER}-abc"
        assert result['cost'] == eth('0.01')

        request = linked.gateway.last_transaction
        assert request.id == result['correlation_key']
        assert request.chain_id == 1
        assert request.value == 0
        assert request.signer_wallet is None

        record = linked.stores.commitments.get(CorrelationKey.parse(request.id))
        assert record.owner == OWNER
        assert request.data == encode_commit(record.commitment)
        assert record.commitment == make_commitment(
            'abc', OWNER, record.duration, record.secret, record.resolver, reverse_record=True,
        )

    async def test_secret_is_fresh_per_registration(self, linked):
        await start(linked, 'abc')
        await start(linked, 'abd')
        secrets = {r.secret for r in (
            linked.stores.commitments.get(CorrelationKey.build(SagaKind.COMMIT, CHANNEL, USER, label))
            for label in ('abc', 'abd')
        )}
        assert len(secrets) == 2

    async def test_eth_suffix_and_case_are_normalized(self, linked):
        result = await start(linked, 'ABC.eth')
        assert result['domain'] == 'abc.eth'

    @pytest.mark.parametrize("name,years", [("ab", None), ("a.b", None), ("", None), ("abc", "0"), ("abc", "11"), ("abc", "x")])
    async def test_invalid_input_creates_no_state(self, linked, name, years):
        result = await start(linked, name, years=years)
        assert result['status'] == 'invalid'
        assert len(linked.stores.commitments) == 0
        assert linked.gateway.transactions == []

    async def test_unavailable(self, linked):
        linked.ens['mainnet'].available = False
        result = await start(linked)
        assert result['status'] == 'unavailable'
        assert len(linked.stores.commitments) == 0

    async def test_no_wallet(self, saga):
        result = await start(saga)
        assert result['status'] == 'no_wallet'
        assert len(saga.stores.commitments) == 0

    async def test_gateway_failure_leaves_no_record(self, linked):
        linked.gateway.fail_transactions = True
        result = await start(linked)
        assert result['status'] == 'service_error'
        assert len(linked.stores.commitments) == 0

    async def test_testnet_uses_sepolia_and_test_prefix(self, linked):
        result = await start(linked, testnet=True)
        assert result['correlation_key'].startswith('testcommit-')
        assert linked.gateway.last_transaction.chain_id == 11155111

    async def test_pinned_signer(self, linked):
        signer = address(0xB0B)
        await start(linked, owner=signer, signer_wallet=signer)
        assert linked.gateway.last_transaction.signer_wallet == signer


class TestCommitConfirmation:

    async def test_reveal_waits_for_timer_even_with_instant_confirmation(self, linked):
        result = await start(linked)
        key = CorrelationKey.parse(result['correlation_key'])

        outcome = await linked.dispatcher.dispatch(confirmation(key))

        assert outcome['status'] == 'waiting'
        assert len(linked.gateway.transactions) == 1  # commit only
        [timer] = linked.scheduler.pending()
        assert timer.delay == linked.settings.min_commitment_age

        await linked.scheduler.run_pending()

        reveal = linked.gateway.last_transaction
        assert reveal.id == f"register-{CHANNEL}-{USER}-abc"
        assert reveal.value == eth('0.01')
        assert reveal.to == linked.ens['mainnet'].network.registrar_controller

    async def test_commit_without_tx_hash_fails_and_schedules_nothing(self, linked):
        result = await start(linked)
        key = CorrelationKey.parse(result['correlation_key'])

        outcome = await linked.dispatcher.dispatch(confirmation(key, tx_hash=None))

        assert outcome['status'] == 'commit_failed'
        assert linked.stores.commitments.get(key) is None
        assert linked.scheduler.pending() == []

    async def test_duplicate_confirmation_schedules_one_timer(self, linked):
        result = await start(linked)
        key = CorrelationKey.parse(result['correlation_key'])

        await linked.dispatcher.dispatch(confirmation(key))
        outcome = await linked.dispatcher.dispatch(confirmation(key, tx_hash='0xdef'))

        assert outcome['status'] == 'duplicate'
        assert len(linked.scheduler.pending()) == 1

    async def test_late_failure_after_confirmation_keeps_saga(self, linked):
        result = await start(linked)
        key = CorrelationKey.parse(result['correlation_key'])
        await linked.dispatcher.dispatch(confirmation(key))

        outcome = await linked.dispatcher.dispatch(confirmation(key, tx_hash=None))

        assert outcome['status'] == 'duplicate'
        assert linked.stores.commitments.get(key).commit_tx_hash == '0xabc'
        [timer] = linked.scheduler.pending()
        assert not timer.cancelled

    async def test_commitment_lifetime_counts_from_confirmation(self, linked):
        result = await start(linked)
        key = CorrelationKey.parse(result['correlation_key'])
        linked.clock.advance(100)
        await linked.dispatcher.dispatch(confirmation(key))

        linked.clock.advance(linked.settings.max_commitment_age - 50)
        linked.stores.sweep_all()

        assert linked.stores.commitments.get(key) is not None
        [timer] = linked.scheduler.pending()
        assert not timer.cancelled

    async def test_deleted_commitment_reports_expired(self, linked):
        result = await start(linked)
        key = CorrelationKey.parse(result['correlation_key'])
        linked.stores.commitments.delete(key)

        outcome = await linked.dispatcher.dispatch(confirmation(key))

        assert outcome['status'] == 'expired'
        assert 'expired' in linked.gateway.last_message

    async def test_superseded_commitment_cancels_old_timer(self, linked):
        result = await start(linked)
        key = CorrelationKey.parse(result['correlation_key'])
        await linked.dispatcher.dispatch(confirmation(key))
        [old_timer] = linked.scheduler.pending()

        await start(linked)

        assert old_timer.cancelled
        assert linked.scheduler.pending() == []

    async def test_evicted_commitment_cancels_timer(self, linked):
        result = await start(linked)
        key = CorrelationKey.parse(result['correlation_key'])
        await linked.dispatcher.dispatch(confirmation(key))
        [timer] = linked.scheduler.pending()

        linked.clock.advance(linked.settings.max_commitment_age + 1)
        linked.stores.sweep_all()

        assert timer.cancelled

    async def test_reveal_uses_fresh_price(self, linked):
        result = await start(linked)
        key = CorrelationKey.parse(result['correlation_key'])
        await linked.dispatcher.dispatch(confirmation(key))

        linked.ens['mainnet'].cost = eth('0.015')
        await linked.scheduler.run_pending()

        assert linked.gateway.last_transaction.value == eth('0.015')

    async def test_reveal_preparation_error_cleans_up(self, linked):
        result = await start(linked)
        key = CorrelationKey.parse(result['correlation_key'])
        await linked.dispatcher.dispatch(confirmation(key))

        linked.gateway.fail_transactions = True
        await linked.scheduler.run_pending()

        assert linked.stores.commitments.get(key) is None
        assert 'error occurred' in linked.gateway.last_message


class TestRevealConfirmation:

    async def _revealed(self, saga):
        result = await start(saga)
        key = CorrelationKey.parse(result['correlation_key'])
        await saga.dispatcher.dispatch(confirmation(key, tx_hash='0xcommit'))
        await saga.scheduler.run_pending()
        return key, key.reveal_key()

    async def test_success_completes_and_deletes(self, linked):
        commit_key, reveal_key = await self._revealed(linked)

        outcome = await linked.dispatcher.dispatch(confirmation(reveal_key, tx_hash='0xreveal'))

        assert outcome['status'] == 'registered'
        assert outcome['domain'] == 'abc.eth'
        assert linked.stores.commitments.get(commit_key) is None
        assert 'Registration successful' in linked.gateway.last_message

    async def test_failed_reveal_keeps_commitment(self, linked):
        commit_key, reveal_key = await self._revealed(linked)

        outcome = await linked.dispatcher.dispatch(confirmation(reveal_key, tx_hash=None))

        assert outcome['status'] == 'reveal_failed'
        assert linked.stores.commitments.get(commit_key) is not None
        assert '/retry_register abc' in linked.gateway.last_message

    async def test_reveal_event_before_commit_confirmation_is_ignored(self, linked):
        result = await start(linked)
        commit_key = CorrelationKey.parse(result['correlation_key'])

        outcome = await linked.dispatcher.dispatch(confirmation(commit_key.reveal_key(), tx_hash='0xforged'))

        assert outcome['status'] == 'out_of_order'
        record = linked.stores.commitments.get(commit_key)
        assert record is not None
        assert record.commit_tx_hash is None
        assert not any('Registration successful' in text for _, text in linked.gateway.messages)

    async def test_reveal_event_while_waiting_is_ignored(self, linked):
        result = await start(linked)
        commit_key = CorrelationKey.parse(result['correlation_key'])
        await linked.dispatcher.dispatch(confirmation(commit_key))

        outcome = await linked.dispatcher.dispatch(confirmation(commit_key.reveal_key(), tx_hash='0xearly'))

        assert outcome['status'] == 'out_of_order'
        assert linked.stores.commitments.get(commit_key) is not None
        [timer] = linked.scheduler.pending()
        assert not timer.cancelled

    async def test_reveal_for_unknown_commitment_is_expired(self, linked):
        reveal_key = CorrelationKey.build(SagaKind.REGISTER, CHANNEL, USER, 'zzz')
        outcome = await linked.dispatcher.dispatch(confirmation(reveal_key))
        assert outcome['status'] == 'expired'


class TestRetryReveal:

    async def _failed_reveal(self, saga):
        result = await start(saga)
        key = CorrelationKey.parse(result['correlation_key'])
        await saga.dispatcher.dispatch(confirmation(key))
        await saga.scheduler.run_pending()
        await saga.dispatcher.dispatch(confirmation(key.reveal_key(), tx_hash=None))
        saga.clock.advance(saga.settings.min_commitment_age)
        return key

    async def test_retry_reissues_reveal_with_same_secret(self, linked):
        key = await self._failed_reveal(linked)
        record = linked.stores.commitments.get(key)
        first_reveal = linked.gateway.last_transaction

        result = await linked.registration.retry_reveal(CHANNEL, USER, 'abc')

        assert result['status'] == 'reveal_requested'
        assert linked.gateway.last_transaction.data == first_reveal.data
        assert linked.stores.commitments.get(key).secret == record.secret

    async def test_retry_without_commitment(self, linked):
        result = await linked.registration.retry_reveal(CHANNEL, USER, 'abc')
        assert result['status'] == 'not_found'

    async def test_retry_before_commit_confirmed(self, linked):
        await start(linked)
        result = await linked.registration.retry_reveal(CHANNEL, USER, 'abc')
        assert result['status'] == 'not_confirmed'

    async def test_retry_while_timer_pending(self, linked):
        result = await start(linked)
        await linked.dispatcher.dispatch(confirmation(CorrelationKey.parse(result['correlation_key'])))
        outcome = await linked.registration.retry_reveal(CHANNEL, USER, 'abc')
        assert outcome['status'] == 'waiting'

    async def test_retry_too_early(self, linked):
        key = await self._failed_reveal(linked)
        linked.stores.commitments.get(key).commit_confirmed_at = linked.clock() - 30

        result = await linked.registration.retry_reveal(CHANNEL, USER, 'abc')

        assert result['status'] == 'too_early'
        assert result['remaining'] == 31
        assert linked.stores.commitments.get(key) is not None

    async def test_retry_after_commitment_lifetime(self, linked):
        key = await self._failed_reveal(linked)
        # Keep the record alive in the store while the on-chain commitment ages out
        record = linked.stores.commitments.get(key)
        record.commit_confirmed_at -= linked.settings.max_commitment_age + 1

        result = await linked.registration.retry_reveal(CHANNEL, USER, 'abc')

        assert result['status'] == 'commitment_expired'
        assert linked.stores.commitments.get(key) is None

    async def test_testnet_retry(self, linked):
        result = await start(linked, testnet=True)
        key = CorrelationKey.parse(result['correlation_key'])
        await linked.dispatcher.dispatch(confirmation(key))
        await linked.scheduler.run_pending()
        await linked.dispatcher.dispatch(confirmation(key.reveal_key(), tx_hash=None))
        linked.clock.advance(linked.settings.min_commitment_age)

        outcome = await linked.registration.retry_reveal(CHANNEL, USER, 'abc', testnet=True)

        assert outcome['status'] == 'reveal_requested'
        assert linked.gateway.last_transaction.id.startswith('test_register-')
