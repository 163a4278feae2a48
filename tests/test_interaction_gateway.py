"""
Interaction gateway tests
Callback tokens, form rendering and signing gateway requests
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from conftest import FakeClock, address
from services.errors import ExternalServiceError
from services.interaction_gateway import CallbackTokenStore, InteractionGateway, sign_payload
from services.models import FormOption, FormRequest, TransactionRequest


def serve(handler):
    real_client = httpx.AsyncClient

    def build(*args, **kwargs):
        kwargs['transport'] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    return patch('services.interaction_gateway.httpx.AsyncClient', side_effect=build)


class TestCallbackTokens:

    def test_issue_and_resolve(self):
        store = CallbackTokenStore()
        data = store.issue('42', 'wallet-select-1-42-7', address(5))

        assert data.startswith('c:')
        assert len(data.encode()) <= 64
        assert store.resolve('42', data) == ('wallet-select-1-42-7', address(5))

    def test_other_user_cannot_use_token(self):
        store = CallbackTokenStore()
        data = store.issue('42', 'req', 'opt')
        assert store.resolve('43', data) is None

    def test_expiry_and_sweep(self):
        clock = FakeClock()
        store = CallbackTokenStore(ttl=10, clock=clock)
        data = store.issue('42', 'req', 'opt')

        clock.advance(10)

        assert store.resolve('42', data) is None
        assert store.sweep() == 1
        assert len(store) == 0

    @pytest.mark.parametrize("data", [None, '', 'garbage', 'c:unknown'])
    def test_unknown_data(self, data):
        assert CallbackTokenStore().resolve('42', data) is None

    def test_discard_request(self):
        store = CallbackTokenStore()
        store.issue('42', 'req-a', '1')
        store.issue('42', 'req-a', '2')
        keep = store.issue('42', 'req-b', '1')

        assert store.discard_request('req-a') == 2
        assert store.resolve('42', keep) == ('req-b', '1')


class TestSelectionForms:

    async def test_one_button_per_option(self):
        bot = MagicMock()
        bot.send_message = AsyncMock()
        gateway = InteractionGateway('https://gateway.test', bot=bot)
        form = FormRequest(id='wallet-select-1-42-7', title='Pick', options=[
            FormOption(id=address(1), label='first'),
            FormOption(id=address(2), label='second'),
        ])

        await gateway.request_selection(1, 42, form)

        markup = bot.send_message.await_args.kwargs['reply_markup']
        buttons = [row[0] for row in markup.inline_keyboard]
        assert [b.text for b in buttons] == ['first', 'second']
        assert gateway.tokens.resolve('42', buttons[1].callback_data) == (form.id, address(2))

    async def test_send_failure_discards_tokens(self):
        bot = MagicMock()
        bot.send_message = AsyncMock(side_effect=RuntimeError("chat not found"))
        gateway = InteractionGateway('https://gateway.test', bot=bot)
        form = FormRequest(id='req', title='Pick', options=[FormOption(id='a', label='a')])

        with pytest.raises(ExternalServiceError):
            await gateway.request_selection(1, 42, form)
        assert len(gateway.tokens) == 0

    async def test_no_bot(self):
        gateway = InteractionGateway('https://gateway.test')
        with pytest.raises(ExternalServiceError):
            await gateway.request_selection(1, 42, FormRequest(id='req', title='Pick', options=[]))


class TestSigningGateway:

    async def test_transaction_request_is_signed(self):
        captured = {}

        def handler(request):
            captured['request'] = request
            return httpx.Response(202)

        gateway = InteractionGateway('https://gateway.test', api_key='k3y',
                                     callback_url='https://bot.test/webhook/interaction')
        tx = TransactionRequest(id='commit-1-42-abc', title='Commit abc.eth', chain_id=1,
                                to=address(9), value=0, data='0x1234', signer_wallet=address(7))

        with serve(handler):
            await gateway.request_transaction(1, 42, tx)

        request = captured['request']
        body = request.content
        assert request.url.path == '/requests/transaction'
        assert request.headers['X-Signature'] == sign_payload('k3y', body)
        payload = json.loads(body)
        assert payload['callbackUrl'] == 'https://bot.test/webhook/interaction'
        assert payload['request']['id'] == 'commit-1-42-abc'
        assert payload['request']['signerWallet'] == address(7)
        assert payload['request']['value'] == '0'

    async def test_transaction_request_failure(self):
        gateway = InteractionGateway('https://gateway.test')
        tx = TransactionRequest(id='x', title='x', chain_id=1, to=address(9), value=0, data='0x')
        with serve(lambda request: httpx.Response(502)):
            with pytest.raises(ExternalServiceError):
                await gateway.request_transaction(1, 42, tx)

    async def test_unconfigured_gateway(self):
        gateway = InteractionGateway('')
        tx = TransactionRequest(id='x', title='x', chain_id=1, to=address(9), value=0, data='0x')
        with pytest.raises(ExternalServiceError):
            await gateway.request_transaction(1, 42, tx)

    async def test_linked_wallets_deduplicated_and_checksummed(self):
        wallets = [address(1).lower(), address(1), 'not-an-address', address(2)]
        gateway = InteractionGateway('https://gateway.test')

        with serve(lambda request: httpx.Response(200, json={'wallets': wallets})):
            assert await gateway.get_linked_wallets(42) == [address(1), address(2)]

    async def test_default_wallet(self):
        gateway = InteractionGateway('https://gateway.test')
        with serve(lambda request: httpx.Response(200, json={'wallets': [address(1)], 'default': address(2)})):
            assert await gateway.get_default_wallet(42) == address(2)
        with serve(lambda request: httpx.Response(200, json={'wallets': [address(1)]})):
            assert await gateway.get_default_wallet(42) == address(1)
        with serve(lambda request: httpx.Response(404)):
            assert await gateway.get_default_wallet(42) is None

    async def test_message_sink(self):
        sink = AsyncMock()
        gateway = InteractionGateway('https://gateway.test', message_sink=sink)
        await gateway.send_message(1, 'hello')
        sink.assert_awaited_once_with(1, 'hello')
