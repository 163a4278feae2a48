"""
Settings and chain registry tests
"""

import pytest

from chain_config import ChainConfig, Settings, get_settings, reset_settings
from message_utils import format_duration, format_eth
from utils.environment import get_webhook_url


@pytest.fixture(autouse=True)
def clean_settings():
    reset_settings()
    yield
    reset_settings()


class TestSettings:

    def test_defaults(self, monkeypatch):
        for name in ('REQUIRED_BUFFER_PERCENT', 'GAS_RESERVE_ETH', 'MIN_COMMITMENT_AGE_SECONDS'):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.required_buffer_percent == 10
        assert settings.gas_reserve_wei == 10 ** 16
        assert settings.min_commitment_age == 60
        assert settings.max_commitment_age == 86400

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv('GAS_RESERVE_ETH', '0.005')
        monkeypatch.setenv('ADMIN_USER_ID', '1, 2,x')
        monkeypatch.setenv('SIGNING_GATEWAY_URL', 'https://gateway.test/')

        settings = get_settings()

        assert settings.gas_reserve_wei == 5 * 10 ** 15
        assert settings.admin_user_ids[:2] == [1, 2]
        assert settings.signing_gateway_url == 'https://gateway.test'
        assert get_settings() is settings

    @pytest.mark.parametrize("name,value", [
        ('REQUIRED_BUFFER_PERCENT', '-1'),
        ('MIN_COMMITMENT_AGE_SECONDS', '90000'),
        ('PORT', 'eighty'),
        ('GAS_RESERVE_ETH', 'lots'),
    ])
    def test_invalid_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ValueError):
            Settings.from_env()

    def test_webhook_url(self, monkeypatch):
        monkeypatch.setenv('WEBHOOK_PUBLIC_URL', 'https://bot.example/')
        assert get_webhook_url('interaction') == 'https://bot.example/webhook/interaction'


class TestChainRegistry:

    def test_networks(self):
        assert ChainConfig.get_network('MAINNET').chain_id == ChainConfig.MAINNET_CHAIN_ID
        assert ChainConfig.get_network('sepolia').is_testnet
        with pytest.raises(KeyError):
            ChainConfig.get_network('goerli')

    def test_tx_url(self):
        assert ChainConfig.get_network('mainnet').tx_url('0xabc') == 'https://etherscan.io/tx/0xabc'


class TestFormatting:

    @pytest.mark.parametrize("wei,text", [(22 * 10 ** 15, '0.022'), (0, '0'), (10 ** 18, '1'), (1, '0')])
    def test_format_eth(self, wei, text):
        assert format_eth(wei) == text

    @pytest.mark.parametrize("seconds,text", [(45, '45s'), (60, '1m'), (90, '1m 30s'), (86400, '24h')])
    def test_format_duration(self, seconds, text):
        assert format_duration(seconds) == text
