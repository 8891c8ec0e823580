"""
Tests for smart account wallet lookup
"""

import asyncio
from unittest.mock import Mock

import requests

from quiz_escrow.wallet_service import WALLET_TIMEOUT, WalletService, pick_account_address

from helpers import CREATOR, OTHER_CREATOR, no_sleep

CONFIG = {
    'ACCOUNT_KIT_BASE_URL': 'https://relay.test',
    'ACCOUNT_KIT_API_KEY': 'key-123',
    'CHAIN_ID': 84532,
}


def mock_response(status_code=200, payload=None):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = payload
    return response


class TestPickAccountAddress:

    def test_prefers_configured_chain(self):
        payload = {'evm': [
            {'chainId': 8453, 'address': OTHER_CREATOR},
            {'chainId': 84532, 'address': CREATOR},
        ]}
        assert pick_account_address(payload, 84532) == CREATOR

    def test_falls_back_to_first_evm_account(self):
        payload = {'evm': [{'chainId': 8453, 'address': OTHER_CREATOR}]}
        assert pick_account_address(payload, 84532) == OTHER_CREATOR

    def test_nested_data_and_bare_address(self):
        assert pick_account_address({'data': {'accounts': [{'address': CREATOR}]}}) == CREATOR
        assert pick_account_address({'address': CREATOR}) == CREATOR
        assert pick_account_address({}) is None


class TestWalletService:

    def setup_method(self):
        self.session = Mock()
        self.service = WalletService(CONFIG, session=self.session, sleep=no_sleep)

    def test_resolve_wallet(self):
        self.session.get.return_value = mock_response(200, {'evm': [{'chainId': 84532, 'address': CREATOR.lower()}]})

        assert asyncio.run(self.service.resolve_wallet('user-1')) == CREATOR
        _, kwargs = self.session.get.call_args
        assert kwargs['headers']['X-API-KEY'] == 'key-123'
        assert kwargs['headers']['x-user-id'] == 'user-1'

    def test_resolve_wallet_missing(self):
        self.session.get.return_value = mock_response(404, None)
        assert asyncio.run(self.service.resolve_wallet('user-1')) is None

    def test_resolve_wallet_transport_error(self):
        self.session.get.side_effect = requests.ConnectionError('down')
        assert asyncio.run(self.service.resolve_wallet('user-1')) is None

    def test_wait_for_wallet_appears_on_third_poll(self):
        self.session.get.side_effect = [
            mock_response(200, {'evm': []}),
            mock_response(404, None),
            mock_response(200, {'evm': [{'chainId': 84532, 'address': CREATOR}]}),
        ]
        assert asyncio.run(self.service.wait_for_wallet('user-1', polls=5, interval=0)) == CREATOR
        assert self.session.get.call_count == 3

    def test_wait_for_wallet_timeout_sentinel(self):
        self.session.get.return_value = mock_response(200, {'evm': []})

        result = asyncio.run(self.service.wait_for_wallet('user-1', polls=3, interval=0))

        assert result is WALLET_TIMEOUT
        assert not result
        assert self.session.get.call_count == 3
