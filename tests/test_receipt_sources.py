"""
Tests for the relay and bundler receipt sources
"""

import asyncio
from unittest.mock import Mock, patch

import pytest
import requests

from quiz_escrow.errors import ReceiptSourceError
from quiz_escrow.receipt_sources import (
    ALTERNATIVE_RECEIPT_PATHS,
    PRIMARY_RECEIPT_PATH,
    AccountKitReceiptSource,
    BundlerRpcReceiptSource,
    build_receipt_sources,
)

from helpers import USER_OP_HASH, make_receipt


def mock_response(status_code=200, payload=None):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = payload
    response.text = str(payload)
    return response


class TestAccountKitReceiptSource:

    def setup_method(self):
        self.session = Mock()
        self.source = AccountKitReceiptSource('https://relay.test/', 'key-123', session=self.session, timeout=5)

    def test_returns_receipt_and_sends_query(self):
        receipt = make_receipt()
        self.session.get.return_value = mock_response(200, receipt)

        result = asyncio.run(self.source.fetch_receipt(USER_OP_HASH, 84532))

        assert result == receipt
        args, kwargs = self.session.get.call_args
        assert args[0] == f"https://relay.test{PRIMARY_RECEIPT_PATH}"
        assert kwargs['params'] == {'userOperationHash': USER_OP_HASH, 'chainId': 84532}
        assert kwargs['headers']['X-API-KEY'] == 'key-123'
        assert kwargs['timeout'] == 5

    @pytest.mark.parametrize('status_code', [404, 405, 501])
    def test_not_found_statuses(self, status_code):
        self.session.get.return_value = mock_response(status_code, {'message': 'nope'})
        assert asyncio.run(self.source.fetch_receipt(USER_OP_HASH)) is None

    def test_null_result_is_not_found(self):
        self.session.get.return_value = mock_response(200, {'result': None})
        assert asyncio.run(self.source.fetch_receipt(USER_OP_HASH)) is None

    def test_server_error_raises(self):
        self.session.get.return_value = mock_response(500, {'message': 'boom'})
        with pytest.raises(ReceiptSourceError):
            asyncio.run(self.source.fetch_receipt(USER_OP_HASH))

    def test_transport_error_raises(self):
        self.session.get.side_effect = requests.ConnectionError('reset')
        with pytest.raises(ReceiptSourceError):
            asyncio.run(self.source.fetch_receipt(USER_OP_HASH))

    def test_invalid_json_raises(self):
        response = mock_response(200)
        response.json.side_effect = ValueError('not json')
        self.session.get.return_value = response
        with pytest.raises(ReceiptSourceError):
            asyncio.run(self.source.fetch_receipt(USER_OP_HASH))


class TestBundlerRpcReceiptSource:

    def setup_method(self):
        self.source = BundlerRpcReceiptSource('https://bundler.test')
        self.source.provider = Mock()

    def test_returns_result(self):
        receipt = make_receipt()
        self.source.provider.make_request.return_value = {'jsonrpc': '2.0', 'id': 1, 'result': receipt}

        assert asyncio.run(self.source.fetch_receipt(USER_OP_HASH)) == receipt
        self.source.provider.make_request.assert_called_once_with('eth_getUserOperationReceipt', [USER_OP_HASH])

    def test_null_result_is_not_found(self):
        self.source.provider.make_request.return_value = {'jsonrpc': '2.0', 'id': 1, 'result': None}
        assert asyncio.run(self.source.fetch_receipt(USER_OP_HASH)) is None

    def test_unsupported_method_is_not_found(self):
        self.source.provider.make_request.return_value = {'error': {'code': -32601, 'message': 'Method not found'}}
        assert asyncio.run(self.source.fetch_receipt(USER_OP_HASH)) is None

    def test_rpc_error_raises(self):
        self.source.provider.make_request.return_value = {'error': {'code': -32000, 'message': 'rate limited'}}
        with pytest.raises(ReceiptSourceError):
            asyncio.run(self.source.fetch_receipt(USER_OP_HASH))


class TestBuildReceiptSources:

    def test_order_of_sources(self):
        config = {
            'ACCOUNT_KIT_BASE_URL': 'https://relay.test',
            'ACCOUNT_KIT_API_KEY': 'key',
            'BUNDLER_RPC_URL': 'https://bundler.test',
        }
        primary, alternatives = build_receipt_sources(config)

        assert primary.path == PRIMARY_RECEIPT_PATH
        assert [source.path for source in alternatives[:-1]] == list(ALTERNATIVE_RECEIPT_PATHS)
        assert isinstance(alternatives[-1], BundlerRpcReceiptSource)

    @patch('quiz_escrow.receipt_sources.logger')
    def test_without_bundler_or_key(self, mock_logger):
        config = {'ACCOUNT_KIT_BASE_URL': 'https://relay.test', 'ACCOUNT_KIT_API_KEY': None}
        primary, alternatives = build_receipt_sources(config)

        assert len(alternatives) == len(ALTERNATIVE_RECEIPT_PATHS)
        mock_logger.warning.assert_called_once()
