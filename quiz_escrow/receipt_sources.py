"""
Receipt sources for settlement resolution

The relay exposes the same user operation receipt under several API paths,
and a bundler can be asked directly over JSON-RPC. Each source answers the
same question for a handle: here is the receipt, not found yet, or a
transport error worth retrying.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests
from web3 import Web3

from config import QUIZ_ESCROW_CONFIG, SETTLEMENT_RESOLVER_CONFIG
from .errors import ReceiptSourceError
from .settlement_resolver import ReceiptSource

logger = logging.getLogger(__name__)

PRIMARY_RECEIPT_PATH = '/accountkit/v1/telegrambot/evm/userOperationReceipt'
ALTERNATIVE_RECEIPT_PATHS = (
    '/accountkit/v1/evm/userOperationReceipt',
    '/v2/platform/evm/userOperationReceipt',
    '/accountkit/v2/evm/userOperationReceipt',
)

NOT_FOUND_STATUSES = (404, 405, 501)


class AccountKitReceiptSource(ReceiptSource):
    """One relay API path for user operation receipts"""

    def __init__(self, base_url: str, api_key: str, path: str = PRIMARY_RECEIPT_PATH,
                 timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.path = path
        self.timeout = timeout if timeout is not None else SETTLEMENT_RESOLVER_CONFIG['REQUEST_TIMEOUT_SECONDS']
        self.session = session or requests.Session()
        self.name = f"accountkit:{path}"

    def _get(self, handle: str, chain_id: Optional[int]) -> Optional[Dict[str, Any]]:
        params = {'userOperationHash': handle}
        if chain_id:
            params['chainId'] = chain_id

        url = f"{self.base_url}{self.path}"
        logger.info(f"📡 GET {url}?userOperationHash={handle}")

        try:
            response = self.session.get(
                url,
                params=params,
                headers={
                    'X-API-KEY': self.api_key,
                    'Content-Type': 'application/json',
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ReceiptSourceError(f"{self.name} request failed: {e}")

        if response.status_code in NOT_FOUND_STATUSES:
            return None
        if response.status_code >= 400:
            raise ReceiptSourceError(f"{self.name} returned HTTP {response.status_code}: {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError as e:
            raise ReceiptSourceError(f"{self.name} returned invalid JSON: {e}")

        # An empty body or a null result means the bundler has not seen the operation yet
        if not payload or (isinstance(payload, dict) and 'result' in payload and payload['result'] is None):
            return None
        return payload

    async def fetch_receipt(self, handle: str, chain_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._get, handle, chain_id)


class BundlerRpcReceiptSource(ReceiptSource):
    """Asks an ERC-4337 bundler directly via eth_getUserOperationReceipt"""

    name = 'bundler-rpc'

    def __init__(self, rpc_url: str, timeout: Optional[float] = None):
        self.rpc_url = rpc_url
        timeout = timeout if timeout is not None else SETTLEMENT_RESOLVER_CONFIG['REQUEST_TIMEOUT_SECONDS']
        self.provider = Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': timeout})

    def _request(self, handle: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.provider.make_request('eth_getUserOperationReceipt', [handle])
        except Exception as e:
            raise ReceiptSourceError(f"bundler RPC request failed: {e}")

        error = response.get('error')
        if error:
            message = error.get('message', '') if isinstance(error, dict) else str(error)
            if 'not found' in message.lower() or 'method' in message.lower():
                return None
            raise ReceiptSourceError(f"bundler RPC error: {message}")

        result = response.get('result')
        return dict(result) if result else None

    async def fetch_receipt(self, handle: str, chain_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._request, handle)


def build_receipt_sources(config: Optional[Dict[str, Any]] = None) -> Tuple[ReceiptSource, List[ReceiptSource]]:
    """Primary relay path first, then the alternative relay paths, then the bundler if configured"""
    config = config or QUIZ_ESCROW_CONFIG
    base_url = config['ACCOUNT_KIT_BASE_URL']
    api_key = config['ACCOUNT_KIT_API_KEY']

    if not api_key:
        logger.warning("⚠️ COLLABLAND_ACCOUNTKIT_API_KEY not set - relay receipt lookups will be rejected")

    session = requests.Session()
    primary = AccountKitReceiptSource(base_url, api_key, PRIMARY_RECEIPT_PATH, session=session)
    alternatives: List[ReceiptSource] = [
        AccountKitReceiptSource(base_url, api_key, path, session=session)
        for path in ALTERNATIVE_RECEIPT_PATHS
    ]

    if config.get('BUNDLER_RPC_URL'):
        alternatives.append(BundlerRpcReceiptSource(config['BUNDLER_RPC_URL']))

    logger.info(f"🔗 Receipt sources: {primary.name} + {len(alternatives)} fallbacks")
    return primary, alternatives
