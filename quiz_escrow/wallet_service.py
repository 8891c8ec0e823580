"""
Smart account wallet lookup

Resolves a chat user id to the smart account address the relay manages for
them. Freshly onboarded users may not have an account yet, so callers can
wait for one with a bounded number of polls.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Union

import requests
from web3 import Web3

from config import QUIZ_ESCROW_CONFIG, SESSION_CONFIG
from .models import mask_wallet_address

logger = logging.getLogger(__name__)

ACCOUNTS_PATH = '/accountkit/v1/telegrambot/accounts'


class _WalletTimeout:
    """Returned by wait_for_wallet when no wallet appeared within the poll budget"""

    def __repr__(self):
        return 'WALLET_TIMEOUT'

    def __bool__(self):
        return False


WALLET_TIMEOUT = _WalletTimeout()


def pick_account_address(payload: Dict[str, Any], chain_id: Optional[int] = None) -> Optional[str]:
    """Prefer the EVM account on ``chain_id``, then any EVM account, then a bare address field"""
    if not isinstance(payload, dict):
        return None

    data = payload.get('data') if isinstance(payload.get('data'), dict) else payload
    accounts = data.get('evm') or data.get('accounts') or []

    if chain_id is not None:
        for account in accounts:
            if str(account.get('chainId')) == str(chain_id) and account.get('address'):
                return account['address']

    for account in accounts:
        if account.get('address'):
            return account['address']

    return data.get('address')


class WalletService:
    """Relay collaborator: user id to wallet address"""

    def __init__(self, config: Optional[Dict[str, Any]] = None, session: Optional[requests.Session] = None,
                 sleep=asyncio.sleep):
        config = config or QUIZ_ESCROW_CONFIG
        self.base_url = config['ACCOUNT_KIT_BASE_URL'].rstrip('/')
        self.api_key = config['ACCOUNT_KIT_API_KEY']
        self.chain_id = config['CHAIN_ID']
        self.session = session or requests.Session()
        self._sleep = sleep

    def _fetch_accounts(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.session.get(
                f"{self.base_url}{ACCOUNTS_PATH}",
                headers={
                    'X-API-KEY': self.api_key,
                    'Content-Type': 'application/json',
                    'x-user-id': str(user_id),
                },
                timeout=15,
            )
        except requests.RequestException as e:
            logger.warning(f"⚠️ Wallet lookup for user {user_id} failed: {e}")
            return None

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.warning(f"⚠️ Wallet lookup for user {user_id} returned HTTP {response.status_code}")
            return None

        try:
            return response.json()
        except ValueError:
            logger.warning(f"⚠️ Wallet lookup for user {user_id} returned invalid JSON")
            return None

    async def resolve_wallet(self, user_id: str) -> Optional[str]:
        """Returns the checksummed wallet address, or None if the user has none yet"""
        payload = await asyncio.to_thread(self._fetch_accounts, user_id)
        address = pick_account_address(payload, self.chain_id) if payload else None

        if not address or not Web3.is_address(address):
            return None

        address = Web3.to_checksum_address(address)
        logger.info(f"👛 Wallet for user {user_id}: {mask_wallet_address(address)}")
        return address

    async def wait_for_wallet(self, user_id: str, polls: Optional[int] = None,
                              interval: Optional[float] = None) -> Union[str, _WalletTimeout]:
        """Poll until a wallet exists; WALLET_TIMEOUT after ``polls`` misses"""
        polls = polls if polls is not None else SESSION_CONFIG['WALLET_POLLS']
        interval = interval if interval is not None else SESSION_CONFIG['WALLET_POLL_INTERVAL_SECONDS']

        for poll in range(1, polls + 1):
            address = await self.resolve_wallet(user_id)
            if address:
                return address
            if poll < polls:
                logger.info(f"⏳ No wallet for user {user_id} yet ({poll}/{polls})")
                await self._sleep(interval)

        logger.warning(f"⚠️ Wallet for user {user_id} not ready after {polls} polls")
        return WALLET_TIMEOUT
