"""
Quiz Escrow Contract Service

Builds the MotherFactory ``deployContract("QuizEscrow", params)`` call for a
quiz and submits it through the smart account relay on behalf of the
creator. The relay answers with a user operation hash; that hash is the
opaque settlement handle handed to the SettlementResolver.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import requests
from web3 import Web3

from config import QUIZ_ESCROW_CONFIG
from .errors import InsufficientBalanceError, SettlementSubmissionError
from .models import RewardConfig, SettlementContext, mask_wallet_address

logger = logging.getLogger(__name__)

SUBMIT_USER_OPERATION_PATH = '/accountkit/v1/telegrambot/evm/submitUserOperation'

DEPLOY_CONTRACT_SIGNATURE = 'deployContract(string,bytes)'
DEPLOY_CONTRACT_SELECTOR = Web3.keccak(text=DEPLOY_CONTRACT_SIGNATURE)[:4]

QUIZ_PARAM_TYPES = ['address', 'address', 'uint256', 'uint256', 'uint256']

QUIZ_HANDLER_ABI = [
    {
        "inputs": [],
        "name": "DEPLOYMENT_FEE",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    }
]

ERC20_BALANCE_ABI = [
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    }
]


def encode_quiz_params(creator: str, authorized_bot: str, duration: int,
                       correct_reward: int, incorrect_reward: int) -> bytes:
    """ABI-encode the QuizEscrow constructor parameters the factory forwards"""
    return Web3().codec.encode(
        QUIZ_PARAM_TYPES,
        [
            Web3.to_checksum_address(creator),
            Web3.to_checksum_address(authorized_bot),
            duration,
            correct_reward,
            incorrect_reward,
        ],
    )


def encode_deploy_call(contract_type: str, params: bytes) -> str:
    """Calldata for MotherFactory.deployContract(string, bytes)"""
    body = Web3().codec.encode(['string', 'bytes'], [contract_type, params])
    return Web3.to_hex(DEPLOY_CONTRACT_SELECTOR + body)


class QuizEscrowContractService:
    """Chain collaborator: balance checks and settlement submission via the relay"""

    def __init__(self, config: Optional[Dict[str, Any]] = None, w3: Optional[Web3] = None,
                 session: Optional[requests.Session] = None):
        config = config or QUIZ_ESCROW_CONFIG
        self.chain_id = config['CHAIN_ID']
        self.factory_address = config['MOTHER_FACTORY_ADDRESS']
        self.handler_address = config.get('QUIZ_HANDLER_ADDRESS')
        self.authorized_bot = config['AUTHORIZED_BOT_ADDRESS']
        self.contract_type = config.get('CONTRACT_TYPE', 'QuizEscrow')
        self.duration = config.get('QUIZ_DURATION_SECONDS', 86400)
        self.fallback_fee = config.get('DEPLOYMENT_FEE_WEI', 10 ** 15)
        self.base_url = config['ACCOUNT_KIT_BASE_URL'].rstrip('/')
        self.api_key = config['ACCOUNT_KIT_API_KEY']

        self.w3 = w3 or Web3(Web3.HTTPProvider(config['RPC_URL']))
        self.session = session or requests.Session()

        if not self.factory_address:
            logger.warning("⚠️ MOTHER_FACTORY_ADDRESS not set - quiz settlement will fail")
        if not self.authorized_bot:
            logger.warning("⚠️ AUTHORIZED_BOT_ADDRESS not set - quiz settlement will fail")

    # ------------------------------------------------------------------
    # Fees and balances
    # ------------------------------------------------------------------

    def get_deployment_fee(self) -> int:
        if not self.handler_address:
            return self.fallback_fee
        try:
            handler = self.w3.eth.contract(
                address=Web3.to_checksum_address(self.handler_address),
                abi=QUIZ_HANDLER_ABI
            )
            return int(handler.functions.DEPLOYMENT_FEE().call())
        except Exception as e:
            logger.warning(f"⚠️ Could not read DEPLOYMENT_FEE from handler, using configured fee: {e}")
            return self.fallback_fee

    def required_value(self, reward_config: RewardConfig, deployment_fee: int) -> int:
        """Native value attached to the factory call"""
        if reward_config.is_native:
            return reward_config.funding_amount + deployment_fee
        return deployment_fee

    def ensure_balance(self, reward_config: RewardConfig, creator_address: str, deployment_fee: int) -> None:
        """Raises InsufficientBalanceError when the creator cannot cover funding plus fee"""
        creator = Web3.to_checksum_address(creator_address)

        native_needed = self.required_value(reward_config, deployment_fee)
        native_balance = self.w3.eth.get_balance(creator)
        if native_balance < native_needed:
            logger.warning(f"⚠️ Insufficient native balance for {mask_wallet_address(creator)}: "
                           f"{native_balance} < {native_needed}")
            raise InsufficientBalanceError(
                f"Wallet {creator} holds {native_balance} wei, needs {native_needed}",
                balance=native_balance,
                required=native_needed,
            )

        if not reward_config.is_native:
            token = self.w3.eth.contract(
                address=Web3.to_checksum_address(reward_config.token_address),
                abi=ERC20_BALANCE_ABI
            )
            token_balance = int(token.functions.balanceOf(creator).call())
            if token_balance < reward_config.funding_amount:
                logger.warning(f"⚠️ Insufficient token balance for {mask_wallet_address(creator)}: "
                               f"{token_balance} < {reward_config.funding_amount}")
                raise InsufficientBalanceError(
                    f"Wallet {creator} holds {token_balance} tokens, needs {reward_config.funding_amount}",
                    balance=token_balance,
                    required=reward_config.funding_amount,
                )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def build_user_operation(self, reward_config: RewardConfig, creator_address: str,
                             deployment_fee: int) -> Dict[str, Any]:
        params = encode_quiz_params(
            creator_address,
            self.authorized_bot,
            self.duration,
            reward_config.correct_reward,
            reward_config.incorrect_reward,
        )
        operation = {
            'target': Web3.to_checksum_address(self.factory_address),
            'calldata': encode_deploy_call(self.contract_type, params),
            'value': str(self.required_value(reward_config, deployment_fee)),
        }
        if not reward_config.is_native:
            operation['tokenAddress'] = Web3.to_checksum_address(reward_config.token_address)
            operation['approvalAmount'] = str(reward_config.funding_amount)
        return operation

    def _submit(self, reward_config: RewardConfig, creator_address: str, user_id: str) -> str:
        if not self.factory_address or not self.authorized_bot:
            raise SettlementSubmissionError("Factory or authorized bot address is not configured")

        try:
            deployment_fee = self.get_deployment_fee()
            self.ensure_balance(reward_config, creator_address, deployment_fee)
            operation = self.build_user_operation(reward_config, creator_address, deployment_fee)
        except InsufficientBalanceError:
            raise
        except Exception as e:
            logger.error(f"❌ Could not prepare deployment for {mask_wallet_address(creator_address)}: {e}")
            raise SettlementSubmissionError(f"Could not prepare deployment: {e}")

        url = f"{self.base_url}{SUBMIT_USER_OPERATION_PATH}"

        logger.info(f"🚀 Submitting {self.contract_type} deployment for {mask_wallet_address(creator_address)}: "
                    f"value={operation['value']} fee={deployment_fee}")

        try:
            response = self.session.post(
                url,
                params={'chainId': self.chain_id},
                json=operation,
                headers={
                    'X-API-KEY': self.api_key,
                    'Content-Type': 'application/json',
                    'x-user-id': str(user_id),
                },
                timeout=30,
            )
        except requests.RequestException as e:
            logger.error(f"❌ Relay submission failed: {e}")
            raise SettlementSubmissionError(f"Relay request failed: {e}")

        if response.status_code >= 400:
            logger.error(f"❌ Relay rejected submission: HTTP {response.status_code} {response.text[:200]}")
            raise SettlementSubmissionError(
                f"Relay returned HTTP {response.status_code}",
                status=response.status_code,
                body=response.text[:500],
            )

        try:
            data = response.json()
        except ValueError as e:
            raise SettlementSubmissionError(f"Relay returned invalid JSON: {e}")

        handle = data.get('userOperationHash') or data.get('userOpHash')
        if not handle:
            raise SettlementSubmissionError("Relay response carries no user operation hash", response=data)

        logger.info(f"📡 User operation submitted: {handle}")
        return handle

    async def submit_settlement(self, reward_config: RewardConfig, creator_address: str, user_id: str) -> str:
        """
        Submit the factory deployment for a quiz.

        Returns:
            User operation hash (the settlement handle)

        Raises:
            InsufficientBalanceError: creator cannot cover funding plus deployment fee
            SettlementSubmissionError: the relay did not accept the operation
        """
        return await asyncio.to_thread(self._submit, reward_config, creator_address, user_id)

    def settlement_context(self, creator_address: Optional[str]) -> SettlementContext:
        return SettlementContext(
            factory_address=self.factory_address,
            expected_creator=creator_address,
            contract_type=self.contract_type,
            chain_id=self.chain_id,
        )
