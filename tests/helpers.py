"""
Fakes and fixture builders shared by the test suite
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from web3 import Web3

from quiz_escrow.errors import ReceiptSourceError
from quiz_escrow.events import encode_contract_deployed_log
from quiz_escrow.models import SettlementContext
from quiz_escrow.settlement_resolver import ReceiptSource
from quiz_escrow.wallet_service import WALLET_TIMEOUT

FACTORY = Web3.to_checksum_address('0x' + '11' * 20)
OTHER_CONTRACT = Web3.to_checksum_address('0x' + '22' * 20)
CREATOR = Web3.to_checksum_address('0x' + 'ab' * 20)
OTHER_CREATOR = Web3.to_checksum_address('0x' + 'de' * 20)
ESCROW_A = Web3.to_checksum_address('0x' + 'a1' * 20)
ESCROW_B = Web3.to_checksum_address('0x' + 'b2' * 20)
TX_HASH = '0x' + 'cd' * 32
USER_OP_HASH = '0x' + 'ef' * 32

QUESTIONS = [
    {'question': 'What does the escrow hold?', 'options': ['Rewards', 'Nothing', 'Gas'], 'correct_answer': 0},
    {'question': 'Who deploys it?', 'options': ['The bot', 'The factory'], 'correct_answer': 1},
    {'question': 'Which chain?', 'options': ['Base', 'Celo', 'Solana'], 'correct_answer': 0},
]


async def no_sleep(_delay):
    return None


def make_receipt(events: Sequence[Tuple[str, str]] = ((ESCROW_A, CREATOR),), nesting: Optional[str] = 'receipt',
                 tx_hash: str = TX_HASH, success: bool = True, status: str = '0x1',
                 contract_type: str = 'QuizEscrow', factory: str = FACTORY,
                 extra_logs: Sequence[Dict[str, Any]] = ()) -> Dict[str, Any]:
    """User operation receipt whose transaction holds one deployment log per (contract, creator)"""
    logs = list(extra_logs)
    for contract, creator in events:
        logs.append(encode_contract_deployed_log(
            factory, contract, creator, contract_type=contract_type,
            deployment_fee=10 ** 15, log_index=len(logs),
        ))

    transaction = {
        'transactionHash': tx_hash,
        'blockNumber': '0x10',
        'status': status,
        'logs': logs,
    }
    receipt = {'userOpHash': USER_OP_HASH, 'success': success}
    if nesting is None:
        receipt.update(transaction)
    else:
        receipt[nesting] = transaction
    return receipt


class FakeReceiptSource(ReceiptSource):
    """Answers fetch_receipt from a script; exceptions in the script are raised"""

    def __init__(self, name: str, script: List[Any] = None, default: Any = None):
        self.name = name
        self.script = list(script or [])
        self.default = default
        self.calls = []

    async def fetch_receipt(self, handle, chain_id=None):
        self.calls.append(handle)
        response = self.script.pop(0) if self.script else self.default
        if isinstance(response, Exception):
            raise response
        return response


def failing_source(name: str) -> FakeReceiptSource:
    return FakeReceiptSource(name, default=ReceiptSourceError(f"{name} unavailable"))


class FakeChain:
    def __init__(self, handle: str = USER_OP_HASH, error: Exception = None, factory: str = FACTORY):
        self.handle = handle
        self.error = error
        self.factory = factory
        self.submissions = []
        self.on_submit = None

    async def submit_settlement(self, reward_config, creator_address, user_id):
        self.submissions.append((reward_config, creator_address, user_id))
        if self.on_submit is not None:
            self.on_submit()
        if self.error is not None:
            raise self.error
        return self.handle

    def settlement_context(self, creator_address):
        return SettlementContext(factory_address=self.factory, expected_creator=creator_address, chain_id=84532)


class FakeWallets:
    def __init__(self, address: Optional[str] = CREATOR):
        self.address = address
        self.calls = []

    async def wait_for_wallet(self, user_id, polls=None, interval=None):
        self.calls.append(user_id)
        return self.address or WALLET_TIMEOUT
