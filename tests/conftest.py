import logging

import pytest

from quiz_escrow.scheduler import OperationScheduler
from quiz_escrow.settlement_resolver import SettlementResolver
from quiz_escrow.storage import InMemoryQuizStore

from helpers import FakeChain, FakeReceiptSource, FakeWallets, make_receipt, no_sleep

logging.getLogger('quiz_escrow').setLevel(logging.DEBUG)


@pytest.fixture
def store():
    return InMemoryQuizStore()


@pytest.fixture
def scheduler():
    return OperationScheduler(max_queue_size=10, lease_ttl=60)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def wallets():
    return FakeWallets()


@pytest.fixture
def receipt_source():
    return FakeReceiptSource('primary', default=make_receipt())


@pytest.fixture
def resolver(receipt_source):
    return SettlementResolver(receipt_source, max_retries=3, retry_delay=0, sleep=no_sleep)
