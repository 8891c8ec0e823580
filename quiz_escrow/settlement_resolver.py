"""
Settlement Resolver

Turns an opaque settlement handle (an ERC-4337 user operation hash returned
by the relay) into a verified SettlementRecord:

1. Receipt acquisition - ask each receipt source in order, retrying every
   source up to ``max_retries`` times with a fixed delay, falling back to the
   next source when one keeps answering not-found or erroring.
2. Event extraction - locate the bundled transaction inside the receipt
   (its nesting differs between sources), then scan its logs for the
   factory's ContractDeployed event and validate the creator.

Resolution is read-only against the chain, so resolving the same handle
twice yields equal records; successful resolutions are also cached.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from config import SETTLEMENT_RESOLVER_CONFIG
from .errors import NoMatchingEventError, ReceiptSourceError, ResolutionTimeoutError, SettlementRevertedError
from .events import find_deployment_events, to_hex_str
from .models import SettlementContext, SettlementRecord, mask_wallet_address

logger = logging.getLogger(__name__)

# Places where receipt sources have been seen to nest the bundled transaction
TRANSACTION_PATHS = (
    'receipt',
    'transactionReceipt',
    'actualTransaction',
    'bundlerTransaction',
    'executionReceipt',
    'transaction',
    'txReceipt',
)

# Response envelopes wrapped around the receipt itself
ENVELOPE_KEYS = ('result', 'data')


class ReceiptSource(ABC):
    """Somewhere a user operation receipt can be looked up"""

    name = 'receipt-source'

    @abstractmethod
    async def fetch_receipt(self, handle: str, chain_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """
        Returns:
            The raw receipt, or None when this source does not (yet) know the handle

        Raises:
            ReceiptSourceError: on transport failures worth retrying
        """


class SettlementResolver:
    """Resolves settlement handles to verified settlement records"""

    def __init__(self, primary: ReceiptSource, alternatives: Sequence[ReceiptSource] = (),
                 max_retries: Optional[int] = None, retry_delay: Optional[float] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.sources: List[ReceiptSource] = [primary, *alternatives]
        self.max_retries = max_retries if max_retries is not None else SETTLEMENT_RESOLVER_CONFIG['MAX_RETRIES']
        self.retry_delay = retry_delay if retry_delay is not None else SETTLEMENT_RESOLVER_CONFIG['RETRY_DELAY_SECONDS']
        self._sleep = sleep
        self._resolved: Dict[Tuple[str, SettlementContext], SettlementRecord] = {}

        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")

    async def resolve(self, handle: str, context: SettlementContext) -> SettlementRecord:
        """
        Resolve a settlement handle to a verified record

        Args:
            handle: Opaque user operation hash returned on submission
            context: Factory address, expected creator and contract type to validate against

        Returns:
            SettlementRecord (``validated`` is False when no expected creator matched)

        Raises:
            ResolutionTimeoutError: no source produced a receipt within the retry budget
            SettlementRevertedError: the user operation or its transaction reverted
            NoMatchingEventError: the transaction exists but holds no matching deployment
        """
        cache_key = (handle, context)
        cached = self._resolved.get(cache_key)
        if cached is not None:
            logger.info(f"♻️ Settlement {handle} already resolved to {cached.contract_address}")
            return cached

        logger.info(f"🚀 Resolving settlement {handle} (factory {context.factory_address}, "
                    f"expected creator {mask_wallet_address(context.expected_creator) if context.expected_creator else 'any'})")

        receipt, source_name, attempts = await self.acquire_receipt(handle, context.chain_id)

        transaction = self.extract_transaction(receipt)
        if transaction is None:
            self._log_reconciliation(handle, None, context, "receipt holds no transaction data")
            raise NoMatchingEventError(
                f"Could not extract transaction data from receipt for {handle}",
                handle=handle,
            )

        if self.is_reverted(receipt, transaction):
            logger.error(f"❌ Settlement {handle} reverted in transaction {transaction['transaction_hash']}")
            raise SettlementRevertedError(
                f"User operation {handle} reverted",
                handle=handle,
                transaction_hash=transaction['transaction_hash'],
            )

        events = find_deployment_events(transaction['logs'], context.factory_address, context.contract_type)
        if not events:
            self._log_reconciliation(handle, transaction['transaction_hash'], context,
                                     f"no {context.contract_type} deployment event in {len(transaction['logs'])} logs")
            raise NoMatchingEventError(
                f"No {context.contract_type} deployment event found for {handle}",
                handle=handle,
                transaction_hash=transaction['transaction_hash'],
            )

        event, validated = self.select_event(events, context.expected_creator)

        record = SettlementRecord(
            handle=handle,
            transaction_hash=transaction['transaction_hash'],
            contract_address=event['contract_address'],
            creator=event['creator'],
            contract_type=event['contract_type'],
            validated=validated,
            deployment_fee=event['deployment_fee'],
            block_number=transaction['block_number'],
            source=source_name,
            attempts=attempts,
        )

        logger.info(f"🎉 Settlement {handle} resolved: escrow {record.contract_address} "
                    f"in tx {record.transaction_hash} (validated={validated}, via {source_name})")
        self._resolved[cache_key] = record
        return record

    # ------------------------------------------------------------------
    # Stage 1: receipt acquisition
    # ------------------------------------------------------------------

    async def acquire_receipt(self, handle: str, chain_id: Optional[int] = None) -> Tuple[Dict[str, Any], str, int]:
        """Returns (receipt, source name, total attempts)"""
        attempts = 0
        failures = []

        for source in self.sources:
            for attempt in range(1, self.max_retries + 1):
                attempts += 1
                try:
                    receipt = await source.fetch_receipt(handle, chain_id)
                except ReceiptSourceError as e:
                    logger.warning(f"⚠️ {source.name} attempt {attempt}/{self.max_retries} failed for {handle}: {e}")
                    failures.append(f"{source.name}: {e}")
                else:
                    if receipt:
                        logger.info(f"✅ Receipt for {handle} retrieved from {source.name} on attempt {attempt}")
                        return receipt, source.name, attempts
                    logger.info(f"🔍 {source.name} has no receipt for {handle} yet ({attempt}/{self.max_retries})")
                    failures.append(f"{source.name}: not found")

                if attempt < self.max_retries:
                    await self._sleep(self.retry_delay)

            logger.info(f"🔄 Falling back from {source.name} for {handle}")

        logger.error(f"❌ No receipt for {handle} after {attempts} attempts across {len(self.sources)} sources")
        raise ResolutionTimeoutError(
            f"Failed to get receipt for {handle} after {attempts} attempts",
            handle=handle,
            attempts=attempts,
            failures=failures,
        )

    # ------------------------------------------------------------------
    # Stage 2: event extraction and validation
    # ------------------------------------------------------------------

    def extract_transaction(self, receipt: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Find the bundled transaction inside a receipt, whichever way it is nested"""
        for candidate in self._candidates(receipt):
            for path in TRANSACTION_PATHS:
                tx = candidate.get(path)
                if isinstance(tx, dict) and (tx.get('transactionHash') or tx.get('hash')):
                    logger.debug(f"📋 Found transaction data in: {path}")
                    return self._normalize_transaction(tx)

            if candidate.get('transactionHash') or candidate.get('hash'):
                return self._normalize_transaction(candidate)

        return None

    @staticmethod
    def is_reverted(receipt: Dict[str, Any], transaction: Dict[str, Any]) -> bool:
        for candidate in SettlementResolver._candidates(receipt):
            if candidate.get('success') is False:
                return True
        return transaction['status'] in (0, '0x0', False)

    @staticmethod
    def select_event(events: List[Dict[str, Any]], expected_creator: Optional[str]) -> Tuple[Dict[str, Any], bool]:
        """Prefer the event whose creator matches; otherwise the first one, unvalidated"""
        if expected_creator:
            expected = expected_creator.lower()
            for event in events:
                if event['creator'].lower() == expected:
                    return event, True
            logger.warning(f"⚠️ No deployment matches expected creator {mask_wallet_address(expected_creator)} "
                           f"among {len(events)} events")
        elif len(events) > 1:
            logger.warning(f"⚠️ {len(events)} deployment events and no expected creator, taking the first")

        return events[0], False

    @staticmethod
    def _candidates(receipt: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        yield receipt
        for key in ENVELOPE_KEYS:
            inner = receipt.get(key)
            if isinstance(inner, dict):
                yield inner

    @staticmethod
    def _normalize_transaction(tx: Dict[str, Any]) -> Dict[str, Any]:
        block_number = tx.get('blockNumber')
        if isinstance(block_number, str):
            block_number = int(block_number, 16) if block_number.startswith('0x') else int(block_number)

        status = tx.get('status')
        if isinstance(status, str) and status.startswith('0x'):
            status = int(status, 16)

        return {
            'transaction_hash': to_hex_str(tx.get('transactionHash') or tx.get('hash')),
            'logs': list(tx.get('logs') or []),
            'block_number': block_number,
            'status': status,
            'from': tx.get('from'),
            'to': tx.get('to'),
        }

    @staticmethod
    def _log_reconciliation(handle: str, transaction_hash: Optional[str], context: SettlementContext, reason: str):
        logger.error(
            f"🚨 RECONCILIATION REQUIRED: settlement {handle} tx={transaction_hash or 'unknown'} "
            f"creator={context.expected_creator or 'unknown'} factory={context.factory_address}: {reason}"
        )
