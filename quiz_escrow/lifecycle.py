"""
Quiz Lifecycle State Machine

    Draft -> PreviewSent -> Approved -> Settling -> Settled
    PreviewSent -> Cancelled
    Settling -> SettlementFailed

Approval is serialized on the OperationScheduler under "{creator}:{draft}",
so double clicks and redelivered webhooks join the settlement already in
flight. A quiz is written to durable storage only after its settlement
record has been resolved and validated against the creator.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from config import QUIZ_ESCROW_CONFIG, is_unsettled_mode
from .errors import (
    AlreadyFinalizedError,
    DraftExpiredError,
    DraftNotFoundError,
    InsufficientBalanceError,
    InvalidDraftStateError,
    NoMatchingEventError,
    OperationCancelledError,
    PersistenceError,
    ResolutionTimeoutError,
    SettlementFailedError,
    SettlementRevertedError,
    SettlementSubmissionError,
    SettlementUnverifiedError,
    UnauthorizedError,
)
from .models import Operation, Quiz, QuizStatus, RewardConfig, mask_wallet_address, utc_now
from .scheduler import OperationScheduler, checkpoint

logger = logging.getLogger(__name__)

DRAFTS_STORE = 'quiz_drafts'


class QuizLifecycleManager:
    """Drives drafts through preview, approval, settlement and persistence"""

    def __init__(self, scheduler: OperationScheduler, resolver, chain, wallets, store,
                 unsettled_mode: Optional[bool] = None, draft_ttl: Optional[int] = None,
                 correct_percent: Optional[int] = None, wallet_polls: Optional[int] = None,
                 wallet_poll_interval: Optional[float] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.scheduler = scheduler
        self.resolver = resolver
        self.chain = chain
        self.wallets = wallets
        self.store = store
        self.unsettled_mode = is_unsettled_mode() if unsettled_mode is None else unsettled_mode
        self.draft_ttl = draft_ttl if draft_ttl is not None else QUIZ_ESCROW_CONFIG['DRAFT_TTL_SECONDS']
        self.correct_percent = correct_percent if correct_percent is not None \
            else QUIZ_ESCROW_CONFIG['CORRECT_REWARD_PERCENT']
        self.wallet_polls = wallet_polls
        self.wallet_poll_interval = wallet_poll_interval
        self._clock = clock

        # Finished drafts outlive their preview window so late clicks get a clear answer
        self.drafts = scheduler.lease_store(DRAFTS_STORE, ttl=self.draft_ttl + scheduler.lease_ttl)

        if self.unsettled_mode:
            logger.warning("⚠️ UNSETTLED MODE: quizzes will be stored without on-chain settlement")

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def create_draft(self, creator_id: str, reward_config: RewardConfig, source_reference: str,
                     questions: Optional[List[Dict[str, Any]]] = None) -> Quiz:
        if not source_reference:
            raise InvalidDraftStateError("A quiz needs a source reference")

        if reward_config.correct_percent != self.correct_percent:
            reward_config = RewardConfig(
                funding_amount=reward_config.funding_amount,
                chain_id=reward_config.chain_id,
                token_address=reward_config.token_address,
                correct_percent=self.correct_percent,
            )
        reward_config.validate()

        now = self._clock()
        quiz = Quiz(
            id=uuid.uuid4().hex,
            creator_id=str(creator_id),
            source_reference=source_reference,
            reward_config=reward_config,
            created_at=now,
            expires_at=now + timedelta(seconds=self.draft_ttl),
            questions=list(questions or []),
        )
        self.drafts.put(quiz.id, quiz, owner=quiz.fingerprint)

        logger.info(f"📝 Draft {quiz.id} created by {creator_id}: funding {reward_config.funding_amount} "
                    f"({reward_config.correct_reward} correct / {reward_config.incorrect_reward} incorrect)")
        return quiz

    def get_draft(self, draft_id: str) -> Quiz:
        quiz = self.drafts.get(draft_id)
        if quiz is None:
            raise DraftNotFoundError(f"Draft {draft_id} not found", draft_id=draft_id)
        return quiz

    def mark_preview_sent(self, draft_id: str) -> Quiz:
        quiz = self.get_draft(draft_id)
        if quiz.status == QuizStatus.PREVIEW_SENT:
            return quiz
        if quiz.status != QuizStatus.DRAFT:
            raise InvalidDraftStateError(f"Draft {draft_id} is {quiz.status.value}", draft_id=draft_id)
        self._check_not_expired(quiz)

        quiz.status = QuizStatus.PREVIEW_SENT
        logger.info(f"👀 Preview sent for draft {draft_id}")
        return quiz

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    async def approve(self, draft_id: str, approver_id: str) -> Quiz:
        """
        Approve a previewed draft and settle it.

        Returns:
            The Quiz in Settled state (flagged ``unsettled`` in unsettled mode)

        Raises:
            UnauthorizedError: approver is not the creator
            AlreadyFinalizedError: the draft already reached a terminal state
            SettlementFailedError: settlement did not produce a verified record
            OperationCancelledError: the draft was cancelled before settlement finished
        """
        quiz = self.get_draft(draft_id)
        self._check_owner(quiz, approver_id, 'approve')

        if quiz.is_terminal:
            raise AlreadyFinalizedError(f"Draft {draft_id} is already {quiz.status.value}", draft_id=draft_id)

        if quiz.status in (QuizStatus.APPROVED, QuizStatus.SETTLING):
            if not self.scheduler.is_active(quiz.fingerprint):
                raise InvalidDraftStateError(f"Draft {draft_id} is {quiz.status.value} with no operation",
                                             draft_id=draft_id)
        elif quiz.status == QuizStatus.PREVIEW_SENT:
            self._check_not_expired(quiz)
        else:
            raise InvalidDraftStateError(f"Draft {draft_id} has no preview yet", draft_id=draft_id)

        async def work(operation: Operation) -> Quiz:
            return await self._settle(operation, quiz)

        # Raises QueueFullError with the draft still PREVIEW_SENT, so approval can be retried
        future = self.scheduler.enqueue(quiz.fingerprint, work)
        if quiz.status == QuizStatus.PREVIEW_SENT:
            quiz.status = QuizStatus.APPROVED

        result = await future
        return result.unwrap()

    def cancel(self, draft_id: str, requester_id: Optional[str] = None) -> Quiz:
        quiz = self.get_draft(draft_id)
        if requester_id is not None:
            self._check_owner(quiz, requester_id, 'cancel')

        if quiz.is_terminal:
            raise AlreadyFinalizedError(f"Draft {draft_id} is already {quiz.status.value}", draft_id=draft_id)

        if quiz.status in (QuizStatus.DRAFT, QuizStatus.PREVIEW_SENT):
            quiz.status = QuizStatus.CANCELLED
            logger.info(f"🛑 Draft {draft_id} cancelled")
            return quiz

        operation = self.scheduler.get_operation(quiz.fingerprint)
        self.scheduler.cancel(quiz.fingerprint)
        if operation is None or not operation.is_active:
            # Queued work was dropped before it started
            quiz.status = QuizStatus.CANCELLED
            logger.info(f"🛑 Draft {draft_id} cancelled before settlement started")
        else:
            logger.info(f"🛑 Cancellation requested for draft {draft_id} while {quiz.status.value}")
        return quiz

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _settle(self, operation: Operation, quiz: Quiz) -> Quiz:
        try:
            checkpoint(operation)
            quiz.status = QuizStatus.SETTLING
            logger.info(f"⚙️ Settling quiz {quiz.id} for creator {quiz.creator_id}")

            if self.unsettled_mode:
                return await self._store_unsettled(operation, quiz)
            return await self._settle_onchain(operation, quiz)
        except OperationCancelledError:
            quiz.status = QuizStatus.CANCELLED
            raise
        except SettlementFailedError as e:
            quiz.status = QuizStatus.SETTLEMENT_FAILED
            quiz.failure_reason = e.reason
            logger.error(f"❌ Settlement failed for quiz {quiz.id} ({e.reason}): {e}")
            raise
        except PersistenceError:
            # Quiz stays SETTLED; _persist already logged the reconciliation line
            raise
        except Exception as e:
            if quiz.settlement_handle:
                error = SettlementUnverifiedError(str(e), cause=e, handle=quiz.settlement_handle)
                logger.error(f"🚨 RECONCILIATION REQUIRED: settlement {quiz.settlement_handle} for quiz "
                             f"{quiz.id} interrupted after submission: {e}")
            else:
                error = SettlementFailedError(SettlementFailedError.REASON_SUBMISSION_FAILED, str(e), cause=e)
            quiz.status = QuizStatus.SETTLEMENT_FAILED
            quiz.failure_reason = error.reason
            logger.error(f"❌ Settlement failed for quiz {quiz.id} ({error.reason}): {e}")
            raise error from e

    async def _settle_onchain(self, operation: Operation, quiz: Quiz) -> Quiz:
        address = await self.wallets.wait_for_wallet(quiz.creator_id, self.wallet_polls, self.wallet_poll_interval)
        if not address:
            raise SettlementFailedError(
                SettlementFailedError.REASON_SUBMISSION_FAILED,
                f"No wallet for creator {quiz.creator_id}",
            )
        quiz.creator_address = address

        checkpoint(operation)

        try:
            handle = await self.chain.submit_settlement(quiz.reward_config, address, quiz.creator_id)
        except InsufficientBalanceError as e:
            raise SettlementFailedError(SettlementFailedError.REASON_INSUFFICIENT_BALANCE, str(e), cause=e)
        except SettlementSubmissionError as e:
            raise SettlementFailedError(SettlementFailedError.REASON_SUBMISSION_FAILED, str(e), cause=e)
        quiz.settlement_handle = handle

        # From here on funds may have moved; the resolution runs to completion even if cancelled
        context = self.chain.settlement_context(address)
        try:
            record = await self.resolver.resolve(handle, context)
        except ResolutionTimeoutError as e:
            raise SettlementFailedError(SettlementFailedError.REASON_TIMED_OUT, str(e), cause=e, handle=handle)
        except SettlementRevertedError as e:
            raise SettlementFailedError(SettlementFailedError.REASON_REVERTED, str(e), cause=e, handle=handle)
        except NoMatchingEventError as e:
            raise SettlementUnverifiedError(str(e), cause=e, handle=handle)

        if not record.validated:
            logger.error(
                f"🚨 RECONCILIATION REQUIRED: settlement {handle} tx={record.transaction_hash} "
                f"deployed {record.contract_address} for {mask_wallet_address(record.creator)}, "
                f"expected creator {mask_wallet_address(address)}"
            )
            raise SettlementUnverifiedError(
                f"Deployment in {record.transaction_hash} does not match creator {address}",
                handle=handle,
                transaction_hash=record.transaction_hash,
            )

        quiz.settlement_record = record

        if operation.cancel_requested:
            logger.error(
                f"🚨 RECONCILIATION REQUIRED: quiz {quiz.id} cancelled after settlement; escrow "
                f"{record.contract_address} (tx {record.transaction_hash}) exists but was not recorded"
            )
        checkpoint(operation)

        quiz.status = QuizStatus.SETTLED
        await self._persist(quiz)
        logger.info(f"✅ Quiz {quiz.id} settled: escrow {record.contract_address}")
        return quiz

    async def _store_unsettled(self, operation: Operation, quiz: Quiz) -> Quiz:
        checkpoint(operation)
        quiz.unsettled = True
        quiz.status = QuizStatus.SETTLED
        logger.warning(f"⚠️ UNSETTLED MODE: storing quiz {quiz.id} without a settlement record")
        await self._persist(quiz)
        return quiz

    async def _persist(self, quiz: Quiz) -> None:
        try:
            await self.store.save_quiz(quiz)
        except PersistenceError:
            record = quiz.settlement_record
            logger.error(
                f"🚨 RECONCILIATION REQUIRED: quiz {quiz.id} settled "
                f"(escrow {record.contract_address if record else 'none'}) but could not be saved"
            )
            raise

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_owner(self, quiz: Quiz, actor_id: str, action: str) -> None:
        if str(actor_id) != quiz.creator_id:
            logger.warning(f"⚠️ User {actor_id} tried to {action} draft {quiz.id} owned by {quiz.creator_id}")
            raise UnauthorizedError(f"User {actor_id} cannot {action} draft {quiz.id}", draft_id=quiz.id)

    def _check_not_expired(self, quiz: Quiz) -> None:
        if quiz.is_expired(self._clock()):
            raise DraftExpiredError(f"Draft {quiz.id} expired at {quiz.expires_at.isoformat()}", draft_id=quiz.id)
