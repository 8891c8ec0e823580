"""
Quiz Escrow data model

Plain dataclasses shared by the scheduler, the lifecycle state machine,
the session manager and the settlement resolver.
"""

import asyncio
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from web3 import Web3

from .errors import InvalidRewardConfigError, OperationCancelledError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def mask_wallet_address(wallet_address: Optional[str]) -> str:
    if not wallet_address or not wallet_address.startswith("0x") or len(wallet_address) < 10:
        return str(wallet_address)
    return wallet_address[:6] + "..." + wallet_address[-4:]


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

class OperationStatus(str, Enum):
    QUEUED = 'queued'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


@dataclass
class OperationResult:
    """Terminal outcome of an operation; futures always resolve to one of these"""

    fingerprint: str
    status: OperationStatus
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == OperationStatus.SUCCEEDED

    @property
    def cancelled(self) -> bool:
        return self.status == OperationStatus.CANCELLED

    def unwrap(self):
        """Return the value, or raise the failure / cancellation"""
        if self.status == OperationStatus.SUCCEEDED:
            return self.value
        if self.status == OperationStatus.CANCELLED:
            raise OperationCancelledError(f"Operation {self.fingerprint} was cancelled", fingerprint=self.fingerprint)
        raise self.error


@dataclass
class Operation:
    id: str
    work: Callable[['Operation'], Awaitable[Any]] = field(repr=False)
    future: asyncio.Future = field(repr=False)
    status: OperationStatus = OperationStatus.QUEUED
    enqueued_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancel_requested: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in (OperationStatus.QUEUED, OperationStatus.RUNNING)


# ---------------------------------------------------------------------------
# Quizzes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RewardConfig:
    """Funding for one quiz escrow. Amounts are in the token's smallest unit (wei)."""

    funding_amount: int
    chain_id: int
    token_address: Optional[str] = None  # None means the chain's native token
    correct_percent: int = 75

    @property
    def correct_reward(self) -> int:
        return self.funding_amount * self.correct_percent // 100

    @property
    def incorrect_reward(self) -> int:
        # Remainder, so both pools always add up to the funding amount
        return self.funding_amount - self.correct_reward

    @property
    def is_native(self) -> bool:
        return self.token_address is None

    def validate(self) -> 'RewardConfig':
        if not isinstance(self.funding_amount, int) or self.funding_amount <= 0:
            raise InvalidRewardConfigError(f"Funding amount must be a positive integer, got {self.funding_amount!r}")
        if not isinstance(self.chain_id, int) or self.chain_id <= 0:
            raise InvalidRewardConfigError(f"Invalid chain id {self.chain_id!r}")
        if not 1 <= self.correct_percent <= 99:
            raise InvalidRewardConfigError(f"Correct reward percent must be between 1 and 99, got {self.correct_percent}")
        if self.token_address is not None and not Web3.is_address(self.token_address):
            raise InvalidRewardConfigError(f"Invalid token address {self.token_address!r}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'funding_amount': str(self.funding_amount),
            'chain_id': self.chain_id,
            'token_address': self.token_address,
            'correct_percent': self.correct_percent,
            'correct_reward': str(self.correct_reward),
            'incorrect_reward': str(self.incorrect_reward),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RewardConfig':
        try:
            return cls(
                funding_amount=int(data['funding_amount']),
                chain_id=int(data['chain_id']),
                token_address=data.get('token_address') or None,
                correct_percent=int(data.get('correct_percent', 75)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidRewardConfigError(f"Malformed reward config: {e}")


class QuizStatus(str, Enum):
    DRAFT = 'draft'
    PREVIEW_SENT = 'preview_sent'
    APPROVED = 'approved'
    CANCELLED = 'cancelled'
    SETTLING = 'settling'
    SETTLED = 'settled'
    SETTLEMENT_FAILED = 'settlement_failed'


TERMINAL_QUIZ_STATUSES = frozenset({
    QuizStatus.CANCELLED,
    QuizStatus.SETTLED,
    QuizStatus.SETTLEMENT_FAILED,
})


@dataclass
class Quiz:
    """A reward-bearing quiz. It is a draft until settlement succeeds."""

    id: str
    creator_id: str
    source_reference: str
    reward_config: RewardConfig
    expires_at: datetime
    status: QuizStatus = QuizStatus.DRAFT
    created_at: datetime = field(default_factory=utc_now)
    questions: List[Dict[str, Any]] = field(default_factory=list)
    creator_address: Optional[str] = None
    settlement_handle: Optional[str] = None
    settlement_record: Optional['SettlementRecord'] = None
    unsettled: bool = False
    failure_reason: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        return f"{self.creator_id}:{self.id}"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_QUIZ_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def to_record(self) -> Dict[str, Any]:
        """Row written to durable storage"""
        record = self.settlement_record
        return {
            'id': self.id,
            'creator_id': self.creator_id,
            'creator_address': self.creator_address,
            'source_reference': self.source_reference,
            'funding_amount': str(self.reward_config.funding_amount),
            'correct_reward': str(self.reward_config.correct_reward),
            'incorrect_reward': str(self.reward_config.incorrect_reward),
            'token_address': self.reward_config.token_address,
            'chain_id': self.reward_config.chain_id,
            'status': self.status.value,
            'unsettled': self.unsettled,
            'settlement_handle': self.settlement_handle,
            'transaction_hash': record.transaction_hash if record else None,
            'contract_address': record.contract_address if record else None,
            'settlement': record.to_dict() if record else None,
            'questions': self.questions,
            'created_at': self.created_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Quiz taking
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AnswerRecord:
    question_index: int
    selected_option: int
    correct: bool


@dataclass(frozen=True)
class SessionHandle:
    user_id: str
    quiz_id: str

    @property
    def session_id(self) -> str:
        return f"{self.user_id}_{self.quiz_id}"


@dataclass
class QuizAttempt:
    user_id: str
    quiz_id: str
    questions: List[Dict[str, Any]] = field(default_factory=list, repr=False)
    wallet_address: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)
    current_question_index: int = 0
    answers: List[AnswerRecord] = field(default_factory=list)
    completed: bool = False
    score: int = 0

    @property
    def handle(self) -> SessionHandle:
        return SessionHandle(self.user_id, self.quiz_id)

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    def to_record(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'quiz_id': self.quiz_id,
            'wallet_address': self.wallet_address,
            'attempted_at': self.started_at.isoformat(),
            'completed': self.completed,
        }

    def to_completion_record(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'quiz_id': self.quiz_id,
            'wallet_address': self.wallet_address,
            'score': self.score,
            'total_questions': self.total_questions,
            'answers': [asdict(answer) for answer in self.answers],
            'completed_at': utc_now().isoformat(),
        }


@dataclass(frozen=True)
class NextStep:
    """What the chat layer shows after an answer is recorded"""

    question_index: int
    correct: bool
    score: int
    total_questions: int
    completed: bool = False
    next_question_index: Optional[int] = None
    next_question: Optional[Dict[str, Any]] = None
    replayed: bool = False

    @property
    def incorrect_count(self) -> int:
        answered = self.question_index + 1
        return answered - self.score


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SettlementContext:
    factory_address: str
    expected_creator: Optional[str] = None
    contract_type: str = 'QuizEscrow'
    chain_id: Optional[int] = None


@dataclass(frozen=True)
class SettlementRecord:
    """Verified outcome of resolving a settlement handle. Immutable."""

    handle: str
    transaction_hash: str
    contract_address: Optional[str]
    creator: Optional[str]
    contract_type: str
    validated: bool = False
    deployment_fee: int = 0
    block_number: Optional[int] = None
    source: Optional[str] = field(default=None, compare=False)
    resolved_at: datetime = field(default_factory=utc_now, compare=False)
    attempts: int = field(default=1, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'handle': self.handle,
            'transaction_hash': self.transaction_hash,
            'contract_address': self.contract_address,
            'creator': self.creator,
            'contract_type': self.contract_type,
            'validated': self.validated,
            'deployment_fee': str(self.deployment_fee),
            'block_number': self.block_number,
            'source': self.source,
            'resolved_at': self.resolved_at.isoformat(),
            'attempts': self.attempts,
        }
