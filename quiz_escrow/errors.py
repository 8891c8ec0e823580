"""
Quiz Escrow error taxonomy

Every error carries a short ``user_message`` that the chat layer can show
as-is; the exception text itself is for logs.
"""


class QuizEscrowError(Exception):
    """Base class for every error raised by the quiz escrow core"""

    user_message = 'Something went wrong. Please try again later.'
    status_code = 500

    def __init__(self, message=None, **details):
        super().__init__(message or self.user_message)
        self.details = details

    @property
    def error_type(self):
        return type(self).__name__


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class SchedulerError(QuizEscrowError):
    pass


class DuplicateOperationError(SchedulerError):
    """An operation with the same fingerprint is already queued or running"""

    user_message = 'This request is already being processed.'
    status_code = 409


class QueueFullError(SchedulerError):
    user_message = 'The operation queue is full. Please try again later.'
    status_code = 503


class OperationCancelledError(SchedulerError):
    user_message = 'The operation was cancelled.'
    status_code = 409


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class LifecycleError(QuizEscrowError):
    status_code = 400


class UnauthorizedError(LifecycleError):
    user_message = 'Only the creator of this quiz can do that.'
    status_code = 403


class AlreadyFinalizedError(LifecycleError):
    user_message = 'This quiz has already been finalized.'
    status_code = 409


class DraftNotFoundError(LifecycleError):
    user_message = 'Could not find your quiz preview. It may have expired or been submitted already.'
    status_code = 404


class DraftExpiredError(LifecycleError):
    user_message = 'This preview has expired. Please generate a new quiz.'
    status_code = 410


class InvalidDraftStateError(LifecycleError):
    user_message = 'This quiz is not ready for that action yet.'
    status_code = 409


class InvalidRewardConfigError(LifecycleError):
    user_message = 'The reward configuration is invalid.'


class InsufficientBalanceError(LifecycleError):
    user_message = 'You do not have enough tokens to create this quiz.'
    status_code = 402


class SettlementSubmissionError(LifecycleError):
    user_message = 'The quiz transaction could not be submitted. Please try again later.'
    status_code = 502


class SettlementFailedError(LifecycleError):
    """Settlement did not produce a verified record; ``reason`` says why"""

    REASON_INSUFFICIENT_BALANCE = 'insufficient_balance'
    REASON_TIMED_OUT = 'timed_out'
    REASON_UNVERIFIED = 'unverified'
    REASON_REVERTED = 'reverted'
    REASON_SUBMISSION_FAILED = 'submission_failed'

    USER_MESSAGES = {
        REASON_INSUFFICIENT_BALANCE: 'You do not have enough tokens to create this quiz.',
        REASON_TIMED_OUT: 'The transaction took too long to confirm. Please check your wallet before trying again.',
        REASON_UNVERIFIED: ('The transaction went through but the quiz contract could not be verified. '
                            'Please contact support before trying again.'),
        REASON_REVERTED: 'The transaction was rejected on-chain. No quiz was created.',
        REASON_SUBMISSION_FAILED: 'The quiz transaction could not be submitted. Please try again later.',
    }

    status_code = 502

    def __init__(self, reason, message=None, cause=None, **details):
        self.reason = reason
        self.cause = cause
        super().__init__(message, **details)

    @property
    def user_message(self):
        return self.USER_MESSAGES.get(self.reason, QuizEscrowError.user_message)


class SettlementUnverifiedError(SettlementFailedError):
    """A transaction exists but its deployment event could not be matched to the creator"""

    def __init__(self, message=None, cause=None, **details):
        super().__init__(SettlementFailedError.REASON_UNVERIFIED, message, cause, **details)


# ---------------------------------------------------------------------------
# Settlement resolution
# ---------------------------------------------------------------------------

class ResolutionError(QuizEscrowError):
    status_code = 502

    def __init__(self, message=None, handle=None, **details):
        super().__init__(message, handle=handle, **details)
        self.handle = handle


class ResolutionTimeoutError(ResolutionError):
    user_message = 'The transaction took too long to confirm.'


class NoMatchingEventError(ResolutionError):
    """The transaction was found but holds no matching deployment event"""

    user_message = 'The transaction went through but the quiz contract could not be verified.'

    def __init__(self, message=None, handle=None, transaction_hash=None, **details):
        super().__init__(message, handle=handle, transaction_hash=transaction_hash, **details)
        self.transaction_hash = transaction_hash


class SettlementRevertedError(ResolutionError):
    user_message = 'The transaction was rejected on-chain.'

    def __init__(self, message=None, handle=None, transaction_hash=None, **details):
        super().__init__(message, handle=handle, transaction_hash=transaction_hash, **details)
        self.transaction_hash = transaction_hash


class ReceiptSourceError(QuizEscrowError):
    """Transient transport failure of a receipt source; retried by the resolver"""


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionError(QuizEscrowError):
    status_code = 409


class AlreadyAttemptedError(SessionError):
    user_message = 'You have already attempted this quiz. Each quiz can only be taken once.'


class SessionOutOfOrderError(SessionError):
    user_message = 'That answer is for a different question. Please answer the current question.'


class InvalidAnswerError(SessionError):
    user_message = 'That is not one of the answer options.'
    status_code = 400


class SessionNotFoundError(SessionError):
    user_message = 'Quiz session expired or not found. Please start the quiz again.'
    status_code = 404


class QuizUnavailableError(SessionError):
    user_message = 'This quiz has no questions available.'
    status_code = 404


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class PersistenceError(QuizEscrowError):
    user_message = 'Could not save to the database. Please try again later.'
    status_code = 503
