"""
Quiz-Taking Session Manager

One active session per (user, quiz), one attempt ever: starting a quiz
counts as attempting it whether or not it is finished. Answers must arrive
in question order; a redelivered answer for a question already answered is
acknowledged without touching the score.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import SESSION_CONFIG
from .errors import (
    AlreadyAttemptedError,
    InvalidAnswerError,
    QuizUnavailableError,
    SessionNotFoundError,
    SessionOutOfOrderError,
)
from .lease_store import LeaseStore
from .models import AnswerRecord, NextStep, QuizAttempt, SessionHandle, mask_wallet_address, utc_now

logger = logging.getLogger(__name__)

ACTIVE_SESSIONS_STORE = 'quiz_sessions'
COMPLETED_SESSIONS_STORE = 'completed_quiz_sessions'

# Leases only back up the started_at sweep, for sessions it never reaches
SESSION_LEASE_FACTOR = 2

QuestionSource = Callable[[str], Awaitable[List[Dict[str, Any]]]]


class _Starting:
    """Placeholder holding a session slot while start() does its lookups"""

    def __repr__(self):
        return 'STARTING'


STARTING = _Starting()


def public_question(question: Dict[str, Any]) -> Dict[str, Any]:
    """Question as shown to the player, without the answer"""
    return {
        'question': question.get('question'),
        'options': list(question.get('options') or []),
    }


class QuizSessionManager:
    """Tracks per-user progress through a quiz"""

    def __init__(self, store, question_source: Optional[QuestionSource] = None, scheduler=None,
                 session_ttl: Optional[int] = None, replay_ttl: Optional[int] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.question_source = question_source or store.get_quiz_questions
        self.session_ttl = session_ttl if session_ttl is not None else SESSION_CONFIG['SESSION_TTL_SECONDS']
        self.replay_ttl = replay_ttl if replay_ttl is not None else SESSION_CONFIG['COMPLETED_REPLAY_TTL_SECONDS']
        self._clock = clock

        if scheduler is not None:
            self.sessions = scheduler.lease_store(ACTIVE_SESSIONS_STORE, ttl=self.session_ttl * SESSION_LEASE_FACTOR)
            self.completed = scheduler.lease_store(COMPLETED_SESSIONS_STORE, ttl=self.replay_ttl)
        else:
            self.sessions = LeaseStore(ACTIVE_SESSIONS_STORE, default_ttl=self.session_ttl * SESSION_LEASE_FACTOR)
            self.completed = LeaseStore(COMPLETED_SESSIONS_STORE, default_ttl=self.replay_ttl)

        self._completing: Dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Start / abandon
    # ------------------------------------------------------------------

    async def start(self, user_id: str, quiz_id: str, wallet_address: Optional[str] = None) -> SessionHandle:
        """
        Start a quiz session.

        The session slot is claimed before any lookup, so two concurrent
        starts for the same pair cannot both get past this point.

        Raises:
            AlreadyAttemptedError: completed before, attempted before, or active now
            QuizUnavailableError: the quiz has no questions
        """
        handle = SessionHandle(str(user_id), str(quiz_id))
        key = handle.session_id

        if not self.sessions.add(key, STARTING):
            logger.info(f"🚫 User {user_id} already has an active session for quiz {quiz_id}")
            raise AlreadyAttemptedError(f"Session {key} is already active", session_id=key)

        try:
            if await self.store.find_completion(handle.user_id, handle.quiz_id):
                logger.info(f"🚫 User {user_id} already completed quiz {quiz_id}")
                raise AlreadyAttemptedError(f"User {user_id} already completed quiz {quiz_id}", session_id=key)

            if await self.store.find_attempt(handle.user_id, handle.quiz_id):
                logger.info(f"🚫 User {user_id} already attempted quiz {quiz_id}")
                raise AlreadyAttemptedError(f"User {user_id} already attempted quiz {quiz_id}", session_id=key)

            questions = await self.question_source(handle.quiz_id)
            if not questions:
                raise QuizUnavailableError(f"Quiz {quiz_id} has no questions", quiz_id=quiz_id)

            attempt = QuizAttempt(
                user_id=handle.user_id,
                quiz_id=handle.quiz_id,
                questions=list(questions),
                wallet_address=wallet_address,
                started_at=self._clock(),
            )

            if not await self.store.save_attempt(attempt):
                raise AlreadyAttemptedError(f"Attempt for {key} already recorded", session_id=key)
        except BaseException:
            self.sessions.delete(key)
            raise

        self.sessions.put(key, attempt)
        logger.info(f"🎯 Quiz session started: {key} ({attempt.total_questions} questions, "
                    f"wallet {mask_wallet_address(wallet_address)})")
        return handle

    def abandon(self, handle: SessionHandle) -> bool:
        """Drop the active session; the attempt record stays, so the quiz cannot be restarted"""
        attempt = self.sessions.pop(handle.session_id)
        if attempt is None or attempt is STARTING:
            return False
        logger.info(f"🏳️ Session {handle.session_id} abandoned at question {attempt.current_question_index}")
        return True

    def expire_stale_sessions(self) -> int:
        """Abandon sessions older than the session TTL. Returns how many were removed."""
        now = self._clock()
        expired = self.sessions.cleanup()
        for key, attempt in self.sessions.items():
            if attempt is STARTING:
                continue
            if self._is_stale(attempt, now):
                self.sessions.delete(key)
                expired += 1
        self.completed.cleanup()

        if expired:
            logger.info(f"🧹 Expired {expired} stale quiz sessions")
        return expired

    # ------------------------------------------------------------------
    # Answers
    # ------------------------------------------------------------------

    async def record_answer(self, handle: SessionHandle, question_index: int, selected_option: int) -> NextStep:
        key = handle.session_id

        in_flight = self._completing.get(key)
        if in_flight is not None:
            step = await asyncio.shield(in_flight)
            return self._replay_completed(key, step, question_index)

        attempt = self.sessions.get(key)
        if attempt is None or attempt is STARTING:
            step = self.completed.get(key)
            if step is not None:
                return self._replay_completed(key, step, question_index)
            raise SessionNotFoundError(f"No active session {key}", session_id=key)

        if self._is_stale(attempt, self._clock()):
            self.sessions.delete(key)
            logger.info(f"⌛ Session {key} expired before answer to question {question_index}")
            raise SessionNotFoundError(f"Session {key} expired", session_id=key)

        if 0 <= question_index < len(attempt.answers):
            return self._replay_answer(attempt, question_index, selected_option)

        if question_index != attempt.current_question_index:
            logger.warning(f"⚠️ Out-of-order answer for {key}: got question {question_index}, "
                           f"expected {attempt.current_question_index}")
            raise SessionOutOfOrderError(
                f"Expected question {attempt.current_question_index}, got {question_index}",
                session_id=key,
            )

        question = attempt.questions[question_index]
        options = question.get('options') or []
        if not isinstance(selected_option, int) or not 0 <= selected_option < len(options):
            raise InvalidAnswerError(f"Option {selected_option!r} out of range for question {question_index}")

        answer = AnswerRecord(
            question_index=question_index,
            selected_option=selected_option,
            correct=selected_option == question.get('correct_answer'),
        )
        answers = attempt.answers + [answer]
        score = attempt.score + (1 if answer.correct else 0)
        next_index = question_index + 1

        if next_index < attempt.total_questions:
            attempt.answers = answers
            attempt.score = score
            attempt.current_question_index = next_index
            return NextStep(
                question_index=question_index,
                correct=answer.correct,
                score=score,
                total_questions=attempt.total_questions,
                next_question_index=next_index,
                next_question=public_question(attempt.questions[next_index]),
            )

        return await self._complete(attempt, answers, score)

    async def _complete(self, attempt: QuizAttempt, answers: List[AnswerRecord], score: int) -> NextStep:
        key = attempt.handle.session_id
        finished = replace(
            attempt,
            answers=answers,
            score=score,
            current_question_index=len(answers),
            completed=True,
        )
        step = NextStep(
            question_index=len(answers) - 1,
            correct=answers[-1].correct,
            score=score,
            total_questions=attempt.total_questions,
            completed=True,
        )

        future = asyncio.get_running_loop().create_future()
        self._completing[key] = future
        try:
            await self.store.save_completion(finished)
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved; there may be no duplicate waiting on it
            future.exception()
            raise
        except BaseException:
            future.cancel()
            raise
        else:
            attempt.answers = answers
            attempt.score = score
            attempt.current_question_index = finished.current_question_index
            attempt.completed = True

            self.sessions.delete(key)
            self.completed.put(key, step)
            future.set_result(step)
        finally:
            self._completing.pop(key, None)

        logger.info(f"🏁 Quiz session {key} completed: {score}/{attempt.total_questions} correct")
        return step

    def _is_stale(self, attempt: QuizAttempt, now: datetime) -> bool:
        return (now - attempt.started_at).total_seconds() > self.session_ttl

    def _replay_answer(self, attempt: QuizAttempt, question_index: int, selected_option: int) -> NextStep:
        previous = attempt.answers[question_index]
        if previous.selected_option != selected_option:
            raise SessionOutOfOrderError(
                f"Question {question_index} was already answered with option {previous.selected_option}",
                session_id=attempt.handle.session_id,
            )

        logger.info(f"♻️ Duplicate answer for {attempt.handle.session_id} question {question_index} ignored")
        current = attempt.current_question_index
        return NextStep(
            question_index=question_index,
            correct=previous.correct,
            score=attempt.score,
            total_questions=attempt.total_questions,
            next_question_index=current,
            next_question=public_question(attempt.questions[current]),
            replayed=True,
        )

    def _replay_completed(self, key: str, step: NextStep, question_index: int) -> NextStep:
        if question_index != step.question_index:
            raise SessionNotFoundError(f"Session {key} already completed", session_id=key)
        logger.info(f"♻️ Duplicate final answer for completed session {key} ignored")
        return replace(step, replayed=True)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_session(self, handle: SessionHandle) -> Optional[QuizAttempt]:
        attempt = self.sessions.get(handle.session_id)
        return None if attempt is STARTING else attempt

    def current_question(self, handle: SessionHandle) -> Dict[str, Any]:
        attempt = self.get_session(handle)
        if attempt is None:
            raise SessionNotFoundError(f"No active session {handle.session_id}", session_id=handle.session_id)
        index = attempt.current_question_index
        return {
            'question_index': index,
            'total_questions': attempt.total_questions,
            **public_question(attempt.questions[index]),
        }

    @property
    def active_count(self) -> int:
        return sum(1 for _, attempt in self.sessions.items() if attempt is not STARTING)
