"""
Persistent store for quizzes, attempts and completions

Two implementations share the QuizStore contract: Supabase for deployments
and an in-memory store used when Supabase is not configured (and in tests).
Supabase calls are blocking, so they run in worker threads.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from supabase_client import get_supabase_client, retry_on_connection_error, safe_supabase_operation
from .errors import PersistenceError
from .models import Quiz, QuizAttempt

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION_MARKERS = ('23505', 'duplicate key', 'unique constraint')


def _is_unique_violation(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in UNIQUE_VIOLATION_MARKERS)


class QuizStore(ABC):
    """Durable storage contract used by the lifecycle and session managers"""

    name = 'store'

    @abstractmethod
    async def save_quiz(self, quiz: Quiz) -> None:
        ...

    @abstractmethod
    async def get_quiz(self, quiz_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def save_attempt(self, attempt: QuizAttempt) -> bool:
        """Insert an attempt row. Returns False when (user, quiz) already has one."""

    @abstractmethod
    async def find_attempt(self, user_id: str, quiz_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def find_completion(self, user_id: str, quiz_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def save_completion(self, attempt: QuizAttempt) -> None:
        ...

    async def get_quiz_questions(self, quiz_id: str) -> List[Dict[str, Any]]:
        quiz = await self.get_quiz(quiz_id)
        return list(quiz.get('questions') or []) if quiz else []


class InMemoryQuizStore(QuizStore):
    name = 'memory'

    def __init__(self):
        self._lock = threading.Lock()
        self.quizzes: Dict[str, Dict[str, Any]] = {}
        self.attempts: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.completions: Dict[Tuple[str, str], Dict[str, Any]] = {}

    async def save_quiz(self, quiz: Quiz) -> None:
        with self._lock:
            self.quizzes[quiz.id] = quiz.to_record()

    async def get_quiz(self, quiz_id: str) -> Optional[Dict[str, Any]]:
        return self.quizzes.get(quiz_id)

    async def save_attempt(self, attempt: QuizAttempt) -> bool:
        key = (attempt.user_id, attempt.quiz_id)
        with self._lock:
            if key in self.attempts:
                return False
            self.attempts[key] = attempt.to_record()
            return True

    async def find_attempt(self, user_id: str, quiz_id: str) -> Optional[Dict[str, Any]]:
        return self.attempts.get((user_id, quiz_id))

    async def find_completion(self, user_id: str, quiz_id: str) -> Optional[Dict[str, Any]]:
        return self.completions.get((user_id, quiz_id))

    async def save_completion(self, attempt: QuizAttempt) -> None:
        key = (attempt.user_id, attempt.quiz_id)
        with self._lock:
            self.completions.setdefault(key, attempt.to_completion_record())
            if key in self.attempts:
                self.attempts[key]['completed'] = True


class SupabaseQuizStore(QuizStore):
    name = 'supabase'

    def __init__(self, client=None):
        self.client = client

    def _client(self):
        if self.client is None:
            self.client = get_supabase_client()
        if self.client is None:
            raise PersistenceError("Supabase is not available")
        return self.client

    # Blocking operations -------------------------------------------------

    @retry_on_connection_error()
    def _upsert_quiz(self, record: Dict[str, Any]) -> None:
        self._client().table('quizzes').upsert(record).execute()

    @retry_on_connection_error()
    def _select_quiz(self, quiz_id: str) -> Optional[Dict[str, Any]]:
        result = self._client().table('quizzes').select('*').eq('id', quiz_id).limit(1).execute()
        return result.data[0] if result.data else None

    @retry_on_connection_error()
    def _insert_attempt(self, record: Dict[str, Any]) -> bool:
        try:
            self._client().table('quiz_attempts').insert(record).execute()
        except Exception as e:
            if _is_unique_violation(e):
                return False
            raise
        return True

    @retry_on_connection_error()
    def _select_one(self, table: str, user_id: str, quiz_id: str) -> Optional[Dict[str, Any]]:
        result = self._client().table(table).select('*') \
            .eq('user_id', user_id).eq('quiz_id', quiz_id).limit(1).execute()
        return result.data[0] if result.data else None

    @retry_on_connection_error()
    def _write_completion(self, attempt: QuizAttempt) -> None:
        client = self._client()
        client.table('quiz_completions').upsert(
            attempt.to_completion_record(), on_conflict='user_id,quiz_id'
        ).execute()
        client.table('quiz_attempts').update({'completed': True}) \
            .eq('user_id', attempt.user_id).eq('quiz_id', attempt.quiz_id).execute()

    async def _call(self, operation_name: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(f"❌ Error in {operation_name}: {e}")
            raise PersistenceError(f"{operation_name} failed: {e}")

    # QuizStore -----------------------------------------------------------

    async def save_quiz(self, quiz: Quiz) -> None:
        await self._call('save quiz', self._upsert_quiz, quiz.to_record())
        logger.info(f"💾 Quiz {quiz.id} saved (status={quiz.status.value}, unsettled={quiz.unsettled})")

    async def get_quiz(self, quiz_id: str) -> Optional[Dict[str, Any]]:
        return await self._call('get quiz', self._select_quiz, quiz_id)

    async def save_attempt(self, attempt: QuizAttempt) -> bool:
        return await self._call('save attempt', self._insert_attempt, attempt.to_record())

    async def find_attempt(self, user_id: str, quiz_id: str) -> Optional[Dict[str, Any]]:
        return await self._call('find attempt', self._select_one, 'quiz_attempts', user_id, quiz_id)

    async def find_completion(self, user_id: str, quiz_id: str) -> Optional[Dict[str, Any]]:
        return await self._call('find completion', self._select_one, 'quiz_completions', user_id, quiz_id)

    async def save_completion(self, attempt: QuizAttempt) -> None:
        await self._call('save completion', self._write_completion, attempt)

    async def get_quiz_questions(self, quiz_id: str) -> List[Dict[str, Any]]:
        # Read-only; a failed lookup just means no questions to serve
        quiz = await asyncio.to_thread(
            safe_supabase_operation,
            lambda: self._select_quiz(quiz_id),
            None,
            f"load questions for quiz {quiz_id}",
        )
        return list(quiz.get('questions') or []) if quiz else []


def create_store() -> QuizStore:
    """Supabase when configured, otherwise the in-memory store"""
    client = get_supabase_client()
    if client is None:
        logger.warning("⚠️ Using in-memory quiz store - records will not survive a restart")
        return InMemoryQuizStore()
    return SupabaseQuizStore(client)
