"""
Tests for the quiz stores
"""

import asyncio
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest

from quiz_escrow.errors import PersistenceError
from quiz_escrow.models import Quiz, QuizAttempt, RewardConfig, utc_now
from quiz_escrow.storage import InMemoryQuizStore, SupabaseQuizStore, create_store

from helpers import QUESTIONS


def make_quiz():
    now = utc_now()
    return Quiz(
        id='quiz-1',
        creator_id='creator-1',
        source_reference='https://example.com/a',
        reward_config=RewardConfig(1000, 84532),
        expires_at=now + timedelta(minutes=15),
        questions=QUESTIONS,
    )


class TestInMemoryQuizStore:

    def setup_method(self):
        self.store = InMemoryQuizStore()

    def test_quiz_round_trip_and_questions(self):
        asyncio.run(self.store.save_quiz(make_quiz()))

        row = asyncio.run(self.store.get_quiz('quiz-1'))
        assert row['funding_amount'] == '1000'
        assert asyncio.run(self.store.get_quiz_questions('quiz-1')) == QUESTIONS
        assert asyncio.run(self.store.get_quiz_questions('missing')) == []

    def test_attempt_unique_per_user_and_quiz(self):
        attempt = QuizAttempt(user_id='u1', quiz_id='q1')

        assert asyncio.run(self.store.save_attempt(attempt)) is True
        assert asyncio.run(self.store.save_attempt(attempt)) is False
        assert asyncio.run(self.store.find_attempt('u1', 'q1'))['completed'] is False

    def test_completion_marks_attempt(self):
        attempt = QuizAttempt(user_id='u1', quiz_id='q1', questions=QUESTIONS, score=2, completed=True)
        asyncio.run(self.store.save_attempt(attempt))
        asyncio.run(self.store.save_completion(attempt))

        completion = asyncio.run(self.store.find_completion('u1', 'q1'))
        assert completion['score'] == 2
        assert completion['total_questions'] == 3
        assert asyncio.run(self.store.find_attempt('u1', 'q1'))['completed'] is True


class TestSupabaseQuizStore:

    def setup_method(self):
        self.client = Mock()
        self.store = SupabaseQuizStore(self.client)

    def test_save_quiz_upserts_record(self):
        asyncio.run(self.store.save_quiz(make_quiz()))

        self.client.table.assert_called_with('quizzes')
        record = self.client.table.return_value.upsert.call_args[0][0]
        assert record['id'] == 'quiz-1'
        assert record['status'] == 'draft'

    def test_duplicate_attempt_returns_false(self):
        self.client.table.return_value.insert.return_value.execute.side_effect = Exception(
            'duplicate key value violates unique constraint "unique_user_quiz"'
        )
        assert asyncio.run(self.store.save_attempt(QuizAttempt(user_id='u1', quiz_id='q1'))) is False

    def test_find_attempt(self):
        query = self.client.table.return_value.select.return_value.eq.return_value.eq.return_value.limit.return_value
        query.execute.return_value = Mock(data=[{'user_id': 'u1', 'quiz_id': 'q1'}])

        assert asyncio.run(self.store.find_attempt('u1', 'q1')) == {'user_id': 'u1', 'quiz_id': 'q1'}

        query.execute.return_value = Mock(data=[])
        assert asyncio.run(self.store.find_completion('u1', 'q1')) is None

    def test_write_error_becomes_persistence_error(self):
        self.client.table.return_value.upsert.return_value.execute.side_effect = Exception('permission denied')

        with pytest.raises(PersistenceError):
            asyncio.run(self.store.save_quiz(make_quiz()))

    @patch('supabase_client.time.sleep')
    def test_connection_errors_are_retried(self, mock_sleep):
        execute = self.client.table.return_value.insert.return_value.execute
        execute.side_effect = [Exception('connection reset'), Mock(data=[{}])]

        assert asyncio.run(self.store.save_attempt(QuizAttempt(user_id='u1', quiz_id='q1'))) is True
        assert execute.call_count == 2
        mock_sleep.assert_called_once()

    def test_questions_lookup_failure_is_empty(self):
        query = self.client.table.return_value.select.return_value.eq.return_value.limit.return_value
        query.execute.side_effect = Exception('permission denied')

        assert asyncio.run(self.store.get_quiz_questions('quiz-1')) == []

    @patch('quiz_escrow.storage.get_supabase_client', return_value=None)
    def test_unavailable_client(self, _):
        store = SupabaseQuizStore()
        with pytest.raises(PersistenceError):
            asyncio.run(store.find_attempt('u1', 'q1'))


class TestCreateStore:

    @patch('quiz_escrow.storage.get_supabase_client', return_value=None)
    def test_falls_back_to_memory(self, _):
        assert isinstance(create_store(), InMemoryQuizStore)

    @patch('quiz_escrow.storage.get_supabase_client')
    def test_uses_supabase_when_configured(self, mock_get_client):
        store = create_store()
        assert isinstance(store, SupabaseQuizStore)
        assert store.client is mock_get_client.return_value
