"""
Tests for the Quiz Escrow HTTP routes
"""

from flask import Flask

from quiz_escrow import QuizEscrowServices, init_quiz_escrow
from quiz_escrow.errors import InsufficientBalanceError
from quiz_escrow.lifecycle import QuizLifecycleManager
from quiz_escrow.runtime import EventLoopRuntime
from quiz_escrow.scheduler import OperationScheduler
from quiz_escrow.sessions import QuizSessionManager
from quiz_escrow.settlement_resolver import SettlementResolver
from quiz_escrow.storage import InMemoryQuizStore

from helpers import ESCROW_A, QUESTIONS, FakeChain, FakeReceiptSource, FakeWallets, make_receipt, no_sleep


class TestQuizEscrowRoutes:

    def setup_method(self):
        self.store = InMemoryQuizStore()
        self.chain = FakeChain()
        scheduler = OperationScheduler(max_queue_size=10, lease_ttl=60)
        resolver = SettlementResolver(FakeReceiptSource('p', default=make_receipt()), retry_delay=0, sleep=no_sleep)
        self.runtime = EventLoopRuntime('test-loop')

        self.services = QuizEscrowServices(
            runtime=self.runtime,
            scheduler=scheduler,
            resolver=resolver,
            lifecycle=QuizLifecycleManager(scheduler, resolver, self.chain, FakeWallets(), self.store,
                                           unsettled_mode=False),
            sessions=QuizSessionManager(self.store, scheduler=scheduler),
            store=self.store,
            chain_id=84532,
        )

        app = Flask(__name__)
        init_quiz_escrow(app, self.services, housekeeping_interval=0)
        self.client = app.test_client()

    def teardown_method(self):
        self.runtime.stop()

    def create_and_approve(self):
        response = self.client.post('/quiz-escrow/drafts', json={
            'creator_id': 'creator-1',
            'funding_amount': '1000',
            'source_reference': 'https://example.com/a',
            'questions': QUESTIONS,
        })
        assert response.status_code == 201
        draft_id = response.get_json()['draft']['id']

        assert self.client.post(f'/quiz-escrow/drafts/{draft_id}/preview').status_code == 200
        return draft_id, self.client.post(f'/quiz-escrow/drafts/{draft_id}/approve', json={'approver_id': 'creator-1'})

    def test_create_draft_validation(self):
        response = self.client.post('/quiz-escrow/drafts', json={'creator_id': 'creator-1'})
        assert response.status_code == 400
        assert 'funding_amount' in response.get_json()['error']

        response = self.client.post('/quiz-escrow/drafts', json={
            'creator_id': 'creator-1', 'funding_amount': '-5', 'source_reference': 'ref',
        })
        assert response.status_code == 400
        assert response.get_json()['error_type'] == 'InvalidRewardConfigError'

    def test_full_flow(self):
        draft_id, response = self.create_and_approve()

        assert response.status_code == 200
        quiz = response.get_json()['quiz']
        assert quiz['status'] == 'settled'
        assert quiz['settlement']['contract_address'] == ESCROW_A
        assert quiz['reward_config']['correct_reward'] == '750'

        response = self.client.post(f'/quiz-escrow/quizzes/{draft_id}/start', json={'user_id': 'player-1'})
        assert response.status_code == 201
        body = response.get_json()
        assert body['session_id'] == f'player-1_{draft_id}'
        assert body['question']['question_index'] == 0
        assert 'correct_answer' not in body['question']

        for index, option in enumerate([0, 1, 0]):
            response = self.client.post(f'/quiz-escrow/sessions/player-1/{draft_id}/answer',
                                        json={'question_index': index, 'selected_option': option})
            assert response.status_code == 200

        body = response.get_json()
        assert body['completed'] is True
        assert body['score'] == 3

        response = self.client.post(f'/quiz-escrow/quizzes/{draft_id}/start', json={'user_id': 'player-1'})
        assert response.status_code == 409
        assert response.get_json()['error_type'] == 'AlreadyAttemptedError'

    def test_approve_by_other_user(self):
        response = self.client.post('/quiz-escrow/drafts', json={
            'creator_id': 'creator-1', 'funding_amount': 1000, 'source_reference': 'ref',
        })
        draft_id = response.get_json()['draft']['id']
        self.client.post(f'/quiz-escrow/drafts/{draft_id}/preview')

        response = self.client.post(f'/quiz-escrow/drafts/{draft_id}/approve', json={'approver_id': 'intruder'})

        assert response.status_code == 403
        assert response.get_json()['error'] == 'Only the creator of this quiz can do that.'

    def test_settlement_failure_reason(self):
        self.chain.error = InsufficientBalanceError('broke')

        _, response = self.create_and_approve()

        assert response.status_code == 502
        body = response.get_json()
        assert body['error_type'] == 'SettlementFailedError'
        assert body['reason'] == 'insufficient_balance'

    def test_cancel_and_unknown_draft(self):
        response = self.client.post('/quiz-escrow/drafts', json={
            'creator_id': 'creator-1', 'funding_amount': 1000, 'source_reference': 'ref',
        })
        draft_id = response.get_json()['draft']['id']

        response = self.client.post(f'/quiz-escrow/drafts/{draft_id}/cancel', json={'requester_id': 'creator-1'})
        assert response.get_json()['draft']['status'] == 'cancelled'

        assert self.client.post('/quiz-escrow/drafts/nope/preview').status_code == 404

    def test_out_of_order_answer_and_abandon(self):
        draft_id, _ = self.create_and_approve()
        self.client.post(f'/quiz-escrow/quizzes/{draft_id}/start', json={'user_id': 'player-2'})

        response = self.client.post(f'/quiz-escrow/sessions/player-2/{draft_id}/answer',
                                    json={'question_index': 2, 'selected_option': 0})
        assert response.status_code == 409
        assert response.get_json()['error_type'] == 'SessionOutOfOrderError'

        response = self.client.post(f'/quiz-escrow/sessions/player-2/{draft_id}/answer',
                                    json={'question_index': -1, 'selected_option': 0})
        assert response.status_code == 409
        assert response.get_json()['error_type'] == 'SessionOutOfOrderError'

        response = self.client.post(f'/quiz-escrow/sessions/player-2/{draft_id}/answer',
                                    json={'question_index': 'zero', 'selected_option': 0})
        assert response.status_code == 400

        assert self.client.post(f'/quiz-escrow/sessions/player-2/{draft_id}/abandon').status_code == 200
        assert self.client.post(f'/quiz-escrow/sessions/player-2/{draft_id}/abandon').status_code == 404

    def test_status(self):
        response = self.client.get('/quiz-escrow/status')

        assert response.status_code == 200
        body = response.get_json()
        assert body['store'] == 'memory'
        assert body['unsettled_mode'] is False
        assert body['active_sessions'] == 0
        assert body['scheduler']['pending'] == 0
