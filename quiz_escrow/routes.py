"""
Quiz Escrow HTTP routes

Thin adapter for the chat bot / web frontend. Every handler hands its work
to the lifecycle or session manager on the runtime loop; nothing here
touches the scheduler or the resolver directly.
"""

import logging
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from .errors import QuizEscrowError, SettlementFailedError
from .models import Quiz, RewardConfig, SessionHandle

logger = logging.getLogger(__name__)

quiz_escrow_bp = Blueprint('quiz_escrow', __name__, url_prefix='/quiz-escrow')


def _services():
    return current_app.extensions['quiz_escrow']


def _error_response(error: QuizEscrowError):
    payload = {
        'success': False,
        'error': error.user_message,
        'error_type': error.error_type,
    }
    if isinstance(error, SettlementFailedError):
        payload['reason'] = error.reason
    return jsonify(payload), error.status_code


def handle_quiz_errors(f):
    """Translate core errors to JSON responses"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except QuizEscrowError as e:
            logger.info(f"ℹ️ {request.path}: {e.error_type}: {e}")
            return _error_response(e)
        except Exception as e:
            logger.error(f"❌ Unhandled error in {request.path}: {e}")
            return jsonify({
                'success': False,
                'error': QuizEscrowError.user_message,
                'error_type': 'InternalError',
            }), 500
    return decorated_function


def _quiz_payload(quiz: Quiz):
    record = quiz.settlement_record
    return {
        'id': quiz.id,
        'creator_id': quiz.creator_id,
        'source_reference': quiz.source_reference,
        'status': quiz.status.value,
        'reward_config': quiz.reward_config.to_dict(),
        'creator_address': quiz.creator_address,
        'settlement_handle': quiz.settlement_handle,
        'settlement': record.to_dict() if record else None,
        'unsettled': quiz.unsettled,
        'failure_reason': quiz.failure_reason,
        'question_count': len(quiz.questions),
        'created_at': quiz.created_at.isoformat(),
        'expires_at': quiz.expires_at.isoformat(),
    }


def _require(data, *fields):
    missing = [name for name in fields if data.get(name) in (None, '')]
    if missing:
        return jsonify({'success': False, 'error': f"Missing fields: {', '.join(missing)}"}), 400
    return None


# ----------------------------------------------------------------------
# Drafts
# ----------------------------------------------------------------------

@quiz_escrow_bp.route('/drafts', methods=['POST'])
@handle_quiz_errors
def create_draft():
    data = request.get_json(silent=True) or {}
    missing = _require(data, 'creator_id', 'funding_amount', 'source_reference')
    if missing:
        return missing

    services = _services()
    reward_config = RewardConfig.from_dict({
        'funding_amount': data['funding_amount'],
        'chain_id': data.get('chain_id', services.chain_id),
        'token_address': data.get('token_address'),
    })

    quiz = services.runtime.call(
        services.lifecycle.create_draft,
        str(data['creator_id']),
        reward_config,
        data['source_reference'],
        data.get('questions'),
    )
    return jsonify({'success': True, 'draft': _quiz_payload(quiz)}), 201


@quiz_escrow_bp.route('/drafts/<draft_id>/preview', methods=['POST'])
@handle_quiz_errors
def mark_preview_sent(draft_id):
    services = _services()
    quiz = services.runtime.call(services.lifecycle.mark_preview_sent, draft_id)
    return jsonify({'success': True, 'draft': _quiz_payload(quiz)})


@quiz_escrow_bp.route('/drafts/<draft_id>/approve', methods=['POST'])
@handle_quiz_errors
def approve_draft(draft_id):
    data = request.get_json(silent=True) or {}
    missing = _require(data, 'approver_id')
    if missing:
        return missing

    services = _services()
    quiz = services.runtime.run(services.lifecycle.approve(draft_id, str(data['approver_id'])))
    return jsonify({'success': True, 'quiz': _quiz_payload(quiz)})


@quiz_escrow_bp.route('/drafts/<draft_id>/cancel', methods=['POST'])
@handle_quiz_errors
def cancel_draft(draft_id):
    data = request.get_json(silent=True) or {}
    requester_id = data.get('requester_id')

    services = _services()
    quiz = services.runtime.call(
        services.lifecycle.cancel,
        draft_id,
        str(requester_id) if requester_id is not None else None,
    )
    return jsonify({'success': True, 'draft': _quiz_payload(quiz)})


# ----------------------------------------------------------------------
# Quiz taking
# ----------------------------------------------------------------------

@quiz_escrow_bp.route('/quizzes/<quiz_id>/start', methods=['POST'])
@handle_quiz_errors
def start_quiz(quiz_id):
    data = request.get_json(silent=True) or {}
    missing = _require(data, 'user_id')
    if missing:
        return missing

    services = _services()
    handle = services.runtime.run(
        services.sessions.start(str(data['user_id']), quiz_id, data.get('wallet_address'))
    )
    question = services.runtime.call(services.sessions.current_question, handle)

    return jsonify({
        'success': True,
        'session_id': handle.session_id,
        'question': question,
    }), 201


@quiz_escrow_bp.route('/sessions/<user_id>/<quiz_id>/answer', methods=['POST'])
@handle_quiz_errors
def record_answer(user_id, quiz_id):
    data = request.get_json(silent=True) or {}
    missing = _require(data, 'question_index', 'selected_option')
    if missing:
        return missing

    try:
        question_index = int(data['question_index'])
        selected_option = int(data['selected_option'])
    except (TypeError, ValueError):
        return jsonify({'success': False, 'error': 'question_index and selected_option must be integers'}), 400

    services = _services()
    step = services.runtime.run(
        services.sessions.record_answer(SessionHandle(user_id, quiz_id), question_index, selected_option)
    )

    return jsonify({
        'success': True,
        'question_index': step.question_index,
        'correct': step.correct,
        'score': step.score,
        'incorrect_count': step.incorrect_count,
        'total_questions': step.total_questions,
        'completed': step.completed,
        'next_question_index': step.next_question_index,
        'next_question': step.next_question,
        'replayed': step.replayed,
    })


@quiz_escrow_bp.route('/sessions/<user_id>/<quiz_id>/abandon', methods=['POST'])
@handle_quiz_errors
def abandon_session(user_id, quiz_id):
    services = _services()
    abandoned = services.runtime.call(services.sessions.abandon, SessionHandle(user_id, quiz_id))
    if not abandoned:
        return jsonify({'success': False, 'error': 'No active session'}), 404
    return jsonify({'success': True})


@quiz_escrow_bp.route('/status', methods=['GET'])
@handle_quiz_errors
def status():
    services = _services()

    def snapshot():
        return {
            'scheduler': services.scheduler.get_stats(),
            'operations': services.scheduler.active_operations(),
            'active_sessions': services.sessions.active_count,
            'unsettled_mode': services.lifecycle.unsettled_mode,
            'store': services.store.name,
        }

    return jsonify({'success': True, **services.runtime.call(snapshot)})
