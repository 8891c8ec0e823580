import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import QUIZ_ESCROW_CONFIG
from .contract_service import QuizEscrowContractService
from .errors import QuizEscrowError
from .lifecycle import QuizLifecycleManager
from .models import NextStep, Quiz, QuizStatus, RewardConfig, SessionHandle, SettlementRecord
from .receipt_sources import build_receipt_sources
from .routes import quiz_escrow_bp
from .runtime import EventLoopRuntime
from .scheduler import OperationScheduler
from .sessions import QuizSessionManager
from .settlement_resolver import SettlementResolver
from .storage import QuizStore, create_store
from .wallet_service import WALLET_TIMEOUT, WalletService

logger = logging.getLogger(__name__)


@dataclass
class QuizEscrowServices:
    runtime: EventLoopRuntime
    scheduler: OperationScheduler
    resolver: SettlementResolver
    lifecycle: QuizLifecycleManager
    sessions: QuizSessionManager
    store: QuizStore
    chain_id: int


def build_services(config: Optional[Dict[str, Any]] = None, store: Optional[QuizStore] = None,
                   runtime: Optional[EventLoopRuntime] = None) -> QuizEscrowServices:
    """Wire the core components together from configuration"""
    config = config or QUIZ_ESCROW_CONFIG
    store = store or create_store()

    scheduler = OperationScheduler()
    primary, alternatives = build_receipt_sources(config)
    resolver = SettlementResolver(primary, alternatives)
    chain = QuizEscrowContractService(config)
    wallets = WalletService(config)

    lifecycle = QuizLifecycleManager(scheduler, resolver, chain, wallets, store)
    sessions = QuizSessionManager(store, scheduler=scheduler)

    return QuizEscrowServices(
        runtime=runtime or EventLoopRuntime(),
        scheduler=scheduler,
        resolver=resolver,
        lifecycle=lifecycle,
        sessions=sessions,
        store=store,
        chain_id=config['CHAIN_ID'],
    )


async def housekeeping(services: QuizEscrowServices, interval: float = 60):
    """Expire stale sessions and leases once per interval"""
    while True:
        await asyncio.sleep(interval)
        try:
            services.sessions.expire_stale_sessions()
            services.scheduler.purge_expired()
        except Exception as e:
            logger.error(f"❌ Housekeeping error: {e}")


def init_quiz_escrow(app, services: Optional[QuizEscrowServices] = None, housekeeping_interval: float = 60):
    """Initialize the Quiz Escrow module with a Flask app"""
    try:
        logger.info("🎓 Initializing Quiz Escrow module...")

        services = services or build_services()
        services.runtime.start()
        if housekeeping_interval:
            services.runtime.spawn(housekeeping(services, housekeeping_interval))
        app.extensions['quiz_escrow'] = services
        app.register_blueprint(quiz_escrow_bp)

        logger.info("✅ Quiz Escrow module initialized successfully")
        logger.info("📚 Available endpoints:")
        logger.info("   POST /quiz-escrow/drafts - Create quiz draft")
        logger.info("   POST /quiz-escrow/drafts/<id>/preview - Mark preview sent")
        logger.info("   POST /quiz-escrow/drafts/<id>/approve - Approve and settle")
        logger.info("   POST /quiz-escrow/drafts/<id>/cancel - Cancel draft")
        logger.info("   POST /quiz-escrow/quizzes/<quiz_id>/start - Start quiz session")
        logger.info("   POST /quiz-escrow/sessions/<user_id>/<quiz_id>/answer - Record answer")
        logger.info("   POST /quiz-escrow/sessions/<user_id>/<quiz_id>/abandon - Abandon session")
        logger.info("   GET  /quiz-escrow/status - Scheduler and session status")

        return services

    except Exception as e:
        logger.error(f"❌ Failed to initialize Quiz Escrow module: {e}")
        raise


__all__ = [
    'init_quiz_escrow',
    'build_services',
    'QuizEscrowServices',
    'QuizEscrowError',
    'QuizLifecycleManager',
    'QuizSessionManager',
    'OperationScheduler',
    'SettlementResolver',
    'NextStep',
    'Quiz',
    'QuizStatus',
    'RewardConfig',
    'SessionHandle',
    'SettlementRecord',
    'WALLET_TIMEOUT',
]
