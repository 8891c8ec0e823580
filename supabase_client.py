import os
import logging
import time
from functools import wraps
from supabase import create_client, Client

# Configure logging
logger = logging.getLogger(__name__)

# Supabase configuration
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_ANON_KEY")

supabase: Client = None
supabase_enabled = False

CONNECTION_ERROR_KEYWORDS = ('server disconnected', 'connection', 'timeout', 'network')


def retry_on_connection_error(max_retries=3, delay=1):
    """Decorator to retry database operations on connection errors"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    last_exception = e
                    error_msg = str(e).lower()

                    if not any(keyword in error_msg for keyword in CONNECTION_ERROR_KEYWORDS):
                        # Not a connection error, don't retry
                        raise

                    if attempt < max_retries - 1:
                        logger.warning(f"⚠️ Connection error on attempt {attempt + 1}/{max_retries}: {e}")
                        time.sleep(delay * (attempt + 1))
                    else:
                        logger.error(f"❌ All {max_retries} connection attempts failed: {e}")

            raise last_exception
        return wrapper
    return decorator


def supabase_configured() -> bool:
    return bool(SUPABASE_URL and SUPABASE_KEY and SUPABASE_URL != "your-supabase-url")


def get_supabase_client(retries=3):
    """Get Supabase client instance, creating it on first use"""
    global supabase, supabase_enabled

    if supabase_enabled and supabase:
        return supabase

    if not supabase_configured():
        logger.warning("⚠️ Supabase not configured - quiz escrow will use the in-memory store")
        logger.info("💡 Set SUPABASE_URL and SUPABASE_ANON_KEY environment variables to enable Supabase persistence")
        return None

    for attempt in range(retries):
        try:
            supabase = create_client(SUPABASE_URL, SUPABASE_KEY)
            # Test connection by performing a simple query
            supabase.table("quizzes").select("id").limit(1).execute()
            supabase_enabled = True
            logger.info("✅ Supabase client initialized successfully")
            return supabase
        except Exception as e:
            logger.error(f"❌ Supabase initialization failed on attempt {attempt + 1}: {e}")
            if attempt < retries - 1:
                time.sleep(2)

    logger.error("💡 Check your Supabase URL and API key in environment variables")
    supabase_enabled = False
    return None


def safe_supabase_operation(operation, fallback_result=None, operation_name="database operation"):
    """
    Safely execute a Supabase operation with error handling

    Args:
        operation: Lambda function containing the Supabase operation
        fallback_result: Value to return if operation fails
        operation_name: Name of the operation for logging

    Returns:
        Result of operation or fallback_result if it fails
    """
    try:
        return operation()
    except Exception as e:
        logger.error(f"❌ Error in {operation_name}: {e}")
        return fallback_result


# SQL COMMANDS TO RUN IN YOUR SUPABASE SQL EDITOR:

"""
-- 1. Settled (or explicitly unsettled) quizzes
CREATE TABLE IF NOT EXISTS quizzes (
    id VARCHAR(64) PRIMARY KEY,
    creator_id VARCHAR(64) NOT NULL,
    creator_address VARCHAR(42),
    source_reference TEXT NOT NULL,
    funding_amount NUMERIC(78, 0) NOT NULL,
    correct_reward NUMERIC(78, 0) NOT NULL,
    incorrect_reward NUMERIC(78, 0) NOT NULL,
    token_address VARCHAR(42),
    chain_id INTEGER NOT NULL,
    status VARCHAR(32) NOT NULL,
    unsettled BOOLEAN DEFAULT FALSE,
    settlement_handle VARCHAR(66),
    transaction_hash VARCHAR(66),
    contract_address VARCHAR(42),
    settlement JSONB,
    questions JSONB,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    expires_at TIMESTAMP WITH TIME ZONE
);

-- 2. Every attempt, finished or not (one per user and quiz)
CREATE TABLE IF NOT EXISTS quiz_attempts (
    id SERIAL PRIMARY KEY,
    user_id VARCHAR(64) NOT NULL,
    quiz_id VARCHAR(64) NOT NULL,
    wallet_address VARCHAR(42),
    attempted_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    completed BOOLEAN DEFAULT FALSE,
    CONSTRAINT unique_user_quiz UNIQUE (user_id, quiz_id)
);

-- 3. Completed attempts with final score
CREATE TABLE IF NOT EXISTS quiz_completions (
    id SERIAL PRIMARY KEY,
    user_id VARCHAR(64) NOT NULL,
    quiz_id VARCHAR(64) NOT NULL,
    wallet_address VARCHAR(42),
    score INTEGER NOT NULL DEFAULT 0,
    total_questions INTEGER NOT NULL DEFAULT 0,
    answers JSONB,
    completed_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    CONSTRAINT unique_user_quiz_completion UNIQUE (user_id, quiz_id)
);

CREATE INDEX IF NOT EXISTS idx_quizzes_creator ON quizzes(creator_id);
CREATE INDEX IF NOT EXISTS idx_quiz_attempts_user ON quiz_attempts(user_id);
CREATE INDEX IF NOT EXISTS idx_quiz_completions_user ON quiz_completions(user_id);
"""
