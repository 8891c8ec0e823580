"""
Application Configuration
"""
import os


def _env_int(name, default):
    value = os.getenv(name)
    return int(value) if value not in (None, '') else default


def _env_float(name, default):
    value = os.getenv(name)
    return float(value) if value not in (None, '') else default


# ============================
# Quiz Escrow Settings
# ============================
QUIZ_ESCROW_CONFIG = {
    # Network
    'CHAIN_ID': _env_int('CHAIN_ID', 84532),  # Base Sepolia
    'RPC_URL': os.getenv('BASE_RPC_URL', 'https://sepolia.base.org'),
    'BUNDLER_RPC_URL': os.getenv('BUNDLER_RPC_URL'),

    # Contracts
    'MOTHER_FACTORY_ADDRESS': os.getenv('MOTHER_FACTORY_ADDRESS'),
    'QUIZ_HANDLER_ADDRESS': os.getenv('QUIZ_HANDLER_ADDRESS'),
    'AUTHORIZED_BOT_ADDRESS': os.getenv('AUTHORIZED_BOT_ADDRESS'),
    'CONTRACT_TYPE': 'QuizEscrow',
    # Used when the handler contract cannot be asked for its fee (0.001 ETH)
    'DEPLOYMENT_FEE_WEI': _env_int('DEPLOYMENT_FEE_WEI', 10 ** 15),

    # Smart account relay (Account Kit)
    'ACCOUNT_KIT_BASE_URL': os.getenv('ACCOUNT_KIT_BASE_URL', 'https://api-qa.collab.land'),
    'ACCOUNT_KIT_API_KEY': os.getenv('COLLABLAND_ACCOUNTKIT_API_KEY'),

    # Quiz economics
    'QUIZ_DURATION_SECONDS': _env_int('QUIZ_DURATION_SECONDS', 86400),  # 24 hours
    'DRAFT_TTL_SECONDS': _env_int('DRAFT_TTL_SECONDS', 900),
    'CORRECT_REWARD_PERCENT': _env_int('CORRECT_REWARD_PERCENT', 75),

    # 'onchain' (default) or 'unsettled' - unsettled skips real settlement and flags the quiz
    'SETTLEMENT_MODE': os.getenv('SETTLEMENT_MODE', 'onchain'),
}

SCHEDULER_CONFIG = {
    'MAX_QUEUE_SIZE': _env_int('OPERATION_QUEUE_MAX_SIZE', 100),
    'LEASE_TTL_SECONDS': _env_int('OPERATION_LEASE_TTL_SECONDS', 900),
}

SETTLEMENT_RESOLVER_CONFIG = {
    'MAX_RETRIES': _env_int('SETTLEMENT_MAX_RETRIES', 3),
    'RETRY_DELAY_SECONDS': _env_float('SETTLEMENT_RETRY_DELAY_SECONDS', 3.0),
    'REQUEST_TIMEOUT_SECONDS': _env_float('SETTLEMENT_REQUEST_TIMEOUT_SECONDS', 15.0),
}

SESSION_CONFIG = {
    'SESSION_TTL_SECONDS': _env_int('QUIZ_SESSION_TTL_SECONDS', 3600),  # 1 hour
    'COMPLETED_REPLAY_TTL_SECONDS': _env_int('QUIZ_COMPLETED_REPLAY_TTL_SECONDS', 300),
    'WALLET_POLLS': _env_int('WALLET_READY_POLLS', 5),
    'WALLET_POLL_INTERVAL_SECONDS': _env_float('WALLET_READY_POLL_INTERVAL_SECONDS', 1.0),
}


def is_unsettled_mode():
    """True only when the deployment explicitly opted out of on-chain settlement"""
    return QUIZ_ESCROW_CONFIG['SETTLEMENT_MODE'].strip().lower() == 'unsettled'
