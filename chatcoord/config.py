import os


def _int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


class Config:
    SLACK_BOT_TOKEN: str = os.getenv('SLACK_BOT_TOKEN', '')
    SLACK_DEFAULT_CHANNEL: str = os.getenv('SLACK_DEFAULT_CHANNEL', '')

    DB_PATH: str = os.getenv('CHATCOORD_DB_PATH', './chatcoord_data/chatcoord.db')

    # Poller / lease
    POLL_INTERVAL_MS: int = _int('CHATCOORD_POLL_INTERVAL_MS', '10000')
    LEASE_TTL_MS: int = _int('CHATCOORD_LEASE_TTL_MS', '30000')
    LEASE_BACKEND: str = os.getenv('CHATCOORD_LEASE_BACKEND', 'sqlite')
    MAX_THREAD_POLLS: int = _int('CHATCOORD_MAX_THREAD_POLLS', '8')
    HISTORY_PAGE_SIZE: int = _int('CHATCOORD_HISTORY_PAGE', '20')

    # Rate limiter (Slack tier 3 is 50/min, leave a buffer)
    RATE_BURST: int = _int('CHATCOORD_RATE_BURST', '10')
    RATE_PER_MINUTE: int = _int('CHATCOORD_RATE_PER_MINUTE', '45')
    BACKOFF_BASE_MS: int = _int('CHATCOORD_BACKOFF_BASE_MS', '2000')
    BACKOFF_MAX_MS: int = _int('CHATCOORD_BACKOFF_MAX_MS', '60000')
    MAX_RETRIES: int = _int('CHATCOORD_MAX_RETRIES', '3')

    # Retention
    INBOX_RETENTION_DAYS: int = _int('CHATCOORD_INBOX_RETENTION_DAYS', '7')
    WATCH_HORIZON_HOURS: int = _int('CHATCOORD_WATCH_HORIZON_HOURS', '24')
    WATCH_RETENTION_HOURS: int = _int('CHATCOORD_WATCH_RETENTION_HOURS', '48')
    PURGE_INTERVAL_S: int = _int('CHATCOORD_PURGE_INTERVAL_S', '21600')

    # Consensus
    APPROVAL_TIMEOUT_S: int = _int('CHATCOORD_APPROVAL_TIMEOUT_S', '300')
    PERMISSION_TIMEOUT_S: int = _int('CHATCOORD_PERMISSION_TIMEOUT_S', '180')
    CONSENSUS_POLL_S: int = _int('CHATCOORD_CONSENSUS_POLL_S', '5')

    # Redis (only used by the redis lease backend)
    REDIS_URL: str = os.getenv('REDIS_URL', 'redis://localhost:6379')
    REDIS_MAX_CONNECTIONS: int = _int('REDIS_MAX_CONNECTIONS', '10')
    REDIS_SOCKET_CONNECT_TIMEOUT: int = _int('REDIS_SOCKET_CONNECT_TIMEOUT', '5')
    REDIS_SOCKET_TIMEOUT: int = _int('REDIS_SOCKET_TIMEOUT', '5')
    REDIS_RETRY_ON_TIMEOUT: bool = os.getenv('REDIS_RETRY_ON_TIMEOUT', 'true').lower() == 'true'

    LOG_LEVEL: str = os.getenv('CHATCOORD_LOG_LEVEL', 'INFO')

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(type(self), key):
                raise AttributeError(f"Unknown config option: {key}")
            setattr(self, key, value)


config = Config()
