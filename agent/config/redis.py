"""
Redis configuration for the protocol scheduling engine
"""
import os
import logging
import redis

logger = logging.getLogger("protocol-config")


def get_redis_config() -> dict:
    """Get Redis configuration from environment variables"""
    return {
        'host': os.getenv('REDIS_HOST', 'localhost'),
        'port': int(os.getenv('REDIS_PORT', '6379')),
        'db': int(os.getenv('REDIS_DB', '0')),
        'password': os.getenv('REDIS_PASSWORD'),
        'socket_timeout': int(os.getenv('REDIS_SOCKET_TIMEOUT', '5')),
        'socket_connect_timeout': int(os.getenv('REDIS_CONNECT_TIMEOUT', '5')),
        'decode_responses': True
    }


def create_redis_connection(redis_url: str = None) -> redis.Redis:
    """
    Create a Redis connection.

    REDIS_URL wins over the discrete host/port settings when it is set.
    """
    redis_url = redis_url or os.getenv('REDIS_URL')
    if redis_url:
        return redis.Redis.from_url(redis_url, decode_responses=True)

    # Remove None values
    config = {k: v for k, v in get_redis_config().items() if v is not None}
    return redis.Redis(**config)


def check_redis_connection(client: redis.Redis = None) -> bool:
    """Ping Redis and return True if it answers"""
    try:
        client = client or create_redis_connection()
        return bool(client.ping())
    except redis.RedisError as e:
        logger.error(f"Redis connection failed: {e}")
        return False


def get_redis_url() -> str:
    """Get Redis URL for RQ workers"""
    if os.getenv('REDIS_URL'):
        return os.getenv('REDIS_URL')

    config = get_redis_config()
    if config.get('password'):
        return f"redis://:{config['password']}@{config['host']}:{config['port']}/{config['db']}"
    return f"redis://{config['host']}:{config['port']}/{config['db']}"
