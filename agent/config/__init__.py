"""
Configuration module for the protocol scheduling engine
"""

from .redis import create_redis_connection, get_redis_url, check_redis_connection

__all__ = ['create_redis_connection', 'get_redis_url', 'check_redis_connection']
