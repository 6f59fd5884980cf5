"""
Atomic Redis operations for the protocol scheduling engine

Lua scripts run as a single command on the Redis server, so a patient's
instance set is swapped in one step and status writes cannot interleave
with it.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import redis

logger = logging.getLogger("redis-atomic")

# Lua script for atomically replacing an assignment's instance set
REPLACE_INSTANCES_SCRIPT = """
-- KEYS[1]: instance index set for (patient, assignment)
-- ARGV[1]: instance hash key prefix
-- ARGV[2]: JSON array of flat instance field maps
local index_key = KEYS[1]
local prefix = ARGV[1]

-- Drop the old set
local old_ids = redis.call('SMEMBERS', index_key)
for i = 1, #old_ids do
    redis.call('DEL', prefix .. old_ids[i])
end
redis.call('DEL', index_key)

-- Write the new set
local instances = cjson.decode(ARGV[2])
for i = 1, #instances do
    local instance = instances[i]
    local fields = {}
    for field, value in pairs(instance) do
        table.insert(fields, field)
        table.insert(fields, value)
    end
    redis.call('HSET', prefix .. instance['id'], unpack(fields))
    redis.call('SADD', index_key, instance['id'])
end

return {#old_ids, #instances}
"""

# Lua script for recording progress on a single instance
UPDATE_INSTANCE_STATUS_SCRIPT = """
-- KEYS[1]: instance hash key
-- ARGV: status, completed_at, completion_data ('' keeps current), updated_at
local instance_key = KEYS[1]

if redis.call('EXISTS', instance_key) == 0 then
    return 0  -- Instance missing (e.g. removed by a resync)
end

redis.call('HSET', instance_key, 'status', ARGV[1], 'completed_at', ARGV[2], 'updated_at', ARGV[4])
if ARGV[3] ~= '' then
    redis.call('HSET', instance_key, 'completion_data', ARGV[3])
end

return 1
"""

# Lua script for saving an assignment under the one-active-per-protocol rule
SAVE_ASSIGNMENT_SCRIPT = """
-- KEYS[1]: assignment hash key
-- KEYS[2]: active marker for (patient, protocol)
-- KEYS[3]: set of all active assignment ids
-- KEYS[4]: set of the patient's assignment ids
-- ARGV[1]: assignment id, ARGV[2]: status, ARGV[3]: JSON field map
local assignment_id = ARGV[1]
local holder = redis.call('GET', KEYS[2])

if ARGV[2] == 'active' then
    if holder and holder ~= assignment_id then
        return holder  -- Conflict: someone else is active
    end
    redis.call('SET', KEYS[2], assignment_id)
    redis.call('SADD', KEYS[3], assignment_id)
else
    if holder == assignment_id then
        redis.call('DEL', KEYS[2])
    end
    redis.call('SREM', KEYS[3], assignment_id)
end

local data = cjson.decode(ARGV[3])
local fields = {}
for field, value in pairs(data) do
    table.insert(fields, field)
    table.insert(fields, value)
end
redis.call('HSET', KEYS[1], unpack(fields))
redis.call('SADD', KEYS[4], assignment_id)

return 0
"""

# Lua script for creating an active assignment together with its instance set
CREATE_ASSIGNMENT_SCRIPT = """
-- KEYS[1]: assignment hash key
-- KEYS[2]: active marker for (patient, protocol)
-- KEYS[3]: set of all active assignment ids
-- KEYS[4]: set of the patient's assignment ids
-- KEYS[5]: instance index set for (patient, assignment)
-- ARGV[1]: assignment id, ARGV[2]: JSON field map
-- ARGV[3]: instance hash key prefix, ARGV[4]: JSON array of flat instance field maps
local assignment_id = ARGV[1]
local holder = redis.call('GET', KEYS[2])
if holder and holder ~= assignment_id then
    return holder  -- Conflict: someone else is active
end

-- Decode everything before the first write
local data = cjson.decode(ARGV[2])
local instances = cjson.decode(ARGV[4])
local prefix = ARGV[3]

local old_ids = redis.call('SMEMBERS', KEYS[5])
for i = 1, #old_ids do
    redis.call('DEL', prefix .. old_ids[i])
end
redis.call('DEL', KEYS[5])

for i = 1, #instances do
    local instance = instances[i]
    local fields = {}
    for field, value in pairs(instance) do
        table.insert(fields, field)
        table.insert(fields, value)
    end
    redis.call('HSET', prefix .. instance['id'], unpack(fields))
    redis.call('SADD', KEYS[5], instance['id'])
end

local fields = {}
for field, value in pairs(data) do
    table.insert(fields, field)
    table.insert(fields, value)
end
redis.call('HSET', KEYS[1], unpack(fields))
redis.call('SET', KEYS[2], assignment_id)
redis.call('SADD', KEYS[3], assignment_id)
redis.call('SADD', KEYS[4], assignment_id)

return #instances
"""


def to_redis_mapping(data: Dict[str, Any]) -> Dict[str, str]:
    """Flatten a record for a Redis hash: None becomes '' and everything is a string"""
    return {k: ("" if v is None else str(v)) for k, v in data.items()}


class AtomicRedisOperations:
    """
    Provides atomic Redis operations to prevent partial writes
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "protocols"):
        """
        Initialize with Redis client

        Args:
            redis_client: Redis client instance
            key_prefix: Namespace for every key the engine writes
        """
        self.redis = redis_client
        self.key_prefix = key_prefix

        # Register Lua scripts
        self._replace_script = self.redis.register_script(REPLACE_INSTANCES_SCRIPT)
        self._status_script = self.redis.register_script(UPDATE_INSTANCE_STATUS_SCRIPT)
        self._assignment_script = self.redis.register_script(SAVE_ASSIGNMENT_SCRIPT)
        self._create_script = self.redis.register_script(CREATE_ASSIGNMENT_SCRIPT)

    def replace_instances(
        self,
        index_key: str,
        instance_key_prefix: str,
        instances_data: List[Dict[str, Any]],
    ) -> Tuple[int, int]:
        """
        Atomically replace every instance in an index with a new set

        Args:
            index_key: Set holding the instance ids of one (patient, assignment)
            instance_key_prefix: Prefix of the instance hash keys
            instances_data: Instance dictionaries to write

        Returns:
            Tuple of (removed_count, written_count)
        """
        payload = json.dumps([to_redis_mapping(data) for data in instances_data])
        removed, written = self._replace_script(keys=[index_key], args=[instance_key_prefix, payload])

        logger.info(f"Atomically replaced {removed} instances with {written} under {index_key}")
        return int(removed), int(written)

    def update_instance_status(
        self,
        instance_key: str,
        status: str,
        completed_at: Optional[str],
        completion_data: Optional[Dict[str, Any]],
        updated_at: str,
    ) -> bool:
        """
        Atomically update an instance's progress fields

        Returns:
            True if the instance existed and was updated, False otherwise
        """
        encoded_data = json.dumps(completion_data) if completion_data is not None else ""
        result = self._status_script(
            keys=[instance_key],
            args=[status, completed_at or "", encoded_data, updated_at],
        )

        success = bool(result)
        if success:
            logger.info(f"Status updated for {instance_key}: {status}")
        else:
            logger.warning(f"Status update skipped for {instance_key}: instance not found")
        return success

    def save_assignment(
        self,
        assignment_key: str,
        active_key: str,
        active_set_key: str,
        patient_set_key: str,
        assignment_data: Dict[str, Any],
    ) -> Optional[str]:
        """
        Atomically save an assignment, enforcing one active assignment per
        (patient, protocol)

        Returns:
            None on success, otherwise the id of the conflicting active assignment
        """
        result = self._assignment_script(
            keys=[assignment_key, active_key, active_set_key, patient_set_key],
            args=[
                assignment_data["id"],
                assignment_data["status"],
                json.dumps(to_redis_mapping(assignment_data)),
            ],
        )

        return self._conflict_holder(assignment_data["id"], result)

    def create_assignment(
        self,
        assignment_key: str,
        active_key: str,
        active_set_key: str,
        patient_set_key: str,
        index_key: str,
        instance_key_prefix: str,
        assignment_data: Dict[str, Any],
        instances_data: List[Dict[str, Any]],
    ) -> Optional[str]:
        """
        Atomically create an active assignment and write its instance set

        Nothing is written on conflict, so a reader never sees the
        assignment without its instances.

        Returns:
            None on success, otherwise the id of the conflicting active assignment
        """
        result = self._create_script(
            keys=[assignment_key, active_key, active_set_key, patient_set_key, index_key],
            args=[
                assignment_data["id"],
                json.dumps(to_redis_mapping(assignment_data)),
                instance_key_prefix,
                json.dumps([to_redis_mapping(data) for data in instances_data]),
            ],
        )

        holder = self._conflict_holder(assignment_data["id"], result)
        if holder is None:
            logger.info(f"Atomically created assignment {assignment_data['id']} with {result} instances")
        return holder

    def _conflict_holder(self, assignment_id: str, result) -> Optional[str]:
        # Scripts return the holder's id (a string) on conflict, a number otherwise
        if isinstance(result, bytes):
            result = result.decode()
        if isinstance(result, str):
            logger.warning(f"Assignment {assignment_id} conflicts with active assignment {result}")
            return result
        return None


def create_atomic_redis_ops(redis_client: redis.Redis = None, key_prefix: str = None) -> AtomicRedisOperations:
    """
    Factory function to create AtomicRedisOperations instance

    Args:
        redis_client: Redis client instance (defaults to creating new one)
        key_prefix: Key namespace (defaults to PROTOCOL_KEY_PREFIX)

    Returns:
        AtomicRedisOperations instance
    """
    if redis_client is None:
        from config.redis import create_redis_connection
        redis_client = create_redis_connection()

    if key_prefix is None:
        from config.settings import PROTOCOL_KEY_PREFIX
        key_prefix = PROTOCOL_KEY_PREFIX

    return AtomicRedisOperations(redis_client, key_prefix=key_prefix)
