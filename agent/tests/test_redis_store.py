"""
Tests for the Redis-backed store and its atomic Lua operations

These run against a mocked client; see tests/integration for a real Redis.
"""
import json
import pytest
import redis
from datetime import date
from unittest.mock import Mock

from scheduling.exceptions import (
    AssignmentConflict,
    InstanceNotFound,
    PatientNotFound,
    PersistenceFailure,
    TemplateNotFound,
)
from config.settings import DEFAULT_TIMEZONE, PROTOCOL_KEY_PREFIX
from scheduling.models import (
    AssignmentStatus,
    Patient,
    ProtocolAssignment,
    TaskInstance,
    TaskStatus,
)
from shared.redis_store import RedisProtocolStore
from utils.redis_atomic import AtomicRedisOperations, create_atomic_redis_ops, to_redis_mapping


@pytest.fixture
def store(mock_redis):
    return RedisProtocolStore(mock_redis, key_prefix="test")


class TestToRedisMapping:

    def test_none_becomes_empty_string(self):
        assert to_redis_mapping({"a": None, "b": 3, "c": "x"}) == {"a": "", "b": "3", "c": "x"}


class TestAtomicOperations:
    """Test the Lua script wrappers"""

    def test_registers_scripts(self, mock_redis):
        AtomicRedisOperations(mock_redis)
        assert mock_redis.register_script.call_count == 4

    def test_replace_instances(self, mock_redis):
        ops = AtomicRedisOperations(mock_redis)
        ops._replace_script.return_value = [4, 2]

        removed, written = ops.replace_instances("idx", "p:instance:", [{"id": "a", "completed_at": None}])

        assert (removed, written) == (4, 2)
        kwargs = ops._replace_script.call_args.kwargs
        assert kwargs["keys"] == ["idx"]
        assert kwargs["args"][0] == "p:instance:"
        assert json.loads(kwargs["args"][1]) == [{"id": "a", "completed_at": ""}]

    def test_update_status_missing_instance(self, mock_redis):
        ops = AtomicRedisOperations(mock_redis)
        ops._status_script.return_value = 0

        assert ops.update_instance_status("k", "completed", None, None, "now") is False
        assert ops._status_script.call_args.kwargs["args"] == ["completed", "", "", "now"]

    def test_update_status_encodes_payload(self, mock_redis):
        ops = AtomicRedisOperations(mock_redis)
        ops._status_script.return_value = 1

        assert ops.update_instance_status("k", "completed", "2024-01-05", {"pain": 4}, "now") is True
        assert ops._status_script.call_args.kwargs["args"][2] == '{"pain": 4}'

    def test_save_assignment_conflict_decodes_holder(self, mock_redis):
        ops = AtomicRedisOperations(mock_redis)
        ops._assignment_script.return_value = b"other-assignment"

        holder = ops.save_assignment("a", "act", "set", "pset", {"id": "new", "status": "active"})

        assert holder == "other-assignment"

    def test_save_assignment_success(self, mock_redis):
        ops = AtomicRedisOperations(mock_redis)
        ops._assignment_script.return_value = 0

        assert ops.save_assignment("a", "act", "set", "pset", {"id": "new", "status": "active"}) is None

    def test_create_assignment_writes_both_in_one_script(self, mock_redis):
        ops = AtomicRedisOperations(mock_redis)
        ops._create_script.return_value = 1

        holder = ops.create_assignment(
            "a", "act", "set", "pset", "idx", "p:instance:",
            {"id": "new", "status": "active", "anchor_date": None},
            [{"id": "i1", "completed_at": None}],
        )

        assert holder is None
        ops._create_script.assert_called_once()
        kwargs = ops._create_script.call_args.kwargs
        assert kwargs["keys"] == ["a", "act", "set", "pset", "idx"]
        assert kwargs["args"][0] == "new"
        assert json.loads(kwargs["args"][1])["anchor_date"] == ""
        assert kwargs["args"][2] == "p:instance:"
        assert json.loads(kwargs["args"][3]) == [{"id": "i1", "completed_at": ""}]

    def test_create_assignment_conflict(self, mock_redis):
        ops = AtomicRedisOperations(mock_redis)
        ops._create_script.return_value = b"holder"

        assert ops.create_assignment("a", "act", "set", "pset", "idx", "p:", {"id": "new"}, []) == "holder"

    def test_factory_uses_configured_prefix(self, mock_redis):
        ops = create_atomic_redis_ops(mock_redis)

        assert ops.redis is mock_redis
        assert ops.key_prefix == PROTOCOL_KEY_PREFIX


class TestRedisProtocolStore:
    """Test RedisProtocolStore against a mocked client"""

    def test_missing_template(self, store, mock_redis):
        mock_redis.get.return_value = None

        with pytest.raises(TemplateNotFound):
            store.fetch_template("knee")

    def test_save_template_bumps_version(self, store, mock_redis, sample_template):
        mock_redis.incr.return_value = 3
        pipe = mock_redis.pipeline.return_value

        saved = store.save_template(sample_template)

        assert saved.version == 3
        mock_redis.incr.assert_called_once_with("test:template:knee-basic:version")
        key, raw = pipe.set.call_args.args
        assert key == "test:template:knee-basic"
        assert json.loads(raw)["version"] == 3
        pipe.sadd.assert_called_once_with("test:templates", "knee-basic")

    def test_template_round_trip(self, store, mock_redis, sample_template):
        mock_redis.get.return_value = json.dumps(sample_template.to_dict())

        fetched = store.fetch_template("knee-basic")

        assert [t.id for t in fetched.tasks] == ["pre-op-video", "pain-check", "walk"]

    def test_missing_patient(self, store, mock_redis):
        mock_redis.hgetall.return_value = {}

        with pytest.raises(PatientNotFound):
            store.get_patient("nobody")

    def test_save_patient_flattens_none(self, store, mock_redis):
        store.save_patient(Patient(id="p1"))

        mapping = mock_redis.hset.call_args.kwargs["mapping"]
        assert mapping["anchor_date"] == ""
        assert mock_redis.hset.call_args.args == ("test:patient:p1",)

    def test_patient_from_hash(self, store, mock_redis):
        mock_redis.hgetall.return_value = {"id": "p1", "tenant_id": "t", "anchor_date": "", "timezone": ""}

        patient = store.get_patient("p1")

        assert patient.anchor_date is None
        assert patient.timezone == DEFAULT_TIMEZONE

    def test_save_assignment_keys(self, store):
        store.atomic_ops._assignment_script.return_value = 0
        assignment = ProtocolAssignment(id="a1", patient_id="p1", protocol_id="knee")

        store.save_assignment(assignment)

        keys = store.atomic_ops._assignment_script.call_args.kwargs["keys"]
        assert keys == [
            "test:assignment:a1",
            "test:active:p1:knee",
            "test:active_assignments",
            "test:patient:p1:assignments",
        ]

    def test_save_assignment_conflict(self, store):
        store.atomic_ops._assignment_script.return_value = "a0"

        with pytest.raises(AssignmentConflict) as exc_info:
            store.save_assignment(ProtocolAssignment(id="a1", patient_id="p1", protocol_id="knee"))

        assert exc_info.value.patient_id == "p1"
        assert exc_info.value.protocol_id == "knee"

    def test_create_assignment_with_instances_keys(self, store):
        store.atomic_ops._create_script.return_value = 1
        assignment = ProtocolAssignment(id="a1", patient_id="p1", protocol_id="knee")
        instance = TaskInstance(id="i1", patient_id="p1", assignment_id="a1", template_task_id="a",
                                scheduled_date=date(2024, 1, 2))

        store.create_assignment_with_instances(assignment, [instance])

        kwargs = store.atomic_ops._create_script.call_args.kwargs
        assert kwargs["keys"] == [
            "test:assignment:a1",
            "test:active:p1:knee",
            "test:active_assignments",
            "test:patient:p1:assignments",
            "test:instances:p1:a1",
        ]
        assert kwargs["args"][2] == "test:instance:"
        store.atomic_ops._assignment_script.assert_not_called()
        store.atomic_ops._replace_script.assert_not_called()

    def test_create_assignment_with_instances_conflict(self, store):
        store.atomic_ops._create_script.return_value = "a0"

        with pytest.raises(AssignmentConflict):
            store.create_assignment_with_instances(ProtocolAssignment(id="a1", patient_id="p1", protocol_id="knee"), [])

    def test_create_assignment_with_instances_redis_failure(self, store):
        store.atomic_ops._create_script.side_effect = redis.ConnectionError("connection reset")

        with pytest.raises(PersistenceFailure) as exc_info:
            store.create_assignment_with_instances(ProtocolAssignment(id="a1", patient_id="p1", protocol_id="knee"), [])

        assert exc_info.value.operation == "create_assignment_with_instances"

    def test_no_active_assignment(self, store, mock_redis):
        mock_redis.get.return_value = None
        assert store.get_active_assignment("p1", "knee") is None

    def test_list_active_filters_stale_members(self, store, mock_redis):
        active = ProtocolAssignment(id="a1", patient_id="p1", protocol_id="knee")
        paused = ProtocolAssignment(id="a2", patient_id="p1", protocol_id="hip", status=AssignmentStatus.PAUSED)
        mock_redis.smembers.return_value = {"a1", "a2"}
        mock_redis.pipeline.return_value.execute.return_value = [
            to_redis_mapping(active.to_dict()),
            to_redis_mapping(paused.to_dict()),
        ]

        assert [a.id for a in store.list_active_assignments()] == ["a1"]

    def test_list_instances_sorted(self, store, mock_redis):
        later = TaskInstance(id="i2", patient_id="p1", template_task_id="b", scheduled_date=date(2024, 1, 9))
        earlier = TaskInstance(id="i1", patient_id="p1", template_task_id="a", scheduled_date=date(2024, 1, 2))
        mock_redis.smembers.return_value = {"i1", "i2"}
        mock_redis.pipeline.return_value.execute.return_value = [
            to_redis_mapping(later.to_dict()),
            to_redis_mapping(earlier.to_dict()),
        ]

        assert [i.id for i in store.list_instances("p1", "a1")] == ["i1", "i2"]

    def test_list_instances_empty(self, store, mock_redis):
        mock_redis.smembers.return_value = set()
        assert store.list_instances("p1", "a1") == []

    def test_replace_instances_returns_removed(self, store):
        store.atomic_ops._replace_script.return_value = [5, 1]
        instance = TaskInstance(id="i1", patient_id="p1", template_task_id="a", scheduled_date=date(2024, 1, 2))

        assert store.replace_instances("p1", "a1", [instance]) == 5
        assert store.atomic_ops._replace_script.call_args.kwargs["keys"] == ["test:instances:p1:a1"]

    def test_update_missing_instance(self, store):
        store.atomic_ops._status_script.return_value = 0

        with pytest.raises(InstanceNotFound):
            store.update_instance_status("gone", TaskStatus.COMPLETED)

    def test_reopen_clears_completed_at(self, store, mock_redis):
        store.atomic_ops._status_script.return_value = 1
        instance = TaskInstance(id="i1", patient_id="p1", template_task_id="a", scheduled_date=date(2024, 1, 2))
        mock_redis.hgetall.return_value = to_redis_mapping(instance.to_dict())

        store.update_instance_status("i1", TaskStatus.PENDING)

        args = store.atomic_ops._status_script.call_args.kwargs["args"]
        assert args[0] == "pending"
        assert args[1] == ""

    def test_redis_errors_become_persistence_failures(self, store, mock_redis):
        mock_redis.get.side_effect = redis.ConnectionError("connection refused")

        with pytest.raises(PersistenceFailure) as exc_info:
            store.fetch_template("knee")

        assert exc_info.value.operation == "fetch_template"
        assert exc_info.value.retryable
        assert isinstance(exc_info.value.__cause__, redis.ConnectionError)

    def test_script_errors_become_persistence_failures(self, store):
        store.atomic_ops._replace_script.side_effect = redis.ResponseError("NOSCRIPT")

        with pytest.raises(PersistenceFailure):
            store.replace_instances("p1", "a1", [])

    def test_key_counts(self, store, mock_redis):
        mock_redis.scan_iter.return_value = iter([
            "test:patient:p1",
            "test:patient:p1:assignments",
            "test:instance:i1",
            "test:instance:i2",
        ])

        assert store.key_counts() == {"patient": 2, "instance": 2}

    def test_default_store_uses_configured_connection(self, monkeypatch):
        client = Mock(spec=redis.Redis)
        monkeypatch.setattr("config.redis.create_redis_connection", lambda: client)

        store = RedisProtocolStore()

        assert store.redis_client is client
        assert store.atomic_ops.redis is client
        assert store.prefix == PROTOCOL_KEY_PREFIX

    def test_store_shares_prefix_with_atomic_ops(self, store):
        assert store.prefix == "test"
        assert store.atomic_ops.key_prefix == "test"
