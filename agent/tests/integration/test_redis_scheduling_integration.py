"""
Integration tests for the scheduling engine on a real Redis

Tests that the scheduler, the Redis store and its Lua scripts work together:
- Assigning protocols and persisting instance sets
- Recording completions
- Resyncing after template edits and anchor moves without losing progress
- The one-active-assignment rule enforced inside Redis
"""
import pytest
from datetime import date

from scheduling.exceptions import AnchorDateConflict, AssignmentConflict, InstanceNotFound
from scheduling.models import AssignmentStatus, ProtocolAssignment, TaskStatus
from scheduling.recurrence import RecurrenceSettings
from scheduling.scheduler import ProtocolScheduler
from shared.redis_store import RedisProtocolStore


@pytest.fixture
def redis_store(redis_test_db):
    return RedisProtocolStore(redis_test_db, key_prefix="itest")


@pytest.fixture
def scheduler(redis_store, sample_template, sample_patient):
    redis_store.save_template(sample_template)
    redis_store.save_patient(sample_patient)
    return ProtocolScheduler(redis_store, recurrence_settings=RecurrenceSettings(horizon_days=14))


def _instance_at(scheduler, task_id, scheduled):
    for instance in scheduler.store.list_patient_instances("patient-456"):
        if instance.template_task_id == task_id and instance.scheduled_date == scheduled:
            return instance
    raise AssertionError(f"no {task_id} instance on {scheduled}")


class TestRedisSchedulingIntegration:

    def test_assign_persists_instances(self, scheduler, redis_test_db):
        result = scheduler.assign_protocol("patient-456", "knee-basic")

        assert result.tasks_created == 17
        instances = scheduler.store.list_instances("patient-456", result.assignment_id)
        assert len(instances) == 17
        assert instances[0].template_task_id == "pre-op-video"
        assert redis_test_db.scard(f"itest:instances:patient-456:{result.assignment_id}") == 17
        assert redis_test_db.get("itest:active:patient-456:knee-basic") == result.assignment_id

    def test_duplicate_assignment_rejected(self, scheduler, redis_store):
        scheduler.assign_protocol("patient-456", "knee-basic")

        with pytest.raises(AssignmentConflict):
            redis_store.create_assignment(ProtocolAssignment(patient_id="patient-456", protocol_id="knee-basic"))

    def test_conflicting_create_writes_no_instances(self, scheduler, redis_store, redis_test_db):
        first = scheduler.assign_protocol("patient-456", "knee-basic")
        instances = scheduler.store.list_instances("patient-456", first.assignment_id)
        duplicate = ProtocolAssignment(id="dup", patient_id="patient-456", protocol_id="knee-basic")

        with pytest.raises(AssignmentConflict):
            redis_store.create_assignment_with_instances(duplicate, instances)

        assert not redis_test_db.exists("itest:assignment:dup")
        assert not redis_test_db.exists("itest:instances:patient-456:dup")
        assert [a.id for a in redis_store.list_assignments("patient-456")] == [first.assignment_id]

    def test_completion_survives_template_edit(self, scheduler, redis_store, sample_template):
        scheduler.assign_protocol("patient-456", "knee-basic")
        walk = _instance_at(scheduler, "walk", date(2024, 1, 10))
        scheduler.record_completion(walk.id, completion_data={"minutes": 20})

        sample_template.tasks[1].title = "Pain Check"
        redis_store.save_template(sample_template)
        result = scheduler.resync_protocol("patient-456", "knee-basic")

        assert result.preserved == 1
        kept = _instance_at(scheduler, "walk", date(2024, 1, 10))
        assert kept.status is TaskStatus.COMPLETED
        assert kept.completion_data == {"minutes": 20}
        assert kept.completed_at is not None
        assert _instance_at(scheduler, "pain-check", date(2024, 1, 2)).title == "Pain Check"

    def test_resync_is_idempotent(self, scheduler):
        assignment_id = scheduler.assign_protocol("patient-456", "knee-basic").assignment_id
        before = [i.id for i in scheduler.store.list_instances("patient-456", assignment_id)]

        result = scheduler.resync_protocol("patient-456", "knee-basic")

        assert result.created == 0
        assert result.removed == 0
        assert [i.id for i in scheduler.store.list_instances("patient-456", assignment_id)] == before

    def test_resync_removes_stale_instances(self, scheduler, redis_test_db):
        assignment_id = scheduler.assign_protocol("patient-456", "knee-basic").assignment_id
        old_walk = _instance_at(scheduler, "walk", date(2024, 1, 3))

        scheduler.correct_anchor_date("patient-456", date(2024, 1, 8))

        with pytest.raises(InstanceNotFound):
            scheduler.store.get_instance(old_walk.id)
        assert redis_test_db.scard(f"itest:instances:patient-456:{assignment_id}") == 17

    def test_backward_anchor_move_blocked_by_pre_op_progress(self, scheduler):
        scheduler.assign_protocol("patient-456", "knee-basic")
        video = _instance_at(scheduler, "pre-op-video", date(2023, 12, 29))
        scheduler.record_completion(video.id)

        with pytest.raises(AnchorDateConflict):
            scheduler.correct_anchor_date("patient-456", date(2023, 12, 20))

        assert scheduler.store.get_patient("patient-456").anchor_date == date(2024, 1, 1)
        assert scheduler.store.get_instance(video.id).status is TaskStatus.COMPLETED

    def test_paused_assignment_leaves_active_set(self, scheduler, redis_test_db):
        assignment_id = scheduler.assign_protocol("patient-456", "knee-basic").assignment_id

        scheduler.set_assignment_status("patient-456", "knee-basic", AssignmentStatus.PAUSED)

        assert not redis_test_db.sismember("itest:active_assignments", assignment_id)
        assert redis_test_db.get("itest:active:patient-456:knee-basic") is None
        assert scheduler.store.list_active_assignments() == []

    def test_reopen_keeps_completion_data(self, scheduler):
        scheduler.assign_protocol("patient-456", "knee-basic")
        video = _instance_at(scheduler, "pre-op-video", date(2023, 12, 29))
        scheduler.record_completion(video.id, completion_data={"watched": True})

        reopened = scheduler.record_completion(video.id, status=TaskStatus.PENDING)

        assert reopened.status is TaskStatus.PENDING
        assert reopened.completed_at is None
        assert reopened.completion_data == {"watched": True}
