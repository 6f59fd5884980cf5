"""
Tests for recovery-day translation
"""
import pytest
from datetime import date

from scheduling.models import TaskInstance, TaskStatus
from scheduling.recovery import (
    date_for_recovery_day,
    due_instances,
    is_due,
    overdue_instances,
    recovery_day,
    recovery_phase,
)

ANCHOR = date(2024, 1, 1)


def _instance(task_id, scheduled, status=TaskStatus.PENDING):
    return TaskInstance(template_task_id=task_id, scheduled_date=scheduled, status=status)


class TestRecoveryDay:
    """Tests for recovery_day() and its inverse"""

    def test_anchor_is_day_zero(self):
        assert recovery_day(ANCHOR, ANCHOR) == 0

    def test_pre_op_days_are_negative(self):
        assert recovery_day(ANCHOR, date(2023, 12, 25)) == -7

    def test_post_op_days(self):
        assert recovery_day(ANCHOR, date(2024, 3, 1)) == 60

    def test_inverse(self):
        for day in (-30, -1, 0, 1, 45, 200):
            assert recovery_day(ANCHOR, date_for_recovery_day(ANCHOR, day)) == day


class TestRecoveryPhase:
    """Tests for recovery_phase() banding"""

    @pytest.mark.parametrize("day,phase", [
        (-30, "pre_op"),
        (-1, "pre_op"),
        (0, "immediate_post_op"),
        (7, "immediate_post_op"),
        (8, "early_recovery"),
        (30, "early_recovery"),
        (31, "mid_recovery"),
        (90, "mid_recovery"),
        (91, "late_recovery"),
        (200, "late_recovery"),
        (201, "maintenance"),
    ])
    def test_bands(self, day, phase):
        assert recovery_phase(day) == phase


class TestDueAndOverdue:
    """Tests for the due / overdue filters"""

    def test_due_only_on_reference_date(self):
        instances = [
            _instance("a", date(2024, 1, 4)),
            _instance("b", date(2024, 1, 5)),
            _instance("c", date(2024, 1, 5), TaskStatus.COMPLETED),
        ]
        due = due_instances(instances, ANCHOR, date(2024, 1, 5))
        assert [i.template_task_id for i in due] == ["b", "c"]

    def test_is_due(self):
        assert is_due(_instance("a", date(2023, 12, 29)), ANCHOR, date(2023, 12, 29))
        assert not is_due(_instance("a", date(2023, 12, 29)), ANCHOR, date(2023, 12, 30))

    def test_overdue_excludes_progress_and_today(self):
        instances = [
            _instance("missed", date(2024, 1, 2)),
            _instance("done", date(2024, 1, 2), TaskStatus.COMPLETED),
            _instance("started", date(2024, 1, 3), TaskStatus.IN_PROGRESS),
            _instance("today", date(2024, 1, 5)),
        ]
        overdue = overdue_instances(instances, date(2024, 1, 5))
        assert [i.template_task_id for i in overdue] == ["missed"]
