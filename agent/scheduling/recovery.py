"""
Recovery-day translation between calendar dates and the patient's anchor date
"""
from datetime import date, timedelta
from typing import Iterable, List

from .models import TaskInstance

# (phase, last recovery day in the phase); anything past the last band is maintenance
RECOVERY_PHASES = [
    ("pre_op", -1),
    ("immediate_post_op", 7),
    ("early_recovery", 30),
    ("mid_recovery", 90),
    ("late_recovery", 200),
]
MAINTENANCE_PHASE = "maintenance"


def recovery_day(anchor_date: date, reference_date: date) -> int:
    """
    Whole calendar days from the anchor date to the reference date.

    Negative before the anchor (pre-op), 0 on the anchor date itself.
    """
    return (reference_date - anchor_date).days


def date_for_recovery_day(anchor_date: date, day: int) -> date:
    """Calendar date of a given recovery day"""
    return anchor_date + timedelta(days=day)


def recovery_phase(day: int) -> str:
    """Band a recovery day into a named recovery phase"""
    for phase, last_day in RECOVERY_PHASES:
        if day <= last_day:
            return phase
    return MAINTENANCE_PHASE


def is_due(instance: TaskInstance, anchor_date: date, reference_date: date) -> bool:
    """True when the instance falls on the reference date's recovery day"""
    target = date_for_recovery_day(anchor_date, recovery_day(anchor_date, reference_date))
    return instance.scheduled_date == target


def due_instances(instances: Iterable[TaskInstance], anchor_date: date, reference_date: date) -> List[TaskInstance]:
    """Instances scheduled on the reference date, in schedule order"""
    due = [instance for instance in instances if is_due(instance, anchor_date, reference_date)]
    return sorted(due, key=lambda i: (i.scheduled_date, i.template_task_id))


def overdue_instances(instances: Iterable[TaskInstance], reference_date: date) -> List[TaskInstance]:
    """Pending instances scheduled before the reference date (missed tasks)"""
    overdue = [
        instance for instance in instances
        if not instance.has_progress and instance.scheduled_date < reference_date
    ]
    return sorted(overdue, key=lambda i: (i.scheduled_date, i.template_task_id))
