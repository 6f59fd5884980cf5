"""
State-preserving resync: reconciles a patient's task instances with the
current protocol template and anchor date without losing recorded progress.

This module only plans the new instance set. Writing it is the store's
replace_instances(), which swaps the whole set atomically.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, List, Optional

from .exceptions import AnchorDateConflict
from .materializer import materialize
from .models import (
    Patient,
    ProtocolAssignment,
    ProtocolTemplate,
    ResyncResult,
    TaskInstance,
)
from .recurrence import RecurrenceSettings

logger = logging.getLogger("protocol-resync")


@dataclass
class ResyncPlan:
    """Merged instance set ready to be written, plus what changed"""
    anchor_date: Optional[date]
    instances: List[TaskInstance]
    result: ResyncResult
    dropped_progress: List[TaskInstance] = field(default_factory=list)


def resolve_anchor(patient: Patient, assignment: Optional[ProtocolAssignment] = None) -> date:
    """
    Anchor date to schedule against: the patient's surgery date, else the
    anchor or date of the assignment.
    """
    if patient.anchor_date:
        return patient.anchor_date
    if assignment is not None:
        return assignment.anchor_date or assignment.assigned_date
    raise ValueError(f"Patient {patient.id} has no anchor date and no assignment to fall back on")


def merge_progress(drafts: List[TaskInstance], existing: Iterable[TaskInstance]) -> ResyncPlan:
    """
    Carry progress from existing instances onto freshly materialized drafts.

    Only instances with recorded progress (in_progress or completed) are
    retained, keyed by (template_task_id, scheduled_date). Pending instances
    just keep their creation timestamp.
    """
    existing = list(existing)
    by_key = {instance.logical_key: instance for instance in existing}

    result = ResyncResult(total=len(drafts))
    fresh_keys = set()

    for draft in drafts:
        key = draft.logical_key
        fresh_keys.add(key)
        previous = by_key.get(key)

        if previous is None:
            result.created += 1
        elif previous.has_progress:
            draft.adopt_progress(previous)
            result.preserved += 1
        else:
            draft.created_at = previous.created_at
            if (draft.title, draft.description, draft.kind) == (previous.title, previous.description, previous.kind):
                draft.updated_at = previous.updated_at

    stale = [instance for key, instance in by_key.items() if key not in fresh_keys]
    result.removed = len(stale)
    dropped = [instance for instance in stale if instance.has_progress]

    return ResyncPlan(anchor_date=None, instances=drafts, result=result, dropped_progress=dropped)


def check_anchor_move(
    previous_anchor: Optional[date],
    new_anchor: date,
    existing: Iterable[TaskInstance],
    patient_id: str = None,
):
    """
    Refuse to move the anchor earlier once pre-anchor tasks carry progress.

    Pre-anchor instances are keyed to dates before the old anchor; moving
    the anchor backward re-dates them and would silently discard what the
    patient already recorded.

    Raises:
        AnchorDateConflict: If the move would drop pre-anchor progress
    """
    if previous_anchor is None or new_anchor >= previous_anchor:
        return

    affected = [
        instance for instance in existing
        if instance.has_progress and instance.scheduled_date < previous_anchor
    ]
    if affected:
        raise AnchorDateConflict(
            f"Anchor date for patient {patient_id} cannot move from {previous_anchor.isoformat()} "
            f"to {new_anchor.isoformat()}: {len(affected)} pre-anchor task(s) already have progress",
            patient_id=patient_id,
            affected_instance_ids=[instance.id for instance in affected],
        )


def resync(
    template: ProtocolTemplate,
    patient: Patient,
    existing_instances: Iterable[TaskInstance],
    assignment: Optional[ProtocolAssignment] = None,
    recurrence_settings: Optional[RecurrenceSettings] = None,
) -> ResyncPlan:
    """
    Plan the instance set that makes the patient match the template.

    Materializes fresh drafts against the patient's current anchor date and
    merges progress from existing_instances. Nothing is written here, so a
    failure at this stage leaves the stored instances untouched.

    Args:
        template: Current protocol template
        patient: Patient with the current anchor date
        existing_instances: Instances currently stored for the assignment
        assignment: Assignment being resynced (anchor fallback and id)
        recurrence_settings: Horizon and monthly step overrides

    Returns:
        ResyncPlan with the merged instances and created/preserved/removed counts
    """
    existing_instances = list(existing_instances)
    anchor = resolve_anchor(patient, assignment)

    drafts = materialize(
        template,
        anchor,
        patient_id=patient.id,
        tenant_id=patient.tenant_id,
        assignment_id=assignment.id if assignment else "",
        recurrence_settings=recurrence_settings,
    )
    plan = merge_progress(drafts, existing_instances)
    plan.anchor_date = anchor

    for instance in plan.dropped_progress:
        logger.warning(
            f"Progress on task {instance.template_task_id} scheduled {instance.scheduled_date.isoformat()} "
            f"(status {instance.status.value}) for patient {patient.id} no longer matches the template and is dropped"
        )

    logger.info(
        f"Resync plan for patient {patient.id}, protocol {template.id}: "
        f"created={plan.result.created} preserved={plan.result.preserved} "
        f"removed={plan.result.removed} total={plan.result.total}"
    )
    return plan
