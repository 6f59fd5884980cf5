"""
Instance materialization: expands a protocol template against a patient's
anchor date into concrete, dated task instances.
"""
import logging
import uuid
from datetime import date
from typing import List, Optional

from utils.time_utils import now_utc

from .exceptions import InvalidTemplate
from .models import ProtocolTemplate, TaskInstance, TaskStatus
from .recovery import recovery_day
from .recurrence import DEFAULT_SETTINGS, RecurrenceSettings, expand_with_settings

logger = logging.getLogger("protocol-materializer")

# Namespace for deterministic instance ids
INSTANCE_NAMESPACE = uuid.UUID("6f1d3c52-93a4-4c5e-9a57-2f4b1f7e0c11")


def instance_id_for(
    tenant_id: str,
    patient_id: str,
    protocol_id: str,
    template_task_id: str,
    scheduled_date: date,
    assignment_id: str = "",
) -> str:
    """Stable id for a logical key, so re-materializing yields the same ids"""
    name = f"{tenant_id}:{patient_id}:{protocol_id}:{assignment_id}:{template_task_id}:{scheduled_date.isoformat()}"
    return str(uuid.uuid5(INSTANCE_NAMESPACE, name))


def materialize(
    template: ProtocolTemplate,
    anchor_date: date,
    patient_id: str,
    tenant_id: str,
    assignment_id: str = "",
    recurrence_settings: Optional[RecurrenceSettings] = None,
) -> List[TaskInstance]:
    """
    Generate pending task instances for every template task occurrence.

    Title, description and kind are copied onto each instance rather than
    referenced, so later template edits only reach a patient through resync.

    Args:
        template: Protocol template to expand
        anchor_date: Patient's anchor (surgery) date
        patient_id: Patient the instances belong to
        tenant_id: Tenant the patient belongs to
        assignment_id: Assignment the instances are created for
        recurrence_settings: Horizon and monthly step; the template's own
            horizon_days takes precedence

    Returns:
        Instances ordered by scheduled date, then template order. Empty
        when the template has no tasks.

    Raises:
        InvalidRecurrencePolicy: If a task's recurrence rule is malformed
        InvalidTemplate: If two occurrences share a logical key
    """
    if not template.tasks:
        logger.info(f"Protocol {template.id} has no tasks, nothing to materialize")
        return []

    effective = (recurrence_settings or DEFAULT_SETTINGS).with_horizon(template.horizon_days)
    timestamp = now_utc()

    drafts = []
    seen_keys = set()
    for order, task in enumerate(template.tasks):
        for scheduled_date in expand_with_settings(anchor_date, task.day_offset, task.recurrence, effective):
            key = (task.id, scheduled_date)
            if key in seen_keys:
                raise InvalidTemplate(
                    f"Protocol {template.id} schedules task {task.id} twice on {scheduled_date.isoformat()}"
                )
            seen_keys.add(key)

            drafts.append((scheduled_date, order, TaskInstance(
                id=instance_id_for(tenant_id, patient_id, template.id, task.id, scheduled_date, assignment_id),
                tenant_id=tenant_id,
                patient_id=patient_id,
                assignment_id=assignment_id,
                protocol_id=template.id,
                template_task_id=task.id,
                scheduled_date=scheduled_date,
                day_offset=recovery_day(anchor_date, scheduled_date),
                title=task.title,
                description=task.description,
                kind=task.kind,
                status=TaskStatus.PENDING,
                created_at=timestamp,
                updated_at=timestamp,
            )))

    drafts.sort(key=lambda entry: (entry[0], entry[1]))
    instances = [instance for _, _, instance in drafts]

    logger.info(
        f"Materialized {len(instances)} instances from {len(template.tasks)} tasks "
        f"of protocol {template.id} for patient {patient_id} (anchor {anchor_date.isoformat()})"
    )
    return instances
