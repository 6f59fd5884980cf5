"""
RQ tasks for background protocol assignment and resync
"""
import logging
from typing import Optional

import redis
from rq import get_current_job
from rq.decorators import job

from config.redis import get_redis_url
from config.settings import PROTOCOL_QUEUE_NAME
from utils.time_utils import parse_date

from .exceptions import ProtocolSchedulingError
from .resync import resolve_anchor
from .scheduler import ProtocolScheduler

logger = logging.getLogger("protocol-tasks")

# Redis connection for RQ (binary responses; RQ stores pickled payloads)
redis_conn = redis.Redis.from_url(get_redis_url())


def _failure(operation: str, error: ProtocolSchedulingError, **context) -> dict:
    """Result dict for a scheduling error, logged with traceback"""
    logger.error(f"{operation} failed: {error}", exc_info=True)
    return {
        "success": False,
        "error": str(error),
        "error_type": type(error).__name__,
        "retryable": error.retryable,
        **context,
    }


def _job_id() -> Optional[str]:
    current_job = get_current_job()
    return current_job.id if current_job else None


@job(PROTOCOL_QUEUE_NAME, connection=redis_conn, timeout=300)
def assign_protocol_job(patient_id: str, protocol_id: str, anchor_date_iso: str = None, replace: bool = False) -> dict:
    """
    RQ task to assign a protocol to a patient

    Args:
        patient_id: Patient to assign to
        protocol_id: Protocol template id
        anchor_date_iso: Optional surgery date (YYYY-MM-DD)
        replace: Resync an existing active assignment instead of failing

    Returns:
        {"success": True, "assignment_id", "tasks_created", "anchor_date"} or
        {"success": False, "error", ...}
    """
    logger.info(f"Assigning protocol {protocol_id} to patient {patient_id} (job {_job_id()})")
    try:
        result = ProtocolScheduler().assign_protocol(
            patient_id,
            protocol_id,
            anchor_date=parse_date(anchor_date_iso),
            replace=replace,
        )
    except ProtocolSchedulingError as e:
        return _failure("assign_protocol", e, patient_id=patient_id, protocol_id=protocol_id)

    return {"success": True, **result.to_dict()}


@job(PROTOCOL_QUEUE_NAME, connection=redis_conn, timeout=300)
def resync_protocol_job(patient_id: str, protocol_id: str) -> dict:
    """
    RQ task to resync a patient's active assignment after a template change

    Returns:
        {"success": True, "created", "preserved", "removed", "total"} or
        {"success": False, "error", ...}
    """
    logger.info(f"Resyncing protocol {protocol_id} for patient {patient_id} (job {_job_id()})")
    try:
        result = ProtocolScheduler().resync_protocol(patient_id, protocol_id)
    except ProtocolSchedulingError as e:
        return _failure("resync_protocol", e, patient_id=patient_id, protocol_id=protocol_id)

    return {"success": True, "patient_id": patient_id, "protocol_id": protocol_id, **result.to_dict()}


@job(PROTOCOL_QUEUE_NAME, connection=redis_conn, timeout=300)
def correct_anchor_date_job(patient_id: str, new_anchor_iso: str, force: bool = False) -> dict:
    """
    RQ task to move a patient's anchor date and resync all active assignments

    Returns:
        {"success": True, "anchor_date", "results": {protocol_id: counts}} or
        {"success": False, "error", ...}
    """
    logger.info(f"Correcting anchor date for patient {patient_id} to {new_anchor_iso} (job {_job_id()})")
    try:
        new_anchor = parse_date(new_anchor_iso)
        if new_anchor is None:
            raise ValueError("new_anchor_iso is required")
        results = ProtocolScheduler().correct_anchor_date(patient_id, new_anchor, force=force)
    except ProtocolSchedulingError as e:
        return _failure("correct_anchor_date", e, patient_id=patient_id)
    except ValueError as e:
        logger.error(f"Invalid anchor date for patient {patient_id}: {e}")
        return {"success": False, "error": str(e), "error_type": "ValueError", "retryable": False, "patient_id": patient_id}

    return {
        "success": True,
        "patient_id": patient_id,
        "anchor_date": new_anchor.isoformat(),
        "results": {protocol_id: result.to_dict() for protocol_id, result in results.items()},
    }


@job(PROTOCOL_QUEUE_NAME, connection=redis_conn, timeout=1800)
def recheck_active_assignments() -> dict:
    """
    RQ task that resyncs every active assignment.

    Picks up template edits and anchor changes that were saved without an
    explicit resync. One failing assignment does not stop the rest; failures are counted and
    reported in the result.
    """
    scheduler = ProtocolScheduler()
    assignments = scheduler.store.list_active_assignments()

    checked = 0
    resynced = 0
    failures = []
    for assignment in assignments:
        checked += 1
        try:
            template = scheduler.templates.fetch(assignment.protocol_id)
            patient = scheduler.store.get_patient(assignment.patient_id)
            anchor = resolve_anchor(patient, assignment)
            if template.version == assignment.protocol_version and anchor == assignment.anchor_date:
                continue
            scheduler.resync_protocol(assignment.patient_id, assignment.protocol_id)
            resynced += 1
        except ProtocolSchedulingError as e:
            logger.error(
                f"Recheck failed for assignment {assignment.id} "
                f"(patient {assignment.patient_id}, protocol {assignment.protocol_id}): {e}",
                exc_info=True,
            )
            failures.append({"assignment_id": assignment.id, "error": str(e), "retryable": e.retryable})

    logger.info(f"Rechecked {checked} active assignments: {resynced} resynced, {len(failures)} failed")
    return {
        "success": not failures,
        "checked": checked,
        "resynced": resynced,
        "failed": len(failures),
        "failures": failures,
    }
