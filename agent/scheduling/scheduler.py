"""
ProtocolScheduler - Assigns recovery protocols to patients and keeps their
task instances in step with templates and anchor dates
"""
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Union

from utils.time_utils import now_utc, today_in_timezone

from .exceptions import AssignmentConflict, AssignmentNotFound
from .models import (
    AssignmentResult,
    AssignmentStatus,
    Patient,
    ProgressSummary,
    ProtocolAssignment,
    ProtocolTemplate,
    ResyncResult,
    TaskInstance,
    TaskStatus,
)
from .recovery import due_instances, overdue_instances, recovery_day, recovery_phase
from .recurrence import RecurrenceSettings
from .resync import check_anchor_move, resolve_anchor, resync
from .templates import TemplateRepository

logger = logging.getLogger("protocol-scheduler")


class ProtocolScheduler:
    """
    Entry point for every scheduling operation.

    Handles:
    - First-time protocol assignment
    - Resync after template edits, anchor corrections and rechecks
    - Due-today, overdue and progress queries
    - Recording task completion

    Instances are always planned in memory first. A new assignment is written
    together with its instances in one create_assignment_with_instances call;
    every later rewrite goes through _resync_assignment and one atomic
    replace_instances call.
    """

    def __init__(self, store=None, recurrence_settings: Optional[RecurrenceSettings] = None):
        """
        Args:
            store: ProtocolStore implementation (defaults to RedisProtocolStore)
            recurrence_settings: Horizon and monthly step (defaults from config)
        """
        if store is None:
            from shared.redis_store import RedisProtocolStore
            store = RedisProtocolStore()

        self.store = store
        self.templates = TemplateRepository(store)
        self.recurrence_settings = recurrence_settings or RecurrenceSettings()

    # Assignment

    def assign_protocol(
        self,
        patient_id: str,
        protocol_id: str,
        anchor_date: Optional[date] = None,
        replace: bool = False,
    ) -> AssignmentResult:
        """
        Instantiate a protocol for a patient for the first time

        Args:
            patient_id: Patient to assign to
            protocol_id: Protocol template to instantiate
            anchor_date: Surgery date; recorded as the patient's anchor when given
            replace: Resync the existing active assignment instead of failing

        Returns:
            AssignmentResult with the assignment id and number of tasks created

        Raises:
            PatientNotFound, TemplateNotFound: If either does not exist
            AssignmentConflict: If an active assignment exists and replace is False
        """
        patient = self.store.get_patient(patient_id)
        template = self.templates.fetch(protocol_id)

        existing = self.store.get_active_assignment(patient_id, protocol_id)
        if existing is not None and not replace:
            raise AssignmentConflict(
                f"Patient {patient_id} already has an active assignment ({existing.id}) "
                f"of protocol {protocol_id}",
                patient_id=patient_id,
                protocol_id=protocol_id,
            )

        if anchor_date is not None and anchor_date != patient.anchor_date:
            if patient.anchor_date is None:
                patient.anchor_date = anchor_date
                self.store.save_patient(patient)
                logger.info(f"Recorded anchor date {anchor_date.isoformat()} for patient {patient_id}")
            else:
                self.correct_anchor_date(patient_id, anchor_date)
                patient = self.store.get_patient(patient_id)

        if existing is not None:
            logger.info(f"Replacing assignment {existing.id}: resyncing protocol {protocol_id} for patient {patient_id}")
            result = self._resync_assignment(patient, existing, template)
            return AssignmentResult(
                assignment_id=existing.id,
                tasks_created=result.created,
                anchor_date=resolve_anchor(patient, existing),
            )

        today = today_in_timezone(patient.timezone)
        assignment = ProtocolAssignment(
            patient_id=patient_id,
            protocol_id=protocol_id,
            tenant_id=patient.tenant_id,
            assigned_date=today,
            anchor_date=patient.anchor_date or today,
        )

        # Plan before writing anything
        plan = resync(template, patient, [], assignment=assignment, recurrence_settings=self.recurrence_settings)

        assignment.anchor_date = plan.anchor_date
        assignment.protocol_version = template.version
        self.store.create_assignment_with_instances(assignment, plan.instances)

        logger.info(
            f"Assigned protocol {protocol_id} to patient {patient_id} "
            f"(assignment {assignment.id}, {plan.result.created} tasks, anchor {plan.anchor_date.isoformat()})"
        )
        return AssignmentResult(
            assignment_id=assignment.id,
            tasks_created=plan.result.created,
            anchor_date=plan.anchor_date,
        )

    def set_assignment_status(
        self,
        patient_id: str,
        protocol_id: str,
        status: Union[AssignmentStatus, str],
    ) -> ProtocolAssignment:
        """
        Pause, complete or reactivate a patient's assignment of a protocol.

        Reactivating raises AssignmentConflict if another assignment of the
        protocol became active in the meantime.
        """
        status = AssignmentStatus(status)
        assignment = self._latest_assignment(patient_id, protocol_id)
        if assignment.status is status:
            return assignment

        previous = assignment.status
        assignment.status = status
        assignment.updated_at = now_utc()
        self.store.save_assignment(assignment)

        logger.info(f"Assignment {assignment.id} for patient {patient_id}: {previous.value} -> {status.value}")
        return assignment

    def _latest_assignment(self, patient_id: str, protocol_id: str) -> ProtocolAssignment:
        active = self.store.get_active_assignment(patient_id, protocol_id)
        if active is not None:
            return active

        candidates = [
            a for a in self.store.list_assignments(patient_id)
            if a.protocol_id == protocol_id
        ]
        if not candidates:
            raise AssignmentNotFound(patient_id, protocol_id)
        return max(candidates, key=lambda a: a.updated_at)

    # Resync

    def resync_protocol(self, patient_id: str, protocol_id: str, force: bool = False) -> ResyncResult:
        """
        Re-materialize a patient's active assignment of a protocol, keeping
        recorded progress. Running it twice without changes is a no-op.

        Raises:
            AssignmentNotFound: If the patient has no active assignment of the protocol
            AnchorDateConflict: If the anchor moved backward over recorded
                pre-anchor progress and force is False
        """
        patient = self.store.get_patient(patient_id)
        assignment = self.store.get_active_assignment(patient_id, protocol_id)
        if assignment is None:
            raise AssignmentNotFound(patient_id, protocol_id)

        template = self.templates.fetch(protocol_id)
        return self._resync_assignment(patient, assignment, template, force=force)

    def resync_all(self, patient_id: str, force: bool = False) -> Dict[str, ResyncResult]:
        """Resync every active assignment of a patient, keyed by protocol id"""
        patient = self.store.get_patient(patient_id)
        results = {}
        for assignment in self.store.list_assignments(patient_id, active_only=True):
            template = self.templates.fetch(assignment.protocol_id)
            results[assignment.protocol_id] = self._resync_assignment(patient, assignment, template, force=force)
        return results

    def correct_anchor_date(self, patient_id: str, new_anchor: date, force: bool = False) -> Dict[str, ResyncResult]:
        """
        Move a patient's anchor (surgery) date and resync every active assignment

        Every assignment is checked before anything is written, so a conflict
        on one protocol leaves the patient and all instances untouched.

        Raises:
            AnchorDateConflict: If pre-anchor progress would be lost and force is False
        """
        patient = self.store.get_patient(patient_id)
        previous = patient.anchor_date

        if not force:
            for assignment in self.store.list_assignments(patient_id, active_only=True):
                check_anchor_move(
                    assignment.anchor_date or previous,
                    new_anchor,
                    self.store.list_instances(patient_id, assignment.id),
                    patient_id=patient_id,
                )

        patient.anchor_date = new_anchor
        self.store.save_patient(patient)
        logger.info(
            f"Anchor date for patient {patient_id} moved from "
            f"{previous.isoformat() if previous else None} to {new_anchor.isoformat()}"
        )

        # Already checked above
        return self.resync_all(patient_id, force=True)

    def _resync_assignment(
        self,
        patient: Patient,
        assignment: ProtocolAssignment,
        template: ProtocolTemplate,
        force: bool = False,
    ) -> ResyncResult:
        existing = self.store.list_instances(patient.id, assignment.id)

        if not force:
            check_anchor_move(assignment.anchor_date, resolve_anchor(patient, assignment), existing, patient_id=patient.id)

        plan = resync(
            template,
            patient,
            existing,
            assignment=assignment,
            recurrence_settings=self.recurrence_settings,
        )
        self.store.replace_instances(patient.id, assignment.id, plan.instances)

        if assignment.anchor_date != plan.anchor_date or assignment.protocol_version != template.version:
            assignment.anchor_date = plan.anchor_date
            assignment.protocol_version = template.version
            assignment.updated_at = now_utc()
            self.store.save_assignment(assignment)

        return plan.result

    # Queries

    def _reference_date(self, patient: Patient, reference_date: Optional[date]) -> date:
        return reference_date or today_in_timezone(patient.timezone)

    def get_due_instances(self, patient_id: str, reference_date: Optional[date] = None) -> List[TaskInstance]:
        """
        Instances of the patient's active assignments scheduled on the
        reference date's recovery day (today in the patient's timezone by default)
        """
        patient = self.store.get_patient(patient_id)
        reference_date = self._reference_date(patient, reference_date)

        due = []
        for assignment in self.store.list_assignments(patient_id, active_only=True):
            anchor = resolve_anchor(patient, assignment)
            due.extend(due_instances(self.store.list_instances(patient_id, assignment.id), anchor, reference_date))
        return sorted(due, key=lambda i: (i.scheduled_date, i.protocol_id, i.template_task_id))

    def get_overdue_instances(self, patient_id: str, reference_date: Optional[date] = None) -> List[TaskInstance]:
        """Pending instances of active assignments scheduled before the reference date"""
        patient = self.store.get_patient(patient_id)
        reference_date = self._reference_date(patient, reference_date)
        return overdue_instances(self.store.list_patient_instances(patient_id), reference_date)

    def get_patient_progress(self, patient_id: str, reference_date: Optional[date] = None) -> List[ProgressSummary]:
        """Status totals per assignment (active and finished) as of the reference date"""
        patient = self.store.get_patient(patient_id)
        reference_date = self._reference_date(patient, reference_date)

        summaries = []
        for assignment in self.store.list_assignments(patient_id):
            instances = self.store.list_instances(patient_id, assignment.id)
            day = recovery_day(resolve_anchor(patient, assignment), reference_date)
            summaries.append(ProgressSummary(
                assignment_id=assignment.id,
                protocol_id=assignment.protocol_id,
                recovery_day=day,
                phase=recovery_phase(day),
                total=len(instances),
                pending=sum(1 for i in instances if i.status is TaskStatus.PENDING),
                in_progress=sum(1 for i in instances if i.status is TaskStatus.IN_PROGRESS),
                completed=sum(1 for i in instances if i.status is TaskStatus.COMPLETED),
                overdue=len(overdue_instances(instances, reference_date)),
            ))
        return summaries

    # Completion

    def record_completion(
        self,
        instance_id: str,
        status: Union[TaskStatus, str] = TaskStatus.COMPLETED,
        completion_data: Optional[Dict[str, Any]] = None,
    ) -> TaskInstance:
        """
        Record progress on a task instance

        Args:
            instance_id: Task instance to update
            status: New status (completed stamps completed_at)
            completion_data: Opaque payload; None keeps whatever is stored

        Raises:
            InstanceNotFound: If the instance does not exist (e.g. removed by a resync)
        """
        status = TaskStatus(status)
        instance = self.store.update_instance_status(instance_id, status, completion_data=completion_data)
        logger.info(f"Task instance {instance_id} ({instance.template_task_id}) marked {status.value}")
        return instance
