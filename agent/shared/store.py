"""
Persistence port for the protocol scheduling engine

ProtocolStore is the narrow set of record-store operations the engine
needs. InMemoryProtocolStore backs tests and local tooling; the Redis
implementation lives in shared.redis_store.
"""
import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from scheduling.exceptions import (
    AssignmentConflict,
    InstanceNotFound,
    PatientNotFound,
    TemplateNotFound,
)
from scheduling.models import (
    Patient,
    ProtocolAssignment,
    ProtocolTemplate,
    TaskInstance,
    TaskStatus,
)
from utils.time_utils import now_utc

logger = logging.getLogger("protocol-store")


class ProtocolStore(ABC):
    """Record store operations required by the scheduling engine"""

    # Templates

    @abstractmethod
    def fetch_template(self, protocol_id: str) -> ProtocolTemplate:
        """Get a protocol template, raising TemplateNotFound if missing"""

    @abstractmethod
    def save_template(self, template: ProtocolTemplate) -> ProtocolTemplate:
        """Create or overwrite a template in place; returns it with its new version"""

    @abstractmethod
    def list_templates(self) -> List[ProtocolTemplate]:
        """All stored templates"""

    # Patients

    @abstractmethod
    def get_patient(self, patient_id: str) -> Patient:
        """Get a patient, raising PatientNotFound if missing"""

    @abstractmethod
    def save_patient(self, patient: Patient) -> Patient:
        """Create or update a patient"""

    # Assignments

    @abstractmethod
    def save_assignment(self, assignment: ProtocolAssignment) -> ProtocolAssignment:
        """
        Create or update an assignment.

        Raises AssignmentConflict when the assignment is active and another
        active assignment of the same protocol exists for the patient.
        """

    @abstractmethod
    def get_active_assignment(self, patient_id: str, protocol_id: str) -> Optional[ProtocolAssignment]:
        """The active assignment of a protocol for a patient, if any"""

    @abstractmethod
    def list_assignments(self, patient_id: str, active_only: bool = False) -> List[ProtocolAssignment]:
        """All assignments of a patient"""

    @abstractmethod
    def list_active_assignments(self) -> List[ProtocolAssignment]:
        """Every active assignment across patients"""

    # Instances

    @abstractmethod
    def list_instances(self, patient_id: str, assignment_id: str) -> List[TaskInstance]:
        """Instances of one assignment, ordered by scheduled date"""

    @abstractmethod
    def get_instance(self, instance_id: str) -> TaskInstance:
        """Get a task instance, raising InstanceNotFound if missing"""

    @abstractmethod
    def replace_instances(self, patient_id: str, assignment_id: str, instances: List[TaskInstance]) -> int:
        """
        Atomically swap the instance set of an assignment.

        Concurrent readers see either the old set or the new set. Returns
        the number of instances removed.
        """

    @abstractmethod
    def update_instance_status(
        self,
        instance_id: str,
        status: TaskStatus,
        completion_data: Optional[Dict[str, Any]] = None,
        completed_at: Optional[datetime] = None,
    ) -> TaskInstance:
        """
        Record progress on an instance. completion_data=None keeps the
        stored payload. Raises InstanceNotFound if missing.
        """

    @abstractmethod
    def create_assignment_with_instances(
        self,
        assignment: ProtocolAssignment,
        instances: List[TaskInstance],
    ) -> ProtocolAssignment:
        """
        Atomically persist a new assignment together with its instance set.

        Either both are written or neither is, so a failed write leaves no
        active assignment behind and the caller can simply retry. Same
        uniqueness rule as save_assignment.
        """

    def create_assignment(self, assignment: ProtocolAssignment) -> ProtocolAssignment:
        """Persist a new assignment; same uniqueness rule as save_assignment"""
        return self.save_assignment(assignment)

    def list_patient_instances(self, patient_id: str, active_only: bool = True) -> List[TaskInstance]:
        """Instances across a patient's assignments"""
        instances = []
        for assignment in self.list_assignments(patient_id, active_only=active_only):
            instances.extend(self.list_instances(patient_id, assignment.id))
        return sorted(instances, key=lambda i: (i.scheduled_date, i.template_task_id))


def completion_timestamp(status: TaskStatus, completed_at: Optional[datetime]) -> Optional[datetime]:
    """completed_at to store for a status change"""
    if status is TaskStatus.COMPLETED:
        return completed_at or now_utc()
    return None


class InMemoryProtocolStore(ProtocolStore):
    """
    Dict-backed store. A single re-entrant lock serializes every read and
    write, which is what makes replace_instances atomic here.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._templates: Dict[str, ProtocolTemplate] = {}
        self._patients: Dict[str, Patient] = {}
        self._assignments: Dict[str, ProtocolAssignment] = {}
        self._instances: Dict[str, TaskInstance] = {}
        self._instance_index: Dict[tuple, List[str]] = {}

    def fetch_template(self, protocol_id: str) -> ProtocolTemplate:
        with self._lock:
            template = self._templates.get(protocol_id)
            if template is None:
                raise TemplateNotFound(protocol_id)
            return copy.deepcopy(template)

    def save_template(self, template: ProtocolTemplate) -> ProtocolTemplate:
        with self._lock:
            existing = self._templates.get(template.id)
            template = copy.deepcopy(template)
            template.version = existing.version + 1 if existing else max(template.version, 1)
            self._templates[template.id] = template
            logger.info(f"Saved protocol template {template.id} (version {template.version})")
            return copy.deepcopy(template)

    def list_templates(self) -> List[ProtocolTemplate]:
        with self._lock:
            return [copy.deepcopy(t) for t in sorted(self._templates.values(), key=lambda t: t.id)]

    def get_patient(self, patient_id: str) -> Patient:
        with self._lock:
            patient = self._patients.get(patient_id)
            if patient is None:
                raise PatientNotFound(patient_id)
            return copy.deepcopy(patient)

    def save_patient(self, patient: Patient) -> Patient:
        with self._lock:
            self._patients[patient.id] = copy.deepcopy(patient)
            return copy.deepcopy(patient)

    def save_assignment(self, assignment: ProtocolAssignment) -> ProtocolAssignment:
        with self._lock:
            self._check_active_conflict(assignment)
            self._assignments[assignment.id] = copy.deepcopy(assignment)
            return copy.deepcopy(assignment)

    def create_assignment_with_instances(
        self,
        assignment: ProtocolAssignment,
        instances: List[TaskInstance],
    ) -> ProtocolAssignment:
        with self._lock:
            self._check_active_conflict(assignment)
            # The assignment only becomes visible once its instances are in place
            self._swap_instances(assignment.patient_id, assignment.id, instances)
            self._assignments[assignment.id] = copy.deepcopy(assignment)
            return copy.deepcopy(assignment)

    def _check_active_conflict(self, assignment: ProtocolAssignment):
        if not assignment.is_active:
            return
        holder = self._find_active(assignment.patient_id, assignment.protocol_id)
        if holder is not None and holder.id != assignment.id:
            raise AssignmentConflict(
                f"Patient {assignment.patient_id} already has an active assignment "
                f"({holder.id}) of protocol {assignment.protocol_id}",
                patient_id=assignment.patient_id,
                protocol_id=assignment.protocol_id,
            )

    def _find_active(self, patient_id: str, protocol_id: str) -> Optional[ProtocolAssignment]:
        for assignment in self._assignments.values():
            if (assignment.patient_id == patient_id
                    and assignment.protocol_id == protocol_id
                    and assignment.is_active):
                return assignment
        return None

    def get_active_assignment(self, patient_id: str, protocol_id: str) -> Optional[ProtocolAssignment]:
        with self._lock:
            assignment = self._find_active(patient_id, protocol_id)
            return copy.deepcopy(assignment) if assignment else None

    def list_assignments(self, patient_id: str, active_only: bool = False) -> List[ProtocolAssignment]:
        with self._lock:
            assignments = [
                a for a in self._assignments.values()
                if a.patient_id == patient_id and (a.is_active or not active_only)
            ]
            return [copy.deepcopy(a) for a in sorted(assignments, key=lambda a: a.created_at)]

    def list_active_assignments(self) -> List[ProtocolAssignment]:
        with self._lock:
            return [copy.deepcopy(a) for a in self._assignments.values() if a.is_active]

    def list_instances(self, patient_id: str, assignment_id: str) -> List[TaskInstance]:
        with self._lock:
            ids = self._instance_index.get((patient_id, assignment_id), [])
            instances = [copy.deepcopy(self._instances[i]) for i in ids]
            return sorted(instances, key=lambda i: (i.scheduled_date, i.template_task_id))

    def get_instance(self, instance_id: str) -> TaskInstance:
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                raise InstanceNotFound(instance_id)
            return copy.deepcopy(instance)

    def replace_instances(self, patient_id: str, assignment_id: str, instances: List[TaskInstance]) -> int:
        with self._lock:
            return self._swap_instances(patient_id, assignment_id, instances)

    def _swap_instances(self, patient_id: str, assignment_id: str, instances: List[TaskInstance]) -> int:
        # Copy first so a failure leaves the stored set untouched
        new_instances = [copy.deepcopy(instance) for instance in instances]

        old_ids = self._instance_index.pop((patient_id, assignment_id), [])
        for instance_id in old_ids:
            self._instances.pop(instance_id, None)

        for instance in new_instances:
            self._instances[instance.id] = instance
        self._instance_index[(patient_id, assignment_id)] = [i.id for i in new_instances]

        logger.info(
            f"Replaced {len(old_ids)} instances with {len(new_instances)} "
            f"for patient {patient_id}, assignment {assignment_id}"
        )
        return len(old_ids)

    def update_instance_status(
        self,
        instance_id: str,
        status: TaskStatus,
        completion_data: Optional[Dict[str, Any]] = None,
        completed_at: Optional[datetime] = None,
    ) -> TaskInstance:
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                raise InstanceNotFound(instance_id)

            instance.status = status
            instance.completed_at = completion_timestamp(status, completed_at)
            if completion_data is not None:
                instance.completion_data = copy.deepcopy(completion_data)
            instance.updated_at = now_utc()
            return copy.deepcopy(instance)
