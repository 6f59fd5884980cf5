"""
Redis-backed ProtocolStore

Key layout (all under PROTOCOL_KEY_PREFIX):
    {prefix}:template:{id}                 template JSON
    {prefix}:template:{id}:version         monotonically increasing version
    {prefix}:templates                     set of template ids
    {prefix}:patient:{id}                  patient hash
    {prefix}:patient:{id}:assignments      set of assignment ids
    {prefix}:assignment:{id}               assignment hash
    {prefix}:active:{patient}:{protocol}   id of the active assignment
    {prefix}:active_assignments            set of active assignment ids
    {prefix}:instance:{id}                 instance hash
    {prefix}:instances:{patient}:{asgn}    set of instance ids

Multi-key writes go through the Lua scripts in utils.redis_atomic.
"""
import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis

from scheduling.exceptions import (
    AssignmentConflict,
    InstanceNotFound,
    PatientNotFound,
    PersistenceFailure,
    TemplateNotFound,
)
from scheduling.models import (
    Patient,
    ProtocolAssignment,
    ProtocolTemplate,
    TaskInstance,
    TaskStatus,
)
from utils.redis_atomic import create_atomic_redis_ops, to_redis_mapping
from utils.time_utils import now_utc

from .store import ProtocolStore, completion_timestamp

logger = logging.getLogger("protocol-store")


@contextmanager
def redis_errors(operation: str):
    """Translate redis-py failures into PersistenceFailure"""
    try:
        yield
    except redis.RedisError as e:
        logger.error(f"Redis failure during {operation}: {e}")
        raise PersistenceFailure(operation, str(e)) from e


class RedisProtocolStore(ProtocolStore):
    """Stores templates, patients, assignments and instances in Redis"""

    def __init__(self, redis_client: redis.Redis = None, key_prefix: str = None):
        """
        Args:
            redis_client: Client created with decode_responses=True
                (defaults to create_redis_connection())
            key_prefix: Key namespace (defaults to PROTOCOL_KEY_PREFIX)
        """
        self.atomic_ops = create_atomic_redis_ops(redis_client, key_prefix=key_prefix)
        self.redis_client = self.atomic_ops.redis
        self.prefix = self.atomic_ops.key_prefix

    # Keys

    def _template_key(self, protocol_id: str) -> str:
        return f"{self.prefix}:template:{protocol_id}"

    def _template_version_key(self, protocol_id: str) -> str:
        return f"{self.prefix}:template:{protocol_id}:version"

    def _templates_key(self) -> str:
        return f"{self.prefix}:templates"

    def _patient_key(self, patient_id: str) -> str:
        return f"{self.prefix}:patient:{patient_id}"

    def _patient_assignments_key(self, patient_id: str) -> str:
        return f"{self.prefix}:patient:{patient_id}:assignments"

    def _assignment_key(self, assignment_id: str) -> str:
        return f"{self.prefix}:assignment:{assignment_id}"

    def _active_key(self, patient_id: str, protocol_id: str) -> str:
        return f"{self.prefix}:active:{patient_id}:{protocol_id}"

    def _active_set_key(self) -> str:
        return f"{self.prefix}:active_assignments"

    def _instance_prefix(self) -> str:
        return f"{self.prefix}:instance:"

    def _instance_key(self, instance_id: str) -> str:
        return f"{self._instance_prefix()}{instance_id}"

    def _instances_key(self, patient_id: str, assignment_id: str) -> str:
        return f"{self.prefix}:instances:{patient_id}:{assignment_id}"

    # Templates

    def fetch_template(self, protocol_id: str) -> ProtocolTemplate:
        with redis_errors("fetch_template"):
            raw = self.redis_client.get(self._template_key(protocol_id))
        if not raw:
            raise TemplateNotFound(protocol_id)
        return ProtocolTemplate.from_dict(json.loads(raw))

    def save_template(self, template: ProtocolTemplate) -> ProtocolTemplate:
        with redis_errors("save_template"):
            template.version = int(self.redis_client.incr(self._template_version_key(template.id)))
            pipe = self.redis_client.pipeline()
            pipe.set(self._template_key(template.id), json.dumps(template.to_dict()))
            pipe.sadd(self._templates_key(), template.id)
            pipe.execute()

        logger.info(f"Saved protocol template {template.id} (version {template.version})")
        return template

    def list_templates(self) -> List[ProtocolTemplate]:
        with redis_errors("list_templates"):
            ids = sorted(self.redis_client.smembers(self._templates_key()))
            raws = self.redis_client.mget([self._template_key(i) for i in ids]) if ids else []
        return [ProtocolTemplate.from_dict(json.loads(raw)) for raw in raws if raw]

    # Patients

    def get_patient(self, patient_id: str) -> Patient:
        with redis_errors("get_patient"):
            data = self.redis_client.hgetall(self._patient_key(patient_id))
        if not data:
            raise PatientNotFound(patient_id)
        return Patient.from_dict(data)

    def save_patient(self, patient: Patient) -> Patient:
        with redis_errors("save_patient"):
            self.redis_client.hset(self._patient_key(patient.id), mapping=to_redis_mapping(patient.to_dict()))
        return patient

    # Assignments

    def save_assignment(self, assignment: ProtocolAssignment) -> ProtocolAssignment:
        with redis_errors("save_assignment"):
            holder = self.atomic_ops.save_assignment(
                self._assignment_key(assignment.id),
                self._active_key(assignment.patient_id, assignment.protocol_id),
                self._active_set_key(),
                self._patient_assignments_key(assignment.patient_id),
                assignment.to_dict(),
            )
        if holder is not None:
            raise AssignmentConflict(
                f"Patient {assignment.patient_id} already has an active assignment "
                f"({holder}) of protocol {assignment.protocol_id}",
                patient_id=assignment.patient_id,
                protocol_id=assignment.protocol_id,
            )
        return assignment

    def create_assignment_with_instances(
        self,
        assignment: ProtocolAssignment,
        instances: List[TaskInstance],
    ) -> ProtocolAssignment:
        with redis_errors("create_assignment_with_instances"):
            holder = self.atomic_ops.create_assignment(
                self._assignment_key(assignment.id),
                self._active_key(assignment.patient_id, assignment.protocol_id),
                self._active_set_key(),
                self._patient_assignments_key(assignment.patient_id),
                self._instances_key(assignment.patient_id, assignment.id),
                self._instance_prefix(),
                assignment.to_dict(),
                [instance.to_dict() for instance in instances],
            )
        if holder is not None:
            raise AssignmentConflict(
                f"Patient {assignment.patient_id} already has an active assignment "
                f"({holder}) of protocol {assignment.protocol_id}",
                patient_id=assignment.patient_id,
                protocol_id=assignment.protocol_id,
            )
        return assignment

    def _load_assignments(self, assignment_ids) -> List[ProtocolAssignment]:
        pipe = self.redis_client.pipeline()
        for assignment_id in assignment_ids:
            pipe.hgetall(self._assignment_key(assignment_id))
        return [ProtocolAssignment.from_dict(data) for data in pipe.execute() if data]

    def get_active_assignment(self, patient_id: str, protocol_id: str) -> Optional[ProtocolAssignment]:
        with redis_errors("get_active_assignment"):
            assignment_id = self.redis_client.get(self._active_key(patient_id, protocol_id))
            if not assignment_id:
                return None
            assignments = self._load_assignments([assignment_id])
        return assignments[0] if assignments else None

    def list_assignments(self, patient_id: str, active_only: bool = False) -> List[ProtocolAssignment]:
        with redis_errors("list_assignments"):
            ids = self.redis_client.smembers(self._patient_assignments_key(patient_id))
            assignments = self._load_assignments(sorted(ids))
        if active_only:
            assignments = [a for a in assignments if a.is_active]
        return sorted(assignments, key=lambda a: a.created_at)

    def list_active_assignments(self) -> List[ProtocolAssignment]:
        with redis_errors("list_active_assignments"):
            ids = self.redis_client.smembers(self._active_set_key())
            assignments = self._load_assignments(sorted(ids))
        return [a for a in assignments if a.is_active]

    # Instances

    def list_instances(self, patient_id: str, assignment_id: str) -> List[TaskInstance]:
        with redis_errors("list_instances"):
            ids = self.redis_client.smembers(self._instances_key(patient_id, assignment_id))
            pipe = self.redis_client.pipeline()
            for instance_id in ids:
                pipe.hgetall(self._instance_key(instance_id))
            rows = pipe.execute() if ids else []

        instances = [TaskInstance.from_dict(data) for data in rows if data]
        return sorted(instances, key=lambda i: (i.scheduled_date, i.template_task_id))

    def get_instance(self, instance_id: str) -> TaskInstance:
        with redis_errors("get_instance"):
            data = self.redis_client.hgetall(self._instance_key(instance_id))
        if not data:
            raise InstanceNotFound(instance_id)
        return TaskInstance.from_dict(data)

    def replace_instances(self, patient_id: str, assignment_id: str, instances: List[TaskInstance]) -> int:
        with redis_errors("replace_instances"):
            removed, _ = self.atomic_ops.replace_instances(
                self._instances_key(patient_id, assignment_id),
                self._instance_prefix(),
                [instance.to_dict() for instance in instances],
            )
        return removed

    def update_instance_status(
        self,
        instance_id: str,
        status: TaskStatus,
        completion_data: Optional[Dict[str, Any]] = None,
        completed_at: Optional[datetime] = None,
    ) -> TaskInstance:
        stamp = completion_timestamp(status, completed_at)
        with redis_errors("update_instance_status"):
            updated = self.atomic_ops.update_instance_status(
                self._instance_key(instance_id),
                status.value,
                stamp.isoformat() if stamp else None,
                completion_data,
                now_utc().isoformat(),
            )
        if not updated:
            raise InstanceNotFound(instance_id)
        return self.get_instance(instance_id)

    def ping(self) -> bool:
        with redis_errors("ping"):
            return bool(self.redis_client.ping())

    def key_counts(self) -> Dict[str, int]:
        """Number of keys per record type under the prefix"""
        counts: Dict[str, int] = {}
        with redis_errors("key_counts"):
            for key in self.redis_client.scan_iter(match=f"{self.prefix}:*"):
                key_type = key[len(self.prefix) + 1:].split(':')[0]
                counts[key_type] = counts.get(key_type, 0) + 1
        return counts
