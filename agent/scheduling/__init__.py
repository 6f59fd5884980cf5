"""
Scheduling module for the recovery protocol engine

Contains components for turning protocol templates into patient task schedules:
- RecurrencePolicy / expand: Dates a template task occurs on
- materialize: Dated task instances for a patient
- resync: State-preserving re-materialization
- ProtocolScheduler: Assign, resync, due-today and completion operations
- RQ Tasks: Background assignment, resync and periodic recheck
"""

from .exceptions import (
    AnchorDateConflict,
    AssignmentConflict,
    AssignmentNotFound,
    InstanceNotFound,
    InvalidRecurrencePolicy,
    InvalidTemplate,
    PatientNotFound,
    PersistenceFailure,
    ProtocolSchedulingError,
    TemplateNotFound,
)
from .models import (
    AssignmentStatus,
    IntervalType,
    Patient,
    ProtocolAssignment,
    ProtocolTemplate,
    RecurrencePolicy,
    ResyncResult,
    TaskInstance,
    TaskKind,
    TaskStatus,
    TemplateTask,
)
from .scheduler import ProtocolScheduler

__all__ = [
    "AnchorDateConflict",
    "AssignmentConflict",
    "AssignmentNotFound",
    "AssignmentStatus",
    "InstanceNotFound",
    "IntervalType",
    "InvalidRecurrencePolicy",
    "InvalidTemplate",
    "Patient",
    "PatientNotFound",
    "PersistenceFailure",
    "ProtocolAssignment",
    "ProtocolScheduler",
    "ProtocolSchedulingError",
    "ProtocolTemplate",
    "RecurrencePolicy",
    "ResyncResult",
    "TaskInstance",
    "TaskKind",
    "TaskStatus",
    "TemplateNotFound",
    "TemplateTask",
]
