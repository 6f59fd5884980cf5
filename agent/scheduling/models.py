"""
Data models for the recovery protocol scheduling engine
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional, Dict, Any, List, NamedTuple
import json
import uuid

from config.settings import DEFAULT_TIMEZONE
from utils.time_utils import now_utc, parse_date, parse_optional_datetime

from .exceptions import InvalidRecurrencePolicy, InvalidTemplate


class TaskStatus(Enum):
    """Progress state of a task instance"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @property
    def has_progress(self) -> bool:
        """Anything other than pending counts as recorded progress"""
        return self is not TaskStatus.PENDING


class TaskKind(Enum):
    """What the patient is asked to do"""
    EXERCISE = "exercise"
    FORM = "form"
    EDUCATION = "education"
    VIDEO = "video"
    ASSESSMENT = "assessment"
    MEDICATION = "medication"

    @classmethod
    def from_string(cls, value: str) -> "TaskKind":
        """Convert string to TaskKind, with fallback for legacy task types"""
        if not value:
            return cls.EDUCATION

        try:
            return cls(value)
        except ValueError:
            pass

        value_lower = value.lower().replace(' ', '_').replace('-', '_')
        mapping = {
            'message': cls.EDUCATION,
            'reading': cls.EDUCATION,
            'questionnaire': cls.FORM,
            'survey': cls.FORM,
            'pain_assessment': cls.ASSESSMENT,
            'check_in': cls.ASSESSMENT,
            'medication_reminder': cls.MEDICATION,
        }

        if value_lower in mapping:
            return mapping[value_lower]

        try:
            return cls(value_lower)
        except ValueError:
            raise InvalidTemplate(f"Unknown task kind: {value!r}")


class IntervalType(Enum):
    """Repeat cadence of a recurring template task"""
    DAILY = "daily"
    EVERY_OTHER_DAY = "every_other_day"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"

    @classmethod
    def from_string(cls, value: str) -> "IntervalType":
        """Accept the authoring tool's spellings (everyOtherDay, bi-weekly, ...)"""
        if not value:
            raise InvalidRecurrencePolicy("Repeating policy requires an interval type")

        try:
            return cls(value)
        except ValueError:
            pass

        value_lower = value.lower().replace(' ', '_').replace('-', '_')
        mapping = {
            'everyotherday': cls.EVERY_OTHER_DAY,
            'every_2_days': cls.EVERY_OTHER_DAY,
            'bi_weekly': cls.BIWEEKLY,
            'fortnightly': cls.BIWEEKLY,
        }

        if value_lower in mapping:
            return mapping[value_lower]

        try:
            return cls(value_lower)
        except ValueError:
            raise InvalidRecurrencePolicy(f"Unknown interval type: {value!r}")


# Fixed step sizes; MONTHLY and CUSTOM are resolved at expansion time
INTERVAL_STEP_DAYS = {
    IntervalType.DAILY: 1,
    IntervalType.EVERY_OTHER_DAY: 2,
    IntervalType.WEEKLY: 7,
    IntervalType.BIWEEKLY: 14,
}


class AssignmentStatus(Enum):
    """Status of a patient's protocol assignment"""
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"


@dataclass(frozen=True)
class RecurrencePolicy:
    """
    Either one-time (repeat=False) or repeating on an interval.

    interval_days is only meaningful for IntervalType.CUSTOM, where it is
    required and must be at least 1.
    """
    repeat: bool = False
    interval_type: Optional[IntervalType] = None
    interval_days: Optional[int] = None

    def __post_init__(self):
        if not self.repeat:
            return
        if self.interval_type is None:
            raise InvalidRecurrencePolicy("Repeating policy requires an interval type")
        if self.interval_type is IntervalType.CUSTOM:
            if self.interval_days is None:
                raise InvalidRecurrencePolicy("Custom interval requires interval_days")
            if int(self.interval_days) < 1:
                raise InvalidRecurrencePolicy(
                    f"Custom interval_days must be >= 1, got {self.interval_days}"
                )

    @classmethod
    def one_time(cls) -> "RecurrencePolicy":
        return cls(repeat=False)

    @classmethod
    def repeating(cls, interval_type: IntervalType, interval_days: Optional[int] = None) -> "RecurrencePolicy":
        return cls(repeat=True, interval_type=interval_type, interval_days=interval_days)

    @property
    def is_one_time(self) -> bool:
        return not self.repeat

    def step_days(self, monthly_interval_days: int = 30) -> int:
        """Number of days between consecutive occurrences"""
        if not self.repeat:
            raise InvalidRecurrencePolicy("One-time policy has no step size")
        if self.interval_type is IntervalType.MONTHLY:
            return monthly_interval_days
        if self.interval_type is IntervalType.CUSTOM:
            return int(self.interval_days)
        return INTERVAL_STEP_DAYS[self.interval_type]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize in the protocol authoring shape"""
        return {
            "repeat": self.repeat,
            "type": self.interval_type.value if self.interval_type else None,
            "interval": self.interval_days,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RecurrencePolicy":
        """
        Create from the authoring shape {"repeat", "type", "interval"}.

        Also accepts interval_type / interval_days keys. A missing or empty
        dict is a one-time task.
        """
        if not data:
            return cls.one_time()

        repeat = bool(data.get("repeat", False))
        if not repeat:
            return cls.one_time()

        raw_type = data.get("type", data.get("interval_type"))
        raw_interval = data.get("interval", data.get("interval_days"))
        interval_type = IntervalType.from_string(raw_type)

        interval_days = None
        if interval_type is IntervalType.CUSTOM:
            if raw_interval in (None, ""):
                raise InvalidRecurrencePolicy("Custom interval requires interval_days")
            try:
                interval_days = int(raw_interval)
            except (TypeError, ValueError):
                raise InvalidRecurrencePolicy(f"interval_days must be an integer, got {raw_interval!r}")

        return cls.repeating(interval_type, interval_days)


@dataclass
class TemplateTask:
    """A task inside a protocol template, anchored to a day offset"""
    id: str
    title: str
    description: str = ""
    kind: TaskKind = TaskKind.EXERCISE
    day_offset: int = 0  # negative = before the anchor (pre-op)
    recurrence: RecurrencePolicy = field(default_factory=RecurrencePolicy.one_time)
    phase: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "kind": self.kind.value,
            "day_offset": self.day_offset,
            "recurrence": self.recurrence.to_dict(),
            "phase": self.phase,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemplateTask":
        """Create from dictionary; accepts legacy task_type / day_number / frequency keys"""
        task_id = data.get("id")
        if not task_id:
            raise InvalidTemplate(f"Template task is missing an id: {data!r}")

        raw_offset = data.get("day_offset", data.get("day_number", 0))
        try:
            day_offset = int(raw_offset)
        except (TypeError, ValueError):
            raise InvalidTemplate(f"Task {task_id} has a non-integer day_offset: {raw_offset!r}")

        return cls(
            id=str(task_id),
            title=data.get("title", ""),
            description=data.get("description") or "",
            kind=TaskKind.from_string(data.get("kind") or data.get("task_type")),
            day_offset=day_offset,
            recurrence=RecurrencePolicy.from_dict(data.get("recurrence", data.get("frequency"))),
            phase=data.get("phase") or None,
        )


@dataclass
class ProtocolTemplate:
    """
    A tenant-authored recovery protocol: an ordered list of template tasks.
    Read-only to the engine.
    """
    id: str
    title: str
    surgery_type: str = ""
    tasks: List[TemplateTask] = field(default_factory=list)
    tenant_id: str = ""
    description: str = ""
    horizon_days: Optional[int] = None  # per-protocol override of the default horizon
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "surgery_type": self.surgery_type,
            "tasks": [task.to_dict() for task in self.tasks],
            "tenant_id": self.tenant_id,
            "description": self.description,
            "horizon_days": self.horizon_days,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProtocolTemplate":
        if not data.get("id"):
            raise InvalidTemplate("Protocol template is missing an id")

        horizon_days = data.get("horizon_days")
        if horizon_days is not None:
            horizon_days = int(horizon_days)
            if horizon_days <= 0:
                raise InvalidTemplate(f"horizon_days must be positive, got {horizon_days}")

        tasks = [TemplateTask.from_dict(task) for task in data.get("tasks") or []]
        task_ids = [task.id for task in tasks]
        duplicates = sorted({task_id for task_id in task_ids if task_ids.count(task_id) > 1})
        if duplicates:
            raise InvalidTemplate(f"Protocol {data['id']} has duplicate task ids: {', '.join(duplicates)}")

        return cls(
            id=str(data["id"]),
            title=data.get("title") or data.get("name") or "",
            surgery_type=data.get("surgery_type") or "",
            tasks=tasks,
            tenant_id=data.get("tenant_id") or "",
            description=data.get("description") or "",
            horizon_days=horizon_days,
            version=int(data.get("version", 1)),
        )


@dataclass
class Patient:
    """Anchor context for scheduling: who, which tenant, and the surgery date"""
    id: str
    tenant_id: str = ""
    anchor_date: Optional[date] = None  # surgery date
    name: str = ""
    surgery_type: str = ""
    timezone: str = DEFAULT_TIMEZONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "anchor_date": self.anchor_date.isoformat() if self.anchor_date else None,
            "name": self.name,
            "surgery_type": self.surgery_type,
            "timezone": self.timezone,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Patient":
        return cls(
            id=data["id"],
            tenant_id=data.get("tenant_id", ""),
            anchor_date=parse_date(data.get("anchor_date")),
            name=data.get("name", ""),
            surgery_type=data.get("surgery_type", ""),
            timezone=data.get("timezone") or DEFAULT_TIMEZONE,
        )


@dataclass
class ProtocolAssignment:
    """Links a patient to a protocol template"""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: str = ""
    protocol_id: str = ""
    tenant_id: str = ""
    assigned_date: date = field(default_factory=lambda: now_utc().date())
    anchor_date: Optional[date] = None  # anchor used by the last materialization
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    protocol_version: int = 0
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    @property
    def is_active(self) -> bool:
        return self.status is AssignmentStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "protocol_id": self.protocol_id,
            "tenant_id": self.tenant_id,
            "assigned_date": self.assigned_date.isoformat(),
            "anchor_date": self.anchor_date.isoformat() if self.anchor_date else None,
            "status": self.status.value,
            "protocol_version": self.protocol_version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProtocolAssignment":
        return cls(
            id=data["id"],
            patient_id=data["patient_id"],
            protocol_id=data["protocol_id"],
            tenant_id=data.get("tenant_id", ""),
            assigned_date=parse_date(data["assigned_date"]),
            anchor_date=parse_date(data.get("anchor_date")),
            status=AssignmentStatus(data["status"]),
            protocol_version=int(data.get("protocol_version") or 0),
            created_at=parse_optional_datetime(data["created_at"]),
            updated_at=parse_optional_datetime(data["updated_at"]),
        )


class LogicalKey(NamedTuple):
    """Identity of a schedulable unit across resyncs"""
    template_task_id: str
    scheduled_date: date


@dataclass
class TaskInstance:
    """
    A concrete, dated task for one patient, materialized from a template task.
    Title, description and kind are snapshots taken at materialization time.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = ""
    patient_id: str = ""
    assignment_id: str = ""
    protocol_id: str = ""
    template_task_id: str = ""
    scheduled_date: date = field(default_factory=lambda: now_utc().date())
    day_offset: int = 0  # recovery day of scheduled_date
    title: str = ""
    description: str = ""
    kind: TaskKind = TaskKind.EXERCISE
    status: TaskStatus = TaskStatus.PENDING
    completed_at: Optional[datetime] = None
    completion_data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    @property
    def logical_key(self) -> LogicalKey:
        return LogicalKey(self.template_task_id, self.scheduled_date)

    @property
    def has_progress(self) -> bool:
        return self.status.has_progress

    def adopt_progress(self, previous: "TaskInstance"):
        """
        Carry recorded progress over from the instance this one replaces.

        The snapshotted content of an instance that already has progress is
        kept too, so history shows what the patient actually saw.
        """
        self.status = previous.status
        self.completed_at = previous.completed_at
        self.completion_data = previous.completion_data
        self.title = previous.title
        self.description = previous.description
        self.kind = previous.kind
        self.created_at = previous.created_at
        self.updated_at = previous.updated_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "patient_id": self.patient_id,
            "assignment_id": self.assignment_id,
            "protocol_id": self.protocol_id,
            "template_task_id": self.template_task_id,
            "scheduled_date": self.scheduled_date.isoformat(),
            "day_offset": self.day_offset,
            "title": self.title,
            "description": self.description,
            "kind": self.kind.value,
            "status": self.status.value,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completion_data": json.dumps(self.completion_data),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskInstance":
        """Create from dictionary"""
        # Parse completion data if it's a string (from Redis)
        completion_data = data.get("completion_data") or {}
        if isinstance(completion_data, str):
            completion_data = json.loads(completion_data) if completion_data else {}

        return cls(
            id=data["id"],
            tenant_id=data.get("tenant_id", ""),
            patient_id=data["patient_id"],
            assignment_id=data.get("assignment_id", ""),
            protocol_id=data.get("protocol_id", ""),
            template_task_id=data["template_task_id"],
            scheduled_date=parse_date(data["scheduled_date"]),
            day_offset=int(data.get("day_offset") or 0),
            title=data.get("title", ""),
            description=data.get("description", ""),
            kind=TaskKind.from_string(data.get("kind")),
            status=TaskStatus(data["status"]),
            completed_at=parse_optional_datetime(data.get("completed_at")),
            completion_data=completion_data,
            created_at=parse_optional_datetime(data["created_at"]),
            updated_at=parse_optional_datetime(data["updated_at"]),
        )


@dataclass
class ResyncResult:
    """Outcome counts of a resync"""
    created: int = 0
    preserved: int = 0
    removed: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "preserved": self.preserved,
            "removed": self.removed,
            "total": self.total,
        }


@dataclass
class AssignmentResult:
    """Outcome of a first-time protocol assignment"""
    assignment_id: str
    tasks_created: int
    anchor_date: date

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assignment_id": self.assignment_id,
            "tasks_created": self.tasks_created,
            "anchor_date": self.anchor_date.isoformat(),
        }


@dataclass
class ProgressSummary:
    """Per-assignment progress as seen on a reference date"""
    assignment_id: str
    protocol_id: str
    recovery_day: Optional[int]
    phase: Optional[str]
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    overdue: int = 0

    @property
    def completion_rate(self) -> float:
        """Fraction of instances completed, 0.0 when there are none"""
        if not self.total:
            return 0.0
        return self.completed / self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assignment_id": self.assignment_id,
            "protocol_id": self.protocol_id,
            "recovery_day": self.recovery_day,
            "phase": self.phase,
            "total": self.total,
            "pending": self.pending,
            "in_progress": self.in_progress,
            "completed": self.completed,
            "overdue": self.overdue,
            "completion_rate": round(self.completion_rate, 4),
        }
