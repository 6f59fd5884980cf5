"""Exceptions raised by the protocol scheduling engine."""


class ProtocolSchedulingError(Exception):
    """Base exception for all scheduling engine errors."""

    retryable = False


# Lookup errors

class TemplateNotFound(ProtocolSchedulingError):
    """Protocol template does not exist."""

    def __init__(self, protocol_id: str):
        self.protocol_id = protocol_id
        super().__init__(f"Protocol template not found: {protocol_id}")


class PatientNotFound(ProtocolSchedulingError):
    """Patient does not exist."""

    def __init__(self, patient_id: str):
        self.patient_id = patient_id
        super().__init__(f"Patient not found: {patient_id}")


class InstanceNotFound(ProtocolSchedulingError):
    """Task instance does not exist."""

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Task instance not found: {instance_id}")


class AssignmentNotFound(ProtocolSchedulingError):
    """No active assignment for the (patient, protocol) pair."""

    def __init__(self, patient_id: str, protocol_id: str):
        self.patient_id = patient_id
        self.protocol_id = protocol_id
        super().__init__(f"No active assignment of protocol {protocol_id} for patient {patient_id}")


# Validation errors, fixed at the template-authoring layer

class InvalidRecurrencePolicy(ProtocolSchedulingError, ValueError):
    """Recurrence rule is malformed (e.g. custom interval without interval_days)."""
    pass


class InvalidTemplate(ProtocolSchedulingError, ValueError):
    """Protocol template content is malformed."""
    pass


# Conflicts

class AssignmentConflict(ProtocolSchedulingError):
    """An active assignment of the same protocol already exists for the patient."""

    def __init__(self, message: str, patient_id: str = None, protocol_id: str = None):
        self.patient_id = patient_id
        self.protocol_id = protocol_id
        super().__init__(message)


class AnchorDateConflict(AssignmentConflict):
    """Anchor date moved backward while pre-anchor tasks already carry progress."""

    def __init__(self, message: str, patient_id: str = None, affected_instance_ids=None):
        self.affected_instance_ids = list(affected_instance_ids or [])
        super().__init__(message, patient_id=patient_id)


# Storage

class PersistenceFailure(ProtocolSchedulingError):
    """
    The record store failed. Always safe to retry: every engine operation
    is either idempotent or a single transaction.
    """

    retryable = True

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")
