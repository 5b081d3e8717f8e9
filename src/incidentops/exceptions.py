"""
Exception hierarchy for incidentops

ValidationError covers malformed input and is never retried. ProcessingError
covers business-rule violations and failed analyses; it is retried only at the
model fallback boundary.
"""

from typing import Optional


class IncidentOpsError(Exception):
    """Base exception for incidentops"""

    pass


class ValidationError(IncidentOpsError):
    """Malformed input data, invalid state values or invalid action fields"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ProcessingError(IncidentOpsError):
    """Business-rule violation or failed processing step"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class RCAParseError(ProcessingError):
    """Model reply could not be turned into an RCA result"""

    pass


class StateTransitionError(ProcessingError):
    """Requested lifecycle transition is not allowed"""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Invalid state transition from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class CircuitOpenError(ProcessingError):
    """Call rejected because the dependency's circuit breaker is open"""

    def __init__(self, dependency: str):
        super().__init__(f"Service {dependency} is temporarily unavailable")
        self.dependency = dependency


class NotFoundError(IncidentOpsError):
    """Requested resource does not exist"""

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class CapacityExceededError(IncidentOpsError):
    """Transient model backend capacity condition"""

    pass


class ToolLookupError(IncidentOpsError, LookupError):
    """Unknown tool service or tool name"""

    pass
