"""
ClaimFlow - Exception Hierarchy
Errors surfaced by the claim state store, orchestrator and collaborators
"""

from typing import Optional, Dict, Any


class ServiceException(Exception):
    """Base service exception"""
    def __init__(self, message: str, code: str = "SERVICE_ERROR", details: Dict[str, Any] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundException(ServiceException):
    """Unknown claim id"""
    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}", "NOT_FOUND")
        self.resource = resource
        self.identifier = identifier


class ConflictException(ServiceException):
    """Optimistic-concurrency precondition mismatch; re-read and retry"""
    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message, "CONFLICT", details)


class InvalidStateException(ServiceException):
    """Operation is not legal for the claim's current status"""
    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message, "INVALID_STATE", {"current_status": current_status})
        self.current_status = current_status


class InvalidTransitionException(ServiceException):
    """Attempted a status edge that the state machine does not define"""
    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            f"Invalid transition from {from_status} to {to_status}",
            "INVALID_TRANSITION",
            {"from_status": from_status, "to_status": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class InfrastructureFailure(ServiceException):
    """Collaborator unreachable or timed out"""
    def __init__(self, message: str, agent: Optional[str] = None, details: Dict[str, Any] = None):
        super().__init__(message, "INFRASTRUCTURE_FAILURE", {**(details or {}), "agent": agent})
        self.agent = agent


class CollaboratorFailure(ServiceException):
    """Hard, non-retryable failure reported by a collaborator"""
    def __init__(self, message: str, code: str = "COLLABORATOR_FAILURE", details: Dict[str, Any] = None):
        super().__init__(message, code, details)


class DocumentFormatError(CollaboratorFailure):
    """Document could not be decoded into pages"""
    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message, "DOCUMENT_FORMAT_ERROR", details)
