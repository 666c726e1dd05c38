"""
ClaimFlow - Pydantic Schemas
Typed records for claim state, extracted payloads, and workflow results
"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict, field_validator

from .utils import DateTimeUtils

# =============================================================================
# BASE SCHEMAS
# =============================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration"""

    model_config = ConfigDict(
        from_attributes=True,
        validate_assignment=True,
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )

# =============================================================================
# ENUMS
# =============================================================================

class ClaimStatus(str, Enum):
    RECEIVED = "received"
    PARSING = "parsing"
    EXTRACTING = "extracting"
    VALIDATING = "validating"
    CORRECTING = "correcting"
    PENDING_REVIEW = "pending_review"
    ADJUDICATING = "adjudicating"
    COMPLETED = "completed"
    FAILED = "failed"

class ClaimPriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CORRECT = "correct"

class DocumentType(str, Enum):
    CMS_1500 = "cms_1500"
    UB_04 = "ub_04"
    EOB = "eob"
    UNKNOWN = "unknown"

class Gender(str, Enum):
    MALE = "M"
    FEMALE = "F"
    UNKNOWN = "U"

class ValidationErrorType(str, Enum):
    SYNTAX = "syntax"
    DOMAIN = "domain"
    BUSINESS_RULE = "business_rule"
    SEMANTIC = "semantic"

class AdjudicationStatus(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    PARTIAL = "partial"

class WorkflowEvent(str, Enum):
    """Lifecycle notifications delivered to orchestrator subscribers"""
    STATE_CREATED = "state:created"
    STATE_TRANSITION = "state:transition"
    STATE_COMPLETED = "state:completed"
    STATE_FAILED = "state:failed"
    STATE_REVIEW_REQUIRED = "state:review_required"
    WORKFLOW_STARTED = "workflow:started"
    WORKFLOW_STAGE_STARTED = "workflow:stage_started"
    WORKFLOW_STAGE_COMPLETED = "workflow:stage_completed"
    WORKFLOW_COMPLETED = "workflow:completed"
    WORKFLOW_FAILED = "workflow:failed"
    WORKFLOW_REVIEW_REQUIRED = "workflow:review_required"

# =============================================================================
# DOCUMENT SCHEMAS
# =============================================================================

SUPPORTED_MIME_TYPES = (
    "application/pdf",
    "image/png",
    "image/jpeg",
    "image/tiff",
)

class ClaimDocument(BaseSchema):
    """Raw claim document as submitted for processing"""
    filename: str
    mime_type: str
    content: bytes
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("mime_type")
    @classmethod
    def validate_mime_type(cls, v):
        if v not in SUPPORTED_MIME_TYPES:
            raise ValueError(
                f"Unsupported file type: {v}. Supported types: {', '.join(SUPPORTED_MIME_TYPES)}"
            )
        return v

class ParsedDocument(BaseSchema):
    """Result of decoding a document into pages"""
    page_count: int = Field(..., ge=1)
    document_type: DocumentType = DocumentType.UNKNOWN
    metadata: Dict[str, Any] = Field(default_factory=dict)

# =============================================================================
# EXTRACTED CLAIM SCHEMAS
# =============================================================================

class Address(BaseSchema):
    street1: str
    street2: Optional[str] = None
    city: str
    state: str
    zip_code: str
    country: str = "US"

class Patient(BaseSchema):
    member_id: str
    first_name: str
    last_name: str
    date_of_birth: str
    gender: Optional[Gender] = None
    address: Optional[Address] = None

class Provider(BaseSchema):
    npi: str
    name: str
    tax_id: Optional[str] = None
    specialty: Optional[str] = None
    address: Optional[Address] = None

class Diagnosis(BaseSchema):
    code: str
    description: Optional[str] = None
    is_primary: bool = False

class ServiceLine(BaseSchema):
    line_number: int = Field(..., ge=1)
    date_of_service: str
    procedure_code: str
    modifiers: List[str] = Field(default_factory=list)
    diagnosis_pointers: List[str] = Field(default_factory=list)
    units: int = Field(1, ge=0)
    charge_amount: float = Field(..., ge=0)
    place_of_service: Optional[str] = None

class ClaimTotals(BaseSchema):
    total_charges: float = Field(..., ge=0)
    amount_paid: Optional[float] = None
    patient_responsibility: Optional[float] = None

class ExtractedClaim(BaseSchema):
    """Structured claim payload produced by extraction or correction"""
    id: str
    document_type: DocumentType = DocumentType.UNKNOWN
    patient: Patient
    provider: Provider
    diagnoses: List[Diagnosis] = Field(default_factory=list)
    service_lines: List[ServiceLine] = Field(default_factory=list)
    totals: ClaimTotals
    statement_date: Optional[str] = None
    admission_date: Optional[str] = None
    discharge_date: Optional[str] = None

    def apply_corrections(self, corrections: Dict[str, Any]) -> "ExtractedClaim":
        """Merge reviewer corrections and re-validate the whole payload"""
        data = self.model_dump()
        for key, value in corrections.items():
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key] = {**data[key], **value}
            else:
                data[key] = value
        return ExtractedClaim.model_validate(data)

class ConfidenceScores(BaseSchema):
    """Per-field-group confidence plus the overall score"""
    overall: float = Field(..., ge=0.0, le=1.0)
    fields: Dict[str, float] = Field(default_factory=dict)

    @field_validator("fields")
    @classmethod
    def validate_field_scores(cls, v):
        for name, score in v.items():
            if not 0.0 <= score <= 1.0:
                raise ValueError(f"Confidence for '{name}' must be within [0, 1], got {score}")
        return v

    @classmethod
    def uniform(cls, score: float, groups: Optional[List[str]] = None) -> "ConfidenceScores":
        groups = groups or ["patient", "provider", "diagnoses", "service_lines", "totals"]
        return cls(overall=score, fields={group: score for group in groups})

    def low_confidence_fields(self, threshold: float) -> List[str]:
        return sorted(name for name, score in self.fields.items() if score < threshold)

class ValidationIssue(BaseSchema):
    """One structured validation failure"""
    field: str
    error_type: ValidationErrorType = ValidationErrorType.BUSINESS_RULE
    message: str
    current_value: Optional[str] = None
    suggested_value: Optional[str] = None
    is_correctable: bool = True

class AdjudicationResult(BaseSchema):
    """Outcome reported by the adjudication collaborator"""
    claim_id: str
    status: AdjudicationStatus
    total_billed: float = 0.0
    total_allowed: float = 0.0
    total_paid: float = 0.0
    explanation: str = ""
    policy_citations: List[str] = Field(default_factory=list)
    decided_at: datetime = Field(default_factory=DateTimeUtils.utcnow)
    decided_by: str = "adjudication_agent"

# =============================================================================
# CLAIM STATE SCHEMAS
# =============================================================================

class StateTransition(BaseSchema):
    """Append-only history entry"""
    timestamp: datetime
    from_status: Optional[ClaimStatus]
    to_status: ClaimStatus
    reason: str

class ReviewRecord(BaseSchema):
    decision: ReviewDecision
    reviewer_id: Optional[str] = None
    notes: Optional[str] = None
    corrections: Dict[str, Any] = Field(default_factory=dict)
    decided_at: datetime = Field(default_factory=DateTimeUtils.utcnow)

class ClaimState(BaseSchema):
    """Current processing state of one claim, owned by the state store"""
    id: str
    status: ClaimStatus = ClaimStatus.RECEIVED
    priority: ClaimPriority = ClaimPriority.NORMAL
    document: Optional[ClaimDocument] = None
    parsed_document: Optional[ParsedDocument] = None
    extracted_claim: Optional[ExtractedClaim] = None
    confidence_scores: Optional[ConfidenceScores] = None
    correction_attempts: int = Field(0, ge=0)
    validation_errors: List[ValidationIssue] = Field(default_factory=list)
    review_decision: Optional[ReviewRecord] = None
    review_history: List[ReviewRecord] = Field(default_factory=list)
    adjudication_result: Optional[AdjudicationResult] = None
    last_error: Optional[str] = None
    history: List[StateTransition] = Field(default_factory=list)
    version: int = 0
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=DateTimeUtils.utcnow)
    updated_at: datetime = Field(default_factory=DateTimeUtils.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ClaimStatus.COMPLETED, ClaimStatus.FAILED)

    @property
    def is_stable(self) -> bool:
        return self.is_terminal or self.status == ClaimStatus.PENDING_REVIEW

    def lease_held_by_other(self, owner: str, now: datetime) -> bool:
        if self.lease_owner is None or self.lease_owner == owner:
            return False
        return self.lease_expires_at is not None and self.lease_expires_at > now

class ClaimStateFilter(BaseModel):
    """Filter for listing claim states"""
    status: Optional[ClaimStatus] = None
    priority: Optional[ClaimPriority] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None

    def matches(self, state: ClaimState) -> bool:
        if self.status is not None and state.status != self.status:
            return False
        if self.priority is not None and state.priority != self.priority:
            return False
        if self.created_from is not None and state.created_at < self.created_from:
            return False
        if self.created_to is not None and state.created_at > self.created_to:
            return False
        return True

# =============================================================================
# RESULT SCHEMAS
# =============================================================================

class ProcessingResult(BaseModel):
    """Outcome of driving a claim to its next stable point"""
    claim_id: str
    success: bool
    final_status: ClaimStatus
    correction_attempts: int = 0
    extracted_claim: Optional[ExtractedClaim] = None
    confidence_scores: Optional[ConfidenceScores] = None
    validation_errors: List[ValidationIssue] = Field(default_factory=list)
    adjudication_result: Optional[AdjudicationResult] = None
    error: Optional[str] = None
    processing_time_ms: int = 0

    @classmethod
    def from_state(cls, state: ClaimState, processing_time_ms: int = 0, error: Optional[str] = None) -> "ProcessingResult":
        return cls(
            claim_id=state.id,
            success=state.status == ClaimStatus.COMPLETED,
            final_status=state.status,
            correction_attempts=state.correction_attempts,
            extracted_claim=state.extracted_claim,
            confidence_scores=state.confidence_scores,
            validation_errors=state.validation_errors,
            adjudication_result=state.adjudication_result,
            error=error or state.last_error,
            processing_time_ms=processing_time_ms,
        )

class ClaimStatistics(BaseModel):
    total: int
    by_status: Dict[ClaimStatus, int]
    by_priority: Dict[ClaimPriority, int]
    average_correction_attempts: float

class ReviewQueueItem(BaseModel):
    claim_id: str
    priority: ClaimPriority
    reason: str
    added_at: datetime
    low_confidence_fields: List[str] = Field(default_factory=list)
    validation_error_count: int = 0
