"""
ClaimFlow - Collaborator Contracts
Abstract agents the workflow orchestrator calls and awaits at each stage

Implementations signal a hard, non-retryable failure by raising
CollaboratorFailure (DocumentFormatError for the parser) and a transient
failure by raising InfrastructureFailure; the orchestrator retries the latter.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, NamedTuple

from ..shared.schemas import (
    ClaimDocument, ParsedDocument, ExtractedClaim, ConfidenceScores,
    ValidationIssue, AdjudicationResult
)


class ExtractionOutcome(NamedTuple):
    extracted_claim: ExtractedClaim
    confidence_scores: ConfidenceScores


class BaseAgent(ABC):
    """Base class for claim processing collaborators"""

    agent_name: str = "agent"


class DocumentParser(BaseAgent):
    agent_name = "parsing_agent"

    @abstractmethod
    async def parse(self, document: ClaimDocument) -> ParsedDocument:
        """Decode the document into pages/regions"""


class ExtractionAgent(BaseAgent):
    agent_name = "extraction_agent"

    @abstractmethod
    async def extract(
        self,
        document: ClaimDocument,
        parsed_document: Optional[ParsedDocument] = None
    ) -> ExtractionOutcome:
        """Extract a structured claim with per-field-group confidence"""


class ValidationAgent(BaseAgent):
    agent_name = "validation_agent"

    @abstractmethod
    async def validate(self, extracted_claim: ExtractedClaim) -> List[ValidationIssue]:
        """Return validation failures; an empty list means the claim passed"""


class CorrectionAgent(BaseAgent):
    agent_name = "correction_agent"

    @abstractmethod
    async def correct(
        self,
        extracted_claim: ExtractedClaim,
        validation_errors: List[ValidationIssue],
        low_confidence_fields: List[str]
    ) -> ExtractionOutcome:
        """Return a revised payload and freshly computed confidence"""


class AdjudicationAgent(BaseAgent):
    agent_name = "adjudication_agent"

    @abstractmethod
    async def adjudicate(self, extracted_claim: ExtractedClaim) -> AdjudicationResult:
        """Apply coverage and payment rules"""


class IndexingAgent(BaseAgent):
    agent_name = "indexing_agent"

    @abstractmethod
    async def index(self, extracted_claim: ExtractedClaim) -> None:
        """Add a completed claim to the retrieval index"""


@dataclass
class AgentRegistry:
    """Collaborators wired into one orchestrator instance"""
    extraction: ExtractionAgent
    validation: ValidationAgent
    correction: CorrectionAgent
    adjudication: AdjudicationAgent
    parser: Optional[DocumentParser] = None
    indexing: Optional[IndexingAgent] = None
