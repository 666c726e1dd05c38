"""
ClaimFlow - Test Fixtures
Fake collaborators, sample payloads and orchestrator fixtures shared by the suite
"""

import asyncio
from typing import Dict, List, Optional

import fakeredis.aioredis
import pytest
import pytest_asyncio

from claimflow.agents.base import (
    AgentRegistry, AdjudicationAgent, CorrectionAgent, DocumentParser,
    ExtractionAgent, ExtractionOutcome, IndexingAgent, ValidationAgent
)
from claimflow.orchestrators.claims.state_store import InMemoryClaimStateStore, RedisClaimStateStore
from claimflow.orchestrators.claims.workflow_orchestrator import ClaimsWorkflowOrchestrator
from claimflow.shared.config import WorkflowConfig
from claimflow.shared.monitoring import MetricsCollector
from claimflow.shared.schemas import (
    AdjudicationResult, AdjudicationStatus, ClaimDocument, ClaimTotals,
    ConfidenceScores, Diagnosis, DocumentType, ExtractedClaim, ParsedDocument,
    Patient, Provider, ServiceLine, ValidationIssue
)
from claimflow.shared.utils import DataUtils

# =============================================================================
# SAMPLE DATA
# =============================================================================

def make_extracted_claim(claim_id: str = "CLM-TEST-0001") -> ExtractedClaim:
    return ExtractedClaim(
        id=claim_id,
        document_type=DocumentType.CMS_1500,
        patient=Patient(
            member_id="MBR123456",
            first_name="Maria",
            last_name="Lopez",
            date_of_birth="1984-03-12",
            gender="F",
        ),
        provider=Provider(
            npi="1234567893",
            name="Riverside Family Practice",
            tax_id="12-3456789",
        ),
        diagnoses=[Diagnosis(code="J06.9", description="Acute upper respiratory infection", is_primary=True)],
        service_lines=[
            ServiceLine(
                line_number=1,
                date_of_service="2024-05-02",
                procedure_code="99213",
                diagnosis_pointers=["A"],
                charge_amount=145.0,
            )
        ],
        totals=ClaimTotals(total_charges=145.0),
    )


def make_document(name: str, confidence: Optional[float] = None) -> ClaimDocument:
    """Document whose extraction confidence is carried in its metadata"""
    metadata = {"confidence": str(confidence)} if confidence is not None else {}
    return ClaimDocument(
        filename=f"{name}.pdf",
        mime_type="application/pdf",
        content=f"%PDF-1.4 claim {name}".encode(),
        metadata=metadata,
    )


def make_issue(field: str = "provider.npi", message: str = "NPI checksum failed") -> ValidationIssue:
    return ValidationIssue(field=field, message=message, current_value="1234567890")

# =============================================================================
# FAKE COLLABORATORS
# =============================================================================

class FakeParser(DocumentParser):
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[str] = []

    async def parse(self, document: ClaimDocument) -> ParsedDocument:
        self.calls.append(document.filename)
        if self.error is not None:
            raise self.error
        return ParsedDocument(page_count=2, document_type=DocumentType.CMS_1500)


class FakeExtractionAgent(ExtractionAgent):
    """Confidence comes from document metadata, falling back to a default"""

    def __init__(self, default_confidence: float = 0.97, delay: float = 0.0):
        self.default_confidence = default_confidence
        self.delay = delay
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[str] = []

    async def extract(self, document, parsed_document=None) -> ExtractionOutcome:
        claim_id = DataUtils.claim_id_from_content(document.content)
        self.calls.append(claim_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

        confidence = float(document.metadata.get("confidence", self.default_confidence))
        return ExtractionOutcome(make_extracted_claim(claim_id), ConfidenceScores.uniform(confidence))


class FakeValidationAgent(ValidationAgent):
    """Returns scripted error batches in order, then passes"""

    def __init__(self, error_batches: Optional[List[List[ValidationIssue]]] = None):
        self.error_batches = list(error_batches or [])
        self.calls: List[str] = []

    async def validate(self, extracted_claim: ExtractedClaim) -> List[ValidationIssue]:
        self.calls.append(extracted_claim.id)
        if self.error_batches:
            return self.error_batches.pop(0)
        return []


class FakeCorrectionAgent(CorrectionAgent):
    def __init__(self, confidence: float = 0.95):
        self.confidence = confidence
        self.calls: List[Dict] = []

    async def correct(self, extracted_claim, validation_errors, low_confidence_fields) -> ExtractionOutcome:
        self.calls.append({
            "claim_id": extracted_claim.id,
            "validation_errors": validation_errors,
            "low_confidence_fields": low_confidence_fields,
        })
        return ExtractionOutcome(extracted_claim, ConfidenceScores.uniform(self.confidence))


class FakeAdjudicationAgent(AdjudicationAgent):
    def __init__(self):
        self.error: Optional[Exception] = None
        self.calls: List[str] = []

    async def adjudicate(self, extracted_claim: ExtractedClaim) -> AdjudicationResult:
        self.calls.append(extracted_claim.id)
        if self.error is not None:
            raise self.error
        return AdjudicationResult(
            claim_id=extracted_claim.id,
            status=AdjudicationStatus.APPROVED,
            total_billed=extracted_claim.totals.total_charges,
            total_allowed=extracted_claim.totals.total_charges,
            total_paid=extracted_claim.totals.total_charges,
            explanation="Covered service",
        )


class FakeIndexingAgent(IndexingAgent):
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.indexed: List[str] = []

    async def index(self, extracted_claim: ExtractedClaim) -> None:
        if self.error is not None:
            raise self.error
        self.indexed.append(extracted_claim.id)

# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def workflow_config():
    """Fast timings for tests"""
    return WorkflowConfig(
        accept_threshold=0.85,
        review_threshold=0.60,
        max_correction_attempts=2,
        max_concurrent_claims=4,
        agent_timeout_seconds=2.0,
        agent_max_retries=1,
        agent_retry_delay_seconds=0.0,
        lease_ttl_seconds=30.0,
        lease_poll_interval_seconds=0.01,
    )


@pytest.fixture
def extraction_agent():
    return FakeExtractionAgent()


@pytest.fixture
def validation_agent():
    return FakeValidationAgent()


@pytest.fixture
def correction_agent():
    return FakeCorrectionAgent()


@pytest.fixture
def adjudication_agent():
    return FakeAdjudicationAgent()


@pytest.fixture
def indexing_agent():
    return FakeIndexingAgent()


@pytest.fixture
def agents(extraction_agent, validation_agent, correction_agent, adjudication_agent, indexing_agent):
    return AgentRegistry(
        extraction=extraction_agent,
        validation=validation_agent,
        correction=correction_agent,
        adjudication=adjudication_agent,
        indexing=indexing_agent,
    )


@pytest.fixture
def store():
    return InMemoryClaimStateStore()


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis()
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture(params=["memory", "redis"])
async def any_store(request):
    """Runs a test against both store backends"""
    if request.param == "memory":
        yield InMemoryClaimStateStore()
        return

    client = fakeredis.aioredis.FakeRedis()
    yield RedisClaimStateStore(client, key_prefix="test")
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def orchestrator(agents, store, workflow_config):
    orchestrator = ClaimsWorkflowOrchestrator(
        agents,
        store=store,
        config=workflow_config,
        metrics=MetricsCollector(),
    )
    await orchestrator.start()
    yield orchestrator
    await orchestrator.shutdown(wait=False)
