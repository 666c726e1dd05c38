"""
ClaimFlow - Workflow Orchestrator Tests
End-to-end claim processing against fake collaborators
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from claimflow.agents.base import AgentRegistry
from claimflow.orchestrators.claims.state_machine import record_transition
from claimflow.orchestrators.claims.workflow_orchestrator import ClaimsWorkflowOrchestrator
from claimflow.shared.config import WorkflowConfig
from claimflow.shared.exceptions import (
    DocumentFormatError, InfrastructureFailure, NotFoundException, CollaboratorFailure
)
from claimflow.shared.monitoring import MetricsCollector
from claimflow.shared.schemas import (
    ClaimDocument, ClaimPriority, ClaimStateFilter, ClaimStatus, ConfidenceScores
)
from claimflow.shared.utils import DataUtils

from conftest import (
    FakeAdjudicationAgent, FakeCorrectionAgent, FakeExtractionAgent, FakeIndexingAgent,
    FakeParser, FakeValidationAgent, make_document, make_extracted_claim, make_issue
)


def statuses(state):
    return [entry.to_status for entry in state.history]


async def wait_until(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def build_orchestrator(store, review_threshold, **agent_overrides):
    """C2/C3 style configuration: accept 0.85, two corrections"""
    config = WorkflowConfig(
        accept_threshold=0.85,
        review_threshold=review_threshold,
        max_correction_attempts=2,
        agent_retry_delay_seconds=0.0,
        lease_poll_interval_seconds=0.01,
    )
    agents = AgentRegistry(
        extraction=agent_overrides.get("extraction", FakeExtractionAgent()),
        validation=agent_overrides.get("validation", FakeValidationAgent()),
        correction=agent_overrides.get("correction", FakeCorrectionAgent(confidence=0.60)),
        adjudication=agent_overrides.get("adjudication", FakeAdjudicationAgent()),
    )
    return ClaimsWorkflowOrchestrator(agents, store=store, config=config, metrics=MetricsCollector())


class TestWorkedExamples:

    @pytest.mark.asyncio
    async def test_high_confidence_claim_completes_without_corrections(self, store):
        orchestrator = build_orchestrator(store, review_threshold=0.40)

        async with orchestrator:
            result = await orchestrator.process_document(make_document("C1", confidence=0.97))

        assert result.success
        assert result.final_status == ClaimStatus.COMPLETED
        assert result.correction_attempts == 0
        assert result.adjudication_result is not None

        state = await store.get(result.claim_id)
        assert statuses(state) == [
            ClaimStatus.RECEIVED,
            ClaimStatus.PARSING,
            ClaimStatus.EXTRACTING,
            ClaimStatus.VALIDATING,
            ClaimStatus.ADJUDICATING,
            ClaimStatus.COMPLETED,
        ]
        assert state.lease_owner is None

    @pytest.mark.asyncio
    async def test_unchanged_confidence_goes_to_review(self, store):
        correction = FakeCorrectionAgent(confidence=0.60)
        orchestrator = build_orchestrator(store, review_threshold=0.40, correction=correction)

        async with orchestrator:
            result = await orchestrator.process_document(make_document("C2", confidence=0.60))

        assert result.final_status == ClaimStatus.PENDING_REVIEW
        assert not result.success
        assert result.correction_attempts == 2
        assert len(correction.calls) == 2
        assert correction.calls[0]["low_confidence_fields"] == [
            "diagnoses", "patient", "provider", "service_lines", "totals"
        ]

        state = await store.get(result.claim_id)
        assert statuses(state) == [
            ClaimStatus.RECEIVED,
            ClaimStatus.PARSING,
            ClaimStatus.EXTRACTING,
            ClaimStatus.CORRECTING,
            ClaimStatus.EXTRACTING,
            ClaimStatus.CORRECTING,
            ClaimStatus.PENDING_REVIEW,
        ]
        assert state.review_decision is None

    @pytest.mark.asyncio
    async def test_unchanged_confidence_below_review_threshold_fails(self, store):
        orchestrator = build_orchestrator(store, review_threshold=0.70)

        async with orchestrator:
            result = await orchestrator.process_document(make_document("C3", confidence=0.60))

        assert result.final_status == ClaimStatus.FAILED
        assert result.correction_attempts == 2
        assert "review threshold" in result.error

        state = await store.get(result.claim_id)
        assert state.history[-1].from_status == ClaimStatus.CORRECTING

    @pytest.mark.asyncio
    async def test_statistics_after_examples(self, store):
        lenient = build_orchestrator(store, review_threshold=0.40)
        strict = build_orchestrator(store, review_threshold=0.70)

        async with lenient, strict:
            await lenient.process_document(make_document("C1", confidence=0.97))
            await lenient.process_document(make_document("C2", confidence=0.60))
            await strict.process_document(make_document("C3", confidence=0.60))

            stats = await lenient.get_statistics()

        assert stats.total == 3
        assert stats.by_status[ClaimStatus.COMPLETED] == 1
        assert stats.by_status[ClaimStatus.PENDING_REVIEW] == 1
        assert stats.by_status[ClaimStatus.FAILED] == 1
        assert stats.by_status[ClaimStatus.EXTRACTING] == 0
        assert stats.by_priority[ClaimPriority.NORMAL] == 3
        assert stats.average_correction_attempts == pytest.approx(4 / 3)


class TestSubmission:

    @pytest.mark.asyncio
    async def test_submit_derives_claim_id_from_content(self, orchestrator):
        document = make_document("dedupe")

        claim_id = await orchestrator.submit(document, wait=True)

        assert claim_id == DataUtils.claim_id_from_content(document.content)
        assert claim_id.startswith("CLM-") and len(claim_id) == 20

    @pytest.mark.asyncio
    async def test_resubmission_is_idempotent(self, orchestrator, extraction_agent):
        document = make_document("dedupe")

        first_id = await orchestrator.submit(document, wait=True)
        first = await orchestrator.get_state(first_id)
        second_id = await orchestrator.submit(document, priority=ClaimPriority.URGENT, wait=True)
        second = await orchestrator.get_state(second_id)

        assert first_id == second_id
        assert extraction_agent.calls == [first_id]
        assert second.status == ClaimStatus.COMPLETED
        assert second.history == first.history
        assert second.priority == ClaimPriority.NORMAL

    @pytest.mark.asyncio
    async def test_fire_and_forget_submission(self, orchestrator):
        claim_id = await orchestrator.submit(make_document("async"), priority=ClaimPriority.HIGH)

        async def _completed():
            return (await orchestrator.get_state(claim_id)).status == ClaimStatus.COMPLETED

        await wait_until(_completed)
        assert (await orchestrator.get_state(claim_id)).priority == ClaimPriority.HIGH

    @pytest.mark.asyncio
    async def test_unsupported_mime_type_rejected_before_state_exists(self, orchestrator):
        with pytest.raises(ValueError):
            ClaimDocument(filename="claim.docx", mime_type="application/msword", content=b"x")

        assert await orchestrator.list_claims() == []

    @pytest.mark.asyncio
    async def test_unsupported_submission_type(self, orchestrator):
        with pytest.raises(TypeError):
            await orchestrator.submit({"claim": "dict"})

    @pytest.mark.asyncio
    async def test_pre_extracted_claim_skips_collaborators(self, orchestrator, extraction_agent, validation_agent):
        extracted = make_extracted_claim("CLM-PRE-1")

        result = await orchestrator.process_extracted_claim(extracted, priority=ClaimPriority.URGENT)

        assert result.success
        assert result.claim_id == "CLM-PRE-1"
        assert extraction_agent.calls == []
        assert validation_agent.calls == ["CLM-PRE-1"]

        state = await orchestrator.get_state("CLM-PRE-1")
        assert state.document is None
        assert state.history[1].to_status == ClaimStatus.PARSING
        assert "skipped" in state.history[2].reason
        assert state.confidence_scores.overall == 1.0

    @pytest.mark.asyncio
    async def test_pre_extracted_claim_with_low_confidence_is_corrected(self, orchestrator, correction_agent):
        extracted = make_extracted_claim("CLM-PRE-2")

        result = await orchestrator.process_extracted_claim(
            extracted, confidence_scores=ConfidenceScores.uniform(0.7)
        )

        assert result.success
        assert result.correction_attempts == 1
        assert len(correction_agent.calls) == 1

    @pytest.mark.asyncio
    async def test_process_claim_unknown_id(self, orchestrator):
        with pytest.raises(NotFoundException):
            await orchestrator.process_claim("CLM-NOPE")

    @pytest.mark.asyncio
    async def test_process_claim_on_stable_claim_is_a_no_op(self, orchestrator, extraction_agent):
        claim_id = await orchestrator.submit(make_document("stable"), wait=True)
        before = await orchestrator.get_state(claim_id)

        result = await orchestrator.process_claim(claim_id)

        assert result.final_status == ClaimStatus.COMPLETED
        assert len(extraction_agent.calls) == 1
        assert (await orchestrator.get_state(claim_id)).version == before.version

    @pytest.mark.asyncio
    async def test_list_claims_by_status(self, orchestrator, correction_agent):
        correction_agent.confidence = 0.10
        await orchestrator.submit(make_document("ok", confidence=0.99), wait=True)
        await orchestrator.submit(make_document("bad", confidence=0.10), wait=True)

        failed = await orchestrator.list_claims(ClaimStateFilter(status=ClaimStatus.FAILED))
        completed = await orchestrator.list_claims(ClaimStateFilter(status=ClaimStatus.COMPLETED))

        assert len(failed) == 1 and len(completed) == 1


class TestCorrectionLoop:

    @pytest.mark.asyncio
    async def test_validation_errors_trigger_correction(self, store, workflow_config):
        validation = FakeValidationAgent(error_batches=[[make_issue()]])
        correction = FakeCorrectionAgent(confidence=0.95)
        agents = AgentRegistry(
            extraction=FakeExtractionAgent(),
            validation=validation,
            correction=correction,
            adjudication=FakeAdjudicationAgent(),
        )

        async with ClaimsWorkflowOrchestrator(agents, store=store, config=workflow_config) as orchestrator:
            result = await orchestrator.process_document(make_document("fixable"))

        assert result.success
        assert result.correction_attempts == 1
        assert result.validation_errors == []
        assert correction.calls[0]["validation_errors"][0].field == "provider.npi"
        assert correction.calls[0]["low_confidence_fields"] == []

    @pytest.mark.asyncio
    async def test_persistent_validation_errors_go_to_review(self, store, workflow_config):
        validation = FakeValidationAgent(error_batches=[[make_issue()]] * 3)
        agents = AgentRegistry(
            extraction=FakeExtractionAgent(),
            validation=validation,
            correction=FakeCorrectionAgent(confidence=0.95),
            adjudication=FakeAdjudicationAgent(),
        )

        async with ClaimsWorkflowOrchestrator(agents, store=store, config=workflow_config) as orchestrator:
            result = await orchestrator.process_document(make_document("unfixable"))
            queue = await orchestrator.get_review_queue()

        assert result.final_status == ClaimStatus.PENDING_REVIEW
        assert result.correction_attempts == workflow_config.max_correction_attempts
        assert len(result.validation_errors) == 1
        assert [item.claim_id for item in queue] == [result.claim_id]
        assert queue[0].validation_error_count == 1
        assert "persist" in queue[0].reason

    @pytest.mark.asyncio
    async def test_immediate_failure_when_no_attempts_allowed(self, store):
        config = WorkflowConfig(max_correction_attempts=0, review_threshold=0.5)
        agents = AgentRegistry(
            extraction=FakeExtractionAgent(default_confidence=0.3),
            validation=FakeValidationAgent(),
            correction=FakeCorrectionAgent(),
            adjudication=FakeAdjudicationAgent(),
        )

        async with ClaimsWorkflowOrchestrator(agents, store=store, config=config) as orchestrator:
            result = await orchestrator.process_document(make_document("hopeless"))

        assert result.final_status == ClaimStatus.FAILED
        state = await store.get(result.claim_id)
        assert state.history[-1].from_status == ClaimStatus.EXTRACTING

    @pytest.mark.parametrize("confidence,expected", [
        (0.30, ClaimStatus.FAILED),
        (0.70, ClaimStatus.PENDING_REVIEW),
    ])
    @pytest.mark.asyncio
    async def test_exhausted_attempts_in_correcting_apply_review_threshold(
        self, store, agents, correction_agent, workflow_config, confidence, expected
    ):
        await store.create(
            "CLM-LIMIT",
            extracted_claim=make_extracted_claim("CLM-LIMIT"),
            confidence_scores=ConfidenceScores.uniform(confidence),
        )
        for status in (ClaimStatus.PARSING, ClaimStatus.EXTRACTING, ClaimStatus.CORRECTING):
            def _step(state, status=status):
                state.correction_attempts = workflow_config.max_correction_attempts
                record_transition(state, status, "setup")
            await store.update("CLM-LIMIT", _step)

        orchestrator = ClaimsWorkflowOrchestrator(agents, store=store, config=workflow_config)
        state = await orchestrator.advance("CLM-LIMIT")

        assert state.status == expected
        assert state.history[-1].from_status == ClaimStatus.CORRECTING
        assert correction_agent.calls == []
        if expected == ClaimStatus.FAILED:
            assert "review threshold" in state.last_error


class TestFailureHandling:

    @pytest.mark.asyncio
    async def test_document_format_error_fails_claim(self, store, agents, workflow_config):
        agents.parser = FakeParser(error=DocumentFormatError("Corrupt PDF header"))

        async with ClaimsWorkflowOrchestrator(agents, store=store, config=workflow_config) as orchestrator:
            claim_id = await orchestrator.submit(make_document("corrupt"), wait=True)

        state = await store.get(claim_id)
        assert state.status == ClaimStatus.FAILED
        assert state.history[-1].from_status == ClaimStatus.PARSING
        assert state.last_error == "Corrupt PDF header"

    @pytest.mark.asyncio
    async def test_parser_result_is_stored(self, store, agents, workflow_config):
        agents.parser = FakeParser()

        async with ClaimsWorkflowOrchestrator(agents, store=store, config=workflow_config) as orchestrator:
            claim_id = await orchestrator.submit(make_document("parsed"), wait=True)

        state = await store.get(claim_id)
        assert state.parsed_document.page_count == 2
        assert agents.parser.calls == ["parsed.pdf"]

    @pytest.mark.asyncio
    async def test_infrastructure_failure_is_retried_then_surfaced(self, orchestrator, extraction_agent, workflow_config):
        extraction_agent.error = InfrastructureFailure("extraction service unreachable", agent="extraction_agent")
        document = make_document("outage")

        with pytest.raises(InfrastructureFailure) as exc_info:
            await orchestrator.submit(document, wait=True)

        assert exc_info.value.agent == "extraction_agent"
        assert len(extraction_agent.calls) == workflow_config.agent_max_retries + 1

        state = await orchestrator.get_state(DataUtils.claim_id_from_content(document.content))
        assert state.status == ClaimStatus.FAILED
        assert state.history[-1].from_status == ClaimStatus.EXTRACTING
        assert "unreachable" in state.last_error
        assert state.lease_owner is None

        failures = orchestrator.metrics.registry.get_sample_value(
            "agent_executions_total", {"agent_name": "extraction_agent", "status": "error"}
        )
        assert failures == workflow_config.agent_max_retries + 1

    @pytest.mark.asyncio
    async def test_process_document_reports_infrastructure_failure(self, orchestrator, adjudication_agent):
        adjudication_agent.error = InfrastructureFailure("rules engine down")

        result = await orchestrator.process_document(make_document("adjudication-outage"))

        assert not result.success
        assert result.final_status == ClaimStatus.FAILED
        assert "rules engine down" in result.error

    @pytest.mark.asyncio
    async def test_collaborator_timeout(self, store, agents, extraction_agent):
        config = WorkflowConfig(agent_timeout_seconds=0.05, agent_max_retries=0)
        extraction_agent.delay = 1.0

        async with ClaimsWorkflowOrchestrator(agents, store=store, config=config) as orchestrator:
            result = await orchestrator.process_document(make_document("slow"))

        assert result.final_status == ClaimStatus.FAILED
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_hard_adjudication_failure_is_an_outcome(self, orchestrator, adjudication_agent):
        adjudication_agent.error = CollaboratorFailure("Member not eligible on date of service")

        claim_id = await orchestrator.submit(make_document("ineligible"), wait=True)

        state = await orchestrator.get_state(claim_id)
        assert state.status == ClaimStatus.FAILED
        assert state.history[-1].from_status == ClaimStatus.ADJUDICATING

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_claim_and_propagates(self, orchestrator, extraction_agent):
        extraction_agent.error = KeyError("page_regions")
        document = make_document("bug")

        with pytest.raises(KeyError):
            await orchestrator.submit(document, wait=True)

        state = await orchestrator.get_state(DataUtils.claim_id_from_content(document.content))
        assert state.status == ClaimStatus.FAILED
        assert len(extraction_agent.calls) == 1
        assert orchestrator.metrics.registry.get_sample_value(
            "errors_total", {"error_type": "KeyError", "service": "claims_orchestrator", "severity": "error"}
        ) == 1

    @pytest.mark.asyncio
    async def test_transient_failure_recovers_on_retry(self, orchestrator, validation_agent):
        validation_agent.validate = AsyncMock(side_effect=[
            InfrastructureFailure("validation service restarting"),
            [],
        ])

        result = await orchestrator.process_document(make_document("blip"))

        assert result.success
        assert validation_agent.validate.await_count == 2
        assert orchestrator.metrics.registry.get_sample_value(
            "agent_executions_total", {"agent_name": "validation_agent", "status": "success"}
        ) == 1
        assert orchestrator.metrics.registry.get_sample_value(
            "errors_total",
            {"error_type": "InfrastructureFailure", "service": "claims_orchestrator", "severity": "warning"}
        ) == 1


class RetainingExtraction(FakeExtractionAgent):
    """Keeps the outcome it handed back so a test can mutate it afterwards"""

    async def extract(self, document, parsed_document=None):
        self.outcome = await super().extract(document, parsed_document)
        return self.outcome


class TestStoredPayloads:

    @pytest.mark.asyncio
    async def test_collaborator_results_are_copied_into_state(self, store, agents, workflow_config):
        agents.extraction = RetainingExtraction()

        async with ClaimsWorkflowOrchestrator(agents, store=store, config=workflow_config) as orchestrator:
            result = await orchestrator.process_document(make_document("owned"))

        agents.extraction.outcome.extracted_claim.patient.first_name = "Mallory"
        agents.extraction.outcome.confidence_scores.fields["patient"] = 0.0

        state = await store.get(result.claim_id)
        assert state.extracted_claim.patient.first_name == "Maria"
        assert state.confidence_scores.fields["patient"] == pytest.approx(0.97)


class TestIndexing:

    @pytest.mark.asyncio
    async def test_completed_claim_is_indexed(self, orchestrator, indexing_agent):
        claim_id = await orchestrator.submit(make_document("indexed"), wait=True)
        await orchestrator.wait_for_background_tasks()

        assert indexing_agent.indexed == [claim_id]

    @pytest.mark.asyncio
    async def test_indexing_failure_never_reverts_claim(self, orchestrator, indexing_agent):
        indexing_agent.error = RuntimeError("vector store unavailable")

        claim_id = await orchestrator.submit(make_document("index-fails"), wait=True)
        await orchestrator.wait_for_background_tasks()

        assert (await orchestrator.get_state(claim_id)).status == ClaimStatus.COMPLETED
        assert orchestrator.metrics.registry.get_sample_value("indexing_failures_total") == 1

    @pytest.mark.asyncio
    async def test_indexing_can_be_disabled(self, store, agents, indexing_agent):
        config = WorkflowConfig(enable_indexing=False)

        async with ClaimsWorkflowOrchestrator(agents, store=store, config=config) as orchestrator:
            await orchestrator.submit(make_document("no-index"), wait=True)

        assert indexing_agent.indexed == []


class TestCancellation:

    @pytest.mark.asyncio
    async def test_deadline_leaves_last_committed_state(self, orchestrator, extraction_agent):
        extraction_agent.gate = asyncio.Event()
        document = make_document("deadline")
        claim_id = DataUtils.claim_id_from_content(document.content)

        with pytest.raises(asyncio.TimeoutError):
            await orchestrator.submit(document, wait=True, timeout=0.1)

        async def _released():
            return (await orchestrator.get_state(claim_id)).lease_owner is None

        await wait_until(_released)
        state = await orchestrator.get_state(claim_id)
        assert state.status == ClaimStatus.EXTRACTING
        assert state.extracted_claim is None

        extraction_agent.gate.set()
        result = await orchestrator.process_claim(claim_id)

        assert result.final_status == ClaimStatus.COMPLETED
        final = await orchestrator.get_state(claim_id)
        assert final.history[:len(state.history)] == state.history

    @pytest.mark.asyncio
    async def test_resume_in_flight(self, store, agents, workflow_config):
        await store.create("CLM-STUCK-1", ClaimPriority.HIGH, document=make_document("stuck-1"))
        await store.create("CLM-STUCK-2", document=make_document("stuck-2"))

        async with ClaimsWorkflowOrchestrator(agents, store=store, config=workflow_config) as orchestrator:
            await orchestrator.submit(make_document("done"), wait=True)
            resumed = await orchestrator.resume_in_flight()

            async def _all_stable():
                return all(s.is_stable for s in await store.list())

            await wait_until(_all_stable)

        assert sorted(resumed) == ["CLM-STUCK-1", "CLM-STUCK-2"]

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self, orchestrator, store):
        await store.create("CLM-ABANDONED", document=make_document("abandoned"))

        def _stale_lease(state):
            state.lease_owner = "crashed-worker"
            state.lease_expires_at = state.created_at

        await store.update("CLM-ABANDONED", _stale_lease)

        state = await orchestrator.advance("CLM-ABANDONED")

        assert state.status == ClaimStatus.COMPLETED
        assert state.lease_owner is None
