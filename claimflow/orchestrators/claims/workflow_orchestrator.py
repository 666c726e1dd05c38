"""
Claims Workflow Orchestrator
Drives each claim through parsing, extraction, correction, validation,
human review and adjudication, committing every step through the state store
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

import structlog
from pydantic import BaseModel

from ...agents.base import AgentRegistry, BaseAgent
from ...shared.config import WorkflowConfig
from ...shared.exceptions import (
    ServiceException, ConflictException, InvalidStateException,
    InfrastructureFailure, CollaboratorFailure
)
from ...shared.monitoring import MetricsCollector, ErrorTracker, audit_logger, performance_monitor
from ...shared.schemas import (
    ClaimDocument, ClaimPriority, ClaimState, ClaimStateFilter, ClaimStatistics,
    ClaimStatus, ConfidenceScores, ExtractedClaim, ProcessingResult,
    ReviewDecision, ReviewQueueItem, ReviewRecord, WorkflowEvent
)
from ...shared.utils import DataUtils, DateTimeUtils
from .confidence_policy import ConfidenceAction, ConfidencePolicy
from .state_machine import STABLE_STATUSES, record_transition
from .state_store import ClaimStateStore, InMemoryClaimStateStore
from .statistics import StatisticsAggregator
from .worker_pool import PriorityWorkerPool


@dataclass
class StageOutcome:
    """Transition computed by a stage handler, committed by the orchestrator"""
    to_status: ClaimStatus
    reason: str
    changes: Dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None


@dataclass
class ClaimLease:
    """Lease held by one driver; version is the last version that driver wrote"""
    claim_id: str
    owner: str
    version: int


EventListener = Callable[[ClaimState, Dict[str, Any]], Any]


def _detached(value: Any) -> Any:
    """Copy collaborator-owned models before they are stored"""
    if isinstance(value, BaseModel):
        return value.model_copy(deep=True)
    if isinstance(value, list):
        return [_detached(item) for item in value]
    return value


class ClaimsWorkflowOrchestrator:
    """
    Per-claim state machine runner.

    A driver must hold the claim's lease before calling any collaborator.
    The lease and every transition are written through the store's
    versioned update, so two drivers for the same claim serialize while
    different claims never block each other.
    """

    def __init__(
        self,
        agents: AgentRegistry,
        store: Optional[ClaimStateStore] = None,
        config: Optional[WorkflowConfig] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.agents = agents
        self.store = store or InMemoryClaimStateStore()
        self.config = config or WorkflowConfig()
        self.policy = ConfidencePolicy(self.config)
        self.metrics = metrics or MetricsCollector()
        self.error_tracker = ErrorTracker(self.metrics.registry)
        self.statistics = StatisticsAggregator(self.store)
        self.pool = PriorityWorkerPool(self.config.max_concurrent_claims, self.metrics)
        self.logger = structlog.get_logger("claims_orchestrator")

        self._background_tasks: Set[asyncio.Task] = set()
        self._listeners: Dict[WorkflowEvent, List[EventListener]] = {}
        self._stage_handlers = {
            ClaimStatus.RECEIVED: self._stage_received,
            ClaimStatus.PARSING: self._stage_parsing,
            ClaimStatus.EXTRACTING: self._stage_extracting,
            ClaimStatus.CORRECTING: self._stage_correcting,
            ClaimStatus.VALIDATING: self._stage_validating,
            ClaimStatus.ADJUDICATING: self._stage_adjudicating,
        }

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self):
        await self.pool.start()

    async def shutdown(self, wait: bool = True):
        """Stop workers and wait for outstanding indexing calls"""
        await self.pool.shutdown(wait=wait)
        await self.wait_for_background_tasks()

    async def wait_for_background_tasks(self):
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def __aenter__(self) -> "ClaimsWorkflowOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown(wait=exc_type is None)

    # =========================================================================
    # EVENTS
    # =========================================================================

    def subscribe(self, event: Union[WorkflowEvent, str], callback: EventListener):
        """
        Register a callback for a lifecycle event.

        Callbacks receive a snapshot of the claim and an event payload dict.
        Coroutine callbacks are awaited inline with processing, so they should
        hand slow work off rather than block. A callback that raises is logged
        and counted; processing continues.
        """
        event = WorkflowEvent(event)
        if event not in self._listeners:
            self._listeners[event] = []
        self._listeners[event].append(callback)

    def unsubscribe(self, event: Union[WorkflowEvent, str], callback: EventListener):
        listeners = self._listeners.get(WorkflowEvent(event), [])
        if callback in listeners:
            listeners.remove(callback)

    async def _emit(self, event: WorkflowEvent, state: ClaimState, **data):
        listeners = self._listeners.get(event)
        if not listeners:
            return

        snapshot = state.model_copy(deep=True)
        payload = {"event": event.value, "claim_id": state.id, **data}

        for callback in list(listeners):
            try:
                result = callback(snapshot, dict(payload))
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.metrics.record_listener_failure(event.value)
                self.logger.warning("Event listener failed", event_name=event.value, claim_id=state.id, error=str(e))

    async def _emit_transition(self, from_status: ClaimStatus, state: ClaimState, reason: str):
        await self._emit(
            WorkflowEvent.STATE_TRANSITION,
            state,
            from_status=from_status.value,
            to_status=state.status.value,
            reason=reason
        )

        if state.status == ClaimStatus.COMPLETED:
            await self._emit(WorkflowEvent.STATE_COMPLETED, state)
        elif state.status == ClaimStatus.FAILED:
            await self._emit(WorkflowEvent.STATE_FAILED, state, error=state.last_error)
        elif state.status == ClaimStatus.PENDING_REVIEW:
            await self._emit(WorkflowEvent.STATE_REVIEW_REQUIRED, state, reason=reason)

    async def _emit_outcome(self, state: ClaimState, processing_time_ms: float):
        if state.status == ClaimStatus.COMPLETED:
            await self._emit(WorkflowEvent.WORKFLOW_COMPLETED, state, processing_time_ms=processing_time_ms)
        elif state.status == ClaimStatus.FAILED:
            await self._emit(
                WorkflowEvent.WORKFLOW_FAILED,
                state,
                error=state.last_error,
                processing_time_ms=processing_time_ms
            )
        elif state.status == ClaimStatus.PENDING_REVIEW:
            await self._emit(
                WorkflowEvent.WORKFLOW_REVIEW_REQUIRED,
                state,
                reason=state.history[-1].reason,
                processing_time_ms=processing_time_ms
            )

    # =========================================================================
    # PUBLIC OPERATIONS
    # =========================================================================

    async def submit(
        self,
        document: Union[ClaimDocument, ExtractedClaim],
        priority: ClaimPriority = ClaimPriority.NORMAL,
        claim_id: Optional[str] = None,
        confidence_scores: Optional[ConfidenceScores] = None,
        wait: bool = False,
        timeout: Optional[float] = None
    ) -> str:
        """
        Create the claim (idempotently) and schedule it.

        With wait=False the call returns as soon as the claim is queued.
        With wait=True it blocks until the claim is terminal or pending
        review and raises InfrastructureFailure if a collaborator stayed
        unavailable.
        """
        claim_id, future = await self._enqueue(document, priority, claim_id, confidence_scores)

        if wait:
            await self._wait(future, timeout)
        else:
            future.add_done_callback(self._background_result_logger(claim_id))

        return claim_id

    async def process_document(
        self,
        document: ClaimDocument,
        priority: ClaimPriority = ClaimPriority.NORMAL,
        claim_id: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> ProcessingResult:
        """Run a raw document to its next stable point and report the outcome"""
        start_time = DateTimeUtils.utcnow()
        claim_id, future = await self._enqueue(document, priority, claim_id, None)
        return await self._collect_result(claim_id, future, start_time, timeout)

    async def process_extracted_claim(
        self,
        extracted_claim: ExtractedClaim,
        priority: ClaimPriority = ClaimPriority.NORMAL,
        confidence_scores: Optional[ConfidenceScores] = None,
        timeout: Optional[float] = None
    ) -> ProcessingResult:
        """Entry point for payloads extracted elsewhere; no parse or extract calls are made"""
        start_time = DateTimeUtils.utcnow()
        claim_id, future = await self._enqueue(extracted_claim, priority, None, confidence_scores)
        return await self._collect_result(claim_id, future, start_time, timeout)

    async def process_claim(self, claim_id: str, timeout: Optional[float] = None) -> ProcessingResult:
        """Re-drive an existing claim to its next stable point"""
        start_time = DateTimeUtils.utcnow()
        state = await self.store.get(claim_id)
        future = await self._schedule(state.id, state.priority)
        return await self._collect_result(claim_id, future, start_time, timeout)

    async def resolve_review(
        self,
        claim_id: str,
        decision: Union[ReviewDecision, str],
        corrections: Optional[Dict[str, Any]] = None,
        reviewer_id: Optional[str] = None,
        notes: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> ClaimState:
        """Apply a human decision to a claim parked in pending_review"""
        decision = ReviewDecision(decision)
        if decision == ReviewDecision.CORRECT and not corrections:
            raise ValueError("A 'correct' decision requires corrections")

        state = await self.store.get(claim_id)
        if state.status != ClaimStatus.PENDING_REVIEW:
            raise InvalidStateException(
                f"Claim is not pending review: {state.status.value}",
                state.status.value
            )

        record = ReviewRecord(
            decision=decision,
            reviewer_id=reviewer_id,
            notes=notes,
            corrections=corrections or {},
        )

        def _apply_decision(working: ClaimState):
            if working.review_decision is not None:
                raise ConflictException(
                    f"Review decision already recorded for claim {working.id}",
                    {"claim_id": working.id}
                )
            working.review_decision = record
            working.review_history.append(record)

            if decision == ReviewDecision.REJECT:
                working.last_error = f"Rejected by reviewer: {notes}" if notes else "Rejected by reviewer"
                record_transition(working, ClaimStatus.FAILED, working.last_error)
            elif corrections:
                if working.extracted_claim is None:
                    raise InvalidStateException("Claim has no extracted payload to correct", working.status.value)
                groups = list(working.confidence_scores.fields) if working.confidence_scores else None
                working.extracted_claim = working.extracted_claim.apply_corrections(corrections)
                working.confidence_scores = ConfidenceScores.uniform(1.0, groups)
                working.validation_errors = []
                record_transition(working, ClaimStatus.VALIDATING, "Corrected by reviewer")
            else:
                record_transition(working, ClaimStatus.ADJUDICATING, "Approved by reviewer")

        state = await self.store.update(
            claim_id,
            _apply_decision,
            expected_status=ClaimStatus.PENDING_REVIEW,
            expected_version=state.version
        )

        self.metrics.record_transition(ClaimStatus.PENDING_REVIEW.value, state.status.value)
        audit_logger.log_user_action(
            reviewer_id,
            f"review_{decision.value}",
            resource_type="claim",
            resource_id=claim_id,
            details={"notes": notes, "corrected_fields": sorted(corrections or {})}
        )
        self.logger.info(
            "Review decision applied",
            claim_id=claim_id,
            decision=decision.value,
            to_status=state.status.value
        )
        await self._emit_transition(ClaimStatus.PENDING_REVIEW, state, state.history[-1].reason)

        if state.is_stable:
            return state

        future = await self._schedule(claim_id, state.priority)
        return await self._wait(future, timeout)

    async def get_state(self, claim_id: str) -> ClaimState:
        return await self.store.get(claim_id)

    async def list_claims(self, state_filter: Optional[ClaimStateFilter] = None) -> List[ClaimState]:
        return await self.store.list(state_filter)

    async def get_statistics(self) -> ClaimStatistics:
        return await self.statistics.get_statistics()

    async def get_review_queue(self, limit: int = 50, offset: int = 0) -> List[ReviewQueueItem]:
        return await self.statistics.get_review_queue(
            limit=limit,
            offset=offset,
            low_confidence_threshold=self.config.accept_threshold
        )

    async def resume_in_flight(self) -> List[str]:
        """Schedule every claim that has not reached a stable point"""
        resumed = []
        for state in await self.store.list():
            if state.is_stable:
                continue
            future = await self._schedule(state.id, state.priority)
            future.add_done_callback(self._background_result_logger(state.id))
            resumed.append(state.id)

        if resumed:
            self.logger.info("Resumed in-flight claims", count=len(resumed))
        return resumed

    # =========================================================================
    # DRIVER
    # =========================================================================

    async def advance(self, claim_id: str) -> ClaimState:
        """
        Run the claim until it is terminal or pending review.

        Safe to call concurrently for the same claim: only the lease holder
        calls collaborators, the others wait for it and return the same
        outcome.
        """
        owner = DataUtils.generate_token()
        start_time = DateTimeUtils.utcnow()
        started = False

        with structlog.contextvars.bound_contextvars(claim_id=claim_id):
            while True:
                state = await self.store.get(claim_id)
                if state.is_stable:
                    return state

                if state.lease_held_by_other(owner, DateTimeUtils.utcnow()):
                    await asyncio.sleep(self.config.lease_poll_interval_seconds)
                    continue

                try:
                    state = await self.store.update(
                        claim_id,
                        self._lease_acquirer(owner),
                        expected_version=state.version
                    )
                except ConflictException:
                    self.metrics.record_conflict()
                    continue

                if not started:
                    started = True
                    await self._emit(WorkflowEvent.WORKFLOW_STARTED, state, status=state.status.value)

                lease = ClaimLease(claim_id, owner, state.version)
                released = None
                try:
                    state, error = await self._drive(state, lease)
                except ConflictException as e:
                    self.metrics.record_conflict()
                    self.logger.warning("Stale transition rejected, re-reading claim", error=e.message)
                    continue
                finally:
                    released = await self._release_lease(claim_id, owner)

                state = released or state
                self.metrics.record_workflow(
                    state.status.value,
                    (DateTimeUtils.utcnow() - start_time).total_seconds()
                )
                await self._emit_outcome(state, DateTimeUtils.elapsed_ms(start_time))

                if error is not None:
                    raise error
                return state

    async def _drive(self, state: ClaimState, lease: ClaimLease) -> Tuple[ClaimState, Optional[BaseException]]:
        while state.status not in STABLE_STATUSES:
            stage = state.status.value
            await self._emit(WorkflowEvent.WORKFLOW_STAGE_STARTED, state, stage=stage)

            outcome = await self._run_stage(state, lease)
            state = await self._commit(state, outcome, lease)
            await self._emit(
                WorkflowEvent.WORKFLOW_STAGE_COMPLETED,
                state,
                stage=stage,
                to_status=state.status.value
            )

            if state.status == ClaimStatus.COMPLETED:
                self._schedule_indexing(state)
            if outcome.error is not None:
                return state, outcome.error

        return state, None

    async def _run_stage(self, state: ClaimState, lease: ClaimLease) -> StageOutcome:
        stage = state.status.value
        handler = self._stage_handlers[state.status]

        try:
            return await handler(state, lease)

        except CollaboratorFailure as e:
            self.logger.warning("Collaborator reported failure", stage=stage, error=e.message)
            return StageOutcome(
                ClaimStatus.FAILED,
                f"{stage} failed: {e.message}",
                {"last_error": e.message}
            )

        except InfrastructureFailure as e:
            self.error_tracker.track_error(e, service="claims_orchestrator", context={"claim_id": state.id, "stage": stage})
            return StageOutcome(
                ClaimStatus.FAILED,
                f"Infrastructure failure during {stage}: {e.message}",
                {"last_error": e.message},
                error=e
            )

        except ServiceException:
            raise

        except Exception as e:
            self.error_tracker.track_error(e, service="claims_orchestrator", context={"claim_id": state.id, "stage": stage})
            return StageOutcome(
                ClaimStatus.FAILED,
                f"Unexpected error during {stage}: {e}",
                {"last_error": str(e)},
                error=e
            )

    async def _commit(self, state: ClaimState, outcome: StageOutcome, lease: ClaimLease) -> ClaimState:
        lease_ttl = self.config.lease_ttl_seconds

        def _transition(working: ClaimState):
            if working.lease_owner != lease.owner:
                raise ConflictException(
                    f"Lease on claim {working.id} was lost",
                    {"claim_id": working.id}
                )
            for name, value in outcome.changes.items():
                setattr(working, name, _detached(value))
            if outcome.to_status == ClaimStatus.PENDING_REVIEW:
                working.review_decision = None
            record_transition(working, outcome.to_status, outcome.reason)
            working.lease_expires_at = DateTimeUtils.seconds_from_now(lease_ttl)

        committed = await self.store.update(
            state.id,
            _transition,
            expected_status=state.status,
            expected_version=lease.version
        )
        lease.version = committed.version

        self.metrics.record_transition(state.status.value, committed.status.value)
        audit_logger.log_system_event(
            "claim_transition",
            outcome.reason,
            severity="warning" if committed.status == ClaimStatus.FAILED else "info",
            details={
                "claim_id": committed.id,
                "from_status": state.status.value,
                "to_status": committed.status.value,
                "correction_attempts": committed.correction_attempts,
            }
        )
        self.logger.info(
            "Claim status transition",
            from_status=state.status.value,
            to_status=committed.status.value,
            reason=outcome.reason
        )
        await self._emit_transition(state.status, committed, outcome.reason)
        return committed

    def _lease_acquirer(self, owner: str):
        lease_ttl = self.config.lease_ttl_seconds

        def _acquire(working: ClaimState):
            now = DateTimeUtils.utcnow()
            if working.lease_held_by_other(owner, now):
                raise ConflictException(
                    f"Claim {working.id} is being processed by another driver",
                    {"claim_id": working.id}
                )
            working.lease_owner = owner
            working.lease_expires_at = DateTimeUtils.seconds_from_now(lease_ttl)

        return _acquire

    async def _refresh_lease(self, lease: ClaimLease):
        """Extend the lease before a collaborator call; raises ConflictException once it was taken over"""
        lease_ttl = self.config.lease_ttl_seconds

        def _refresh(working: ClaimState):
            if working.lease_owner != lease.owner:
                raise ConflictException(
                    f"Lease on claim {working.id} was lost",
                    {"claim_id": working.id}
                )
            working.lease_expires_at = DateTimeUtils.seconds_from_now(lease_ttl)

        refreshed = await self.store.update(lease.claim_id, _refresh)
        lease.version = refreshed.version

    async def _release_lease(self, claim_id: str, owner: str) -> Optional[ClaimState]:
        def _release(working: ClaimState):
            if working.lease_owner != owner:
                raise ConflictException(f"Lease on claim {working.id} not held", {"claim_id": working.id})
            working.lease_owner = None
            working.lease_expires_at = None

        try:
            return await self.store.update(claim_id, _release)
        except ConflictException:
            return None

    # =========================================================================
    # STAGES
    # =========================================================================

    async def _stage_received(self, state: ClaimState, lease: ClaimLease) -> StageOutcome:
        return StageOutcome(ClaimStatus.PARSING, "Claim accepted for processing")

    async def _stage_parsing(self, state: ClaimState, lease: ClaimLease) -> StageOutcome:
        if state.document is None:
            return StageOutcome(ClaimStatus.EXTRACTING, "Pre-extracted payload supplied; parsing skipped")

        parser = self.agents.parser
        if parser is None:
            return StageOutcome(ClaimStatus.EXTRACTING, "Document accepted without page decoding")

        parsed = await self._call_agent(parser, lambda: parser.parse(state.document), lease)
        return StageOutcome(
            ClaimStatus.EXTRACTING,
            f"Document decoded into {parsed.page_count} page(s)",
            {"parsed_document": parsed}
        )

    async def _stage_extracting(self, state: ClaimState, lease: ClaimLease) -> StageOutcome:
        changes: Dict[str, Any] = {}
        scores = state.confidence_scores

        if state.extracted_claim is None:
            if state.document is None:
                raise CollaboratorFailure("No document or extracted payload to process")

            extraction = self.agents.extraction
            extracted_claim, scores = await self._call_agent(
                extraction,
                lambda: extraction.extract(state.document, state.parsed_document),
                lease
            )
            changes = {"extracted_claim": extracted_claim, "confidence_scores": scores}

        if scores is None:
            scores = ConfidenceScores.uniform(1.0)
            changes["confidence_scores"] = scores

        attempts = state.correction_attempts
        action = self.policy.decide(scores, attempts)
        overall = scores.overall

        if action == ConfidenceAction.ACCEPT:
            reason = f"Confidence {overall:.2f} meets accept threshold {self.policy.accept_threshold:.2f}"
            return StageOutcome(ClaimStatus.VALIDATING, reason, changes)

        if action == ConfidenceAction.RETRY:
            reason = (
                f"Confidence {overall:.2f} below accept threshold {self.policy.accept_threshold:.2f}; "
                f"correction attempt {attempts + 1} of {self.policy.max_attempts}"
            )
            return StageOutcome(ClaimStatus.CORRECTING, reason, changes)

        if action == ConfidenceAction.REVIEW:
            reason = f"Correction attempts exhausted; validating at confidence {overall:.2f}"
            return StageOutcome(ClaimStatus.VALIDATING, reason, changes)

        reason = (
            f"Confidence {overall:.2f} below review threshold {self.policy.review_threshold:.2f} "
            f"with no correction attempts left"
        )
        changes["last_error"] = reason
        return StageOutcome(ClaimStatus.FAILED, reason, changes)

    async def _stage_correcting(self, state: ClaimState, lease: ClaimLease) -> StageOutcome:
        attempts = state.correction_attempts
        if not self.policy.can_attempt_correction(attempts):
            # Reached when the attempt limit was lowered while the claim sat in correcting
            scores = state.confidence_scores or ConfidenceScores.uniform(1.0)
            if self.policy.decide(scores, attempts) == ConfidenceAction.FAIL:
                reason = (
                    f"Max correction attempts ({self.policy.max_attempts}) reached; confidence "
                    f"{scores.overall:.2f} below review threshold {self.policy.review_threshold:.2f}"
                )
                return StageOutcome(ClaimStatus.FAILED, reason, {"last_error": reason})
            return StageOutcome(
                ClaimStatus.PENDING_REVIEW,
                f"Max correction attempts ({self.policy.max_attempts}) reached"
            )

        low_confidence_fields = (
            state.confidence_scores.low_confidence_fields(self.policy.accept_threshold)
            if state.confidence_scores else []
        )

        correction = self.agents.correction
        revised_claim, scores = await self._call_agent(
            correction,
            lambda: correction.correct(state.extracted_claim, list(state.validation_errors), low_confidence_fields),
            lease
        )

        attempts += 1
        changes = {
            "extracted_claim": revised_claim,
            "confidence_scores": scores,
            "correction_attempts": attempts,
        }
        overall = scores.overall

        if self.policy.is_acceptable(scores) or self.policy.can_attempt_correction(attempts):
            return StageOutcome(
                ClaimStatus.EXTRACTING,
                f"Correction attempt {attempts} returned confidence {overall:.2f}; re-checking",
                changes
            )

        if self.policy.decide(scores, attempts) == ConfidenceAction.REVIEW:
            return StageOutcome(
                ClaimStatus.PENDING_REVIEW,
                f"Max correction attempts ({attempts}) reached; confidence {overall:.2f} "
                f"below accept threshold {self.policy.accept_threshold:.2f}",
                changes
            )

        reason = (
            f"Max correction attempts ({attempts}) reached; confidence {overall:.2f} "
            f"below review threshold {self.policy.review_threshold:.2f}"
        )
        changes["last_error"] = reason
        return StageOutcome(ClaimStatus.FAILED, reason, changes)

    async def _stage_validating(self, state: ClaimState, lease: ClaimLease) -> StageOutcome:
        if state.extracted_claim is None:
            raise CollaboratorFailure("No extracted claim to validate")

        validation = self.agents.validation
        errors = list(await self._call_agent(
            validation,
            lambda: validation.validate(state.extracted_claim),
            lease
        ) or [])
        changes = {"validation_errors": errors}
        attempts = state.correction_attempts

        if not errors:
            if state.confidence_scores is not None and not self.policy.is_acceptable(state.confidence_scores):
                return StageOutcome(
                    ClaimStatus.PENDING_REVIEW,
                    f"Validation passed but confidence {state.confidence_scores.overall:.2f} "
                    f"remains below accept threshold {self.policy.accept_threshold:.2f}",
                    changes
                )
            return StageOutcome(ClaimStatus.ADJUDICATING, "Validation passed", changes)

        if self.policy.can_attempt_correction(attempts):
            return StageOutcome(
                ClaimStatus.CORRECTING,
                f"{len(errors)} validation error(s); correction attempt {attempts + 1} of {self.policy.max_attempts}",
                changes
            )

        return StageOutcome(
            ClaimStatus.PENDING_REVIEW,
            f"{len(errors)} validation error(s) persist after {attempts} correction attempt(s)",
            changes
        )

    async def _stage_adjudicating(self, state: ClaimState, lease: ClaimLease) -> StageOutcome:
        if state.extracted_claim is None:
            raise CollaboratorFailure("No extracted claim to adjudicate")

        adjudication = self.agents.adjudication
        result = await self._call_agent(
            adjudication,
            lambda: adjudication.adjudicate(state.extracted_claim),
            lease
        )
        return StageOutcome(
            ClaimStatus.COMPLETED,
            f"Adjudication {result.status.value}",
            {"adjudication_result": result}
        )

    # =========================================================================
    # COLLABORATOR CALLS
    # =========================================================================

    async def _call_agent(
        self,
        agent: BaseAgent,
        call: Callable[[], Awaitable[Any]],
        lease: Optional[ClaimLease] = None
    ) -> Any:
        """
        Await a collaborator with a timeout, retrying infrastructure failures.

        When a lease is given it is refreshed before every attempt, so a slow
        retry sequence never lets a second driver take the claim over.
        """
        agent_name = agent.agent_name
        timeout = self.config.agent_timeout_seconds
        attempt = 0

        while True:
            attempt += 1
            if lease is not None:
                await self._refresh_lease(lease)

            start = time.monotonic()
            try:
                async with performance_monitor.monitor_operation(agent_name, attempt=attempt):
                    result = await asyncio.wait_for(call(), timeout=timeout)

            except (InfrastructureFailure, asyncio.TimeoutError) as e:
                self.metrics.record_agent_execution(agent_name, time.monotonic() - start, success=False)
                reason = e.message if isinstance(e, InfrastructureFailure) else f"timed out after {timeout}s"

                if attempt > self.config.agent_max_retries:
                    raise InfrastructureFailure(
                        f"{agent_name} unavailable after {attempt} attempt(s): {reason}",
                        agent=agent_name
                    ) from e

                self.error_tracker.track_error(
                    e,
                    service="claims_orchestrator",
                    severity="warning",
                    context={"agent": agent_name, "attempt": attempt, "reason": reason}
                )
                await asyncio.sleep(self.config.agent_retry_delay_seconds * attempt)
                continue

            except Exception:
                self.metrics.record_agent_execution(agent_name, time.monotonic() - start, success=False)
                raise

            self.metrics.record_agent_execution(agent_name, time.monotonic() - start, success=True)
            return result

    def _schedule_indexing(self, state: ClaimState):
        if not self.config.enable_indexing or self.agents.indexing is None:
            return
        if state.extracted_claim is None:
            return

        task = asyncio.create_task(self._index_claim(state.id, state.extracted_claim))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _index_claim(self, claim_id: str, extracted_claim: ExtractedClaim):
        indexing = self.agents.indexing
        try:
            await self._call_agent(indexing, lambda: indexing.index(extracted_claim))
            self.logger.info("Claim indexed", claim_id=claim_id)
        except Exception as e:
            self.metrics.record_indexing_failure()
            self.logger.warning("RAG indexing failed", claim_id=claim_id, error=str(e))

    # =========================================================================
    # SCHEDULING HELPERS
    # =========================================================================

    async def _enqueue(
        self,
        document: Union[ClaimDocument, ExtractedClaim],
        priority: ClaimPriority,
        claim_id: Optional[str],
        confidence_scores: Optional[ConfidenceScores]
    ):
        priority = ClaimPriority(priority)

        if isinstance(document, ExtractedClaim):
            state, created = await self.store.create_if_absent(
                claim_id or document.id,
                priority,
                extracted_claim=document,
                confidence_scores=confidence_scores or ConfidenceScores.uniform(1.0),
            )
        elif isinstance(document, ClaimDocument):
            state, created = await self.store.create_if_absent(
                claim_id or DataUtils.claim_id_from_content(document.content),
                priority,
                document=document,
            )
        else:
            raise TypeError(f"Unsupported submission type: {type(document).__name__}")

        if created:
            await self._emit(WorkflowEvent.STATE_CREATED, state, priority=state.priority.value)

        future = await self._schedule(state.id, state.priority)
        return state.id, future

    async def _schedule(self, claim_id: str, priority: ClaimPriority) -> asyncio.Future:
        return await self.pool.submit(priority, lambda: self.advance(claim_id))

    @staticmethod
    async def _wait(future: asyncio.Future, timeout: Optional[float]) -> ClaimState:
        if timeout is None:
            return await future
        return await asyncio.wait_for(future, timeout=timeout)

    async def _collect_result(
        self,
        claim_id: str,
        future: asyncio.Future,
        start_time,
        timeout: Optional[float]
    ) -> ProcessingResult:
        try:
            state = await self._wait(future, timeout)
        except InfrastructureFailure as e:
            state = await self.store.get(claim_id)
            return ProcessingResult.from_state(state, DateTimeUtils.elapsed_ms(start_time), error=e.message)

        return ProcessingResult.from_state(state, DateTimeUtils.elapsed_ms(start_time))

    def _background_result_logger(self, claim_id: str):
        def _log_result(future: asyncio.Future):
            if future.cancelled():
                self.logger.info("Claim processing cancelled", claim_id=claim_id)
                return
            error = future.exception()
            if error is not None:
                self.logger.error("Background claim processing failed", claim_id=claim_id, error=str(error))
                return
            self.logger.info("Claim reached stable point", claim_id=claim_id, status=future.result().status.value)

        return _log_result
