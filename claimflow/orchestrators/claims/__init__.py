"""
Claims Workflow Orchestrator
State machine, state store, confidence policy and scheduling for claim processing
"""

from claimflow.orchestrators.claims.confidence_policy import ConfidenceAction, ConfidencePolicy, decide
from claimflow.orchestrators.claims.state_machine import (
    TRANSITIONS, TERMINAL_STATUSES, STABLE_STATUSES, is_valid_transition, record_transition
)
from claimflow.orchestrators.claims.state_store import (
    ClaimStateStore, InMemoryClaimStateStore, RedisClaimStateStore, create_state_store
)
from claimflow.orchestrators.claims.statistics import StatisticsAggregator
from claimflow.orchestrators.claims.worker_pool import PriorityWorkerPool, PRIORITY_RANK
from claimflow.orchestrators.claims.workflow_orchestrator import ClaimsWorkflowOrchestrator

__all__ = [
    'ConfidenceAction',
    'ConfidencePolicy',
    'decide',
    'TRANSITIONS',
    'TERMINAL_STATUSES',
    'STABLE_STATUSES',
    'is_valid_transition',
    'record_transition',
    'ClaimStateStore',
    'InMemoryClaimStateStore',
    'RedisClaimStateStore',
    'create_state_store',
    'StatisticsAggregator',
    'PriorityWorkerPool',
    'PRIORITY_RANK',
    'ClaimsWorkflowOrchestrator'
]
