"""
ClaimFlow - Healthcare Claim Workflow Orchestration
Per-claim state machine driving extraction, correction, validation,
human review and adjudication over pluggable collaborators
"""

from claimflow.agents.base import (
    AgentRegistry, DocumentParser, ExtractionAgent, ValidationAgent,
    CorrectionAgent, AdjudicationAgent, IndexingAgent, ExtractionOutcome
)
from claimflow.orchestrators.claims import (
    ClaimsWorkflowOrchestrator, InMemoryClaimStateStore, RedisClaimStateStore,
    create_state_store
)
from claimflow.shared.config import AppConfig, WorkflowConfig, StoreConfig

__version__ = "1.0.0"

__all__ = [
    'AgentRegistry',
    'DocumentParser',
    'ExtractionAgent',
    'ValidationAgent',
    'CorrectionAgent',
    'AdjudicationAgent',
    'IndexingAgent',
    'ExtractionOutcome',
    'ClaimsWorkflowOrchestrator',
    'InMemoryClaimStateStore',
    'RedisClaimStateStore',
    'create_state_store',
    'AppConfig',
    'WorkflowConfig',
    'StoreConfig',
]
