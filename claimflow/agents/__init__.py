"""
Claim Processing Agents
Collaborator contracts awaited by the workflow orchestrator
"""

from claimflow.agents.base import (
    BaseAgent, AgentRegistry, ExtractionOutcome, DocumentParser, ExtractionAgent,
    ValidationAgent, CorrectionAgent, AdjudicationAgent, IndexingAgent
)

__all__ = [
    'BaseAgent',
    'AgentRegistry',
    'ExtractionOutcome',
    'DocumentParser',
    'ExtractionAgent',
    'ValidationAgent',
    'CorrectionAgent',
    'AdjudicationAgent',
    'IndexingAgent'
]
