"""
Confidence Policy
Maps confidence scores and correction attempts to the next workflow action
"""

from enum import Enum

from ...shared.config import WorkflowConfig
from ...shared.schemas import ConfidenceScores


class ConfidenceAction(str, Enum):
    ACCEPT = "accept"
    RETRY = "retry"
    REVIEW = "review"
    FAIL = "fail"


def decide(
    confidence_scores: ConfidenceScores,
    attempts: int,
    max_attempts: int,
    accept_threshold: float,
    review_threshold: float
) -> ConfidenceAction:
    """
    Pure decision function.

    - overall >= accept_threshold                 -> ACCEPT
    - below accept and attempts < max_attempts    -> RETRY (another correction)
    - attempts exhausted, overall >= review       -> REVIEW (human review)
    - attempts exhausted, overall < review        -> FAIL
    """
    overall = confidence_scores.overall
    if overall >= accept_threshold:
        return ConfidenceAction.ACCEPT
    if attempts < max_attempts:
        return ConfidenceAction.RETRY
    if overall >= review_threshold:
        return ConfidenceAction.REVIEW
    return ConfidenceAction.FAIL


class ConfidencePolicy:
    """decide() bound to configured thresholds"""

    def __init__(self, config: WorkflowConfig):
        self.accept_threshold = config.accept_threshold
        self.review_threshold = config.review_threshold
        self.max_attempts = config.max_correction_attempts

    def decide(self, confidence_scores: ConfidenceScores, attempts: int) -> ConfidenceAction:
        return decide(
            confidence_scores,
            attempts,
            self.max_attempts,
            self.accept_threshold,
            self.review_threshold,
        )

    def can_attempt_correction(self, attempts: int) -> bool:
        return attempts < self.max_attempts

    def is_acceptable(self, confidence_scores: ConfidenceScores) -> bool:
        return confidence_scores.overall >= self.accept_threshold
