"""
Claim Statistics
Read-only views over the state store: status counts and the review queue
"""

from typing import List

from ...shared.schemas import (
    ClaimStatistics, ClaimStatus, ClaimPriority, ClaimStateFilter, ReviewQueueItem
)
from .state_store import ClaimStateStore
from .worker_pool import PRIORITY_RANK


class StatisticsAggregator:
    """Counts may observe a claim mid-transition; not for correctness decisions"""

    def __init__(self, store: ClaimStateStore):
        self.store = store

    async def get_statistics(self) -> ClaimStatistics:
        states = await self.store.list()

        by_status = {status: 0 for status in ClaimStatus}
        by_priority = {priority: 0 for priority in ClaimPriority}
        total_attempts = 0

        for state in states:
            by_status[state.status] += 1
            by_priority[state.priority] += 1
            total_attempts += state.correction_attempts

        return ClaimStatistics(
            total=len(states),
            by_status=by_status,
            by_priority=by_priority,
            average_correction_attempts=total_attempts / len(states) if states else 0.0,
        )

    async def get_review_queue(
        self,
        limit: int = 50,
        offset: int = 0,
        low_confidence_threshold: float = 1.0
    ) -> List[ReviewQueueItem]:
        """Claims awaiting review, most urgent first, oldest first within a priority"""
        states = await self.store.list(ClaimStateFilter(status=ClaimStatus.PENDING_REVIEW))

        items = []
        for state in states:
            entry = next(
                (h for h in reversed(state.history) if h.to_status == ClaimStatus.PENDING_REVIEW),
                None
            )
            items.append(ReviewQueueItem(
                claim_id=state.id,
                priority=state.priority,
                reason=entry.reason if entry else "",
                added_at=entry.timestamp if entry else state.updated_at,
                low_confidence_fields=(
                    state.confidence_scores.low_confidence_fields(low_confidence_threshold)
                    if state.confidence_scores else []
                ),
                validation_error_count=len(state.validation_errors),
            ))

        items.sort(key=lambda item: (PRIORITY_RANK[item.priority], item.added_at))
        return items[offset:offset + limit]
