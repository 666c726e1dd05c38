"""
Claim State Store
Concurrency-safe claim state storage with versioned compare-and-set updates

Every update bumps ``version``. Callers pass the status and/or version they
read; a mismatch raises ConflictException so racing drivers re-read instead
of overwriting each other.
"""

import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import WatchError
import structlog

from ...shared.config import StoreConfig
from ...shared.exceptions import ConflictException, NotFoundException, InvalidTransitionException
from ...shared.schemas import (
    ClaimState, ClaimStateFilter, ClaimPriority, ClaimStatus, ClaimDocument,
    ExtractedClaim, ConfidenceScores
)
from ...shared.utils import DateTimeUtils
from .state_machine import initial_history_entry

logger = structlog.get_logger(__name__)

# Mutators run synchronously against a private copy; they must not await.
StateMutator = Callable[[ClaimState], Optional[ClaimState]]


class ClaimStateStore(ABC):
    """Contract shared by every claim state backend"""

    async def create(
        self,
        claim_id: str,
        priority: ClaimPriority = ClaimPriority.NORMAL,
        document: Optional[ClaimDocument] = None,
        extracted_claim: Optional[ExtractedClaim] = None,
        confidence_scores: Optional[ConfidenceScores] = None
    ) -> ClaimState:
        """Create a claim in RECEIVED, or return the existing one untouched"""
        state, _ = await self.create_if_absent(claim_id, priority, document, extracted_claim, confidence_scores)
        return state

    @abstractmethod
    async def create_if_absent(
        self,
        claim_id: str,
        priority: ClaimPriority = ClaimPriority.NORMAL,
        document: Optional[ClaimDocument] = None,
        extracted_claim: Optional[ExtractedClaim] = None,
        confidence_scores: Optional[ConfidenceScores] = None
    ) -> Tuple[ClaimState, bool]:
        """Like create, also reporting whether this call created the claim"""

    @abstractmethod
    async def get(self, claim_id: str) -> ClaimState:
        """Return a copy of the stored state; raises NotFoundException"""

    @abstractmethod
    async def update(
        self,
        claim_id: str,
        mutator: StateMutator,
        expected_status: Optional[ClaimStatus] = None,
        expected_version: Optional[int] = None
    ) -> ClaimState:
        """Atomically apply mutator to the claim"""

    @abstractmethod
    async def list(self, state_filter: Optional[ClaimStateFilter] = None) -> List[ClaimState]:
        """Snapshot of matching claims"""

    @staticmethod
    def _new_state(
        claim_id: str,
        priority: ClaimPriority,
        document: Optional[ClaimDocument],
        extracted_claim: Optional[ExtractedClaim],
        confidence_scores: Optional[ConfidenceScores]
    ) -> ClaimState:
        now = DateTimeUtils.utcnow()
        return ClaimState(
            id=claim_id,
            status=ClaimStatus.RECEIVED,
            priority=priority,
            document=document,
            extracted_claim=extracted_claim,
            confidence_scores=confidence_scores,
            history=[initial_history_entry()],
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _apply(
        current: ClaimState,
        mutator: StateMutator,
        expected_status: Optional[ClaimStatus],
        expected_version: Optional[int]
    ) -> ClaimState:
        """Check preconditions, run the mutator on a copy and verify history"""
        if expected_status is not None and current.status != expected_status:
            raise ConflictException(
                f"Claim {current.id} is {current.status.value}, expected {ClaimStatus(expected_status).value}",
                {"claim_id": current.id, "current_status": current.status.value},
            )
        if expected_version is not None and current.version != expected_version:
            raise ConflictException(
                f"Claim {current.id} is at version {current.version}, expected {expected_version}",
                {"claim_id": current.id, "current_version": current.version},
            )

        working = current.model_copy(deep=True)
        updated = mutator(working) or working

        history_length = len(current.history)
        if updated.history[:history_length] != current.history:
            raise InvalidTransitionException(current.status.value, updated.status.value)
        if updated.status != current.status:
            appended = updated.history[history_length:]
            if len(appended) != 1 or appended[0].to_status != updated.status:
                raise InvalidTransitionException(current.status.value, updated.status.value)

        updated.id = current.id
        updated.created_at = current.created_at
        updated.version = current.version + 1
        updated.updated_at = DateTimeUtils.utcnow()
        return updated


class InMemoryClaimStateStore(ClaimStateStore):
    """Process-local store; states are copied on every read and write"""

    def __init__(self):
        self._states: Dict[str, ClaimState] = {}
        self._lock = threading.Lock()

    async def create_if_absent(
        self,
        claim_id: str,
        priority: ClaimPriority = ClaimPriority.NORMAL,
        document: Optional[ClaimDocument] = None,
        extracted_claim: Optional[ExtractedClaim] = None,
        confidence_scores: Optional[ConfidenceScores] = None
    ) -> Tuple[ClaimState, bool]:
        with self._lock:
            existing = self._states.get(claim_id)
            if existing is not None:
                return existing.model_copy(deep=True), False

            state = self._new_state(claim_id, priority, document, extracted_claim, confidence_scores)
            self._states[claim_id] = state.model_copy(deep=True)
            logger.info("Claim state created", claim_id=claim_id, priority=priority.value)
            return state, True

    async def get(self, claim_id: str) -> ClaimState:
        with self._lock:
            state = self._states.get(claim_id)
            if state is None:
                raise NotFoundException("Claim", claim_id)
            return state.model_copy(deep=True)

    async def update(
        self,
        claim_id: str,
        mutator: StateMutator,
        expected_status: Optional[ClaimStatus] = None,
        expected_version: Optional[int] = None
    ) -> ClaimState:
        with self._lock:
            current = self._states.get(claim_id)
            if current is None:
                raise NotFoundException("Claim", claim_id)

            updated = self._apply(current, mutator, expected_status, expected_version)
            self._states[claim_id] = updated
            return updated.model_copy(deep=True)

    async def list(self, state_filter: Optional[ClaimStateFilter] = None) -> List[ClaimState]:
        with self._lock:
            states = list(self._states.values())
        if state_filter is not None:
            states = [state for state in states if state_filter.matches(state)]
        return [state.model_copy(deep=True) for state in states]


class RedisClaimStateStore(ClaimStateStore):
    """
    Durable store: one JSON document per claim plus an id index set.

    Updates use WATCH/MULTI so a concurrent writer aborts the transaction;
    the aborted update re-reads and re-checks its preconditions.
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "claimflow"):
        self.redis_client = redis_client
        self.key_prefix = key_prefix

    def _claim_key(self, claim_id: str) -> str:
        return f"{self.key_prefix}:claim:{claim_id}"

    @property
    def _index_key(self) -> str:
        return f"{self.key_prefix}:claims"

    async def create_if_absent(
        self,
        claim_id: str,
        priority: ClaimPriority = ClaimPriority.NORMAL,
        document: Optional[ClaimDocument] = None,
        extracted_claim: Optional[ExtractedClaim] = None,
        confidence_scores: Optional[ConfidenceScores] = None
    ) -> Tuple[ClaimState, bool]:
        state = self._new_state(claim_id, priority, document, extracted_claim, confidence_scores)

        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.set(self._claim_key(claim_id), state.model_dump_json(), nx=True)
            pipe.sadd(self._index_key, claim_id)
            created, _ = await pipe.execute()

        if not created:
            return await self.get(claim_id), False

        logger.info("Claim state created", claim_id=claim_id, priority=priority.value, backend="redis")
        return state, True

    async def get(self, claim_id: str) -> ClaimState:
        raw = await self.redis_client.get(self._claim_key(claim_id))
        if raw is None:
            raise NotFoundException("Claim", claim_id)
        return ClaimState.model_validate_json(raw)

    async def update(
        self,
        claim_id: str,
        mutator: StateMutator,
        expected_status: Optional[ClaimStatus] = None,
        expected_version: Optional[int] = None
    ) -> ClaimState:
        key = self._claim_key(claim_id)

        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        raise NotFoundException("Claim", claim_id)

                    current = ClaimState.model_validate_json(raw)
                    updated = self._apply(current, mutator, expected_status, expected_version)

                    pipe.multi()
                    pipe.set(key, updated.model_dump_json())
                    await pipe.execute()
                    return updated

                except WatchError:
                    logger.debug("Concurrent write detected, re-reading claim", claim_id=claim_id)
                    continue

                finally:
                    await pipe.reset()

    async def list(self, state_filter: Optional[ClaimStateFilter] = None) -> List[ClaimState]:
        claim_ids = sorted(await self.redis_client.smembers(self._index_key))
        if not claim_ids:
            return []

        keys = [
            self._claim_key(claim_id.decode() if isinstance(claim_id, bytes) else claim_id)
            for claim_id in claim_ids
        ]
        raws = await self.redis_client.mget(keys)

        states = [ClaimState.model_validate_json(raw) for raw in raws if raw is not None]
        if state_filter is not None:
            states = [state for state in states if state_filter.matches(state)]
        return states


def create_state_store(config: StoreConfig, redis_client: Optional[redis.Redis] = None) -> ClaimStateStore:
    """Build the configured backend"""
    if config.backend == "redis":
        if redis_client is None:
            pool = redis.ConnectionPool.from_url(
                config.redis_url,
                max_connections=config.redis_max_connections,
                decode_responses=True
            )
            redis_client = redis.Redis(connection_pool=pool)
        return RedisClaimStateStore(redis_client, key_prefix=config.key_prefix)

    return InMemoryClaimStateStore()
