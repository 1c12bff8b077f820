"""In-process registry: at most one live orchestrator per subscription id."""
from __future__ import annotations

import logging
from typing import Callable, Dict, List

from subscription_issuance.exceptions import PreconditionFailed
from subscription_issuance.orchestrator import IssuanceOrchestrator
from subscription_issuance.session import IssuancePhase

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Hands out one IssuanceOrchestrator per subscription id.

    Uniqueness across processes is the service's job; this only keeps two
    local callers from racing separate sessions for the same subscription.
    """

    def __init__(self, factory: Callable[[], IssuanceOrchestrator]):
        self._factory = factory
        self._sessions: Dict[str, IssuanceOrchestrator] = {}

    def acquire(self, subscription_id: str) -> IssuanceOrchestrator:
        orchestrator = self._sessions.get(subscription_id)
        if orchestrator is None:
            orchestrator = self._factory()
            self._sessions[subscription_id] = orchestrator
            logger.debug(f"Created orchestrator for subscription {subscription_id}")
        return orchestrator

    def release(self, subscription_id: str) -> bool:
        """Drop the orchestrator once its session is finished. Returns False if none was held."""
        orchestrator = self._sessions.get(subscription_id)
        if orchestrator is None:
            return False
        phase = orchestrator.phase
        if phase is not IssuancePhase.IDLE and not orchestrator.session.is_terminal:
            raise PreconditionFailed(
                f"Subscription {subscription_id} still has a live session",
                actual=phase.value,
            )
        if orchestrator.busy:
            raise PreconditionFailed(f"Subscription {subscription_id} has an operation in flight")
        del self._sessions[subscription_id]
        return True

    def __contains__(self, subscription_id: str) -> bool:
        return subscription_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def active(self) -> List[str]:
        """Subscription ids whose sessions are neither idle nor finished."""
        return [
            subscription_id
            for subscription_id, orchestrator in self._sessions.items()
            if orchestrator.phase is not IssuancePhase.IDLE and not orchestrator.session.is_terminal
        ]
