"""
Intent Tracker

Validated state transitions for every intent the relayer has observed.
"""

import logging
from typing import Dict, Optional, Set

from .models import IntentState, IntentTransition, InvalidTransitionError, ObservedIntent


class IntentTracker:
    """
    Tracks observed intents through

        Detected -> AwaitingConfirmations -> Submitted -> {Approved, RejectedOrFailed}

    A failed intent can be resubmitted by an operator. Intents that were not
    submitted yet can be cancelled.
    """

    TRANSITIONS: Dict[IntentState, Set[IntentState]] = {
        IntentState.DETECTED: {
            IntentState.AWAITING_CONFIRMATIONS,
            IntentState.CANCELLED,
        },
        IntentState.AWAITING_CONFIRMATIONS: {
            IntentState.SUBMITTED,
            IntentState.CANCELLED,
        },
        IntentState.SUBMITTED: {
            IntentState.APPROVED,
            IntentState.REJECTED_OR_FAILED,
        },
        IntentState.REJECTED_OR_FAILED: {
            IntentState.SUBMITTED,  # Operator retry
        },
        IntentState.APPROVED: set(),
        IntentState.CANCELLED: set(),
    }

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._intents: Dict[str, ObservedIntent] = {}
        self._by_command: Dict[str, str] = {}

    def track(self, intent: ObservedIntent) -> ObservedIntent:
        existing = self._intents.get(intent.key)
        if existing is not None:
            return existing
        self._intents[intent.key] = intent
        self._by_command[intent.command_id] = intent.key
        return intent

    def get(self, key: str) -> Optional[ObservedIntent]:
        return self._intents.get(key)

    def get_by_command(self, command_id: str) -> Optional[ObservedIntent]:
        key = self._by_command.get(command_id)
        return self._intents.get(key) if key else None

    def can_transition(self, intent: ObservedIntent, to_state: IntentState) -> bool:
        return to_state in self.TRANSITIONS.get(intent.state, set())

    def transition(
        self,
        intent: ObservedIntent,
        to_state: IntentState,
        reason: Optional[str] = None,
    ) -> IntentTransition:
        from_state = intent.state
        if not self.can_transition(intent, to_state):
            raise InvalidTransitionError(
                from_state=from_state,
                to_state=to_state,
                message=f"Invalid transition from {from_state.value} to {to_state.value}. "
                        f"Allowed: {[s.value for s in self.TRANSITIONS.get(from_state, set())]}",
            )

        record = IntentTransition(from_state=from_state, to_state=to_state, reason=reason)
        intent.state = to_state
        intent.history.append(record)
        self.logger.info(
            f"Intent {intent.command_id}: {from_state.value} -> {to_state.value}"
            f"{f' ({reason})' if reason else ''}"
        )
        return record

    def forget(self, key: str) -> Optional[ObservedIntent]:
        intent = self._intents.pop(key, None)
        if intent is not None:
            self._by_command.pop(intent.command_id, None)
        return intent

    def counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in IntentState}
        for intent in self._intents.values():
            counts[intent.state.value] += 1
        return counts

    def forget_finished(self, keep: int = 10_000) -> int:
        """Drop the oldest terminal intents beyond ``keep``."""
        finished = [
            i for i in self._intents.values()
            if i.state in (IntentState.APPROVED, IntentState.CANCELLED)
        ]
        excess = len(finished) - keep
        if excess <= 0:
            return 0
        finished.sort(key=lambda i: i.detected_at)
        for intent in finished[:excess]:
            self._intents.pop(intent.key, None)
            self._by_command.pop(intent.command_id, None)
        return excess

    def __len__(self) -> int:
        return len(self._intents)
