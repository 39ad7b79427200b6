"""
Default adherence gate for deployments whose adherence recorder pushes
acknowledgements through ``ReminderScheduler.on_acknowledged``
"""
from datetime import datetime

from .escalation import EscalationStateMachine
from .escalation_models import ResolutionReason
from .interfaces import AdherenceGate


class EscalationStateGate(AdherenceGate):
    """Treats a dose as acknowledged once its escalation was resolved by a user action"""

    def __init__(self, state_machine: EscalationStateMachine):
        self.state_machine = state_machine

    def was_acknowledged(self, schedule_id: str, dose_at: datetime) -> bool:
        state = self.state_machine.get_state(schedule_id, dose_at)
        return bool(state and state.is_resolved and state.resolution != ResolutionReason.TIMEOUT)

    def acknowledgement_reason(self, schedule_id: str, dose_at: datetime) -> ResolutionReason:
        state = self.state_machine.get_state(schedule_id, dose_at)
        if state and state.resolution:
            return state.resolution
        return ResolutionReason.TAKEN
