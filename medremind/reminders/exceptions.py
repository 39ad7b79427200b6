class ReminderError(Exception):
    """Base class for reminder scheduling errors"""


class ScheduleConfigError(ReminderError):
    """Schedule configuration rejected at creation/edit time"""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = errors or []


class DeliveryError(ReminderError):
    """No channel accepted a notification; the delivery task will retry"""


class ExternalCallTimeout(ReminderError):
    """A collaborator (dispatcher, adherence gate) did not answer in time"""
