"""Medication reminder scheduling core (recurrence, escalation, durable queue).

This package is intended to run inside Celery worker processes. Schedule
mutations elsewhere in the system call into ``ReminderScheduler`` to
reschedule, and the adherence recorder calls its acknowledgement hook.
"""
