from prometheus_client import Counter


reminders_scheduled_total = Counter(
    "medremind_reminders_scheduled_total",
    "Total FIRE_REMINDER tasks enqueued",
)

reminders_fired_total = Counter(
    "medremind_reminders_fired_total",
    "Total reminders fired by workers",
)

reminders_stale_skipped_total = Counter(
    "medremind_reminders_stale_skipped_total",
    "Reminders not enqueued or not fired because their time had passed",
)

escalations_advanced_total = Counter(
    "medremind_escalations_advanced_total",
    "Escalations moved to a higher level",
    ["level"],
)

escalations_resolved_total = Counter(
    "medremind_escalations_resolved_total",
    "Escalations resolved, by reason",
    ["reason"],
)

caregiver_notifications_total = Counter(
    "medremind_caregiver_notifications_total",
    "Notifications queued for caregivers",
)

dispatch_success_total = Counter(
    "medremind_dispatch_success_total",
    "Channel deliveries accepted by the dispatcher",
    ["channel"],
)

dispatch_failed_total = Counter(
    "medremind_dispatch_failed_total",
    "Channel deliveries rejected by the dispatcher",
    ["channel"],
)

task_failures_total = Counter(
    "medremind_task_failures_total",
    "Tasks that failed permanently after exhausting retries",
    ["task"],
)
