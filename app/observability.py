from prometheus_client import Counter

NOTIFICATIONS_SENT = Counter(
    "approval_notifications_sent_total",
    "Approval notifications delivered",
    ["channel"],
)
NOTIFICATIONS_FAILED = Counter(
    "approval_notifications_failed_total",
    "Approval notification delivery attempts that failed",
    ["channel"],
)
NOTIFICATIONS_ABANDONED = Counter(
    "approval_notifications_abandoned_total",
    "Approval notifications that exhausted their retries",
)
ESCALATIONS = Counter(
    "approval_escalations_total",
    "Approval level escalations",
    ["escalation_type"],
)
SCHEDULER_CYCLES = Counter(
    "approval_scheduler_cycles_total",
    "Approval scheduler cycles by outcome",
    ["outcome"],
)
