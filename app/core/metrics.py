"""Prometheus counters for appointment and notification activity."""

from prometheus_client import Counter

appointment_transitions = Counter(
    "appointment_transitions_total",
    "Appointment state machine events by outcome",
    ["event", "outcome"],
)

notifications_sent = Counter(
    "notifications_sent_total",
    "WebSocket notification deliveries by result",
    ["result"],
)
