"""
Prometheus metrics: orders created, lifecycle transitions (applied / rejected),
dispatch outcomes, event feed publishing, ready orders waiting for a driver.
"""
from prometheus_client import Counter, Gauge, generate_latest

orders_created_total = Counter(
    "orders_created_total",
    "Total orders placed by customers",
)

# Lifecycle engine
transitions_total = Counter(
    "order_transitions_total",
    "Total order lifecycle transitions committed",
    ["action"],
)
transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total transition attempts rejected because the state machine has no such edge",
    ["current_status", "action"],
)

# Dispatch matcher: assigned | no_driver | driver_race | order_race
dispatch_attempts_total = Counter(
    "dispatch_attempts_total",
    "Total driver assignment attempts by outcome",
    ["outcome"],
)
ready_orders_waiting = Gauge(
    "ready_orders_waiting",
    "Orders in ready_for_pickup with no driver after the last matching pass",
)

# Event feed
events_published_total = Counter(
    "order_events_published_total",
    "Total order lifecycle events published to the event feed",
    ["event_type"],
)
events_publish_failed_total = Counter(
    "order_events_publish_failed_total",
    "Total order lifecycle events that could not be published",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
