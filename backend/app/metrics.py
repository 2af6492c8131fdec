"""Prometheus metrics for the booking-to-settlement pipeline."""

from prometheus_client import Counter, Histogram

# Booking lifecycle counters
BOOKINGS_CREATED = Counter(
    "studiobook_bookings_created_total",
    "Total bookings created",
    ["provider_kind"],
)
BOOKINGS_CANCELLED = Counter(
    "studiobook_bookings_cancelled_total",
    "Total bookings cancelled",
    ["cancelled_by", "refund_tier"],
)
BOOKINGS_COMPLETED = Counter(
    "studiobook_bookings_completed_total",
    "Total bookings completed",
)
RESERVATIONS_EXPIRED = Counter(
    "studiobook_reservations_expired_total",
    "Unpaid reservations deleted by the expiry sweep",
)
SLOT_CONFLICTS = Counter(
    "studiobook_slot_conflicts_total",
    "Booking requests rejected because the window was taken",
    ["stage"],
)

# Gateway
WEBHOOK_EVENTS = Counter(
    "studiobook_payhere_webhook_events_total",
    "PayHere notifications by mapped event and outcome",
    ["event", "outcome"],
)
GATEWAY_CALL_DURATION = Histogram(
    "studiobook_gateway_call_duration_seconds",
    "Duration of payment gateway adapter operations",
    ["operation"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Settlement and ledger
SETTLEMENTS = Counter(
    "studiobook_settlements_total",
    "Settlement attempts by outcome",
    ["outcome"],
)
WALLET_TRANSACTIONS = Counter(
    "studiobook_wallet_transactions_total",
    "Ledger entries written",
    ["type", "status"],
)
WITHDRAWALS_PROCESSED = Counter(
    "studiobook_withdrawals_processed_total",
    "Withdrawals processed by administrators",
    ["status"],
)

# Scheduler job counters
SCHEDULER_JOB_RUNS = Counter(
    "studiobook_scheduler_job_runs_total",
    "Total scheduler job executions",
    ["job_name", "status"],
)
