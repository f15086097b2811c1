"""Prometheus metrics for bids, auction outcomes, refunds, escrow and payment callbacks"""

from prometheus_client import Counter, Histogram

# Bidding
bid_counter = Counter(
    "settlement_bids_total",
    "Bid attempts",
    ["outcome"],  # accepted | rejected
)

auction_end_counter = Counter(
    "settlement_auctions_ended_total",
    "Auctions ended",
    ["outcome"],  # winner | no_winner | failed | already_ended
)

# Money movement
deposit_refund_counter = Counter(
    "settlement_deposit_refunds_total",
    "Deposit refund attempts",
    ["outcome"],  # refunded | REFUND_FAILED | RETRY_NEEDED | skipped
)

escrow_transition_counter = Counter(
    "settlement_escrow_transitions_total",
    "Escrow status transitions",
    ["status"],
)

payment_callback_counter = Counter(
    "settlement_payment_callbacks_total",
    "Payment callbacks received",
    ["outcome"],  # applied | duplicate | rejected
)

# Payment provider
gateway_latency_histogram = Histogram(
    "payment_gateway_latency_seconds",
    "Payment provider response time",
    ["operation"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Notifications
notifier_failure_counter = Counter(
    "notifier_failures_total",
    "Failed notification deliveries",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)
