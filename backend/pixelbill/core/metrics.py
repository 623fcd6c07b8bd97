"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Re-importing the module (tests, reloads) must not fail on duplicate registration
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook ingestion
webhook_events_counter = _counter(
    'pixelbill_webhook_events_total',
    'Total number of webhook deliveries received',
    ['provider', 'event_type', 'outcome']
)

# User resolution
user_resolution_counter = _counter(
    'pixelbill_user_resolution_total',
    'How ensure_user_exists resolved a user',
    ['path']
)

# Reconciliation
subscription_transitions_counter = _counter(
    'pixelbill_subscription_transitions_total',
    'Subscription state transitions applied to the store',
    ['transition']
)

# Expiry sweep
expiry_sweep_runs_counter = _counter(
    'pixelbill_expiry_sweep_runs_total',
    'Total number of expiry sweep runs',
    ['status']
)

expiry_sweep_rows_counter = _counter(
    'pixelbill_expiry_sweep_rows_total',
    'Subscriptions examined by the expiry sweep, by action taken',
    ['action']
)

# Credits
credits_consumed_counter = _counter(
    'pixelbill_credits_consumed_total',
    'Total number of credits consumed by tool runs'
)
