"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from fastapi import Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

# Auth metrics
login_attempts = Counter(
    'login_attempts_total',
    'Total login attempts',
    ['result']  # success, bad_credentials, locked, unverified
)

account_lockouts = Counter(
    'account_lockouts_total',
    'Accounts locked after repeated failed logins'
)

session_operations = Counter(
    'session_operations_total',
    'Session lifecycle operations',
    ['operation']  # create, revoke, revoke_all
)

# Payment metrics
payment_attempts = Counter(
    'payment_attempts_total',
    'Payment attempts through the gateway',
    ['outcome']  # succeeded, requires_action, declined, error
)

gateway_latency = Histogram(
    'payment_gateway_latency_seconds',
    'Payment gateway call latency',
    ['operation'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

order_transition_retries = Counter(
    'order_transition_retries_total',
    'Order status updates retried due to version conflicts'
)

webhook_events = Counter(
    'webhook_events_total',
    'Gateway webhook deliveries',
    ['event_type', 'result']  # handled, ignored, rejected
)

# Email metrics
email_sends = Counter(
    'email_sends_total',
    'Outbound email attempts',
    ['result']  # sent, failed
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_login_attempt(result: str):
    """Record login attempt. Result: success, bad_credentials, locked, unverified"""
    login_attempts.labels(result=result).inc()


def record_session_operation(operation: str):
    session_operations.labels(operation=operation).inc()


def record_payment_attempt(outcome: str):
    payment_attempts.labels(outcome=outcome).inc()


def record_webhook_event(event_type: str, result: str):
    webhook_events.labels(event_type=event_type, result=result).inc()


def record_email_send(sent: bool):
    email_sends.labels(result="sent" if sent else "failed").inc()
