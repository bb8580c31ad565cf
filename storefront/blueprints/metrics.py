"""
Prometheus metrics.

HTTP traffic is measured by request hooks; the order engine increments the
storefront_* counters at checkout, webhook reconciliation, fulfillment and
refund time. /metrics is unauthenticated and meant for the internal network.
"""
import os
import time

from flask import Blueprint, Response, g, request
from prometheus_client import (
    CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, generate_latest, multiprocess,
)

metrics_bp = Blueprint('metrics', __name__)

# Under gunicorn every worker writes to PROMETHEUS_MULTIPROC_DIR and the
# scrape aggregates them; metrics then must not bind to a registry.
if os.environ.get('PROMETHEUS_MULTIPROC_DIR'):
    registry = CollectorRegistry()
    multiprocess.MultiProcessCollector(registry)
    _bind = None
else:
    registry = REGISTRY
    _bind = REGISTRY

http_requests_total = Counter(
    'http_requests_total', 'Total HTTP requests',
    ['method', 'endpoint', 'http_status'], registry=_bind,
)
http_request_duration_seconds = Histogram(
    'http_request_duration_seconds', 'HTTP request latency in seconds',
    ['method', 'endpoint'], registry=_bind,
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)
http_requests_in_flight = Gauge(
    'http_requests_in_flight', 'Requests currently being served', registry=_bind,
)

orders_checked_out_total = Counter(
    'storefront_orders_checked_out_total', 'Carts and direct orders frozen into pending orders',
    ['source'], registry=_bind,
)
webhook_events_total = Counter(
    'storefront_webhook_events_total', 'Gateway webhook deliveries by outcome',
    ['gateway', 'outcome'], registry=_bind,
)
fulfillments_total = Counter(
    'storefront_fulfillments_total', 'Fulfillment attempts by outcome',
    ['outcome'], registry=_bind,
)
refunds_total = Counter(
    'storefront_refunds_total', 'Refund attempts by outcome',
    ['outcome'], registry=_bind,
)


def setup_metrics_instrumentation(app):
    """Time every request and count it by endpoint and status."""

    @app.before_request
    def _start_timer():
        g._metrics_started = time.perf_counter()
        g._metrics_in_flight = True
        http_requests_in_flight.inc()

    @app.after_request
    def _record_request(response):
        started = g.pop('_metrics_started', None)
        if started is not None:
            endpoint = request.endpoint or 'unknown'
            http_request_duration_seconds.labels(request.method, endpoint).observe(time.perf_counter() - started)
            http_requests_total.labels(request.method, endpoint, response.status_code).inc()
        return response

    @app.teardown_request
    def _leave_flight(exc):
        if g.pop('_metrics_in_flight', False):
            http_requests_in_flight.dec()


@metrics_bp.route('/metrics')
def metrics():
    return Response(generate_latest(registry), mimetype=CONTENT_TYPE_LATEST)
