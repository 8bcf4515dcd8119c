"""
Prometheus metrics for subdesk.

HTTP counters are recorded per blueprint endpoint (``orders.create_order``,
``accounts.delete_account``...); the slot ledger and the order coordinator
increment the domain counters. ``/metrics`` is unauthenticated and meant for
the internal network only.

Under Gunicorn set PROMETHEUS_MULTIPROC_DIR so every worker's samples are
aggregated at scrape time.
"""
import os
import time
from flask import Blueprint, Response, request, g
from prometheus_client import (
    CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, generate_latest, multiprocess
)

metrics_bp = Blueprint('metrics', __name__)

MULTIPROCESS_MODE = os.environ.get('PROMETHEUS_MULTIPROC_DIR') is not None

# Order handling is dominated by row-lock waits, so the buckets reach the lock timeout
LATENCY_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

http_requests_total = Counter(
    'subdesk_http_requests_total',
    'HTTP requests by endpoint and status',
    ['method', 'endpoint', 'http_status']
)

http_request_duration_seconds = Histogram(
    'subdesk_http_request_duration_seconds',
    'HTTP request latency by endpoint',
    ['method', 'endpoint'],
    buckets=LATENCY_BUCKETS
)

http_requests_in_flight = Gauge(
    'subdesk_http_requests_in_flight',
    'HTTP requests being processed',
    multiprocess_mode='livesum'
)

slot_operations_total = Counter(
    'subdesk_slot_operations_total',
    'Slot reservations and releases by outcome',
    ['operation', 'outcome']
)

orders_total = Counter(
    'subdesk_orders_total',
    'Order create/update/delete attempts by outcome',
    ['operation', 'outcome']
)


def _scrape_registry():
    if not MULTIPROCESS_MODE:
        return REGISTRY
    registry = CollectorRegistry()
    multiprocess.MultiProcessCollector(registry)
    return registry


def setup_metrics_instrumentation(app):
    """Record count, latency and in-flight gauge for every request of ``app``."""

    @app.before_request
    def start_request_timer():
        g.request_started_at = time.perf_counter()
        http_requests_in_flight.inc()

    @app.after_request
    def record_request(response):
        started_at = g.pop('request_started_at', None)
        if started_at is None:
            return response

        endpoint = request.endpoint or 'unmatched'
        http_request_duration_seconds.labels(request.method, endpoint).observe(time.perf_counter() - started_at)
        http_requests_total.labels(request.method, endpoint, response.status_code).inc()
        http_requests_in_flight.dec()
        return response


@metrics_bp.route('/metrics')
def metrics():
    return Response(generate_latest(_scrape_registry()), mimetype=CONTENT_TYPE_LATEST)
