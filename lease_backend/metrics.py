from __future__ import annotations

import os

from django.http import HttpRequest, HttpResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

CONTRACT_TRANSITIONS = Counter(
    'lease_contract_transitions_total',
    'Contract status transitions written by the state machine',
    ['from_status', 'to_status'],
)
SIGNATURE_DISPATCHES = Counter(
    'lease_signature_dispatch_total',
    'Per-signer dispatch attempts by outcome',
    ['signer_type', 'outcome'],
)
CONTRACT_EXPORTS = Counter(
    'lease_contract_exports_total',
    'Contract PDF export jobs by final status',
    ['status'],
)


def _is_authorized(request: HttpRequest) -> bool:
    token = (os.getenv('METRICS_TOKEN') or '').strip()
    if not token:
        return True

    header = (request.headers.get('X-Metrics-Token') or '').strip()
    return header == token


def metrics_view(request: HttpRequest) -> HttpResponse:
    """Prometheus scrape endpoint.

    Set `METRICS_TOKEN` to require `X-Metrics-Token` header.
    """

    if not _is_authorized(request):
        return HttpResponse('unauthorized', status=401, content_type='text/plain; version=0.0.4')

    payload = generate_latest()
    return HttpResponse(payload, content_type=CONTENT_TYPE_LATEST)
