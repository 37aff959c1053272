"""
Middleware for request correlation, audit logging and request metrics
"""
import contextvars
import logging
import uuid

from django.utils import timezone
from django.utils.deprecation import MiddlewareMixin
from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')

_request_id = contextvars.ContextVar('request_id', default='-')


class RequestIdLogFilter(logging.Filter):
    """Expose the current request id to log formatters as %(request_id)s."""

    def filter(self, record):
        record.request_id = _request_id.get()
        return True


class RequestIdMiddleware(MiddlewareMixin):
    """Attach a request id for correlation across logs."""

    HEADER = 'X-Request-ID'

    def process_request(self, request):
        rid = request.META.get('HTTP_X_REQUEST_ID')
        if not rid:
            rid = str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = _request_id.set(rid)
        return None

    def process_response(self, request, response):
        rid = getattr(request, 'request_id', None)
        if rid:
            response.headers.setdefault(self.HEADER, rid)
        token = getattr(request, '_request_id_token', None)
        if token is not None:
            _request_id.reset(token)
        return response


class AuditLoggingMiddleware(MiddlewareMixin):
    """
    Log every API call that mutates contract or signature state
    """

    EXCLUDED_PATHS = [
        '/api/v1/health/',
        '/static/',
        '/media/',
    ]

    def should_log(self, path):
        return path.startswith('/api/') and not any(path.startswith(p) for p in self.EXCLUDED_PATHS)

    def process_request(self, request):
        if self.should_log(request.path):
            request._audit_log_data = {
                'method': request.method,
                'path': request.path,
                'remote_addr': self.get_client_ip(request),
                'timestamp': timezone.now(),
            }
        return None

    def process_response(self, request, response):
        audit_data = getattr(request, '_audit_log_data', None)
        if audit_data is None:
            return response

        user = getattr(request, 'user', None)
        user_id = user.pk if user is not None and user.is_authenticated else None
        audit_logger.info(
            f"API_CALL|method={audit_data['method']}|endpoint={audit_data['path']}|"
            f"status={response.status_code}|user_id={user_id}|ip={audit_data['remote_addr']}"
        )
        if response.status_code >= 400:
            logger.warning(
                f"API Error: {audit_data['method']} {audit_data['path']} - "
                f"Status: {response.status_code} - User: {user_id}"
            )
        return response

    @staticmethod
    def get_client_ip(request):
        """Extract client IP address from request"""
        x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
        if x_forwarded_for:
            return x_forwarded_for.split(',')[0]
        return request.META.get('REMOTE_ADDR')


API_REQUEST_COUNT = Counter(
    'lease_api_requests_total',
    'Total API requests',
    ['method', 'status'],
)
API_REQUEST_LATENCY = Histogram(
    'lease_api_request_latency_seconds',
    'API request latency (seconds)',
    ['method'],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)


class MetricsMiddleware(MiddlewareMixin):
    """Prometheus request metrics for /api/* routes."""

    def process_request(self, request):
        request._metrics_start_ts = timezone.now()
        return None

    def process_response(self, request, response):
        if not getattr(request, 'path', '').startswith('/api/'):
            return response

        start = getattr(request, '_metrics_start_ts', None)
        if start is None:
            return response
        duration = (timezone.now() - start).total_seconds()

        # Paths carry contract ids; label by method and status only.
        method = getattr(request, 'method', 'GET')
        API_REQUEST_COUNT.labels(method=method, status=str(response.status_code)).inc()
        API_REQUEST_LATENCY.labels(method=method).observe(duration)
        return response
