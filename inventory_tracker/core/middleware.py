import logging
import uuid
from contextvars import ContextVar
from ipaddress import ip_address

# Per-request data made available to log records
_request_context: ContextVar[dict] = ContextVar('request_context', default={})


def _normalize_ip(candidate):
    """Return a cleaned IP address string or ``None`` if invalid."""
    if not candidate:
        return None
    value = candidate.strip().strip('"')
    if value.startswith('::ffff:'):
        value = value.split('::ffff:')[-1]
    try:
        return str(ip_address(value))
    except ValueError:
        return None


def get_client_ip(request):
    """Return the first valid forwarded address, falling back to REMOTE_ADDR."""
    meta = getattr(request, 'META', {}) or {}
    forwarded_for = meta.get('HTTP_X_FORWARDED_FOR')
    if forwarded_for:
        for part in forwarded_for.split(','):
            cleaned = _normalize_ip(part)
            if cleaned:
                return cleaned
    return _normalize_ip(meta.get('REMOTE_ADDR')) or 'unknown'


def get_request_context():
    return _request_context.get()


class RequestContextFilter(logging.Filter):
    """Copy the current request context onto log records."""

    def filter(self, record):
        context = _request_context.get()
        record.request_id = context.get('request_id')
        record.user_id = context.get('user_id', 'anonymous')
        record.ip = context.get('ip', 'unknown')
        if context.get('path'):
            record.path = context['path']
        if context.get('method'):
            record.http_method = context['method']
        return True


class LoggingMiddleware:
    """Populate the request context used by ``RequestContextFilter``."""

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        user = getattr(request, 'user', None)
        if getattr(user, 'is_authenticated', False):
            user_id = str(getattr(user, 'id', getattr(user, 'pk', 'anonymous')))
        else:
            user_id = 'anonymous'

        request.request_id = uuid.uuid4().hex
        token = _request_context.set({
            'request_id': request.request_id,
            'user_id': user_id,
            'ip': get_client_ip(request),
            'path': request.path,
            'method': request.method,
        })
        try:
            response = self.get_response(request)
        finally:
            _request_context.reset(token)

        response['X-Request-ID'] = request.request_id
        return response
