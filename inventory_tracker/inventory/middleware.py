from inventory.sessions import get_session_key_stores


class KeyStoreMiddleware:
    """Attach the session's ``KeyStore`` to authenticated requests as ``request.key_store``."""

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request.key_store = None
        session_key = None
        user = getattr(request, 'user', None)
        session = getattr(request, 'session', None)
        if getattr(user, 'is_authenticated', False) and session is not None:
            if session.session_key is None:
                session.save()
            session_key = session.session_key
            request.key_store = get_session_key_stores().get(session_key)

        response = self.get_response(request)

        # Flushed or rotated during the request: the old session's keys go with it.
        if session_key is not None and request.session.session_key != session_key:
            get_session_key_stores().discard(session_key)
        return response
