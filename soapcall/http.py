import logging, requests

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
USER_AGENT = 'soapcall/0.1.0'

class HttpTransport(object):
    """Sends envelopes with a requests Session.

    ``options`` are passed to ``Session.request`` as keyword arguments
    (``cert``, ``verify``, ``timeout``, ``proxies``...).
    """
    def __init__(self, session=None, timeout=None):
        self.session = session or requests.Session()
        self.timeout = timeout

    def request(self, url, data, callback, headers=None, options=None):
        options = dict(options or {})
        options.setdefault('timeout', self.timeout if self.timeout is not None else DEFAULT_TIMEOUT)
        headers = dict(headers or {})
        headers.setdefault('User-Agent', USER_AGENT)
        method = 'POST' if data is not None else 'GET'
        if isinstance(data, str):
            data = data.encode('utf-8')

        log.debug('%s %s', method, url)
        try:
            response = self.session.request(method, url, data=data, headers=headers, **options)
            # SOAP 1.1 faults come back with a 500 and an envelope worth parsing
            if response.status_code != 500:
                response.raise_for_status()
        except requests.RequestException as error:
            log.debug('%s %s failed: %s', method, url, error)
            callback(error, None, None)
            return
        log.debug('%s %s -> %s', method, url, response.status_code)
        callback(None, response, response.content)

    def __repr__(self):
        return 'HttpTransport(timeout={!r})'.format(self.timeout)

_default_transport = None

def request(url, data, callback, headers=None, options=None):
    global _default_transport
    if _default_transport is None:
        _default_transport = HttpTransport()
    _default_transport.request(url, data, callback, headers, options)
