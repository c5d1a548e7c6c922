import lxml.etree, lxml.builder, base64, datetime, hashlib, os

WSSE_NS = 'http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd'
WSU_NS = 'http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd'
SOAP_ENVELOPE_NS = 'http://schemas.xmlsoap.org/soap/envelope/'
PASSWORD_TYPES = {
    'PasswordText': 'http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-username-token-profile-1.0#PasswordText',
    'PasswordDigest': 'http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-username-token-profile-1.0#PasswordDigest',
}
BASE64_ENCODING = 'http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-soap-message-security-1.0#Base64Binary'

class Security(object):
    """Hooks a client calls on every request.

    Subclasses override any of the three; the client also accepts objects
    that only implement some of them.
    """
    def add_headers(self, headers):
        pass

    def add_options(self, options):
        pass

    def to_xml(self):
        return ''

class BasicAuthSecurity(Security):
    def __init__(self, username, password, defaults=None):
        self.username = username
        self.password = password
        self.defaults = dict(defaults or {})

    def add_headers(self, headers):
        credentials = '{}:{}'.format(self.username, self.password).encode('utf-8')
        headers['Authorization'] = 'Basic ' + base64.b64encode(credentials).decode('ascii')

    def add_options(self, options):
        options.update(self.defaults)

class ClientSSLSecurity(Security):
    def __init__(self, cert, key=None, ca=None, defaults=None):
        self.cert = cert
        self.key = key
        self.ca = ca
        self.defaults = dict(defaults or {})

    def add_options(self, options):
        options.update(self.defaults)
        options['cert'] = (self.cert, self.key) if self.key else self.cert
        if self.ca:
            options['verify'] = self.ca

class WSSecurity(Security):
    def __init__(self, username, password, password_type='PasswordText', has_timestamp=True, has_nonce=True, ttl=600):
        if password_type not in PASSWORD_TYPES:
            raise ValueError('password_type must be one of {}'.format(', '.join(PASSWORD_TYPES)))
        self.username = username
        self.password = password
        self.password_type = password_type
        self.has_timestamp = has_timestamp
        self.has_nonce = has_nonce
        self.ttl = ttl

    @staticmethod
    def _now():
        return datetime.datetime.now(datetime.timezone.utc)

    @staticmethod
    def _nonce():
        return os.urandom(16)

    @staticmethod
    def _timestamp(moment):
        return moment.strftime('%Y-%m-%dT%H:%M:%SZ')

    def password_digest(self, nonce, created):
        digest = hashlib.sha1(nonce + created.encode('utf-8') + self.password.encode('utf-8')).digest()
        return base64.b64encode(digest).decode('ascii')

    def to_xml(self):
        wsse = lxml.builder.ElementMaker(namespace=WSSE_NS, nsmap={'wsse': WSSE_NS, 'wsu': WSU_NS, 'soap': SOAP_ENVELOPE_NS})
        wsu = lxml.builder.ElementMaker(namespace=WSU_NS)
        now = self._now()
        created = self._timestamp(now)
        token_id = now.strftime('%Y%m%d%H%M%S')

        security = wsse.Security()
        security.set('{%s}mustUnderstand' % SOAP_ENVELOPE_NS, '1')
        if self.has_timestamp:
            expires = self._timestamp(now + datetime.timedelta(seconds=self.ttl))
            security.append(wsu.Timestamp(wsu.Created(created), wsu.Expires(expires),
                                          {'{%s}Id' % WSU_NS: 'Timestamp-' + token_id}))

        token = wsse.UsernameToken(wsse.Username(self.username),
                                   {'{%s}Id' % WSU_NS: 'SecurityToken-' + token_id})
        nonce = self._nonce() if self.has_nonce else b''
        if self.password_type == 'PasswordDigest':
            password = self.password_digest(nonce, created)
        else:
            password = self.password
        token.append(wsse.Password(password, Type=PASSWORD_TYPES[self.password_type]))
        if self.has_nonce:
            token.append(wsse.Nonce(base64.b64encode(nonce).decode('ascii'), EncodingType=BASE64_ENCODING))
        token.append(wsu.Created(created))
        security.append(token)
        return lxml.etree.tostring(security, encoding='unicode')
