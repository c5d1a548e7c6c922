import collections, collections.abc, logging

from soapcall import http
from soapcall.wsdl import WSDL

log = logging.getLogger(__name__)

SOAP_ENVELOPE_NS = 'http://schemas.xmlsoap.org/soap/envelope/'
SOAP_ENCODING_NS = 'http://schemas.xmlsoap.org/soap/encoding/'

class InvalidMessageDefinition(ValueError):
    pass

def find_key(mapping, value):
    for k, v in mapping.items():
        if v == value:
            return k
    return None

class Client(object):
    def __init__(self, wsdl, endpoint=None, transport=None):
        self.wsdl = wsdl
        self.endpoint = endpoint
        self.transport = transport or http
        self.soap_headers = []
        self.security = None
        self.soap_action = None
        # advisory only: overwritten by every call, including concurrent ones
        self.last_request = None
        self._initialize_services(endpoint)

    @classmethod
    def from_wsdl(cls, wsdls, endpoint=None, transport=None):
        return cls(WSDL.load(wsdls), endpoint=endpoint, transport=transport)

    def __str__(self):
        parts = ['SOAP client, available actions:']
        parts.extend(sorted(self.operations))
        return '\n  '.join(parts)

    def __repr__(self):
        return 'Client(wsdl={!r}, endpoint={!r})'.format(self.wsdl, self.endpoint)

    def add_soap_header(self, soap_header, name=None, namespace=None, xmlns=None):
        if isinstance(soap_header, bytes):
            soap_header = soap_header.decode('utf-8')
        elif isinstance(soap_header, collections.abc.Mapping):
            soap_header = self.wsdl.object_to_xml(soap_header, name, namespace, xmlns)
        self.soap_headers.append(soap_header)

    def set_endpoint(self, endpoint):
        self.endpoint = endpoint
        self._initialize_services(endpoint)

    def describe(self):
        return self.wsdl.describe_services()

    def set_security(self, security):
        self.security = security

    def set_soap_action(self, soap_action):
        self.soap_action = soap_action

    def operation(self, name, service=None, port=None):
        if service is None and port is None:
            return self.operations[name]
        return self.services[service][port][name]

    def call(self, name, args=None, callback=None, soap_action=None, service=None, port=None):
        """Invoke an operation by name.

        ``service`` and ``port`` select an operation from the service tree,
        otherwise the first operation registered under ``name`` is used.
        Without a callback the result is returned and errors are raised.
        """
        return self.operation(name, service, port)(args, callback, soap_action=soap_action)

    def _initialize_services(self, endpoint):
        services = collections.OrderedDict()
        operations = collections.OrderedDict()
        for name, service in self.wsdl.definitions.services.items():
            services[name] = self._define_service(service, endpoint, operations)
        self.services = services
        self.operations = operations

    def _define_service(self, service, endpoint, operations):
        definition = collections.OrderedDict()
        for name, port in service.ports.items():
            definition[name] = self._define_port(port, endpoint or port.location, operations)
        return definition

    def _define_port(self, port, location, operations):
        definition = collections.OrderedDict()
        for name, method in port.binding.methods.items():
            definition[name] = SoapCall(self, method, location)
            # first service/port to define a name keeps the shortcut
            operations.setdefault(name, definition[name])
        return definition

    def _build_message(self, method, args):
        name = method.name
        input_ = method.input
        style = method.style
        definitions = self.wsdl.definitions
        encoding = ''

        if isinstance(args, str):
            message = args
        elif input_.parts is not None:
            if style and style != 'rpc':
                raise InvalidMessageDefinition('invalid message definition for document style binding')
            ns = definitions.target_namespace
            alias = find_key(definitions.xmlns, ns)
            message = self.wsdl.object_to_rpc_xml(name, args, alias, ns)
            if method.input_soap == 'encoded':
                encoding = 'soap:encodingStyle="{}" '.format(SOAP_ENCODING_NS)
        else:
            if style and style != 'document':
                raise InvalidMessageDefinition('invalid message definition for rpc style binding')
            message = self.wsdl.object_to_document_xml(input_.name, args, input_.target_ns_alias,
                                                       input_.target_namespace)
        return message, encoding

    def _invoke(self, method, args, location, callback, soap_action=None):
        name = method.name
        output = method.output
        security = self.security
        soap_action = soap_action or self.soap_action or method.soap_action or ''
        headers = {
            'SOAPAction': '"{}"'.format(soap_action),
            'Content-Type': 'text/xml; charset=utf-8',
        }
        options = {}

        if security is not None and hasattr(security, 'add_headers'):
            security.add_headers(headers)
        if security is not None and hasattr(security, 'add_options'):
            security.add_options(options)

        message, encoding = self._build_message(method, args)

        security_xml = ''
        if security is not None and hasattr(security, 'to_xml'):
            security_xml = security.to_xml() or ''

        xml = ('<soap:Envelope '
               'xmlns:soap="{ns}" '
               '{encoding}{xmlns}>'
               '<soap:Header>{headers}{security}</soap:Header>'
               '<soap:Body>{message}</soap:Body>'
               '</soap:Envelope>').format(ns=SOAP_ENVELOPE_NS,
                                          encoding=encoding,
                                          xmlns=self.wsdl.xmlns_in_envelope,
                                          headers='\n'.join(self.soap_headers),
                                          security=security_xml,
                                          message=message)

        self.last_request = xml
        log.debug('Calling %s at %s', name, location)
        log.debug('Request envelope: %s', xml)

        def on_response(error, response=None, body=None):
            if error:
                callback(error, None, None)
                return
            try:
                obj = self.wsdl.xml_to_object(body)
            except Exception as parse_error:
                log.debug('Could not read response of %s: %s', name, parse_error)
                callback(parse_error, response, body)
                return

            result_body = obj.get('Body') or {}
            if not isinstance(result_body, dict):
                result_body = {}
            if output is not None and output.name in result_body:
                result = result_body[output.name]
            else:
                # rpc/literal responses may be named after the operation, not the output message
                result = result_body.get(name + 'Response')
            callback(None, result, body)

        self.transport.request(location, xml, on_response, headers, options)

class SoapCall(object):
    """An operation bound to a client and an endpoint."""
    def __init__(self, client, method, url):
        self.client = client
        self.method = method
        self.url = url

    @property
    def name(self):
        return self.method.name

    def __call__(self, args=None, callback=None, soap_action=None):
        if callable(args) and callback is None:
            callback, args = args, None
        if args is None:
            args = {}
        if callback is not None:
            self.client._invoke(self.method, args, self.url, callback, soap_action)
            return None

        outcome = []
        self.client._invoke(self.method, args, self.url, lambda *reply: outcome.append(reply), soap_action)
        if not outcome:
            raise RuntimeError('transport did not complete {} synchronously; pass a callback'.format(self.name))
        error, result, _ = outcome[0]
        if error is not None:
            raise error
        return result

    def __repr__(self):
        return 'SoapCall(name={!r}, url={!r})'.format(self.name, self.url)
