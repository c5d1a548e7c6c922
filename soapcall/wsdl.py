import lxml.etree, requests, hashlib, os, decimal, dateutil.relativedelta, dateutil.parser, datetime, collections, collections.abc, re, reprlib, logging

from soapcall import http

log = logging.getLogger(__name__)

STRICT_MODE = True

class WsdlError(ValueError):
    pass

class SoapFault(Exception):
    def __init__(self, faultcode, faultstring, detail=None):
        self.faultcode = faultcode
        self.faultstring = faultstring
        self.detail = detail
        super().__init__(faultcode, faultstring, detail)

    def __str__(self):
        return '{}: {}'.format(self.faultcode, self.faultstring)

    def __repr__(self):
        return 'SoapFault(faultcode={!r}, faultstring={!r}, detail={!r})'.format(
            self.faultcode, self.faultstring, self.detail)

class OrderedSet(collections.OrderedDict):
    def add(self, key):
        self[key] = True
    def extend(self, keys):
        for key in keys:
            self.add(key)
    @reprlib.recursive_repr()
    def __repr__(self):
        return '%s(%r)' % (self.__class__.__name__, list(self.keys()))

class Message(object):
    """Input or output of an operation.

    rpc messages carry ``parts`` (part name -> xsd type); document messages
    carry the root element name and its namespace instead.
    """
    name = ''
    parts = None
    target_namespace = None
    target_ns_alias = None

    def __init__(self, name, parts=None, target_namespace=None, target_ns_alias=None):
        self.name = name
        self.parts = parts
        self.target_namespace = target_namespace
        self.target_ns_alias = target_ns_alias

    def describe(self):
        if self.parts is not None:
            return collections.OrderedDict(self.parts)
        if self.target_namespace:
            return '{%s}%s' % (self.target_namespace, self.name)
        return self.name

    def __repr__(self):
        return 'Message(name={!r}, parts={!r})'.format(self.name, self.parts)

class Method(object):
    name = ''
    input = None
    output = None
    style = None
    soap_action = ''
    input_soap = 'literal'

    def __init__(self, name, input, output=None, style=None, soap_action='', input_soap='literal'):
        self.name = name
        self.input = input
        self.output = output
        self.style = style
        self.soap_action = soap_action
        self.input_soap = input_soap

    def __repr__(self):
        return 'Method(name={!r}, style={!r}, soap_action={!r})'.format(self.name, self.style, self.soap_action)

class Binding(object):
    def __init__(self, name, style=None, methods=None):
        self.name = name
        self.style = style
        self.methods = methods if methods is not None else collections.OrderedDict()

class Port(object):
    def __init__(self, name, binding, location=None):
        self.name = name
        self.binding = binding
        self.location = location

class Service(object):
    def __init__(self, name, ports=None):
        self.name = name
        self.ports = ports if ports is not None else collections.OrderedDict()

class Definitions(object):
    def __init__(self, target_namespace=None, xmlns=None, services=None):
        self.target_namespace = target_namespace
        self.xmlns = xmlns if xmlns is not None else collections.OrderedDict()
        self.services = services if services is not None else collections.OrderedDict()

def _format_duration(v):
    fields = ('years', 'months', 'days', 'hours', 'minutes', 'seconds')
    negative = any(getattr(v, field) < 0 for field in fields)
    if negative:
        v = -v
    s = 'P{0.years}Y{0.months}M{0.days}DT{0.hours}H{0.minutes}M{0.seconds}S'.format(v)
    if negative:
        s = '-' + s
    return s

def _parse_duration(v):
    match = re.fullmatch(r'(?P<negative>-)?P'
                         r'(?P<years>\d+Y)?'
                         r'(?P<months>\d+M)?'
                         r'(?P<days>\d+D)?'
                         r'T?'
                         r'(?P<hours>\d+H)?'
                         r'(?P<minutes>\d+M)?'
                         r'(?P<seconds>\d+S)?',
                         v.strip())
    if match is None:
        raise ValueError('{} not a duration'.format(v))
    kwargs = match.groupdict('0')
    negative = kwargs.pop('negative')
    kwargs = {k: int(re.sub(r'\D', '', v)) for k, v in kwargs.items()}
    rd = dateutil.relativedelta.relativedelta(**kwargs)
    if negative != '0':
        return -rd
    return rd

def _parse_time(val):
    val = dateutil.parser.parse(val)
    return val.time().replace(tzinfo=val.tzinfo)

def _parse_bool(val):
    if val in ('false', '0'):
        return False
    elif val in ('true', '1'):
        return True
    else:
        raise ValueError('{} not a boolean'.format(val))

class SOAP(object):
    formatters = collections.defaultdict(lambda: str, {
        type(''): str,
        bool: lambda v: 'true' if v else 'false',
        type(None): lambda v: None,
        decimal.Decimal: lambda v: format(v, 'f'),
        datetime.date: datetime.date.isoformat,
        datetime.time: lambda v: re.sub(r'\.\d+(\+|Z|$)', r'\1', v.isoformat()),
        datetime.datetime: lambda v: re.sub(r'\.\d+(\+|Z|$)', r'\1', v.isoformat()),
        type(lambda: None): lambda v: SOAP.format(v()),
        dateutil.relativedelta.relativedelta: _format_duration,
        list: lambda v: ' '.join(SOAP.format(item) for item in v),
    })

    parsers = collections.defaultdict(lambda: str, {
        '{http://www.w3.org/2001/XMLSchema}string': str,
        '{http://www.w3.org/2001/XMLSchema}boolean': _parse_bool,
        '{http://www.w3.org/2001/XMLSchema}decimal': decimal.Decimal,
        '{http://www.w3.org/2001/XMLSchema}float': float,
        '{http://www.w3.org/2001/XMLSchema}double': float,
        '{http://www.w3.org/2001/XMLSchema}duration': _parse_duration,
        '{http://www.w3.org/2001/XMLSchema}dateTime': dateutil.parser.parse,
        '{http://www.w3.org/2001/XMLSchema}time': _parse_time,
        '{http://www.w3.org/2001/XMLSchema}date': lambda v: dateutil.parser.parse(v).date(),
        '{http://www.w3.org/2001/XMLSchema}integer': int,
        '{http://www.w3.org/2001/XMLSchema}byte': int,
        '{http://www.w3.org/2001/XMLSchema}short': int,
        '{http://www.w3.org/2001/XMLSchema}int': int,
        '{http://www.w3.org/2001/XMLSchema}long': int,
        '{http://www.w3.org/2001/XMLSchema}unsignedByte': int,
        '{http://www.w3.org/2001/XMLSchema}unsignedShort': int,
        '{http://www.w3.org/2001/XMLSchema}unsignedInt': int,
        '{http://www.w3.org/2001/XMLSchema}unsignedLong': int,
        '{http://www.w3.org/2001/XMLSchema}negativeInteger': int,
        '{http://www.w3.org/2001/XMLSchema}positiveInteger': int,
        '{http://www.w3.org/2001/XMLSchema}nonNegativeInteger': int,
        '{http://www.w3.org/2001/XMLSchema}nonPositiveInteger': int,
        '{http://www.w3.org/2001/XMLSchema}anyURI': str,
        '{http://www.w3.org/2001/XMLSchema}language': str,
    })

    namespaces = {'wsdl': 'http://schemas.xmlsoap.org/wsdl/',
                  'soap': 'http://schemas.xmlsoap.org/wsdl/soap/',
                  'soap12': 'http://schemas.xmlsoap.org/wsdl/soap12/',
                  'http': 'http://schemas.xmlsoap.org/wsdl/http/',
                  'mime': 'http://schemas.xmlsoap.org/wsdl/mime/',
                  'soapenc': 'http://schemas.xmlsoap.org/soap/encoding/',
                  'soapenv': 'http://schemas.xmlsoap.org/soap/envelope/',
                  'xsi': 'http://www.w3.org/2001/XMLSchema-instance',
                  'xs': 'http://www.w3.org/2001/XMLSchema',
                  }

    @staticmethod
    def format(value):
        return SOAP.formatters[type(value)](value)

    @staticmethod
    def parse(value, xsd_type):
        return SOAP.parsers[xsd_type](value)

class XML(object):
    parser = lxml.etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)

    @staticmethod
    def fromstring(text):
        if isinstance(text, str):
            text = text.encode('utf-8')
        return lxml.etree.fromstring(text, parser=XML.parser)

    @staticmethod
    def tostring(elem):
        return lxml.etree.tostring(elem, encoding='unicode')

    @staticmethod
    def findall(xmls=None, xpath=None):
        elems = OrderedSet()
        for xml in xmls:
            elems.extend(xml.xpath(xpath, namespaces=SOAP.namespaces))
        return list(elems)

    @staticmethod
    def first(xml, xpath):
        found = xml.xpath(xpath, namespaces=SOAP.namespaces)
        return found[0] if found else None

    @staticmethod
    def stripns(text):
        text = re.sub(r'^\{.*?\}', '', text, 1)
        text = re.sub(r'^.*?:', '', text, 1)
        return text

    @staticmethod
    def localname(elem):
        return lxml.etree.QName(elem).localname

    @staticmethod
    def split(qname, nsmap=None):
        """Split a ``prefix:name`` reference into (prefix, namespace, name)."""
        nsmap = nsmap if nsmap is not None else SOAP.namespaces
        if ':' in qname:
            prefix, name = qname.split(':', 1)
        else:
            prefix, name = None, qname
        return prefix, nsmap.get(prefix), name

    @staticmethod
    def type(qname, nsmap=None):
        prefix, ns, name = XML.split(qname, nsmap)
        if ns is None:
            return name
        return '{%s}%s' % (ns, name)

class WSDL(object):
    # namespaces the envelope never needs to redeclare
    ignored_namespaces = ('http://schemas.xmlsoap.org/', 'http://www.w3.org/')

    def __init__(self, definitions, source=None):
        self.definitions = definitions
        self.source = source
        self.xmlns_in_envelope = self._xmlns_map()

    @classmethod
    def load(cls, wsdls):
        return cls(WsdlParser.parse(wsdls), source=wsdls)

    def __repr__(self):
        return 'WSDL(source={!r})'.format(self.source)

    def _xmlns_map(self):
        declarations = []
        for alias, uri in self.definitions.xmlns.items():
            if not alias or alias in ('xml', 'xmlns'):
                continue
            if uri.startswith(self.ignored_namespaces):
                continue
            declarations.append('xmlns:{}="{}"'.format(alias, uri))
        return ' '.join(declarations)

    def describe_services(self):
        description = collections.OrderedDict()
        for service_name, service in self.definitions.services.items():
            ports = description[service_name] = collections.OrderedDict()
            for port_name, port in service.ports.items():
                methods = ports[port_name] = collections.OrderedDict()
                for method_name, method in port.binding.methods.items():
                    methods[method_name] = {
                        'input': method.input.describe() if method.input is not None else None,
                        'output': method.output.describe() if method.output is not None else None,
                    }
        return description

    def object_to_xml(self, obj, name=None, namespace=None, xmlns=None):
        """Serialize ``obj`` as ``<namespace:name xmlns:namespace="xmlns">``.

        Without a name every key of the mapping becomes a sibling element.
        Keys starting with ``@`` become attributes and ``#text`` the text
        content; lists repeat the element.
        """
        if name is None:
            return ''.join(self.object_to_xml(v, k, namespace, xmlns) for k, v in obj.items())
        if xmlns:
            nsmap = {namespace or None: xmlns}
        else:
            nsmap = None
        return ''.join(XML.tostring(elem) for elem in self._to_elements(name, obj, xmlns, nsmap))

    def object_to_rpc_xml(self, name, params, alias, namespace):
        if namespace:
            root = lxml.etree.Element('{%s}%s' % (namespace, name), nsmap={alias or 'ns0': namespace})
        else:
            root = lxml.etree.Element(name)
        for k, v in params.items():
            self._to_elements(k, v, parent=root)
        return XML.tostring(root)

    def object_to_document_xml(self, name, params, alias, namespace):
        return self.object_to_xml(params, name, alias, namespace)

    def _to_elements(self, name, value, namespace=None, nsmap=None, parent=None):
        if isinstance(value, (list, tuple)):
            elems = []
            for item in value:
                elems.extend(self._to_elements(name, item, namespace, nsmap, parent))
            return elems
        tag = '{%s}%s' % (namespace, name) if namespace else name
        if parent is None:
            elem = lxml.etree.Element(tag, nsmap=nsmap)
        else:
            elem = lxml.etree.SubElement(parent, tag)
        if value is None:
            elem.set('{%s}nil' % SOAP.namespaces['xsi'], 'true')
        elif isinstance(value, collections.abc.Mapping):
            for k, v in value.items():
                if k == '#text':
                    elem.text = SOAP.format(v)
                elif k.startswith('@'):
                    elem.set(k[1:], SOAP.format(v))
                else:
                    self._to_elements(k, v, namespace, parent=elem)
        else:
            elem.text = SOAP.format(value)
        return [elem]

    def xml_to_object(self, xml):
        """Parse a response into nested dicts keyed by local element names.

        An Envelope root is unwrapped to its Header/Body mapping. A Body
        holding a SOAP envelope Fault raises SoapFault.
        """
        root = XML.fromstring(xml)
        if XML.localname(root) == 'Envelope':
            fault = XML.first(root, 'soapenv:Body/soapenv:Fault')
        else:
            fault = XML.first(root, 'self::*[local-name()="Body"]/soapenv:Fault')
        if fault is not None:
            fault = self._to_object(fault)
            if not isinstance(fault, dict):
                fault = {}
            raise SoapFault(fault.get('faultcode'), fault.get('faultstring'), fault.get('detail'))

        if XML.localname(root) == 'Envelope':
            obj = self._to_object(root)
            if not isinstance(obj, dict):
                obj = {}
        else:
            obj = {XML.localname(root): self._to_object(root)}
        return obj

    def _to_object(self, elem):
        xsi = SOAP.namespaces['xsi']
        if elem.get('{%s}nil' % xsi) in ('true', '1'):
            return None
        attributes = [(k, v) for k, v in elem.attrib.items() if not k.startswith('{%s}' % xsi)]
        children = list(elem.iterchildren(tag=lxml.etree.Element))
        text = elem.text
        if not children and not attributes:
            xsd_type = elem.get('{%s}type' % xsi)
            if text is not None and xsd_type is not None:
                return SOAP.parse(text, XML.type(xsd_type, elem.nsmap))
            return text
        obj = collections.OrderedDict()
        for k, v in attributes:
            obj['@' + XML.stripns(k)] = v
        for child in children:
            name = XML.localname(child)
            value = self._to_object(child)
            if name in obj:
                if not isinstance(obj[name], list):
                    obj[name] = [obj[name]]
                obj[name].append(value)
            else:
                obj[name] = value
        if text is not None and text.strip():
            obj['#text'] = text
        return obj

class WsdlParser(object):
    cache_directory = os.path.join('/', 'tmp', 'wsdls')

    @staticmethod
    def get_wsdl_xml(wsdl):
        if isinstance(wsdl, bytes) or wsdl.lstrip().startswith('<'):
            return XML.fromstring(wsdl)
        try:
            with open(wsdl, 'rb') as f:
                return XML.fromstring(f.read())
        except FileNotFoundError:
            pass

        filename = WsdlParser.get_cache_filename(wsdl)
        if filename is not None:
            try:
                with open(filename, 'rb') as f:
                    log.debug('Reading WSDL %s from cache %s', wsdl, filename)
                    return XML.fromstring(f.read())
            except FileNotFoundError:
                pass

        log.info('Fetching WSDL %s', wsdl)
        req = requests.get(wsdl, timeout=http.DEFAULT_TIMEOUT)
        req.raise_for_status()
        raw_xml = req.content
        xml = XML.fromstring(raw_xml)
        if filename is not None:
            with open(filename, 'wb') as f:
                f.write(raw_xml)
        return xml

    @staticmethod
    def get_cache_filename(wsdl):
        if WsdlParser.cache_directory is None:
            return None
        os.makedirs(WsdlParser.cache_directory, exist_ok=True)
        filename = os.path.join(WsdlParser.cache_directory,
                                hashlib.sha1(wsdl.encode()).hexdigest())
        return filename

    @staticmethod
    def parse(wsdls):
        if isinstance(wsdls, (str, bytes)):
            wsdls = [wsdls]
        xmls = [WsdlParser.get_wsdl_xml(wsdl) for wsdl in wsdls]

        definitions = Definitions(target_namespace=xmls[0].get('targetNamespace'))
        for xml in xmls:
            for alias, uri in xml.nsmap.items():
                if alias is not None:
                    definitions.xmlns.setdefault(alias, uri)

        messages = WsdlParser.get_messages(xmls)
        port_types = WsdlParser.get_port_types(xmls)
        bindings = WsdlParser.get_bindings(xmls, messages, port_types)
        definitions.services = WsdlParser.get_services(xmls, bindings)
        return definitions

    @staticmethod
    def _missing(kind, name):
        if STRICT_MODE:
            raise WsdlError('{} {!r} is not defined'.format(kind, name))
        log.warning('%s %r is not defined, skipping', kind, name)

    @staticmethod
    def get_messages(wsdls):
        messages = collections.OrderedDict()
        for message in XML.findall(wsdls, 'wsdl:message'):
            parts = message.xpath('wsdl:part', namespaces=SOAP.namespaces)
            if len(parts) == 1 and parts[0].get('element'):
                # a single element part is a document style message
                prefix, ns, name = XML.split(parts[0].get('element'), parts[0].nsmap)
                messages[message.get('name')] = Message(name, target_namespace=ns, target_ns_alias=prefix)
            else:
                messages[message.get('name')] = Message(
                    message.get('name'),
                    parts=collections.OrderedDict((part.get('name'), part.get('type') or part.get('element'))
                                                  for part in parts))
        return messages

    @staticmethod
    def get_port_types(wsdls):
        port_types = collections.OrderedDict()
        for port_type in XML.findall(wsdls, 'wsdl:portType'):
            operations = port_types[port_type.get('name')] = collections.OrderedDict()
            for operation in port_type.xpath('wsdl:operation', namespaces=SOAP.namespaces):
                input_ = XML.first(operation, 'wsdl:input/@message')
                output = XML.first(operation, 'wsdl:output/@message')
                operations[operation.get('name')] = (input_ and XML.stripns(input_),
                                                     output and XML.stripns(output))
        return port_types

    @staticmethod
    def get_bindings(wsdls, messages, port_types):
        bindings = collections.OrderedDict()
        for binding in XML.findall(wsdls, 'wsdl:binding[soap:binding]'):
            port_type = port_types.get(XML.stripns(binding.get('type', '')))
            if port_type is None:
                WsdlParser._missing('portType', binding.get('type'))
                continue
            soap_binding = XML.first(binding, 'soap:binding')
            definition = Binding(binding.get('name'), soap_binding.get('style'))

            for operation in binding.xpath('wsdl:operation', namespaces=SOAP.namespaces):
                name = operation.get('name')
                if name not in port_type:
                    WsdlParser._missing('operation', name)
                    continue
                input_name, output_name = port_type[name]
                if input_name not in messages:
                    WsdlParser._missing('message', input_name)
                    continue
                if output_name is not None and output_name not in messages:
                    WsdlParser._missing('message', output_name)
                    continue

                soap_operation = XML.first(operation, 'soap:operation')
                soap_action = ''
                style = definition.style
                if soap_operation is not None:
                    soap_action = soap_operation.get('soapAction', '')
                    style = soap_operation.get('style', style)
                input_body = XML.first(operation, 'wsdl:input/soap:body')
                input_soap = input_body.get('use', 'literal') if input_body is not None else 'literal'

                definition.methods[name] = Method(name,
                                                  input=messages[input_name],
                                                  output=messages.get(output_name),
                                                  style=style,
                                                  soap_action=soap_action,
                                                  input_soap=input_soap)
            bindings[definition.name] = definition
        return bindings

    @staticmethod
    def get_services(wsdls, bindings):
        # SOAP 1.2 and HTTP bindings are declared but not served
        declared = {binding.get('name') for binding in XML.findall(wsdls, 'wsdl:binding')}
        services = collections.OrderedDict()
        for service in XML.findall(wsdls, 'wsdl:service'):
            definition = Service(service.get('name'))
            for port in service.xpath('wsdl:port', namespaces=SOAP.namespaces):
                binding_name = XML.stripns(port.get('binding', ''))
                binding = bindings.get(binding_name)
                if binding is None:
                    if binding_name not in declared:
                        WsdlParser._missing('binding', binding_name)
                    else:
                        log.debug('Skipping port %s: binding %s is not SOAP 1.1', port.get('name'), binding_name)
                    continue
                location = XML.first(port, 'soap:address/@location')
                definition.ports[port.get('name')] = Port(port.get('name'), binding, location and str(location))
            if definition.ports:
                services[definition.name] = definition
        return services
