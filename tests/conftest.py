import collections

import pytest

from soapcall.client import Client
from soapcall.wsdl import WSDL, Binding, Definitions, Message, Method, Port, Service

CALC_NS = 'http://x/calc/ns'


class FakeTransport(object):
    """Records requests and answers with a canned reply."""

    def __init__(self, reply=(None, 'response', '<Body/>')):
        self.reply = reply
        self.requests = []

    def request(self, url, data, callback, headers=None, options=None):
        self.requests.append({'url': url, 'data': data, 'headers': headers, 'options': options})
        error, response, body = self.reply
        callback(error, response, body)

    @property
    def last(self):
        return self.requests[-1]


class Recorder(object):
    def __init__(self):
        self.calls = []

    def __call__(self, *args):
        self.calls.append(args)


def rpc_method(name='Add', style='rpc', input_soap='literal', soap_action='urn:calc#Add'):
    return Method(name,
                  input=Message(name, parts=collections.OrderedDict([('a', 'xs:int'), ('b', 'xs:int')])),
                  output=Message(name + 'Output', parts=collections.OrderedDict([('result', 'xs:int')])),
                  style=style,
                  soap_action=soap_action,
                  input_soap=input_soap)


def document_method(name='Echo', style='document'):
    return Method(name,
                  input=Message('EchoRequest', target_namespace=CALC_NS, target_ns_alias='tns'),
                  output=Message('EchoResponse', target_namespace=CALC_NS, target_ns_alias='tns'),
                  style=style,
                  soap_action='urn:calc#Echo')


def calc_definitions(*methods):
    binding = Binding('CalcBinding', 'rpc')
    for method in methods or (rpc_method(),):
        binding.methods[method.name] = method
    port = Port('CalcPort', binding, 'http://x/calc')
    definitions = Definitions(target_namespace=CALC_NS,
                              xmlns=collections.OrderedDict([('xs', 'http://www.w3.org/2001/XMLSchema'),
                                                             ('tns', CALC_NS)]))
    definitions.services['Calc'] = Service('Calc', collections.OrderedDict([('CalcPort', port)]))
    return definitions


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def callback():
    return Recorder()


@pytest.fixture
def wsdl():
    return WSDL(calc_definitions(rpc_method(), document_method(style=None)))


@pytest.fixture
def client(wsdl, transport):
    return Client(wsdl, transport=transport)
