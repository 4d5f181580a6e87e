import socket
import threading
import time

from socketserver import StreamRequestHandler, ThreadingMixIn, TCPServer
from types import SimpleNamespace

import dns.resolver
import geoip2.errors
import pytest

from geoprox.dialer import Dialer
from geoprox.resolver import GeoResolver


class FakeAnswers:
    def __init__(self, addresses):
        self.__addresses = addresses

    def addresses(self):
        return iter(self.__addresses)


class FakeDNSResolver:
    """Stands in for dns.resolver.Resolver; maps hostnames to addresses or exceptions."""
    nameservers = ['8.8.8.8']

    def __init__(self, table, delay=0.0):
        self.table = table
        self.delay = delay
        self.calls = []
        self.lifetimes = []
        self.__lock = threading.Lock()

    def resolve_name(self, name, lifetime=None):
        with self.__lock:
            self.calls.append(name)
            self.lifetimes.append(lifetime)
        if self.delay:
            time.sleep(self.delay)
        result = self.table.get(name, dns.resolver.NXDOMAIN())
        if isinstance(result, Exception):
            raise result
        return FakeAnswers(result)


class FakeCountryReader:
    """Stands in for geoip2.database.Reader; maps IP strings to ISO codes."""

    def __init__(self, table):
        self.table = table
        self.calls = []
        self.closed = 0
        self.__lock = threading.Lock()

    def country(self, ip):
        with self.__lock:
            self.calls.append(ip)
        if ip not in self.table:
            raise geoip2.errors.AddressNotFoundError(f'The address {ip} is not in the database.')
        return SimpleNamespace(country=SimpleNamespace(iso_code=self.table[ip]))

    def close(self):
        self.closed += 1


class RecordingDialer(Dialer):
    """Records every dial and optionally connects to a fixed local address instead."""

    def __init__(self, name, target=None, error=None):
        self.name = name
        self.target = target
        self.error = error
        self.calls = []

    def dial(self, network, address, context=None):
        self.calls.append((network, address))
        if self.error is not None:
            raise self.error
        if self.target is None:
            return SimpleNamespace(dialer=self.name, address=address)
        return socket.create_connection(self.target, timeout=5)


DNS_TABLE = {
    'cn.example': ['203.0.113.10'],
    'us.example': ['198.51.100.20'],
    'private.example': ['10.0.0.1'],
    'empty.example': [],
    'garbage.example': ['not-an-ip'],
    'nonexistent.invalid': dns.resolver.NXDOMAIN(),
}

COUNTRY_TABLE = {
    '203.0.113.10': 'CN',
    '198.51.100.20': 'US',
}


@pytest.fixture
def dns_resolver():
    return FakeDNSResolver(dict(DNS_TABLE))


@pytest.fixture
def country_reader():
    return FakeCountryReader(dict(COUNTRY_TABLE))


@pytest.fixture
def resolver(dns_resolver, country_reader):
    with GeoResolver(country_reader, dns_resolver, 'CN') as geo_resolver:
        yield geo_resolver


class _EchoHandler(StreamRequestHandler):
    def handle(self):
        while True:
            data = self.request.recv(4096)
            if not data:
                return
            self.request.sendall(data)


class _EchoServer(ThreadingMixIn, TCPServer):
    allow_reuse_address = True
    daemon_threads = True


@pytest.fixture
def echo_server():
    server = _EchoServer(('127.0.0.1', 0), _EchoHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.server_address
    server.shutdown()
    server.server_close()
