import socket

import pytest
import socks

from conftest import RecordingDialer
from geoprox.context import RequestCancelled, RequestContext
from geoprox.dialer import DirectDialer, SmartDialer, UpstreamDialer, join_host_port, split_host_port
from geoprox.enum import Decision


class TestSplitHostPort:

    @pytest.mark.parametrize('address, expected', [
        ('cn.example:443', ('cn.example', 443)),
        ('203.0.113.10:80', ('203.0.113.10', 80)),
        ('[2001:db8::1]:8080', ('2001:db8::1', 8080)),
    ])
    def test_valid(self, address, expected):
        assert split_host_port(address) == expected

    @pytest.mark.parametrize('address', [
        'cn.example', 'cn.example:', ':443', 'cn.example:https', '2001:db8::1:443',
        '[2001:db8::1]', '[2001:db8::1]443', 'cn.example:0', 'cn.example:70000',
    ])
    def test_malformed(self, address):
        with pytest.raises(ValueError):
            split_host_port(address)

    def test_join_brackets_ipv6(self):
        assert join_host_port('2001:db8::1', 443) == '[2001:db8::1]:443'
        assert join_host_port('cn.example', 443) == 'cn.example:443'


class TestSmartDialer:

    @pytest.fixture
    def dialers(self):
        return RecordingDialer('upstream'), RecordingDialer('direct')

    def test_use_upstream_only_dials_upstream(self, dialers):
        upstream, direct = dialers
        conn = SmartDialer(upstream, direct).dial('tcp', 'us.example:443', Decision.USE_UPSTREAM)

        assert conn.dialer == 'upstream'
        assert upstream.calls == [('tcp', 'us.example:443')]
        assert direct.calls == []

    @pytest.mark.parametrize('decision', [Decision.BYPASS, Decision.UNKNOWN, None])
    def test_everything_else_dials_direct(self, dialers, decision):
        upstream, direct = dialers
        conn = SmartDialer(upstream, direct).dial('tcp', 'cn.example:443', decision)

        assert conn.dialer == 'direct'
        assert direct.calls == [('tcp', 'cn.example:443')]
        assert upstream.calls == []

    def test_dial_errors_propagate(self):
        upstream = RecordingDialer('upstream', error=socks.GeneralProxyError('auth rejected'))
        with pytest.raises(socks.ProxyError):
            SmartDialer(upstream, RecordingDialer('direct')).dial('tcp', 'us.example:443', Decision.USE_UPSTREAM)

    def test_requires_dialer_instances(self):
        class NotADialer:
            def dial(self, network, address):
                pass

        with pytest.raises(TypeError):
            SmartDialer(NotADialer(), RecordingDialer('direct'))
        with pytest.raises(TypeError):
            SmartDialer(RecordingDialer('upstream'), NotADialer())

    def test_defaults_to_direct_dialer(self):
        assert isinstance(SmartDialer(RecordingDialer('upstream')).direct_dialer, DirectDialer)


class TestDirectDialer:

    def test_connects(self, echo_server):
        host, port = echo_server
        with DirectDialer().dial('tcp', join_host_port(host, port), RequestContext(timeout=5)) as conn:
            conn.sendall(b'ping')
            assert conn.recv(4) == b'ping'

    def test_cancelled_context_does_not_connect(self, echo_server, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError('connect attempted')
        monkeypatch.setattr(socket, 'create_connection', fail)

        context = RequestContext()
        context.cancel()
        with pytest.raises(RequestCancelled):
            DirectDialer().dial('tcp', join_host_port(*echo_server), context)

    def test_refused(self):
        # bind then close to get a port nothing listens on
        probe = socket.socket()
        probe.bind(('127.0.0.1', 0))
        port = probe.getsockname()[1]
        probe.close()

        with pytest.raises(ConnectionRefusedError):
            DirectDialer().dial('tcp', f'127.0.0.1:{port}')

    @pytest.mark.parametrize('network', ['udp', 'unix'])
    def test_rejects_non_tcp(self, network):
        with pytest.raises(ValueError):
            DirectDialer().dial(network, 'cn.example:443')

    def test_rejects_malformed_address(self):
        with pytest.raises(ValueError):
            DirectDialer().dial('tcp', 'cn.example')


class TestUpstreamDialer:

    @pytest.fixture
    def create_connection(self, monkeypatch):
        calls = []

        def fake_create_connection(dest_pair, **kwargs):
            calls.append((dest_pair, kwargs))
            return 'upstream-conn'
        monkeypatch.setattr(socks, 'create_connection', fake_create_connection)
        return calls

    def test_dials_through_proxy_with_remote_dns(self, create_connection):
        dialer = UpstreamDialer('10.1.1.1', 1080)
        assert dialer.dial('tcp', 'us.example:443', RequestContext(timeout=5)) == 'upstream-conn'

        (dest_pair, kwargs), = create_connection
        assert dest_pair == ('us.example', 443)
        assert kwargs['proxy_type'] == socks.SOCKS5
        assert (kwargs['proxy_addr'], kwargs['proxy_port']) == ('10.1.1.1', 1080)
        assert kwargs['proxy_rdns'] is True
        assert kwargs['proxy_username'] is None
        assert kwargs['proxy_password'] is None
        assert 0 < kwargs['timeout'] <= 5

    def test_authenticates_when_username_set(self, create_connection):
        UpstreamDialer('10.1.1.1', 1080, 'bob', 'hunter2').dial('tcp', 'us.example:443')

        (_, kwargs), = create_connection
        assert kwargs['proxy_username'] == 'bob'
        assert kwargs['proxy_password'] == 'hunter2'
        assert kwargs['timeout'] is None

    def test_cancelled_context_does_not_connect(self, create_connection):
        context = RequestContext()
        context.cancel()
        with pytest.raises(RequestCancelled):
            UpstreamDialer('10.1.1.1', 1080).dial('tcp', 'us.example:443', context)
        assert create_connection == []
