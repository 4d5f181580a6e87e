import logging
import socket

from abc import ABC, abstractmethod

import socks

from geoprox.context import RequestContext
from geoprox.enum import Decision

TCP_NETWORKS = ('tcp', 'tcp4', 'tcp6')


def split_host_port(address: str) -> tuple[str, int]:
    """Split ``host:port`` or ``[ipv6]:port`` into its parts.

    Raises:
        ValueError: if the host or port cannot be separated or the port is out of range.
    """
    if address.startswith('['):
        host, sep, rest = address[1:].partition(']')
        if not sep or not rest.startswith(':'):
            raise ValueError(f'Malformed address: {address!r}')
        port_str = rest[1:]
    else:
        host, sep, port_str = address.rpartition(':')
        if not sep or ':' in host:
            raise ValueError(f'Malformed address: {address!r}')

    if not host or not port_str.isdigit():
        raise ValueError(f'Malformed address: {address!r}')
    port = int(port_str)
    if not 0 < port < 65536:
        raise ValueError(f'Port out of range in address: {address!r}')
    return host, port


def join_host_port(host: str, port: int) -> str:
    return f'[{host}]:{port}' if ':' in host else f'{host}:{port}'


def _check_network(network: str) -> None:
    if network not in TCP_NETWORKS:
        raise ValueError(f'Unsupported network: {network}')


def _connect_timeout(context: RequestContext | None) -> float | None:
    return context.remaining() if context is not None else None


class Dialer(ABC):
    """A connection opener that honours the request deadline and cancellation.

    Implementations must check the context before connecting and bound the
    connect call by ``context.remaining()``.
    """

    @abstractmethod
    def dial(self, network: str, address: str, context: RequestContext | None = None) -> socket.socket:
        ...


class DirectDialer(Dialer):
    """Opens a plain TCP connection to the destination."""

    def dial(self, network: str, address: str, context: RequestContext | None = None) -> socket.socket:
        _check_network(network)
        host, port = split_host_port(address)
        return socket.create_connection((host, port), timeout=_connect_timeout(context))


class UpstreamDialer(Dialer):
    """Opens a connection through the upstream SOCKS5 proxy.

    The destination hostname is sent to the upstream as-is (remote DNS) and
    username/password authentication is used when a username is configured.
    """

    def __init__(self, proxy_host: str, proxy_port: int, username: str | None = None, password: str | None = None):
        self.proxy_host = proxy_host
        self.proxy_port = proxy_port
        self.__username = username or None
        self.__password = (password or '') if username else None

    def __repr__(self) -> str:
        return f'<UpstreamDialer {join_host_port(self.proxy_host, self.proxy_port)} auth={self.__username is not None}>'

    def dial(self, network: str, address: str, context: RequestContext | None = None) -> socket.socket:
        _check_network(network)
        host, port = split_host_port(address)
        return socks.create_connection(
            (host, port),
            timeout=_connect_timeout(context),
            proxy_type=socks.SOCKS5,
            proxy_addr=self.proxy_host,
            proxy_port=self.proxy_port,
            proxy_rdns=True,
            proxy_username=self.__username,
            proxy_password=self.__password,
        )


class SmartDialer:
    """Dispatches a dial to the upstream or direct dialer by routing decision.

    No resolution happens here. USE_UPSTREAM goes through the upstream dialer;
    BYPASS, UNKNOWN and a missing decision all connect directly.
    """

    def __init__(self, upstream_dialer: Dialer, direct_dialer: Dialer | None = None):
        direct_dialer = direct_dialer if direct_dialer is not None else DirectDialer()
        for name, dialer in (('upstream', upstream_dialer), ('direct', direct_dialer)):
            if not isinstance(dialer, Dialer):
                raise TypeError(f'The {name} dialer must be a Dialer, got {type(dialer).__name__}')

        self.upstream_dialer = upstream_dialer
        self.direct_dialer = direct_dialer
        self.__logger = logging.getLogger(__name__)

    def dial(
        self,
        network: str,
        address: str,
        decision: Decision | None,
        context: RequestContext | None = None
    ) -> socket.socket:
        if decision is Decision.USE_UPSTREAM:
            dialer = self.upstream_dialer
        else:
            dialer = self.direct_dialer
            decision = Decision.BYPASS

        self.__logger.debug(f'[DIAL] {address} will use {decision.label}')
        return dialer.dial(network, address, context)
