import errno
import ipaddress
import logging
import select
import socket
import struct

from socketserver import ThreadingMixIn, TCPServer, StreamRequestHandler
from typing import Protocol

import socks

from geoprox.context import RequestContext
from geoprox.dialer import join_host_port
from geoprox.enum import AddressDataType, AuthMethod, StatusCode

# Constants
CONNECT = 1
FAILURE = 0xFF
IDLE_TIMEOUT = 60 * 15  # seconds without traffic before the relay is torn down
RESERVED = 0
SOCKS_VERSION = 5
USERNAME_PASSWORD_VERSION = 1

# Buffer sizes
CONN_NO_PORT_SIZE = 4
CONN_PORT_SIZE = 2
COPY_LOOP_BUFFER_SIZE = 4096
DOMAIN_SIZE = 1
GREETING_SIZE = 2
ID_LEN_SIZE = 1
PW_LEN_SIZE = 1
VERSION_SIZE = 1

logger = logging.getLogger(__name__)


class ProxyHooks(Protocol):
    """What the server needs from the routing layer."""

    def resolve_name(self, context: RequestContext, hostname: str) -> tuple[RequestContext, str | None]:
        ...

    def dial(self, context: RequestContext, network: str, address: str) -> socket.socket:
        ...


class _AbortRequest(Exception):
    """Raised once a failure reply was sent and the request must end."""


def failure_status(err: Exception) -> int:
    """Map a dial error to the SOCKS5 reply code sent to the client."""
    if isinstance(err, socks.ProxyError):
        return StatusCode.GeneralFailure
    if isinstance(err, TimeoutError):
        return StatusCode.TTLExpired
    if isinstance(err, ConnectionRefusedError):
        return StatusCode.ConnRefused
    if isinstance(err, OSError):
        if err.errno == errno.ENETUNREACH:
            return StatusCode.NetUnreachable
        return StatusCode.HostUnreachable
    return StatusCode.GeneralFailure


class SmartProxyServer(ThreadingMixIn, TCPServer):
    """Threaded SOCKS5 server that routes every CONNECT through ``hooks``."""
    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self,
        host_port: tuple[str, int],
        hooks: ProxyHooks,
        auth: tuple[str, str] | None = None,
        request_timeout: float | None = None,
    ):
        if auth is not None and (len(auth) != 2 or not all(isinstance(item, str) for item in auth)):
            raise ValueError('Auth must be a tuple with 2 strings (username, password) or None')

        self.address_family = socket.AF_INET6 if ':' in host_port[0] else socket.AF_INET
        self.hooks = hooks
        self.auth = auth
        self.request_timeout = request_timeout
        super().__init__(host_port, ProxyRequestHandler)


class ProxyRequestHandler(StreamRequestHandler):
    server: SmartProxyServer

    def handle(self):
        """
        Handle the connection.

        Negotiate, read the CONNECT request, let the routing hooks resolve and
        dial the destination, then relay bytes until either side closes.
        """
        ip, port, *_ = self.client_address
        logger.info(f'Accepting connection from [{ip}]:{port}')

        try:
            self._negotiate()
            host, port = self._read_request()
            self._remote = self._connect(host, port)
            self._send_success(self._remote.getsockname())
            self._copy_loop(self.request, self._remote)
        except _AbortRequest:
            pass
        finally:
            self._exit()

    @property
    def auth_method(self):
        """Gives us the authentication method we will use"""
        return AuthMethod.UsernamePassword if self.server.auth else AuthMethod.NoAuth

    def _negotiate(self) -> None:
        header = self._recv(GREETING_SIZE, self._send_greeting_failure, AuthMethod.Invalid)
        version, n_methods = struct.unpack("!BB", header)

        # Only accept SOCKS5
        if version != SOCKS_VERSION:
            self._send_greeting_failure(AuthMethod.Invalid)

        # We need at least one method
        if n_methods < 1:
            self._send_greeting_failure(AuthMethod.Invalid)

        methods = set(self._recv(n_methods, self._send_greeting_failure, AuthMethod.Invalid))

        # Accept only USERNAME/PASSWORD auth if we are asking for auth
        # Accept only no auth if we are not asking for USERNAME/PASSWORD
        if self.auth_method not in methods:
            self._send_greeting_failure(AuthMethod.Invalid)

        self._send(struct.pack("!BB", SOCKS_VERSION, self.auth_method))

        if self.auth_method == AuthMethod.UsernamePassword:
            self._verify_credentials()
            logger.debug("Successfully authenticated")

    def _read_request(self) -> tuple[str, int]:
        conn_buffer = self._recv(CONN_NO_PORT_SIZE, self._send_failure, StatusCode.GeneralFailure)
        version, cmd, rsv, address_type = struct.unpack("!BBBB", conn_buffer)

        logger.debug(f'Handling request with address type: {address_type}')

        if address_type == AddressDataType.IPv4 or address_type == AddressDataType.IPv6:
            address_family = (
                socket.AF_INET if address_type == AddressDataType.IPv4 else socket.AF_INET6)
            minlen = 4 if address_type == AddressDataType.IPv4 else 16
            raw = self._recv(minlen, self._send_failure, StatusCode.GeneralFailure)
            host = socket.inet_ntop(address_family, raw)

        elif address_type == AddressDataType.DomainName:
            domain_length = self._recv(DOMAIN_SIZE, self._send_failure, StatusCode.GeneralFailure)[0]
            domain = self._recv(domain_length, self._send_failure, StatusCode.GeneralFailure)
            try:
                host = domain.decode('utf-8')
            except UnicodeDecodeError:
                logger.error(f'Could not decode domain name {domain!r}')
                host = None

        else:
            self._send_failure(StatusCode.AddressTypeNotSupported)

        port_buffer = self._recv(CONN_PORT_SIZE, self._send_failure, StatusCode.GeneralFailure)
        port = struct.unpack('!H', port_buffer)[0]

        # The whole request must be consumed before any failure reply
        if version != SOCKS_VERSION or rsv != RESERVED or host is None:
            self._send_failure(StatusCode.GeneralFailure)
        if cmd != CONNECT:  # We only support connect
            self._send_failure(StatusCode.CommandNotSupported)

        self._context = RequestContext(self.client_address, self.server.request_timeout)
        if address_type == AddressDataType.DomainName:
            self._context, resolved_ip = self.server.hooks.resolve_name(self._context, host)
            if resolved_ip:
                host = str(resolved_ip)

        return host, port

    def _connect(self, host: str, port: int) -> socket.socket:
        address = join_host_port(host, port)
        try:
            remote = self.server.hooks.dial(self._context, 'tcp', address)
        except (OSError, ValueError) as err:
            logger.error(f'Unable to connect to {address}: {err}')
            self._send_failure(failure_status(err))

        # The connect timeout must not carry over into the relay
        remote.settimeout(None)
        logger.info(f'Connected to {address}')
        return remote

    def _send_success(self, bind_address: tuple) -> None:
        try:
            bind_ip = ipaddress.ip_address(bind_address[0])
            bind_port = bind_address[1]
        except (ValueError, IndexError, TypeError):
            bind_ip, bind_port = ipaddress.IPv4Address(0), 0

        address_type = AddressDataType.IPv4 if bind_ip.version == 4 else AddressDataType.IPv6
        logger.debug(f'Bind address {bind_ip} {bind_port}')
        self._send(
            struct.pack("!BBBB", SOCKS_VERSION, StatusCode.Success, RESERVED, address_type)
            + bind_ip.packed
            + struct.pack("!H", bind_port))

    def _copy_loop(self, client, remote):
        """Waits for network activity and forwards it to the other connection"""
        while True:
            r, w, e = select.select([client, remote], [], [], IDLE_TIMEOUT)

            # Kill inactive/unused connections
            if not r and not w and not e:
                logger.debug('Closing idle connection')
                return

            for sock in r:
                try:
                    data = sock.recv(COPY_LOOP_BUFFER_SIZE)
                except OSError as err:
                    logger.debug(f'Copy loop failed to read: {err}')
                    return

                if not data:
                    return

                outfd = remote if sock is client else client
                try:
                    outfd.sendall(data)
                except OSError as err:
                    logger.debug(f'Copy loop failed to send all data: {err}')
                    return

    def _exit(self):
        """Convenience method to clean up the outbound connection"""
        if hasattr(self, "_remote"):
            self._remote.close()

    def _recv(self, bufsize, failure_method, code):
        """
        Convenience method to receive exactly bufsize bytes from a client.

        If the client closes the connection before bufsize bytes arrive,
        failure_method is called with code, which ends the request.
        """
        buf = b''
        while len(buf) < bufsize:
            try:
                chunk = self.request.recv(bufsize - len(buf))
            except OSError as err:
                logger.debug(f'Failed to read from client: {err}')
                raise _AbortRequest() from err
            if not chunk:
                failure_method(code)
            buf += chunk
        return buf

    def _send(self, data):
        """Convenience method to send bytes to a client"""
        try:
            self.request.sendall(data)
        except OSError as err:
            logger.debug(f'Failed to send to client: {err}')
            raise _AbortRequest() from err

    def _send_authentication_failure(self, code):
        """Convenience method to send a failure message to a client in the authentication stage"""
        self._send(struct.pack("!BB", USERNAME_PASSWORD_VERSION, code))
        raise _AbortRequest()

    def _send_failure(self, code):
        """Convenience method to send a failure message to a client in the request stage"""
        self._send(struct.pack("!BBBBIH", SOCKS_VERSION, code, RESERVED, AddressDataType.IPv4, 0, 0))
        raise _AbortRequest()

    def _send_greeting_failure(self, code):
        """Convenience method to send a failure message to a client in the greeting stage"""
        self._send(struct.pack("!BB", SOCKS_VERSION, code))
        raise _AbortRequest()

    def _verify_credentials(self):
        """Verify the credentials of a client and send a relevant response,
            ending the request if unauthenticated
        """
        version = self._recv(VERSION_SIZE, self._send_authentication_failure, FAILURE)[0]
        if version != USERNAME_PASSWORD_VERSION:
            logger.error('USERNAME_PASSWORD_VERSION did not match')
            self._send_authentication_failure(FAILURE)

        username_len = self._recv(ID_LEN_SIZE, self._send_authentication_failure, FAILURE)[0]
        username = self._recv(username_len, self._send_authentication_failure, FAILURE)

        password_len = self._recv(PW_LEN_SIZE, self._send_authentication_failure, FAILURE)[0]
        password = self._recv(password_len, self._send_authentication_failure, FAILURE)

        server_username, server_password = self.server.auth

        if username == server_username.encode('utf-8') and password == server_password.encode('utf-8'):
            self._send(struct.pack("!BB", USERNAME_PASSWORD_VERSION, StatusCode.Success))
            return True

        logger.error('Authentication failed')
        self._send_authentication_failure(FAILURE)
