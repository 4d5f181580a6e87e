from enum import Enum


class AddressDataType:
    IPv4 = 1
    DomainName = 3
    IPv6 = 4


class AuthMethod:
    NoAuth = 0
    GSSAPI = 1
    UsernamePassword = 2
    Invalid = 0xFF


class StatusCode:
    Success = 0
    GeneralFailure = 1
    NotAllowed = 2
    NetUnreachable = 3
    HostUnreachable = 4
    ConnRefused = 5
    TTLExpired = 6
    CommandNotSupported = 7
    AddressTypeNotSupported = 8


class Decision(Enum):
    """Routing decision for a destination host."""
    UNKNOWN = 0
    USE_UPSTREAM = 1
    BYPASS = 2

    @property
    def label(self) -> str:
        if self is Decision.USE_UPSTREAM:
            return 'SOCKS5 Proxy'
        return 'Direct Connection'
