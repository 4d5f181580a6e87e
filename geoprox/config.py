import argparse
import ipaddress

from dataclasses import dataclass, field

from geoprox.dialer import split_host_port
from geoprox.resolver import parse_country_codes

DEFAULT_LISTEN = '127.0.0.1:1088'
DEFAULT_UPSTREAM = '127.0.0.1:1080'
DEFAULT_GEOIP_DB = './GeoLite2-Country.mmdb'
DEFAULT_BYPASS_COUNTRIES = 'CN'
DEFAULT_DNS_SERVERS = '8.8.8.8'


class ConfigError(ValueError):
    """Startup configuration is invalid."""


@dataclass
class ProxyConfig:
    listen: str = DEFAULT_LISTEN
    local_user: str = ''
    local_pass: str = ''
    upstream: str = DEFAULT_UPSTREAM
    upstream_user: str = ''
    upstream_pass: str = ''
    geoip_db: str = DEFAULT_GEOIP_DB
    bypass_countries: str = DEFAULT_BYPASS_COUNTRIES
    dns_servers: str = DEFAULT_DNS_SERVERS
    dns_port: int = 53
    dns_timeout: float = 5.0
    connect_timeout: float | None = 30.0

    # Filled in by validate()
    listen_address: tuple[str, int] = field(init=False, default=('', 0))
    upstream_address: tuple[str, int] = field(init=False, default=('', 0))
    bypass_set: frozenset[str] = field(init=False, default=frozenset())
    nameservers: list[str] = field(init=False, default_factory=list)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> 'ProxyConfig':
        config = cls(
            listen=args.listen,
            local_user=args.local_user,
            local_pass=args.local_pass,
            upstream=args.proxy,
            upstream_user=args.user,
            upstream_pass=args.password,
            geoip_db=args.geoip,
            bypass_countries=args.bypass_countries,
            dns_servers=args.dns,
            dns_port=args.dns_port,
            dns_timeout=args.dns_timeout,
            connect_timeout=args.connect_timeout or None,
        )
        return config.validate()

    @property
    def local_auth(self) -> tuple[str, str] | None:
        """Inbound credentials, only when both username and password are set."""
        if self.local_user and self.local_pass:
            return self.local_user, self.local_pass
        return None

    def validate(self) -> 'ProxyConfig':
        """Parse and check every setting once.

        Raises:
            ConfigError: on the first invalid setting.
        """
        self.listen_address = self.__parse_address('listen', self.listen)
        self.upstream_address = self.__parse_address('upstream proxy', self.upstream)
        self.bypass_set = parse_country_codes(self.bypass_countries)

        if not self.geoip_db:
            raise ConfigError('GeoIP database path cannot be empty')

        self.nameservers = [ns.strip() for ns in self.dns_servers.split(',') if ns.strip()]
        if not self.nameservers:
            raise ConfigError('At least one DNS server is required')
        for nameserver in self.nameservers:
            try:
                ipaddress.ip_address(nameserver)
            except ValueError:
                raise ConfigError(f'DNS server must be an IP address: {nameserver!r}')

        if not 0 < self.dns_port < 65536:
            raise ConfigError(f'DNS port out of range: {self.dns_port}')
        if self.dns_timeout <= 0:
            raise ConfigError(f'DNS timeout must be positive: {self.dns_timeout}')
        if self.connect_timeout is not None and self.connect_timeout <= 0:
            raise ConfigError(f'Connect timeout must be positive: {self.connect_timeout}')

        return self

    @staticmethod
    def __parse_address(name: str, address: str) -> tuple[str, int]:
        try:
            return split_host_port(address)
        except ValueError as err:
            raise ConfigError(f'Invalid {name} address {address!r}: {err}')
