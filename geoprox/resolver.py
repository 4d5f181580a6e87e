import ipaddress
import logging
import threading

from typing import Iterable

import dns.exception
import dns.resolver
import geoip2.database
import geoip2.errors
import maxminddb

from geoprox.cache import DecisionCache
from geoprox.context import RequestCancelled, RequestContext
from geoprox.enum import Decision


def parse_country_codes(countries: str | Iterable[str]) -> frozenset[str]:
    """Normalize ISO country codes: split on commas, trim, uppercase, drop blanks."""
    if isinstance(countries, str):
        countries = countries.split(',')
    return frozenset(code.strip().upper() for code in countries if code.strip())


class _PendingLookup:
    """A lookup in progress that other threads may wait on."""

    def __init__(self):
        self.decision: Decision | None = None
        self.__done = threading.Event()

    def finish(self, decision: Decision | None) -> None:
        self.decision = decision
        self.__done.set()

    def wait(self, timeout: float | None = None) -> Decision | None:
        self.__done.wait(timeout)
        return self.decision


class GeoResolver:
    """Turns a hostname into a cached routing decision.

    A cache miss costs one DNS lookup against the configured name servers and
    one country lookup for the first returned address. Every failure along
    the way degrades to Decision.BYPASS, which is cached like any other
    decision. Nothing here raises to the caller for a lookup failure.

    Concurrent misses for the same hostname are coalesced: one thread does
    the lookup while the others wait for its result.
    """

    def __init__(
        self,
        country_reader: geoip2.database.Reader,
        dns_resolver: dns.resolver.Resolver,
        bypass_countries: str | Iterable[str] = (),
    ):
        self.__country_reader = country_reader
        self.__dns_resolver = dns_resolver
        self.__bypass_countries = parse_country_codes(bypass_countries)
        self.__cache = DecisionCache()
        self.__inflight: dict[str, _PendingLookup] = {}
        self.__inflight_lock = threading.Lock()
        self.__close_lock = threading.Lock()
        self.__closed = False
        self.__logger = logging.getLogger(__name__)
        self.__logger.info(f'Configured bypass countries: {sorted(self.__bypass_countries)}')

    @classmethod
    def open(
        cls,
        db_path: str,
        bypass_countries: str | Iterable[str],
        nameservers: list[str],
        dns_port: int = 53,
        dns_timeout: float = 5.0,
    ) -> 'GeoResolver':
        """Open the country database and build a resolver pinned to ``nameservers``.

        Raises:
            OSError: if the database file cannot be read.
            maxminddb.InvalidDatabaseError: if the file is not a MaxMind database.
            ValueError: if the database holds no country data or no name server is given.
        """
        if not db_path:
            raise ValueError('GeoIP database path cannot be empty')
        if not nameservers:
            raise ValueError('At least one DNS name server is required')

        reader = geoip2.database.Reader(db_path)
        database_type = reader.metadata().database_type
        if 'Country' not in database_type:
            reader.close()
            raise ValueError(f'{db_path} is a {database_type} database, expected a country database')

        # configure=False keeps the host resolver configuration out of it
        dns_resolver = dns.resolver.Resolver(configure=False)
        dns_resolver.nameservers = list(nameservers)
        dns_resolver.port = dns_port
        dns_resolver.timeout = dns_timeout
        dns_resolver.lifetime = dns_timeout

        return cls(reader, dns_resolver, bypass_countries)

    def __enter__(self) -> 'GeoResolver':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def cache(self) -> DecisionCache:
        return self.__cache

    @property
    def bypass_countries(self) -> frozenset[str]:
        return self.__bypass_countries

    def resolve(self, hostname: str, context: RequestContext | None = None) -> Decision:
        decision = self.__cache.get(hostname)
        if decision is not None:
            self.__logger.debug(f'[CACHE] Host {hostname} will use {decision.label}')
            return decision

        if context is not None and context.cancelled:
            self.__logger.warning(f'[WARN] Request for {hostname} cancelled before lookup. Defaulting to direct connection.')
            return Decision.BYPASS

        with self.__inflight_lock:
            pending = self.__inflight.get(hostname)
            owner = pending is None and hostname not in self.__cache
            if owner:
                pending = self.__inflight[hostname] = _PendingLookup()

        if pending is None:
            # another thread finished the lookup between our miss and now
            return self.__cache.get(hostname) or Decision.BYPASS
        if not owner:
            return self.__wait_for(hostname, pending, context)

        decision = None
        try:
            decision = self.__lookup(hostname, context)
            self.__cache.set(hostname, decision)
        finally:
            with self.__inflight_lock:
                del self.__inflight[hostname]
            pending.finish(decision)
        return decision

    def close(self) -> None:
        """Close the country database. Safe to call more than once."""
        with self.__close_lock:
            if self.__closed:
                return
            self.__closed = True
        self.__country_reader.close()
        self.__logger.debug(f'Resolver closed, cache stats: {self.__cache.stats()}')

    def __wait_for(self, hostname: str, pending: _PendingLookup, context: RequestContext | None) -> Decision:
        self.__logger.debug(f'[QUERY] Host {hostname} already being resolved, waiting')
        try:
            timeout = context.remaining() if context is not None else None
        except RequestCancelled:
            return Decision.BYPASS

        return pending.wait(timeout) or Decision.BYPASS

    def __lookup(self, hostname: str, context: RequestContext | None) -> Decision:
        addresses = self.__lookup_addresses(hostname, context)
        if addresses is None:
            return Decision.BYPASS

        if not addresses:
            self.__logger.warning(f'[WARN] DNS lookup for {hostname} returned no addresses. Defaulting to direct connection.')
            return Decision.BYPASS

        try:
            ip = ipaddress.ip_address(addresses[0])
        except ValueError as err:
            self.__logger.warning(f'[WARN] Malformed address for {hostname}: {err}. Defaulting to direct connection.')
            return Decision.BYPASS
        self.__logger.info(f'[RESOLVED] Host {hostname} -> IP {ip}')

        try:
            record = self.__country_reader.country(str(ip))
        except (geoip2.errors.GeoIP2Error, maxminddb.InvalidDatabaseError, ValueError) as err:
            self.__logger.warning(f'[WARN] GeoIP lookup failed for {ip}: {err}. Defaulting to direct connection.')
            return Decision.BYPASS

        iso_code = (record.country.iso_code or '').upper()
        if not iso_code:
            self.__logger.warning(f'[WARN] GeoIP record for {ip} has no country code. Defaulting to direct connection.')
            return Decision.BYPASS

        if iso_code in self.__bypass_countries:
            self.__logger.info(f'[ROUTE] IP {ip} ({iso_code}) is in bypass list, host {hostname} will connect directly')
            return Decision.BYPASS

        self.__logger.info(f'[ROUTE] IP {ip} ({iso_code}) is not in bypass list, host {hostname} will use SOCKS5 proxy')
        return Decision.USE_UPSTREAM

    def __lookup_addresses(self, hostname: str, context: RequestContext | None) -> list[str] | None:
        """Addresses for ``hostname``, or None if the DNS lookup failed.

        An IP literal is its own only address and needs no query.
        """
        try:
            return [str(ipaddress.ip_address(hostname))]
        except ValueError:
            pass

        nameservers = ', '.join(str(ns) for ns in self.__dns_resolver.nameservers)
        self.__logger.info(f'[QUERY] Host {hostname}, using {nameservers} DNS...')

        try:
            lifetime = context.remaining() if context is not None else None
            answers = self.__dns_resolver.resolve_name(hostname, lifetime=lifetime)
            return list(answers.addresses())
        except (dns.exception.DNSException, RequestCancelled, OSError) as err:
            self.__logger.warning(f'[WARN] DNS lookup failed for {hostname}: {err}. Defaulting to direct connection.')
            return None
