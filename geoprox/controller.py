import logging

from typing import Any

import maxminddb

from geoprox.config import ProxyConfig
from geoprox.dialer import DirectDialer, SmartDialer, UpstreamDialer, join_host_port
from geoprox.proxy import SmartProxyServer
from geoprox.resolver import GeoResolver
from geoprox.router import RoutingHooks


class AppController:
    __LOGGER_FORMAT = '%(asctime)s - %(name)s [%(levelname)s] %(message)s'

    def __init__(self, verbosity: int = 0):
        # Configure logging
        config: dict[str, Any] = {'format': self.__LOGGER_FORMAT}
        if not verbosity:
            config['level'] = logging.WARNING
        elif verbosity == 1:
            config['level'] = logging.INFO
        elif verbosity >= 2:
            config['level'] = logging.DEBUG
        logging.basicConfig(**config)

        # Create logger
        self.__logger = logging.getLogger('geoprox')

    def build_hooks(self, config: ProxyConfig) -> RoutingHooks:
        """Open the resolver and wire it to the dialers.

        Raises:
            OSError, ValueError, maxminddb.InvalidDatabaseError: if the GeoIP database is unusable.
        """
        resolver = GeoResolver.open(
            config.geoip_db,
            config.bypass_set,
            config.nameservers,
            dns_port=config.dns_port,
            dns_timeout=config.dns_timeout,
        )
        upstream_host, upstream_port = config.upstream_address
        dialer = SmartDialer(
            UpstreamDialer(upstream_host, upstream_port, config.upstream_user, config.upstream_pass),
            DirectDialer(),
        )
        return RoutingHooks(resolver, dialer)

    def run(self, config: ProxyConfig) -> None:
        try:
            hooks = self.build_hooks(config)
        except (OSError, ValueError, maxminddb.InvalidDatabaseError) as e:
            self.__logger.error(f'Failed to create smart resolver: {e}')
            raise SystemExit(1)

        with hooks.resolver:
            self._serve(config, hooks)

    def _serve(self, config: ProxyConfig, hooks: RoutingHooks) -> None:
        listen = join_host_port(*config.listen_address)
        try:
            server = SmartProxyServer(
                config.listen_address, hooks, auth=config.local_auth, request_timeout=config.connect_timeout)
        except OSError as e:
            self.__logger.error(f'Failed to start SOCKS5 server on {listen}: {e}')
            raise SystemExit(1)

        if config.local_auth:
            self.__logger.info('Username/password authentication enabled for local SOCKS5 service.')

        with server:
            self.__logger.info(f'Smart SOCKS5 proxy server started, listening on: {listen}')
            self.__logger.info(
                f'All traffic not destined for [{",".join(sorted(config.bypass_set))}] '
                f'will be forwarded through upstream proxy {join_host_port(*config.upstream_address)}')
            try:
                server.serve_forever()
            except KeyboardInterrupt:
                self.__logger.warning('Shutting down')

        self.__logger.info(f'Decision cache: {hooks.resolver.cache.stats()}')
