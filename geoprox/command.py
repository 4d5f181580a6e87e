#!/usr/bin/env python3
import argparse
import sys

from geoprox.config import (
    DEFAULT_BYPASS_COUNTRIES, DEFAULT_DNS_SERVERS, DEFAULT_GEOIP_DB, DEFAULT_LISTEN, DEFAULT_UPSTREAM,
    ConfigError, ProxyConfig)
from geoprox.controller import AppController


class SmartProxyCmd:

    def parse_args(self, argv: list[str] | None = None) -> tuple[argparse.ArgumentParser, argparse.Namespace]:
        main_parser = argparse.ArgumentParser(
            description='SOCKS5 proxy that routes by destination country, directly or via an upstream proxy')
        main_parser.add_argument(
            '--listen', type=str, default=DEFAULT_LISTEN,
            help=f'Local SOCKS5 proxy listen address [default: {DEFAULT_LISTEN}]')
        main_parser.add_argument(
            '--local-user', type=str, default='',
            help='Username for local SOCKS5 service (optional)')
        main_parser.add_argument(
            '--local-pass', type=str, default='',
            help='Password for local SOCKS5 service (optional)')
        main_parser.add_argument(
            '--proxy', type=str, default=DEFAULT_UPSTREAM,
            help=f'Upstream remote SOCKS5 proxy address [default: {DEFAULT_UPSTREAM}]')
        main_parser.add_argument(
            '--user', type=str, default='',
            help='Upstream SOCKS5 username (optional)')
        main_parser.add_argument(
            '--pass', dest='password', type=str, default='',
            help='Upstream SOCKS5 password (optional)')
        main_parser.add_argument(
            '--geoip', type=str, default=DEFAULT_GEOIP_DB,
            help=f'Path to GeoLite2-Country.mmdb database [default: {DEFAULT_GEOIP_DB}]')
        main_parser.add_argument(
            '--bypass-countries', type=str, default=DEFAULT_BYPASS_COUNTRIES,
            help=f'Comma-separated list of country codes to bypass upstream proxy [default: {DEFAULT_BYPASS_COUNTRIES}]')
        main_parser.add_argument(
            '--dns', type=str, default=DEFAULT_DNS_SERVERS,
            help=f'Comma-separated DNS servers used for routing lookups [default: {DEFAULT_DNS_SERVERS}]')
        main_parser.add_argument(
            '--dns-port', type=int, default=53,
            help='Port of the DNS servers [default: 53]')
        main_parser.add_argument(
            '--dns-timeout', type=float, default=5.0,
            help='Seconds to wait for a DNS answer [default: 5.0]')
        main_parser.add_argument(
            '--connect-timeout', type=float, default=30.0,
            help='Seconds allowed for resolving and connecting a request, 0 to disable [default: 30.0]')
        main_parser.add_argument(
            '-v', '--verbose', action='count', default=0, help='Increase verbosity')

        return main_parser, main_parser.parse_args(argv)

    def run(self, main_parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
        try:
            config = ProxyConfig.from_args(args)
        except ConfigError as err:
            main_parser.error(str(err))

        app_controller = AppController(args.verbose)
        app_controller.run(config)


def main(argv: list[str] | None = None) -> None:
    cmd = SmartProxyCmd()
    main_parser, args = cmd.parse_args(argv)
    cmd.run(main_parser, args)


if __name__ == '__main__':
    sys.exit(main())
