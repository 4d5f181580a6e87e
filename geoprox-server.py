#!/usr/bin/env python3
from geoprox.command import SmartProxyCmd


"""
@see: https://tools.ietf.org/html/rfc1928
@see: https://tools.ietf.org/html/rfc1929
@see: https://dev.maxmind.com/geoip/geolite2-free-geolocation-data
@see: https://dnspython.readthedocs.io/en/stable/resolver-class.html
@see: https://docs.python.org/3/library/socketserver.html
"""
if __name__ == '__main__':
    smartproxycmd = SmartProxyCmd()
    main_parser, args = smartproxycmd.parse_args()
    smartproxycmd.run(main_parser, args)
