import logging
import socket

from geoprox.context import RequestContext
from geoprox.dialer import SmartDialer
from geoprox.resolver import GeoResolver


class RoutingHooks:
    """The name resolution and dial hooks handed to the proxy server.

    The server calls resolve_name() and then dial() for the same request,
    on the same thread, with the same RequestContext. resolve_name() stores
    the routing decision on the context and always returns no IP address,
    so the server dials the original hostname and dial() picks the route
    from the decision carried by the context.
    """

    def __init__(self, resolver: GeoResolver, dialer: SmartDialer):
        self.resolver = resolver
        self.dialer = dialer
        self.__logger = logging.getLogger(__name__)

    def resolve_name(self, context: RequestContext, hostname: str) -> tuple[RequestContext, None]:
        decision = self.resolver.resolve(hostname, context)
        context.attach_decision(decision)
        return context, None

    def dial(self, context: RequestContext, network: str, address: str) -> socket.socket:
        decision = context.decision
        if decision is None:
            self.__logger.debug(f'[DIAL] No routing decision for {address} (request #{context.request_id})')
        return self.dialer.dial(network, address, decision, context)
