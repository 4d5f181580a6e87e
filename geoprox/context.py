import itertools
import threading
import time

from geoprox.enum import Decision

_request_ids = itertools.count(1)


class RequestCancelled(TimeoutError):
    """The request was cancelled or ran past its deadline."""


class RequestContext:
    """State scoped to a single inbound client request.

    The server engine creates one context per accepted connection and passes
    the same instance to the name resolution hook and then to the dial hook.
    The resolution hook stores its routing decision with attach_decision();
    the dial hook reads it back from ``decision``, which is None when no
    name resolution happened for the request (e.g. an IP-literal target).
    """

    def __init__(self, client_address: tuple | None = None, timeout: float | None = None):
        self.request_id = next(_request_ids)
        self.client_address = client_address
        self.deadline = None if timeout is None else time.monotonic() + timeout
        self.__cancelled = threading.Event()
        self.__decision: Decision | None = None

    def __repr__(self) -> str:
        return f'<RequestContext #{self.request_id} client={self.client_address} decision={self.__decision}>'

    @property
    def decision(self) -> Decision | None:
        return self.__decision

    def attach_decision(self, decision: Decision) -> None:
        self.__decision = decision

    @property
    def cancelled(self) -> bool:
        return self.__cancelled.is_set() or (
            self.deadline is not None and time.monotonic() >= self.deadline)

    def cancel(self) -> None:
        self.__cancelled.set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, None if the request has no deadline.

        Raises:
            RequestCancelled: if the request was cancelled or the deadline passed.
        """
        if self.__cancelled.is_set():
            raise RequestCancelled(f'Request #{self.request_id} was cancelled')
        if self.deadline is None:
            return None

        left = self.deadline - time.monotonic()
        if left <= 0:
            raise RequestCancelled(f'Request #{self.request_id} exceeded its deadline')
        return left
