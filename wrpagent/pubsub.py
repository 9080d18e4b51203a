"""Publish-subscribe routing of WRP messages to local services and egress."""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .wrp import (
    SCHEME_EVENT,
    Locator,
    Message,
    Normalizer,
    Normifier,
    NotHandledError,
    clamp_quality_of_service,
    parse_locator,
    replace_any_self_locator,
    validate_destination,
    validate_source,
)

_log = logging.getLogger(__name__)

CancelFunc = Callable[[], None]
"""Removes a subscription; calling it more than once has no further effect."""

_EGRESS_ROUTE = "egress:*"


class InvalidInputError(ValueError):
    """An argument given to the publish-subscribe system is not acceptable."""


class PublishTimeoutError(TimeoutError):
    """No handler finished with the message before the publish timeout."""


def _service_route(service: str) -> str:
    return "service:" + service


def _event_route(event: str) -> str:
    return "event:" + event


def _validate_name(value: str, kind: str) -> None:
    if not value:
        raise InvalidInputError(f"{kind} may not be empty")
    if "/" in value:
        raise InvalidInputError(
            f"{kind} may not contain any of the following: '/'"
        )


def _resolve(handler: Any) -> Callable[[Message], Any]:
    if handler is None:
        raise InvalidInputError("handler may not be None")
    method = getattr(handler, "handle_wrp", None)
    if callable(method):
        return method
    if callable(handler):
        return handler
    raise InvalidInputError("handler must be callable or provide handle_wrp")


class _Listeners:
    """An ordered set of listeners with cancellable membership."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: Dict[int, Callable[[Message], Any]] = {}
        self._tokens = itertools.count()

    def add(self, listener: Callable[[Message], Any]) -> CancelFunc:
        with self._lock:
            token = next(self._tokens)
            self._items[token] = listener

        def cancel() -> None:
            with self._lock:
                self._items.pop(token, None)

        return cancel

    def snapshot(self) -> List[Callable[[Message], Any]]:
        with self._lock:
            return list(self._items.values())


class _Delivery:
    """Tracks the handlers a message went to and whether one accepted it."""

    def __init__(self, pending: int) -> None:
        self._cond = threading.Condition()
        self._pending = pending
        self._handled = False

    def run(self, handler: Callable[[Message], Any], msg: Message) -> None:
        handled = True
        try:
            handler(msg)
        except NotHandledError:
            handled = False
        except Exception:
            _log.debug("handler raised while handling a message", exc_info=True)
        with self._cond:
            self._pending -= 1
            self._handled = self._handled or handled
            self._cond.notify_all()

    def wait(self, timeout: float) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._handled or self._pending == 0, timeout)
            if self._handled:
                return
            if self._pending == 0:
                raise NotHandledError("no handler accepted the message")
        raise PublishTimeoutError("timeout")


class PubSub:
    """Routes WRP messages to subscribed handlers.

    Messages addressed to this device go to service subscribers, event
    messages go to event subscribers and egress, and everything else goes
    to egress.
    """

    def __init__(
        self,
        self_id: str,
        normify: Iterable[Optional[Normalizer]] = (),
        publish_timeout: float = 0.0,
    ) -> None:
        if not self_id:
            raise InvalidInputError("self may not be empty")
        if publish_timeout < 0:
            raise InvalidInputError("timeout must be zero or larger")
        self.self_id = self_id
        self.publish_timeout = publish_timeout
        self._required = Normifier(
            validate_destination(),
            validate_source(),
            replace_any_self_locator(self_id),
            clamp_quality_of_service(),
        )
        self._desired = Normifier(*normify)
        self._lock = threading.Lock()
        self._routes: Dict[str, _Listeners] = {}

    def subscribe_egress(self, handler: Any) -> CancelFunc:
        """Receive messages that target something other than this device."""
        return self._subscribe(_EGRESS_ROUTE, handler)

    def subscribe_service(self, service: str, handler: Any) -> CancelFunc:
        """Receive messages for a service on this device; '*' matches any."""
        _validate_name(service, "service")
        return self._subscribe(_service_route(service), handler)

    def subscribe_event(self, event: str, handler: Any) -> CancelFunc:
        """Receive event messages for an event; '*' matches any."""
        _validate_name(event, "event")
        return self._subscribe(_event_route(event), handler)

    def routes(self) -> FrozenSet[str]:
        """Return the names of the routes that have been subscribed to."""
        with self._lock:
            return frozenset(self._routes)

    def _subscribe(self, route: str, handler: Any) -> CancelFunc:
        call = _resolve(handler)
        with self._lock:
            listeners = self._routes.setdefault(route, _Listeners())
        return listeners.add(call)

    def handle_wrp(self, msg: Message) -> None:
        """Publish msg; return once a handler accepts it.

        Raises NotHandledError when the message is rejected or no handler
        accepts it, and PublishTimeoutError when the timeout passes first.
        """
        try:
            normalized, dest = self._normalize(msg)
        except Exception as exc:
            raise NotHandledError(f"message rejected: {exc}") from exc

        if dest.id == self.self_id:
            routes: Tuple[str, ...] = (
                _service_route(dest.service),
                _service_route("*"),
            )
        elif dest.scheme == SCHEME_EVENT:
            routes = (_event_route(dest.authority), _event_route("*"), _EGRESS_ROUTE)
        else:
            routes = (_EGRESS_ROUTE,)

        with self._lock:
            groups = [self._routes[r] for r in routes if r in self._routes]
        handlers = [h for group in groups for h in group.snapshot()]

        delivery = _Delivery(len(handlers))
        for handler in handlers:
            threading.Thread(
                target=delivery.run,
                args=(handler, copy.copy(normalized)),
                daemon=True,
            ).start()
        delivery.wait(self.publish_timeout)

    def _normalize(self, msg: Message) -> Tuple[Message, Locator]:
        msg = copy.deepcopy(msg)
        self._required.normify(msg)
        dest = parse_locator(msg.destination)
        src = parse_locator(msg.source)
        if src.id == self.self_id:
            self._desired.normify(msg)
        return msg, dest