"""
Transport Interface.

Publish/subscribe relay shared by every device in a session. Every published
message is delivered to all connected endpoints, the sender included, so each
device applies its own events through the same path as everyone else's.

LocalHub is the in-process relay (single machine, tests); GateHubServer /
GateHubClient in gate_hub.py carry the same contract over TCP.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from sprint_core.timing import TimeSource, EchoReply
from sprint_core.clock import wall_ms

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, Dict[str, Any]], None]
StatusCallback = Callable[[bool], None]


class TransportError(Exception):
    """Publish attempted on a disconnected transport."""


class Transport(ABC):
    """
    Relay endpoint.

    Subclasses deliver incoming messages through _dispatch() and report
    connectivity through _set_connected().
    """

    def __init__(self):
        self._callbacks: List[MessageCallback] = []
        self._status_callbacks: List[StatusCallback] = []
        self._callbacks_lock = threading.Lock()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @abstractmethod
    def connect(self):
        """Join the relay."""

    @abstractmethod
    def disconnect(self):
        """Leave the relay."""

    @abstractmethod
    def publish(self, topic: str, data: Dict[str, Any]):
        """
        Send a message to every endpoint (sender included).

        Raises:
            TransportError: If not connected
        """

    def subscribe(self, callback: MessageCallback) -> Callable[[], None]:
        """
        Register a message callback.

        Returns:
            Function that removes the callback
        """
        with self._callbacks_lock:
            self._callbacks.append(callback)

        def _unsubscribe():
            with self._callbacks_lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _unsubscribe

    def on_status_change(self, callback: StatusCallback):
        """Register a connectivity callback."""
        with self._callbacks_lock:
            self._status_callbacks.append(callback)

    def _dispatch(self, topic: str, data: Dict[str, Any]):
        """Deliver one incoming message to all callbacks."""
        with self._callbacks_lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(topic, data)
            except Exception as e:
                logger.error(f"Message handler for '{topic}' failed: {e}", exc_info=True)

    def _set_connected(self, connected: bool):
        if connected == self._connected:
            return
        self._connected = connected
        with self._callbacks_lock:
            callbacks = list(self._status_callbacks)
        for callback in callbacks:
            callback(connected)


class LocalHub(TimeSource):
    """
    In-process relay and reference clock.

    Usage:
        hub = LocalHub()
        a, b = hub.endpoint(), hub.endpoint()
        a.connect(); b.connect()
        a.publish('gate-trigger', {...})   # delivered to a and b
    """

    def __init__(self, clock_ms: Optional[Callable[[], float]] = None):
        """
        Initialize hub.

        Args:
            clock_ms: Reference clock served to time probes (default: wall clock)
        """
        self.clock_ms = clock_ms or wall_ms
        self._lock = threading.Lock()
        self._endpoints: List['LocalTransport'] = []
        self.messages_relayed = 0

    def endpoint(self) -> 'LocalTransport':
        """Create a new (disconnected) endpoint on this hub."""
        return LocalTransport(self)

    @property
    def endpoint_count(self) -> int:
        with self._lock:
            return len(self._endpoints)

    def server_now_ms(self) -> float:
        return self.clock_ms()

    def echo(self, client_send_ms: float) -> EchoReply:
        received = self.clock_ms()
        return EchoReply(
            server_receive_time=received,
            server_response_time=self.clock_ms(),
            echoed_client_send_time=client_send_ms,
        )

    @property
    def supports_echo(self) -> bool:
        return True

    def _join(self, endpoint: 'LocalTransport'):
        with self._lock:
            if endpoint not in self._endpoints:
                self._endpoints.append(endpoint)

    def _leave(self, endpoint: 'LocalTransport'):
        with self._lock:
            if endpoint in self._endpoints:
                self._endpoints.remove(endpoint)

    def _relay(self, topic: str, data: Dict[str, Any]):
        with self._lock:
            endpoints = list(self._endpoints)
            self.messages_relayed += 1
        for endpoint in endpoints:
            endpoint._dispatch(topic, data)


class LocalTransport(Transport):
    """Endpoint of a LocalHub."""

    def __init__(self, hub: LocalHub):
        super().__init__()
        self.hub = hub

    def connect(self):
        self.hub._join(self)
        self._set_connected(True)

    def disconnect(self):
        self.hub._leave(self)
        self._set_connected(False)

    def publish(self, topic: str, data: Dict[str, Any]):
        if not self.is_connected:
            raise TransportError(f"cannot publish '{topic}': not connected")
        self.hub._relay(topic, dict(data))
