"""
I/O Module: relay transport and reference clock over the network.

- Transport interface (publish/subscribe, sender included)
- In-process LocalHub for single-machine sessions and tests
- TCP GateHubServer / GateHubClient (length-prefixed JSON frames)
"""

from .transport import (
    Transport,
    TransportError,
    LocalHub,
    LocalTransport,
    MessageCallback,
)
from .gate_hub import (
    GateHubServer,
    GateHubClient,
    MessageDecoder,
    FrameError,
    encode_message,
    MSG_EVENT,
    MSG_TIME_REQ,
    MSG_TIME_RESP,
    MSG_ECHO_REQ,
    MSG_ECHO_RESP,
)

__all__ = [
    # Transport
    'Transport',
    'TransportError',
    'LocalHub',
    'LocalTransport',
    'MessageCallback',
    # TCP hub
    'GateHubServer',
    'GateHubClient',
    'MessageDecoder',
    'FrameError',
    'encode_message',
    'MSG_EVENT',
    'MSG_TIME_REQ',
    'MSG_TIME_RESP',
    'MSG_ECHO_REQ',
    'MSG_ECHO_RESP',
]
