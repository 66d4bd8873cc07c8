"""
Transport layer — the wire protocol (protocol.py) and the WebSocket
listener (websocket.py).
"""

from sightline.transport.protocol import (
    InboundType,
    OutboundEvent,
    OutboundType,
    decode_inbound,
)

__all__ = [
    "InboundType",
    "OutboundEvent",
    "OutboundType",
    "decode_inbound",
]
