"""Port negotiation and listener inventory."""

from relay_core.network.ports import (
    ListeningPort,
    bind_socket,
    bind_with_retry,
    find_available_port,
    is_port_in_use,
    list_listening_ports,
    listening_ports_of,
)

__all__ = [
    "ListeningPort",
    "bind_socket",
    "bind_with_retry",
    "find_available_port",
    "is_port_in_use",
    "list_listening_ports",
    "listening_ports_of",
]
