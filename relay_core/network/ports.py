"""
Port negotiation for the gateway.

Availability is checked with a connect probe rather than by holding the
port, so a port reported free can be taken by another process before the
gateway binds it. ``bind_with_retry`` absorbs that race at the bind call
site: a failed bind excludes the port and negotiates again, a bounded
number of times.
"""

from __future__ import annotations

import errno
import logging
import socket
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

import psutil

from relay_core.errors import PortBindExhausted, PortRangeExhausted

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535

PortProbe = Callable[[int], bool]


def is_port_in_use(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    """True if something accepts a TCP connection on ``host:port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        try:
            return sock.connect_ex((host, port)) == 0
        except OSError:
            return False


def _validate_range(low: int, high: int) -> None:
    if not (MIN_PORT <= low <= MAX_PORT and MIN_PORT <= high <= MAX_PORT):
        raise ValueError(f"Port range {low}-{high} outside {MIN_PORT}-{MAX_PORT}")
    if low > high:
        raise ValueError(f"Invalid port range: low ({low}) > high ({high})")


def find_available_port(
    low: int,
    high: int,
    exclude: Iterable[int] = (),
    probe: Optional[PortProbe] = None,
) -> int:
    """
    First port in ``[low, high]`` with no listener, scanning upward.

    Raises:
        ValueError: invalid range
        PortRangeExhausted: every port in the range is occupied or excluded
    """
    _validate_range(low, high)
    probe = probe or is_port_in_use
    skipped = set(exclude)

    for port in range(low, high + 1):
        if port in skipped:
            continue
        if not probe(port):
            logger.debug(f"Port {port} is available")
            return port

    raise PortRangeExhausted(low, high)


def bind_socket(host: str, port: int) -> socket.socket:
    """Listening TCP socket on ``host:port``; raises ``OSError`` if taken."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


def bind_with_retry(
    low: int,
    high: int,
    preferred: Optional[int] = None,
    host: str = "0.0.0.0",
    retries: int = 3,
    negotiator: Callable[..., int] = find_available_port,
    binder: Callable[[str, int], socket.socket] = bind_socket,
) -> socket.socket:
    """
    Bind the gateway socket, renegotiating when a port is lost to a race.

    ``preferred`` (normally the persisted port) is tried first. After that
    each attempt asks ``negotiator`` for a port outside the ones already
    tried. At most ``retries + 1`` binds are attempted.

    Raises:
        PortBindExhausted: every attempted bind failed
        PortRangeExhausted: the negotiator found nothing left to try
    """
    attempted: List[int] = []

    for attempt in range(retries + 1):
        if attempt == 0 and preferred is not None:
            port = preferred
        else:
            port = negotiator(low, high, exclude=attempted)

        try:
            sock = binder(host, port)
        except OSError as e:
            attempted.append(port)
            reason = "address in use" if e.errno == errno.EADDRINUSE else str(e)
            logger.warning(
                f"Bind to {host}:{port} failed ({reason}), "
                f"attempt {attempt + 1}/{retries + 1}"
            )
            continue

        if attempted:
            logger.info(f"Bound {host}:{port} after losing {attempted}")
        return sock

    raise PortBindExhausted(attempted)


# ============================================================================
# LISTENING PORT INVENTORY
# ============================================================================

@dataclass
class ListeningPort:
    port: int
    address: str
    pid: Optional[int] = None
    process: Optional[str] = None


def list_listening_ports() -> List[ListeningPort]:
    """TCP listeners on this host, sorted by port."""
    listeners = []
    try:
        for conn in psutil.net_connections(kind="tcp"):
            if conn.status == psutil.CONN_LISTEN and conn.laddr:
                listeners.append((conn.laddr.port, conn.laddr.ip, conn.pid))
    except psutil.AccessDenied:
        logger.warning("Access denied listing connections; showing accessible processes only")
        for proc in psutil.process_iter(["pid"]):
            try:
                for conn in proc.net_connections(kind="tcp"):
                    if conn.status == psutil.CONN_LISTEN and conn.laddr:
                        listeners.append((conn.laddr.port, conn.laddr.ip, proc.pid))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

    seen = {}
    for port, address, pid in listeners:
        if (port, address) in seen:
            continue
        name = None
        if pid:
            try:
                name = psutil.Process(pid).name()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        seen[(port, address)] = ListeningPort(port=port, address=address, pid=pid, process=name)

    return sorted(seen.values(), key=lambda p: (p.port, p.address))


def listening_ports_of(pid: int) -> List[int]:
    """Ports a given process is listening on."""
    try:
        conns = psutil.Process(pid).net_connections(kind="tcp")
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []
    return sorted({c.laddr.port for c in conns if c.status == psutil.CONN_LISTEN and c.laddr})


__all__ = [
    "ListeningPort",
    "bind_socket",
    "bind_with_retry",
    "find_available_port",
    "is_port_in_use",
    "list_listening_ports",
    "listening_ports_of",
]
