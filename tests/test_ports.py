"""Tests for gateway port negotiation and bind retry."""

from __future__ import annotations

import socket

import pytest

from relay_core.errors import PortBindExhausted, PortRangeExhausted
from relay_core.network.ports import (
    bind_socket,
    bind_with_retry,
    find_available_port,
    is_port_in_use,
)


def occupied_except(*free_ports):
    """Probe reporting every port busy except ``free_ports``."""
    free = set(free_ports)
    return lambda port: port not in free


class TestFindAvailablePort:

    def test_returns_the_only_free_port(self):
        assert find_available_port(11000, 11010, probe=occupied_except(11007)) == 11007

    def test_scans_ascending(self):
        probed = []

        def probe(port):
            probed.append(port)
            return port < 11003

        assert find_available_port(11000, 11010, probe=probe) == 11003
        assert probed == [11000, 11001, 11002, 11003]

    def test_single_port_range(self):
        assert find_available_port(11500, 11500, probe=lambda p: False) == 11500

    def test_exhausted_range_raises(self):
        with pytest.raises(PortRangeExhausted) as exc_info:
            find_available_port(11000, 11005, probe=lambda p: True)
        assert exc_info.value.low == 11000
        assert exc_info.value.high == 11005

    def test_excluded_ports_are_skipped(self):
        port = find_available_port(
            11000, 11005, exclude=[11000, 11001], probe=lambda p: False
        )
        assert port == 11002

    def test_everything_excluded_raises(self):
        with pytest.raises(PortRangeExhausted):
            find_available_port(11000, 11001, exclude=[11000, 11001], probe=lambda p: False)

    @pytest.mark.parametrize("low,high", [(12000, 11000), (0, 10), (65000, 70000)])
    def test_invalid_range(self, low, high):
        with pytest.raises(ValueError):
            find_available_port(low, high, probe=lambda p: False)


class TestIsPortInUse:

    def test_detects_a_loopback_listener(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
            listener.bind(("127.0.0.1", 0))
            listener.listen(1)
            port = listener.getsockname()[1]
            assert is_port_in_use(port) is True

    def test_closed_port_is_free(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]
        assert is_port_in_use(port) is False

    def test_real_scan_skips_listener(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
            listener.bind(("127.0.0.1", 0))
            listener.listen(1)
            port = listener.getsockname()[1]
            # Only the listening port is in range.
            with pytest.raises(PortRangeExhausted):
                find_available_port(port, port)


class TestBindWithRetry:

    def test_preferred_port_bound_first(self):
        bound = []

        def binder(host, port):
            bound.append(port)
            return object()

        def negotiator(low, high, exclude=()):
            raise AssertionError("negotiator must not be called")

        bind_with_retry(11000, 11100, preferred=11050, negotiator=negotiator, binder=binder)
        assert bound == [11050]

    def test_lost_race_renegotiates_excluding_attempted(self):
        taken = {11000, 11001}
        exclusions = []

        def negotiator(low, high, exclude=()):
            exclusions.append(list(exclude))
            return find_available_port(low, high, exclude=exclude, probe=lambda p: False)

        def binder(host, port):
            # Probe said free, but someone grabbed it first.
            if port in taken:
                raise OSError(98, "Address already in use")
            return port

        result = bind_with_retry(11000, 11100, retries=3, negotiator=negotiator, binder=binder)

        assert result == 11002
        assert exclusions == [[], [11000], [11000, 11001]]

    def test_failed_preferred_falls_back_to_range(self):
        def binder(host, port):
            if port == 11050:
                raise OSError(98, "Address already in use")
            return port

        result = bind_with_retry(
            11000,
            11100,
            preferred=11050,
            negotiator=lambda low, high, exclude=(): 11000,
            binder=binder,
        )
        assert result == 11000

    def test_gives_up_after_retries(self):
        attempts = []
        ports = iter(range(11000, 11100))

        def binder(host, port):
            attempts.append(port)
            raise OSError(98, "Address already in use")

        with pytest.raises(PortBindExhausted) as exc_info:
            bind_with_retry(
                11000,
                11100,
                retries=2,
                negotiator=lambda low, high, exclude=(): next(ports),
                binder=binder,
            )

        assert len(attempts) == 3
        assert exc_info.value.attempted == [11000, 11001, 11002]

    def test_binds_a_real_socket(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]

        sock = bind_with_retry(port, port, host="127.0.0.1", retries=0)
        try:
            assert sock.getsockname()[1] == port
            assert is_port_in_use(port) is True
        finally:
            sock.close()


def test_bind_socket_raises_when_taken():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]
        with pytest.raises(OSError):
            bind_socket("127.0.0.1", port)
