"""UDP port reservation and two-way audio packet routing."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import asyncio
import logging
import random


log = logging.getLogger(__name__)

# Port range for ephemeral RTP/RTCP ports
_PORT_RANGE_START = 10_000
_PORT_RANGE_SIZE = 10_000
_MAX_RESERVE_ATTEMPTS = 100

_BIND_HOST = "0.0.0.0"
_LOCAL_HOST = "127.0.0.1"


class PortReservationError(Exception):
    pass


# ===========================================================================
# RTP Helpers
# ===========================================================================


def get_payload_type(message: bytes) -> int:
    return message[1] & 0x7F


def is_rtp_message(message: bytes) -> bool:
    """True for RTP media packets, False for RTCP (payload types 72-76 land in 200-204)."""
    if len(message) < 2:
        return False
    payload_type = get_payload_type(message)
    return payload_type > 90 or payload_type == 0


# ===========================================================================
# Port Broker
# ===========================================================================


async def _probe_port(port: int) -> bool:
    """Check a UDP port is free by binding and immediately releasing it."""
    loop = asyncio.get_running_loop()
    try:
        transport, _ = await loop.create_datagram_endpoint(
            asyncio.DatagramProtocol,
            local_addr=(_BIND_HOST, port),
        )
    except OSError:
        return False
    transport.close()
    return True


class PortBroker:
    """Hands out free UDP ports and remembers them until released.

    Availability is best-effort: a port may be taken by someone else between
    the probe and the transcoder's own bind. That race shows up as a stream
    start failure.
    """

    def __init__(self) -> None:
        self._reserved: set[int] = set()

    @property
    def reserved(self) -> frozenset[int]:
        return frozenset(self._reserved)

    def _pick_ports(self, count: int, contiguous: bool) -> list[int]:
        end = _PORT_RANGE_START + _PORT_RANGE_SIZE
        if contiguous:
            for _ in range(_PORT_RANGE_SIZE):
                first = random.randrange(_PORT_RANGE_START, end - count + 1)
                ports = [first + i for i in range(count)]
                if not self._reserved.intersection(ports):
                    return ports
            raise PortReservationError(f"No run of {count} unreserved ports left")
        free = [p for p in range(_PORT_RANGE_START, end) if p not in self._reserved]
        if len(free) < count:
            raise PortReservationError(f"Only {len(free)} ports left, {count} requested")
        return random.sample(free, count)

    async def reserve_ports(self, count: int = 1, contiguous: bool = True) -> list[int]:
        """Reserve `count` free UDP ports, consecutive when `contiguous` is set."""
        if count < 1:
            raise ValueError("count must be at least 1")
        for attempt in range(_MAX_RESERVE_ATTEMPTS):
            ports = self._pick_ports(count, contiguous)
            # Hold the candidates while probing so concurrent callers skip them
            self._reserved.update(ports)
            results = await asyncio.gather(*(_probe_port(p) for p in ports))
            if all(results):
                return ports
            self._reserved.difference_update(ports)
            log.debug("Ports %s busy (attempt %d), retrying", ports, attempt + 1)
        raise PortReservationError(
            f"Failed to reserve {count} port(s) after {_MAX_RESERVE_ATTEMPTS} tries"
        )

    def release_ports(self, ports: Iterable[int]) -> None:
        self._reserved.difference_update(ports)


# ===========================================================================
# Two-Way Audio Router
# ===========================================================================


class _SplitterProtocol(asyncio.DatagramProtocol):
    def __init__(self, splitter: RtpSplitter) -> None:
        self._splitter = splitter

    def datagram_received(self, data: bytes, addr: Any) -> None:
        self._splitter._route(data, addr)

    def error_received(self, exc: Exception) -> None:
        log.debug("Audio splitter on port %d: %s", self._splitter.server_port, exc)


class RtpSplitter:
    """Duplicates inbound audio datagrams to two local ports.

    Listens on `server_port` (the audio port handed to the viewer). Anything
    the viewer sends is forwarded to both `audio_rtcp_port` and
    `two_way_audio_port` on localhost; anything those local ports send back is
    forwarded to the last viewer address seen.
    """

    def __init__(
        self,
        server_port: int,
        audio_rtcp_port: int,
        two_way_audio_port: int,
        target_host: str = _LOCAL_HOST,
    ) -> None:
        self.server_port = server_port
        self.audio_rtcp_port = audio_rtcp_port
        self.two_way_audio_port = two_way_audio_port
        self.target_host = target_host
        self.rtp_packets = 0
        self.rtcp_packets = 0
        self._transport: asyncio.DatagramTransport | None = None
        self._viewer_addr: Any = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._transport is not None

    async def open(self) -> None:
        if self._closed:
            raise RuntimeError("RtpSplitter already closed")
        if self._transport is not None:
            return
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _SplitterProtocol(self),
            local_addr=(_BIND_HOST, self.server_port),
        )
        log.debug(
            "Audio splitter listening on %d -> %d, %d",
            self.server_port,
            self.audio_rtcp_port,
            self.two_way_audio_port,
        )

    def _is_local_target(self, addr: Any) -> bool:
        return addr[0] == self.target_host and addr[1] in (
            self.audio_rtcp_port,
            self.two_way_audio_port,
        )

    def _route(self, data: bytes, addr: Any) -> None:
        transport = self._transport
        if transport is None:
            return
        if self._is_local_target(addr):
            if self._viewer_addr is not None:
                transport.sendto(data, self._viewer_addr)
            return
        self._viewer_addr = addr
        if is_rtp_message(data):
            self.rtp_packets += 1
        else:
            self.rtcp_packets += 1
        transport.sendto(data, (self.target_host, self.audio_rtcp_port))
        transport.sendto(data, (self.target_host, self.two_way_audio_port))

    def close(self) -> None:
        """Release the socket. Safe to call more than once."""
        self._closed = True
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()
            log.debug("Audio splitter on port %d closed", self.server_port)
