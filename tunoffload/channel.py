"""An in-memory TUN device fed through queues, and a test ICMP packet builder."""

from __future__ import annotations

import errno
import ipaddress
import queue
import struct
import threading
from collections.abc import Iterator
from typing import Optional

from .device import Device, Event
from .packet import checksum

DEFAULT_MTU = 1420

_POLL_INTERVAL = 0.05


def _complemented_checksum(data, initial: int = 0) -> int:
    return ~checksum(data, initial) & 0xFFFF


def _gen_icmpv4(payload: bytes, dst: ipaddress.IPv4Address, src: ipaddress.IPv4Address) -> bytes:
    ipv4_size = 20
    icmpv4_size = 8
    header_size = ipv4_size + icmpv4_size
    pkt = bytearray(header_size + len(payload))

    icmp = bytearray(icmpv4_size)
    icmp[0] = 8  # echo request
    icmp[1] = 0
    icmp_sum = ~_complemented_checksum(icmp, _complemented_checksum(payload)) & 0xFFFF
    struct.pack_into(">H", icmp, 2, icmp_sum)
    pkt[ipv4_size:header_size] = icmp

    pkt[0] = (4 << 4) | (ipv4_size // 4)
    struct.pack_into(">H", pkt, 2, len(pkt))
    pkt[8] = 65  # TTL
    pkt[9] = 1  # ICMP
    pkt[12:16] = src.packed
    pkt[16:20] = dst.packed
    ip_sum = ~_complemented_checksum(pkt[:ipv4_size]) & 0xFFFF
    struct.pack_into(">H", pkt, 10, ip_sum)

    pkt[header_size:] = payload
    return bytes(pkt)


def ping(dst, src) -> bytes:
    """Build an IPv4 ICMP echo request from ``src`` to ``dst``."""
    dst_addr = ipaddress.ip_address(dst)
    src_addr = ipaddress.ip_address(src)
    if dst_addr.version != 4 or src_addr.version != 4:
        raise ValueError("ping needs IPv4 addresses")
    local_port = 1337
    seq = 0
    return _gen_icmpv4(struct.pack(">HH", local_port, seq), dst_addr, src_addr)


def _closed_error() -> OSError:
    return OSError(errno.EBADF, "file already closed")


class ChannelTUN:
    """Queues standing in for a TUN device.

    ``inbound`` receives packets the device writes; packets put on
    ``outbound`` are returned by the device's reads.
    """

    def __init__(self) -> None:
        self.inbound: queue.Queue[bytes] = queue.Queue()
        self.outbound: queue.Queue[bytes] = queue.Queue()
        self._closed = threading.Event()
        self._events: queue.Queue[Optional[Event]] = queue.Queue()
        self._events.put(Event.UP)
        self._device = ChannelDevice(self)

    def device(self) -> "ChannelDevice":
        """Return the device side of the queues."""
        return self._device


class ChannelDevice(Device):
    """The :class:`Device` view of a :class:`ChannelTUN`."""

    def __init__(self, channel: ChannelTUN) -> None:
        self._channel = channel
        self._close_lock = threading.Lock()

    def file(self):
        return None

    def read(self, bufs, offset):
        """Wait for a packet on ``outbound`` and copy it into ``bufs[0]``."""
        channel = self._channel
        while True:
            if channel._closed.is_set():
                raise _closed_error()
            try:
                msg = channel.outbound.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            buf = bufs[0]
            n = max(0, min(len(msg), len(buf) - offset))
            buf[offset : offset + n] = msg[:n]
            return [n]

    def write(self, bufs, offset):
        """Deliver each packet, from ``offset`` onwards, to ``inbound``."""
        channel = self._channel
        for data in bufs:
            if channel._closed.is_set():
                raise _closed_error()
            channel.inbound.put(bytes(data[offset:]))
        return len(bufs)

    def mtu(self):
        return DEFAULT_MTU

    def name(self):
        return "loopbackTun1"

    def events(self) -> Iterator[Event]:
        while True:
            event = self._channel._events.get()
            if event is None:
                # Leave the end marker for any other iterator.
                self._channel._events.put(None)
                return
            yield event

    def close(self):
        with self._close_lock:
            if self._channel._closed.is_set():
                return
            self._channel._closed.set()
            self._channel._events.put(None)

    def batch_size(self):
        return 1