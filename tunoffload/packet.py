"""Packet layout constants, the virtio-net header and Internet checksums."""

from __future__ import annotations

import struct
from dataclasses import dataclass

IPPROTO_TCP = 6
IPPROTO_UDP = 17

VIRTIO_NET_HDR_F_NEEDS_CSUM = 1
VIRTIO_NET_HDR_GSO_NONE = 0
VIRTIO_NET_HDR_GSO_TCPV4 = 1
VIRTIO_NET_HDR_GSO_TCPV6 = 4
VIRTIO_NET_HDR_GSO_UDP_L4 = 5

# Native byte order, no padding: the shape of the kernel's virtio_net_hdr.
_VIRTIO_NET_HDR = struct.Struct("=BBHHHH")
VIRTIO_NET_HDR_LEN = _VIRTIO_NET_HDR.size

TCP_FLAGS_OFFSET = 13
TCP_FLAG_FIN = 0x01
TCP_FLAG_PSH = 0x08
TCP_FLAG_ACK = 0x10

UDPH_LEN = 8

IPV4_FLAG_MORE_FRAGMENTS = 0x20
IPV4_SRC_ADDR_OFFSET = 12
IPV6_SRC_ADDR_OFFSET = 8
MAX_UINT16 = 0xFFFF


@dataclass
class VirtioNetHdr:
    """The virtio-net header that prefixes packets on an offloading TUN."""

    flags: int = 0
    gso_type: int = 0
    hdr_len: int = 0
    gso_size: int = 0
    csum_start: int = 0
    csum_offset: int = 0

    @classmethod
    def decode(cls, data) -> "VirtioNetHdr":
        """Parse a header from the start of ``data``."""
        if len(data) < VIRTIO_NET_HDR_LEN:
            raise ValueError("short buffer")
        return cls(*_VIRTIO_NET_HDR.unpack_from(data, 0))

    def encode(self, buf, at: int = 0) -> None:
        """Write the header into ``buf`` at position ``at``."""
        if at < 0 or len(buf) - at < VIRTIO_NET_HDR_LEN:
            raise ValueError("short buffer")
        _VIRTIO_NET_HDR.pack_into(
            buf,
            at,
            self.flags,
            self.gso_type,
            self.hdr_len,
            self.gso_size,
            self.csum_start,
            self.csum_offset,
        )


def _sum_words(data) -> int:
    raw = bytes(data)
    if len(raw) % 2:
        raw += b"\x00"
    return sum(struct.unpack(f">{len(raw) // 2}H", raw))


def _fold(total: int) -> int:
    while total > 0xFFFF:
        total = (total >> 16) + (total & 0xFFFF)
    return total


def checksum(data, initial: int = 0) -> int:
    """Return the folded one's-complement sum of ``data`` plus ``initial``.

    The result is not complemented; invert it to get the header field value.
    """
    return _fold(initial + _sum_words(data))


def pseudo_header_checksum_no_fold(protocol: int, src_addr, dst_addr, total_len: int) -> int:
    """Return the unfolded sum of the TCP/UDP pseudo-header."""
    return _sum_words(src_addr) + _sum_words(dst_addr) + protocol + total_len


def checksum_valid(pkt, iph_len: int, proto: int, is_v6: bool) -> bool:
    """Report whether the transport checksum of ``pkt`` verifies."""
    if is_v6:
        src_at, addr_size = IPV6_SRC_ADDR_OFFSET, 16
    else:
        src_at, addr_size = IPV4_SRC_ADDR_OFFSET, 4
    length = (len(pkt) - iph_len) & 0xFFFF
    pseudo = pseudo_header_checksum_no_fold(
        proto,
        pkt[src_at : src_at + addr_size],
        pkt[src_at + addr_size : src_at + addr_size * 2],
        length,
    )
    return checksum(pkt[iph_len:], pseudo) == 0xFFFF