"""Generic segmentation offload: splitting packets read from an offloading TUN."""

from __future__ import annotations

import struct

from .device import TooManySegmentsError
from .packet import (
    IPPROTO_TCP,
    IPPROTO_UDP,
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    TCP_FLAG_FIN,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
    UDPH_LEN,
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_NONE,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_GSO_UDP_L4,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
    checksum,
    pseudo_header_checksum_no_fold,
)

_TCP_GSO_TYPES = (VIRTIO_NET_HDR_GSO_TCPV4, VIRTIO_NET_HDR_GSO_TCPV6)
_SUPPORTED_GSO_TYPES = (*_TCP_GSO_TYPES, VIRTIO_NET_HDR_GSO_UDP_L4)


def _u16(buf, at: int) -> int:
    return int.from_bytes(buf[at : at + 2], "big")


def _u32(buf, at: int) -> int:
    return int.from_bytes(buf[at : at + 4], "big")


def _put_u16(buf, at: int, value: int) -> None:
    struct.pack_into(">H", buf, at, value & 0xFFFF)


def _put_u32(buf, at: int, value: int) -> None:
    struct.pack_into(">I", buf, at, value & 0xFFFFFFFF)


def _ensure_len(buf: bytearray, size: int) -> None:
    if len(buf) < size:
        buf.extend(bytes(size - len(buf)))


def gso_split(data: bytearray, hdr: VirtioNetHdr, out_bufs, out_offset: int, is_v6: bool) -> list[int]:
    """Split the segmented packet ``data`` into ``out_bufs``.

    Each segment is written from ``out_offset`` onwards into the next buffer,
    which is grown if it is too short. ``data`` has its checksum fields
    cleared. Returns the size of every segment written.
    """
    if hdr.hdr_len < hdr.csum_start:
        raise ValueError(
            f"virtioNetHdr.hdrLen ({hdr.hdr_len}) < virtioNetHdr.csumStart ({hdr.csum_start})"
        )
    iph_len = hdr.csum_start
    if is_v6:
        src_offset, addr_len = IPV6_SRC_ADDR_OFFSET, 16
    else:
        data[10:12] = b"\x00\x00"  # IPv4 header checksum is recomputed per segment
        src_offset, addr_len = IPV4_SRC_ADDR_OFFSET, 4
    csum_at = hdr.csum_start + hdr.csum_offset
    data[csum_at : csum_at + 2] = b"\x00\x00"

    is_tcp = hdr.gso_type in _TCP_GSO_TYPES
    protocol = IPPROTO_TCP if is_tcp else IPPROTO_UDP
    first_seq = _u32(data, hdr.csum_start + 4) if is_tcp else 0
    src_addr = bytes(data[src_offset : src_offset + addr_len])
    dst_addr = bytes(data[src_offset + addr_len : src_offset + addr_len * 2])
    transport_hdr_len = hdr.hdr_len - hdr.csum_start

    sizes: list[int] = []
    at = hdr.hdr_len
    while at < len(data):
        i = len(sizes)
        if i == len(out_bufs):
            raise TooManySegmentsError(f"packet needs more than {len(out_bufs)} segments")
        end = min(at + hdr.gso_size, len(data))
        segment_len = end - at
        total_len = hdr.hdr_len + segment_len
        out = out_bufs[i]
        _ensure_len(out, out_offset + total_len)
        base = out_offset

        out[base : base + iph_len] = data[:iph_len]
        if is_v6:
            _put_u16(out, base + 4, total_len - iph_len)
        else:
            if i > 0:
                _put_u16(out, base + 4, _u16(out, base + 4) + i)
            _put_u16(out, base + 2, total_len)
            _put_u16(out, base + 10, ~checksum(out[base : base + iph_len]))

        transport_at = base + hdr.csum_start
        out[transport_at : base + hdr.hdr_len] = data[hdr.csum_start : hdr.hdr_len]
        if is_tcp:
            seq = first_seq + ((hdr.gso_size * i) & 0xFFFF)
            _put_u32(out, transport_at + 4, seq)
            if end != len(data):
                # FIN and PSH belong on the final segment only.
                out[transport_at + TCP_FLAGS_OFFSET] &= ~(TCP_FLAG_FIN | TCP_FLAG_PSH) & 0xFF
        else:
            _put_u16(out, transport_at + 4, segment_len + transport_hdr_len)

        out[base + hdr.hdr_len : base + total_len] = data[at:end]

        pseudo = pseudo_header_checksum_no_fold(
            protocol, src_addr, dst_addr, (transport_hdr_len + segment_len) & 0xFFFF
        )
        _put_u16(
            out,
            transport_at + hdr.csum_offset,
            ~checksum(out[transport_at : base + total_len], pseudo),
        )
        sizes.append(total_len)
        at += hdr.gso_size
    return sizes


def gso_none_checksum(data: bytearray, csum_start: int, csum_offset: int) -> None:
    """Complete a partial checksum in place.

    The value found at the checksum field, typically the pseudo-header sum,
    is folded into the sum computed from ``csum_start`` to the end.
    """
    csum_at = csum_start + csum_offset
    initial = _u16(data, csum_at)
    data[csum_at : csum_at + 2] = b"\x00\x00"
    _put_u16(data, csum_at, ~checksum(data[csum_start:], initial))


def handle_virtio_read(data, bufs, offset: int) -> list[int]:
    """Turn one virtio-prefixed read into packets placed at ``offset`` in ``bufs``.

    Returns the size of each packet produced, in the order of ``bufs``.
    """
    hdr = VirtioNetHdr.decode(data)
    pkt = bytearray(data[VIRTIO_NET_HDR_LEN:])

    if hdr.gso_type == VIRTIO_NET_HDR_GSO_NONE:
        if hdr.flags & VIRTIO_NET_HDR_F_NEEDS_CSUM:
            # CHECKSUM_PARTIAL: finish the checksum from csum_start.
            gso_none_checksum(pkt, hdr.csum_start, hdr.csum_offset)
        room = len(bufs[0]) - offset
        if len(pkt) > room:
            raise ValueError(f"read len {len(pkt)} overflows bufs element len {max(room, 0)}")
        bufs[0][offset : offset + len(pkt)] = pkt
        return [len(pkt)]

    if hdr.gso_type not in _SUPPORTED_GSO_TYPES:
        raise ValueError(f"unsupported virtio GSO type: {hdr.gso_type}")
    if not pkt:
        raise ValueError("packet is too short")

    ip_version = pkt[0] >> 4
    if ip_version == 4:
        if hdr.gso_type not in (VIRTIO_NET_HDR_GSO_TCPV4, VIRTIO_NET_HDR_GSO_UDP_L4):
            raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")
    elif ip_version == 6:
        if hdr.gso_type not in (VIRTIO_NET_HDR_GSO_TCPV6, VIRTIO_NET_HDR_GSO_UDP_L4):
            raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")
    else:
        raise ValueError(f"invalid ip header version: {ip_version}")

    # The kernel's hdr_len may cover the whole first packet on the forward
    # path, so derive it from the transport header instead.
    if hdr.gso_type == VIRTIO_NET_HDR_GSO_UDP_L4:
        hdr.hdr_len = hdr.csum_start + UDPH_LEN
    else:
        if len(pkt) <= hdr.csum_start + 12:
            raise ValueError("packet is too short")
        tcph_len = (pkt[hdr.csum_start + 12] >> 4) * 4
        if not 20 <= tcph_len <= 60:
            raise ValueError(f"tcp header len is invalid: {tcph_len}")
        hdr.hdr_len = hdr.csum_start + tcph_len

    if len(pkt) < hdr.hdr_len:
        raise ValueError(f"length of packet ({len(pkt)}) < virtioNetHdr.hdrLen ({hdr.hdr_len})")
    if hdr.hdr_len < hdr.csum_start:
        raise ValueError(
            f"virtioNetHdr.hdrLen ({hdr.hdr_len}) < virtioNetHdr.csumStart ({hdr.csum_start})"
        )
    csum_at = hdr.csum_start + hdr.csum_offset
    if csum_at + 1 >= len(pkt):
        raise ValueError(
            f"end of checksum offset ({csum_at + 1}) exceeds packet length ({len(pkt)})"
        )

    return gso_split(pkt, hdr, bufs, offset, ip_version == 6)