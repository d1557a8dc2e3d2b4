"""Generic receive offload: coalescing batches of TCP and UDP packets."""

from __future__ import annotations

import enum
import struct

from .flows import TCPGROItem, TCPGROTable, UDPGROItem, UDPGROTable
from .packet import (
    IPPROTO_TCP,
    IPPROTO_UDP,
    IPV4_FLAG_MORE_FRAGMENTS,
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    MAX_UINT16,
    TCP_FLAG_ACK,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
    UDPH_LEN,
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_GSO_UDP_L4,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
    checksum,
    checksum_valid,
    pseudo_header_checksum_no_fold,
)

# The largest size, offset included, that a buffer may grow to by coalescing.
BUFFER_CAPACITY = MAX_UINT16


class CanCoalesce(enum.IntEnum):
    """Whether, and on which side, a packet may join an existing item."""

    PREPEND = -1
    UNAVAILABLE = 0
    APPEND = 1


class CoalesceResult(enum.IntEnum):
    """Outcome of an attempt to merge two packets."""

    INSUFFICIENT_CAP = 0
    PSH_ENDING = 1
    ITEM_INVALID_CSUM = 2
    PKT_INVALID_CSUM = 3
    SUCCESS = 4


class GROResult(enum.IntEnum):
    """What happened to a packet evaluated for coalescing."""

    NOOP = 0
    TABLE_INSERT = 1
    COALESCED = 2


class GROCandidate(enum.IntEnum):
    """Which coalescing path, if any, a packet qualifies for."""

    NOT_CANDIDATE = 0
    TCP4 = 1
    TCP6 = 2
    UDP4 = 3
    UDP6 = 4


def _u16(buf, at: int) -> int:
    return int.from_bytes(buf[at : at + 2], "big")


def _u32(buf, at: int) -> int:
    return int.from_bytes(buf[at : at + 4], "big")


def _put_u16(buf, at: int, value: int) -> None:
    struct.pack_into(">H", buf, at, value & 0xFFFF)


def _addr_layout(is_v6: bool) -> tuple[int, int]:
    if is_v6:
        return IPV6_SRC_ADDR_OFFSET, 16
    return IPV4_SRC_ADDR_OFFSET, 4


def _is_ipv4_fragment(pkt) -> bool:
    return bool(pkt[6] & IPV4_FLAG_MORE_FRAGMENTS or (pkt[6] << 3) & 0xFF or pkt[7])


def ip_headers_can_coalesce(pkt_a, pkt_b) -> bool:
    """Report whether the IP headers of two packets allow merging them."""
    if len(pkt_a) < 9 or len(pkt_b) < 9:
        return False
    if pkt_a[0] >> 4 == 6:
        if pkt_a[0] != pkt_b[0] or pkt_a[1] >> 4 != pkt_b[1] >> 4:
            return False  # unequal traffic class
        if pkt_a[7] != pkt_b[7]:
            return False  # unequal hop limit
    else:
        if pkt_a[1] != pkt_b[1]:
            return False  # unequal ToS
        if pkt_a[6] >> 5 != pkt_b[6] >> 5:
            return False  # unequal DF or reserved bits
        if pkt_a[8] != pkt_b[8]:
            return False  # unequal TTL
    return True


def udp_packets_can_coalesce(pkt, iph_len, gso_size, item: UDPGROItem, bufs, bufs_offset) -> CanCoalesce:
    """Decide whether ``pkt`` may be appended to the UDP packet of ``item``."""
    target = bufs[item.bufs_index][bufs_offset:]
    if not ip_headers_can_coalesce(pkt, target):
        return CanCoalesce.UNAVAILABLE
    if max(0, len(target) - (iph_len + UDPH_LEN)) % item.gso_size:
        # A shorter segment already sits at the end; nothing may follow it.
        return CanCoalesce.UNAVAILABLE
    if gso_size > item.gso_size:
        return CanCoalesce.UNAVAILABLE
    return CanCoalesce.APPEND


def tcp_packets_can_coalesce(
    pkt, iph_len, tcph_len, seq, psh_set, gso_size, item: TCPGROItem, bufs, bufs_offset
) -> CanCoalesce:
    """Decide whether and where ``pkt`` may join the TCP packet of ``item``."""
    target = bufs[item.bufs_index][bufs_offset:]
    if tcph_len != item.tcph_len:
        return CanCoalesce.UNAVAILABLE
    if tcph_len > 20:
        if bytes(pkt[iph_len + 20 : iph_len + tcph_len]) != bytes(
            target[item.iph_len + 20 : iph_len + tcph_len]
        ):
            return CanCoalesce.UNAVAILABLE
    if not ip_headers_can_coalesce(pkt, target):
        return CanCoalesce.UNAVAILABLE
    lhs_len = (item.gso_size + item.num_merged * item.gso_size) & 0xFFFF
    if seq == (item.sent_seq + lhs_len) & 0xFFFFFFFF:
        if item.psh_set:
            # PSH may only be set on the final segment of a merged group.
            return CanCoalesce.UNAVAILABLE
        if max(0, len(target) - (iph_len + tcph_len)) % item.gso_size:
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size:
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.APPEND
    if (seq + gso_size) & 0xFFFFFFFF == item.sent_seq:
        if psh_set:
            return CanCoalesce.UNAVAILABLE
        if gso_size < item.gso_size:
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size and item.num_merged > 0:
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.PREPEND
    return CanCoalesce.UNAVAILABLE


def coalesce_udp_packets(pkt, item: UDPGROItem, bufs, bufs_offset, is_v6) -> CoalesceResult:
    """Append the payload of ``pkt`` to the buffer of ``item``."""
    head = bufs[item.bufs_index]
    headers_len = item.iph_len + UDPH_LEN
    coalesced_len = len(head) - bufs_offset + len(pkt) - headers_len
    if bufs_offset + coalesced_len > BUFFER_CAPACITY:
        return CoalesceResult.INSUFFICIENT_CAP
    if item.num_merged == 0:
        if item.csum_known_invalid or not checksum_valid(
            head[bufs_offset:], item.iph_len, IPPROTO_UDP, is_v6
        ):
            return CoalesceResult.ITEM_INVALID_CSUM
    if not checksum_valid(pkt, item.iph_len, IPPROTO_UDP, is_v6):
        return CoalesceResult.PKT_INVALID_CSUM
    head.extend(pkt[headers_len:])
    item.num_merged += 1
    return CoalesceResult.SUCCESS


def coalesce_tcp_packets(
    mode, pkt, pkt_bufs_index, gso_size, seq, psh_set, item: TCPGROItem, bufs, bufs_offset, is_v6
) -> CoalesceResult:
    """Merge ``pkt`` with the packet of ``item``.

    On a prepend the entries of ``bufs`` at the two indices are swapped, so
    that the merged packet stays at the index ``item`` already tracks.
    """
    target = bufs[item.bufs_index]
    headers_len = item.iph_len + item.tcph_len
    coalesced_len = len(target) - bufs_offset + len(pkt) - headers_len

    if bufs_offset + coalesced_len > BUFFER_CAPACITY:
        return CoalesceResult.INSUFFICIENT_CAP
    if mode == CanCoalesce.PREPEND and psh_set:
        return CoalesceResult.PSH_ENDING
    if item.num_merged == 0 and not checksum_valid(
        target[bufs_offset:], item.iph_len, IPPROTO_TCP, is_v6
    ):
        return CoalesceResult.ITEM_INVALID_CSUM
    if not checksum_valid(pkt, item.iph_len, IPPROTO_TCP, is_v6):
        return CoalesceResult.PKT_INVALID_CSUM

    if mode == CanCoalesce.PREPEND:
        item.sent_seq = seq
        bufs[pkt_bufs_index].extend(target[bufs_offset + headers_len :])
        bufs[item.bufs_index], bufs[pkt_bufs_index] = bufs[pkt_bufs_index], bufs[item.bufs_index]
    else:
        if psh_set:
            item.psh_set = True
            target[bufs_offset + item.iph_len + TCP_FLAGS_OFFSET] |= TCP_FLAG_PSH
        target.extend(pkt[headers_len:])

    if gso_size > item.gso_size:
        item.gso_size = gso_size
    item.num_merged += 1
    return CoalesceResult.SUCCESS


def _ip_header_len(pkt, is_v6: bool):
    """Return the IP header length, or None when the length fields disagree."""
    if is_v6:
        iph_len = 40
        if _u16(pkt, 4) != len(pkt) - iph_len:
            return None
    else:
        iph_len = (pkt[0] & 0x0F) * 4
        if _u16(pkt, 2) != len(pkt):
            return None
    if len(pkt) < iph_len:
        return None
    return iph_len


def tcp_gro(bufs, offset, pkt_index, table: TCPGROTable, is_v6) -> GROResult:
    """Evaluate the TCP packet at ``pkt_index`` against the flows in ``table``."""
    pkt = bufs[pkt_index][offset:]
    if len(pkt) > MAX_UINT16:
        return GROResult.NOOP
    iph_len = _ip_header_len(pkt, is_v6)
    if iph_len is None:
        return GROResult.NOOP
    tcph_len = (pkt[iph_len + 12] >> 4) * 4
    if not 20 <= tcph_len <= 60:
        return GROResult.NOOP
    if len(pkt) < iph_len + tcph_len:
        return GROResult.NOOP
    if not is_v6 and _is_ipv4_fragment(pkt):
        return GROResult.NOOP
    tcp_flags = pkt[iph_len + TCP_FLAGS_OFFSET]
    psh_set = False
    if tcp_flags != TCP_FLAG_ACK:
        if tcp_flags != TCP_FLAG_ACK | TCP_FLAG_PSH:
            return GROResult.NOOP
        psh_set = True
    gso_size = len(pkt) - tcph_len - iph_len
    if gso_size < 1:
        return GROResult.NOOP
    seq = _u32(pkt, iph_len + 4)
    src_offset, addr_len = _addr_layout(is_v6)
    items = table.lookup_or_insert(pkt, src_offset, src_offset + addr_len, iph_len, tcph_len, pkt_index)
    if items is None:
        return GROResult.TABLE_INSERT
    # Newest first: in-order arrival usually matches the last item, and
    # deleting an item does not disturb the indices still to be visited.
    for i, item in reversed(list(enumerate(items))):
        can = tcp_packets_can_coalesce(pkt, iph_len, tcph_len, seq, psh_set, gso_size, item, bufs, offset)
        if can == CanCoalesce.UNAVAILABLE:
            continue
        result = coalesce_tcp_packets(can, pkt, pkt_index, gso_size, seq, psh_set, item, bufs, offset, is_v6)
        if result == CoalesceResult.SUCCESS:
            table.update_at(item, i)
            return GROResult.COALESCED
        if result == CoalesceResult.ITEM_INVALID_CSUM:
            table.delete_at(item.key, i)
        elif result == CoalesceResult.PKT_INVALID_CSUM:
            return GROResult.NOOP
    table.insert(pkt, src_offset, src_offset + addr_len, iph_len, tcph_len, pkt_index)
    return GROResult.TABLE_INSERT


def udp_gro(bufs, offset, pkt_index, table: UDPGROTable, is_v6) -> GROResult:
    """Evaluate the UDP packet at ``pkt_index`` against the flows in ``table``."""
    pkt = bufs[pkt_index][offset:]
    if len(pkt) > MAX_UINT16:
        return GROResult.NOOP
    iph_len = _ip_header_len(pkt, is_v6)
    if iph_len is None:
        return GROResult.NOOP
    if len(pkt) < iph_len + UDPH_LEN:
        return GROResult.NOOP
    if not is_v6 and _is_ipv4_fragment(pkt):
        return GROResult.NOOP
    gso_size = len(pkt) - UDPH_LEN - iph_len
    if gso_size < 1:
        return GROResult.NOOP
    src_offset, addr_len = _addr_layout(is_v6)
    items = table.lookup_or_insert(pkt, src_offset, src_offset + addr_len, iph_len, pkt_index)
    if items is None:
        return GROResult.TABLE_INSERT
    # Only the last item of a flow is considered, so UDP is never reordered.
    last = len(items) - 1
    item = items[last]
    pkt_csum_known_invalid = False
    if udp_packets_can_coalesce(pkt, iph_len, gso_size, item, bufs, offset) == CanCoalesce.APPEND:
        result = coalesce_udp_packets(pkt, item, bufs, offset, is_v6)
        if result == CoalesceResult.SUCCESS:
            table.update_at(item, last)
            return GROResult.COALESCED
        if result == CoalesceResult.PKT_INVALID_CSUM:
            pkt_csum_known_invalid = True
    table.insert(pkt, src_offset, src_offset + addr_len, iph_len, pkt_index, pkt_csum_known_invalid)
    return GROResult.TABLE_INSERT


def _finalize_merged(buf, offset, iph_len, is_v6, proto, hdr: VirtioNetHdr) -> None:
    pkt_len = len(buf) - offset
    if is_v6:
        _put_u16(buf, offset + 4, pkt_len - iph_len)
    else:
        buf[offset + 10 : offset + 12] = b"\x00\x00"
        _put_u16(buf, offset + 2, pkt_len)
        _put_u16(buf, offset + 10, ~checksum(buf[offset : offset + iph_len]))
    hdr.encode(buf, offset - VIRTIO_NET_HDR_LEN)
    if proto == IPPROTO_UDP:
        _put_u16(buf, offset + iph_len + 4, pkt_len - iph_len)
    src_offset, addr_len = _addr_layout(is_v6)
    src_at = offset + src_offset
    psum = pseudo_header_checksum_no_fold(
        proto,
        buf[src_at : src_at + addr_len],
        buf[src_at + addr_len : src_at + addr_len * 2],
        (pkt_len - iph_len) & 0xFFFF,
    )
    _put_u16(buf, offset + hdr.csum_start + hdr.csum_offset, checksum(b"", psum))


def apply_tcp_coalesce_accounting(bufs, offset, table: TCPGROTable) -> None:
    """Fix up headers of merged TCP packets and write their virtio headers."""
    for item in table:
        buf = bufs[item.bufs_index]
        if item.num_merged == 0:
            VirtioNetHdr().encode(buf, offset - VIRTIO_NET_HDR_LEN)
            continue
        hdr = VirtioNetHdr(
            flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
            gso_type=VIRTIO_NET_HDR_GSO_TCPV6 if item.key.is_v6 else VIRTIO_NET_HDR_GSO_TCPV4,
            hdr_len=item.iph_len + item.tcph_len,
            gso_size=item.gso_size,
            csum_start=item.iph_len,
            csum_offset=16,
        )
        _finalize_merged(buf, offset, item.iph_len, item.key.is_v6, IPPROTO_TCP, hdr)


def apply_udp_coalesce_accounting(bufs, offset, table: UDPGROTable) -> None:
    """Fix up headers of merged UDP packets and write their virtio headers."""
    for item in table:
        buf = bufs[item.bufs_index]
        if item.num_merged == 0:
            VirtioNetHdr().encode(buf, offset - VIRTIO_NET_HDR_LEN)
            continue
        hdr = VirtioNetHdr(
            flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
            gso_type=VIRTIO_NET_HDR_GSO_UDP_L4,
            hdr_len=item.iph_len + UDPH_LEN,
            gso_size=item.gso_size,
            csum_start=item.iph_len,
            csum_offset=6,
        )
        _finalize_merged(buf, offset, item.iph_len, item.key.is_v6, IPPROTO_UDP, hdr)


def packet_is_gro_candidate(b, can_udp_gro) -> GROCandidate:
    """Classify the IP packet ``b`` for coalescing."""
    if len(b) < 28:
        return GROCandidate.NOT_CANDIDATE
    version = b[0] >> 4
    if version == 4:
        if b[0] & 0x0F != 5:
            return GROCandidate.NOT_CANDIDATE  # IPv4 options do not coalesce
        if b[9] == IPPROTO_TCP and len(b) >= 40:
            return GROCandidate.TCP4
        if b[9] == IPPROTO_UDP and can_udp_gro:
            return GROCandidate.UDP4
    elif version == 6:
        if b[6] == IPPROTO_TCP and len(b) >= 60:
            return GROCandidate.TCP6
        if b[6] == IPPROTO_UDP and len(b) >= 48 and can_udp_gro:
            return GROCandidate.UDP6
    return GROCandidate.NOT_CANDIDATE


def handle_gro(bufs, offset, tcp_table: TCPGROTable, udp_table: UDPGROTable, can_udp_gro) -> list[int]:
    """Coalesce the packets in ``bufs`` and return the indices left to write.

    Each packet starts at ``offset``; the virtio header is written just
    before it. ``bufs`` is modified in place.
    """
    to_write: list[int] = []
    for i, buf in enumerate(bufs):
        if offset < VIRTIO_NET_HDR_LEN or offset > len(buf) - 1:
            raise ValueError("invalid offset")
        candidate = packet_is_gro_candidate(buf[offset:], can_udp_gro)
        if candidate == GROCandidate.TCP4:
            result = tcp_gro(bufs, offset, i, tcp_table, False)
        elif candidate == GROCandidate.TCP6:
            result = tcp_gro(bufs, offset, i, tcp_table, True)
        elif candidate == GROCandidate.UDP4:
            result = udp_gro(bufs, offset, i, udp_table, False)
        elif candidate == GROCandidate.UDP6:
            result = udp_gro(bufs, offset, i, udp_table, True)
        else:
            result = GROResult.NOOP
        if result == GROResult.NOOP:
            VirtioNetHdr().encode(bufs[i], offset - VIRTIO_NET_HDR_LEN)
        if result != GROResult.COALESCED:
            to_write.append(i)
    apply_tcp_coalesce_accounting(bufs, offset, tcp_table)
    apply_udp_coalesce_accounting(bufs, offset, udp_table)
    return to_write