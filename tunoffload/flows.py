"""Flow keys and per-flow bookkeeping tables for generic receive offload."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from .packet import TCP_FLAG_PSH, TCP_FLAGS_OFFSET, UDPH_LEN


def _u16(pkt, at: int) -> int:
    return int.from_bytes(pkt[at : at + 2], "big")


def _u32(pkt, at: int) -> int:
    return int.from_bytes(pkt[at : at + 4], "big")


@dataclass(frozen=True)
class TCPFlowKey:
    """Identifies a TCP flow; differing ACK numbers make separate flows."""

    src_addr: bytes
    dst_addr: bytes
    src_port: int
    dst_port: int
    rx_ack: int
    is_v6: bool


@dataclass(frozen=True)
class UDPFlowKey:
    """Identifies a UDP flow."""

    src_addr: bytes
    dst_addr: bytes
    src_port: int
    dst_port: int
    is_v6: bool


@dataclass
class TCPGROItem:
    """Bookkeeping for one TCP packet while a batch is being coalesced."""

    key: TCPFlowKey
    sent_seq: int
    bufs_index: int
    gso_size: int
    iph_len: int
    tcph_len: int
    psh_set: bool
    num_merged: int = 0


@dataclass
class UDPGROItem:
    """Bookkeeping for one UDP packet while a batch is being coalesced.

    ``csum_known_invalid`` False means the checksum is unknown, not valid.
    """

    key: UDPFlowKey
    bufs_index: int
    gso_size: int
    iph_len: int
    csum_known_invalid: bool = False
    num_merged: int = 0


def tcp_flow_key(pkt, src_addr_offset: int, dst_addr_offset: int, tcph_offset: int) -> TCPFlowKey:
    """Build the flow key of the TCP packet ``pkt``."""
    addr_size = dst_addr_offset - src_addr_offset
    return TCPFlowKey(
        src_addr=bytes(pkt[src_addr_offset:dst_addr_offset]),
        dst_addr=bytes(pkt[dst_addr_offset : dst_addr_offset + addr_size]),
        src_port=_u16(pkt, tcph_offset),
        dst_port=_u16(pkt, tcph_offset + 2),
        rx_ack=_u32(pkt, tcph_offset + 8),
        is_v6=addr_size == 16,
    )


def udp_flow_key(pkt, src_addr_offset: int, dst_addr_offset: int, udph_offset: int) -> UDPFlowKey:
    """Build the flow key of the UDP packet ``pkt``."""
    addr_size = dst_addr_offset - src_addr_offset
    return UDPFlowKey(
        src_addr=bytes(pkt[src_addr_offset:dst_addr_offset]),
        dst_addr=bytes(pkt[dst_addr_offset : dst_addr_offset + addr_size]),
        src_port=_u16(pkt, udph_offset),
        dst_port=_u16(pkt, udph_offset + 2),
        is_v6=addr_size == 16,
    )


K = TypeVar("K")
I = TypeVar("I")


class _GROTable(Generic[K, I]):
    def __init__(self) -> None:
        self.items_by_flow: dict[K, list[I]] = {}

    def _append(self, key: K, item: I) -> None:
        self.items_by_flow.setdefault(key, []).append(item)

    def __iter__(self) -> Iterator[I]:
        for items in self.items_by_flow.values():
            yield from items

    def __len__(self) -> int:
        return sum(len(items) for items in self.items_by_flow.values())


class TCPGROTable(_GROTable[TCPFlowKey, TCPGROItem]):
    """Flows and their pending items for TCP coalescing."""

    def lookup_or_insert(
        self, pkt, src_addr_offset, dst_addr_offset, tcph_offset, tcph_len, bufs_index
    ) -> Optional[list[TCPGROItem]]:
        """Return the items of the packet's flow, or insert it and return None."""
        key = tcp_flow_key(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        items = self.items_by_flow.get(key)
        if items is not None:
            return items
        self.insert(pkt, src_addr_offset, dst_addr_offset, tcph_offset, tcph_len, bufs_index)
        return None

    def insert(self, pkt, src_addr_offset, dst_addr_offset, tcph_offset, tcph_len, bufs_index) -> None:
        """Add an item describing ``pkt`` to the end of its flow."""
        key = tcp_flow_key(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        item = TCPGROItem(
            key=key,
            sent_seq=_u32(pkt, tcph_offset + 4),
            bufs_index=bufs_index,
            gso_size=max(0, len(pkt) - (tcph_offset + tcph_len)),
            iph_len=tcph_offset,
            tcph_len=tcph_len,
            psh_set=bool(pkt[tcph_offset + TCP_FLAGS_OFFSET] & TCP_FLAG_PSH),
        )
        self._append(key, item)

    def update_at(self, item: TCPGROItem, i: int) -> None:
        """Replace the ``i``-th item of the item's flow."""
        self.items_by_flow[item.key][i] = item

    def delete_at(self, key: TCPFlowKey, i: int) -> None:
        """Remove the ``i``-th item of the flow ``key``."""
        del self.items_by_flow[key][i]

    def reset(self) -> None:
        """Forget every flow."""
        self.items_by_flow.clear()


class UDPGROTable(_GROTable[UDPFlowKey, UDPGROItem]):
    """Flows and their pending items for UDP coalescing."""

    def lookup_or_insert(
        self, pkt, src_addr_offset, dst_addr_offset, udph_offset, bufs_index
    ) -> Optional[list[UDPGROItem]]:
        """Return the items of the packet's flow, or insert it and return None."""
        key = udp_flow_key(pkt, src_addr_offset, dst_addr_offset, udph_offset)
        items = self.items_by_flow.get(key)
        if items is not None:
            return items
        self.insert(pkt, src_addr_offset, dst_addr_offset, udph_offset, bufs_index, False)
        return None

    def insert(
        self, pkt, src_addr_offset, dst_addr_offset, udph_offset, bufs_index, csum_known_invalid=False
    ) -> None:
        """Add an item describing ``pkt`` to the end of its flow."""
        key = udp_flow_key(pkt, src_addr_offset, dst_addr_offset, udph_offset)
        item = UDPGROItem(
            key=key,
            bufs_index=bufs_index,
            gso_size=max(0, len(pkt) - (udph_offset + UDPH_LEN)),
            iph_len=udph_offset,
            csum_known_invalid=csum_known_invalid,
        )
        self._append(key, item)

    def update_at(self, item: UDPGROItem, i: int) -> None:
        """Replace the ``i``-th item of the item's flow."""
        self.items_by_flow[item.key][i] = item

    def reset(self) -> None:
        """Forget every flow."""
        self.items_by_flow.clear()