import errno
import os
import socket
import struct

import pytest

from tunoffload.linux import IDEAL_BATCH_SIZE, LinuxTun, create_tun
from tunoffload.packet import (
    IPPROTO_TCP,
    TCP_FLAG_ACK,
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
    checksum,
    checksum_valid,
    pseudo_header_checksum_no_fold,
)

OFFSET = VIRTIO_NET_HDR_LEN
SRC = bytes([192, 0, 2, 1])
DST = bytes([192, 0, 2, 2])


def tcp4_packet(seq, payload_len, flags=TCP_FLAG_ACK):
    total = 40 + payload_len
    pkt = bytearray(total)
    pkt[0] = 0x45
    struct.pack_into(">H", pkt, 2, total)
    pkt[8] = 64
    pkt[9] = IPPROTO_TCP
    pkt[12:16] = SRC
    pkt[16:20] = DST
    struct.pack_into(">H", pkt, 10, ~checksum(pkt[:20]) & 0xFFFF)
    struct.pack_into(">HHII", pkt, 20, 1, 1, seq, 1)
    pkt[32] = 5 << 4
    pkt[33] = flags
    struct.pack_into(">H", pkt, 34, 3000)
    pseudo = pseudo_header_checksum_no_fold(IPPROTO_TCP, SRC, DST, 20 + payload_len)
    struct.pack_into(">H", pkt, 36, ~checksum(pkt[20:], pseudo) & 0xFFFF)
    return bytearray(OFFSET) + pkt


@pytest.fixture
def pair():
    ours, peer = socket.socketpair(socket.AF_UNIX, socket.SOCK_SEQPACKET)
    file = os.fdopen(ours.detach(), "r+b", buffering=0)
    peer.settimeout(2)
    yield file, peer
    peer.close()
    file.close()


def test_plain_write_strips_offset(pair):
    file, peer = pair
    tun = LinuxTun(file, name="tun0")
    bufs = [bytearray(b"\xaa" * 4 + b"one"), bytearray(b"\xbb" * 4 + b"second")]
    written = tun.write(bufs, 4)
    assert written == len(b"one") + len(b"second")
    assert peer.recv(100) == b"one"
    assert peer.recv(100) == b"second"


def test_plain_read_places_packet_at_offset(pair):
    file, peer = pair
    tun = LinuxTun(file, name="tun0")
    data = b"packet-data"
    peer.send(data)
    buf = bytearray(64)
    sizes = tun.read([buf], 8)
    assert sizes == [len(data)]
    assert bytes(buf[8 : 8 + len(data)]) == data


def test_vnet_write_coalesces_flow(pair):
    file, peer = pair
    tun = LinuxTun(file, name="tun0", vnet_hdr=True)
    bufs = [tcp4_packet(1, 100), tcp4_packet(101, 100)]
    written = tun.write(bufs, OFFSET)
    datagram = peer.recv(70000)
    assert len(datagram) == OFFSET + 240
    assert written == len(datagram)
    hdr = VirtioNetHdr.decode(datagram)
    assert hdr.gso_type == VIRTIO_NET_HDR_GSO_TCPV4
    assert hdr.flags == VIRTIO_NET_HDR_F_NEEDS_CSUM
    assert hdr.gso_size == 100
    assert hdr.csum_start == 20
    peer.setblocking(False)
    with pytest.raises(BlockingIOError):
        peer.recv(70000)


def test_vnet_write_then_read_round_trip(pair):
    file, peer = pair
    tun = LinuxTun(file, name="tun0", vnet_hdr=True)
    originals = [tcp4_packet(1, 100), tcp4_packet(101, 100)]
    tun.write([bytearray(p) for p in originals], OFFSET)
    peer.send(peer.recv(70000))
    out = [bytearray(65535) for _ in range(4)]
    sizes = tun.read(out, OFFSET)
    assert sizes == [140, 140]
    for segment, original, size in zip(out, originals, sizes):
        pkt = segment[OFFSET : OFFSET + size]
        assert checksum_valid(pkt, 20, IPPROTO_TCP, False)
        assert bytes(pkt[20:]) == bytes(original[OFFSET + 20 :])


def test_vnet_read_without_gso_copies_packet(pair):
    file, peer = pair
    tun = LinuxTun(file, name="tun0", vnet_hdr=True)
    data = tcp4_packet(1, 100)
    VirtioNetHdr().encode(data, 0)
    peer.send(bytes(data))
    buf = bytearray(65535)
    sizes = tun.read([buf], OFFSET)
    assert sizes == [len(data) - OFFSET]
    assert bytes(buf[OFFSET : OFFSET + sizes[0]]) == bytes(data[OFFSET:])


def test_vnet_read_rejects_unsupported_gso_type(pair):
    file, peer = pair
    tun = LinuxTun(file, name="tun0", vnet_hdr=True)
    data = tcp4_packet(1, 100)
    VirtioNetHdr(gso_type=3, gso_size=100, csum_start=20, csum_offset=16).encode(data, 0)
    peer.send(bytes(data))
    with pytest.raises(ValueError, match="unsupported virtio GSO type"):
        tun.read([bytearray(65535)], OFFSET)


def test_vnet_write_invalid_offset_raises_and_recovers(pair):
    file, peer = pair
    tun = LinuxTun(file, name="tun0", vnet_hdr=True)
    with pytest.raises(ValueError, match="invalid offset"):
        tun.write([bytearray(64)], 2)
    written = tun.write([tcp4_packet(1, 100)], OFFSET)
    datagram = peer.recv(70000)
    assert written == len(datagram)
    assert VirtioNetHdr.decode(datagram) == VirtioNetHdr()


def test_batch_size_follows_virtio_mode(pair):
    file, _ = pair
    assert LinuxTun(file, name="tun0", vnet_hdr=True).batch_size() == IDEAL_BATCH_SIZE
    assert LinuxTun(file, name="tun0").batch_size() == 1


def test_name_and_file(pair):
    file, _ = pair
    tun = LinuxTun(file, name="tun7")
    assert tun.name() == "tun7"
    assert tun.file() is file


def test_close_ends_events_and_io(pair):
    file, _ = pair
    tun = LinuxTun(file, name="tun0")
    tun.close()
    tun.close()
    assert list(tun.events()) == []
    assert file.closed
    with pytest.raises(OSError) as read_exc:
        tun.read([bytearray(16)], 0)
    assert read_exc.value.errno == errno.EBADF
    with pytest.raises(OSError) as write_exc:
        tun.write([bytearray(b"data")], 0)
    assert write_exc.value.errno == errno.EBADF


def test_context_manager_closes(pair):
    file, _ = pair
    with LinuxTun(file, name="tun0") as tun:
        assert tun.name() == "tun0"
    assert file.closed


def test_create_tun_rejects_long_name():
    with pytest.raises(ValueError, match="too long"):
        create_tun("x" * 16, 1420)