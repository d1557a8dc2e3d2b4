import pytest

from tunoffload.flows import (
    TCPGROTable,
    UDPGROTable,
    tcp_flow_key,
    udp_flow_key,
)
from tunoffload.packet import TCP_FLAG_ACK, TCP_FLAG_PSH

SRC4 = bytes([192, 0, 2, 1])
DST4 = bytes([192, 0, 2, 2])
DST4_C = bytes([192, 0, 2, 3])
SRC6 = bytes.fromhex("20010db8000000000000000000000001")
DST6 = bytes.fromhex("20010db8000000000000000000000002")


def _tcp4(dst=DST4, sport=1, dport=1, seq=1, ack=1, flags=TCP_FLAG_ACK, payload_len=100):
    ip = bytearray(20)
    ip[0] = 0x45
    ip[2:4] = (40 + payload_len).to_bytes(2, "big")
    ip[8] = 64
    ip[9] = 6
    ip[12:16] = SRC4
    ip[16:20] = dst
    tcp = bytearray(20)
    tcp[0:2] = sport.to_bytes(2, "big")
    tcp[2:4] = dport.to_bytes(2, "big")
    tcp[4:8] = seq.to_bytes(4, "big")
    tcp[8:12] = ack.to_bytes(4, "big")
    tcp[12] = 5 << 4
    tcp[13] = flags
    return bytearray(ip + tcp + bytes(payload_len))


def _tcp6(seq=1, payload_len=100):
    ip = bytearray(40)
    ip[0] = 0x60
    ip[4:6] = (20 + payload_len).to_bytes(2, "big")
    ip[6] = 6
    ip[7] = 64
    ip[8:24] = SRC6
    ip[24:40] = DST6
    tcp = bytearray(20)
    tcp[0:2] = (1).to_bytes(2, "big")
    tcp[2:4] = (1).to_bytes(2, "big")
    tcp[4:8] = seq.to_bytes(4, "big")
    tcp[8:12] = (1).to_bytes(4, "big")
    tcp[12] = 5 << 4
    tcp[13] = TCP_FLAG_ACK
    return bytearray(ip + tcp + bytes(payload_len))


def _udp4(dst=DST4, sport=1, dport=1, payload_len=100):
    ip = bytearray(20)
    ip[0] = 0x45
    ip[2:4] = (28 + payload_len).to_bytes(2, "big")
    ip[8] = 64
    ip[9] = 17
    ip[12:16] = SRC4
    ip[16:20] = dst
    udp = bytearray(8)
    udp[0:2] = sport.to_bytes(2, "big")
    udp[2:4] = dport.to_bytes(2, "big")
    udp[4:6] = (8 + payload_len).to_bytes(2, "big")
    return bytearray(ip + udp + bytes(payload_len))


def _tcp4_lookup(table, pkt, index):
    return table.lookup_or_insert(pkt, 12, 16, 20, 20, index)


def _udp4_lookup(table, pkt, index):
    return table.lookup_or_insert(pkt, 12, 16, 20, index)


def test_tcp_flow_key_fields():
    key = tcp_flow_key(_tcp4(sport=4000, dport=443, ack=77), 12, 16, 20)
    assert key.src_addr == SRC4
    assert key.dst_addr == DST4
    assert key.src_port == 4000
    assert key.dst_port == 443
    assert key.rx_ack == 77
    assert key.is_v6 is False


def test_tcp_flow_key_v6():
    key = tcp_flow_key(_tcp6(), 8, 24, 40)
    assert key.src_addr == SRC6
    assert key.dst_addr == DST6
    assert key.is_v6 is True


def test_tcp_flow_key_ignores_sequence_number():
    assert tcp_flow_key(_tcp4(seq=1), 12, 16, 20) == tcp_flow_key(_tcp4(seq=101), 12, 16, 20)


def test_tcp_flow_key_differs_by_ack():
    assert tcp_flow_key(_tcp4(ack=1), 12, 16, 20) != tcp_flow_key(_tcp4(ack=2), 12, 16, 20)


def test_udp_flow_key_fields():
    key = udp_flow_key(_udp4(sport=53, dport=5353), 12, 16, 20)
    assert key.src_addr == SRC4
    assert key.dst_addr == DST4
    assert (key.src_port, key.dst_port) == (53, 5353)
    assert key.is_v6 is False


def test_tcp_lookup_inserts_first_packet():
    table = TCPGROTable()
    pkt = _tcp4(seq=1, flags=TCP_FLAG_ACK | TCP_FLAG_PSH)
    assert _tcp4_lookup(table, pkt, 3) is None
    (item,) = list(table)
    assert item.bufs_index == 3
    assert item.gso_size == 100
    assert item.sent_seq == 1
    assert item.iph_len == 20
    assert item.tcph_len == 20
    assert item.psh_set is True
    assert item.num_merged == 0


def test_tcp_lookup_returns_existing_flow():
    table = TCPGROTable()
    _tcp4_lookup(table, _tcp4(seq=1), 0)
    items = _tcp4_lookup(table, _tcp4(seq=101), 1)
    assert items is not None
    assert [item.bufs_index for item in items] == [0]
    assert len(table) == 1


def test_tcp_separate_flows():
    table = TCPGROTable()
    _tcp4_lookup(table, _tcp4(dst=DST4), 0)
    assert _tcp4_lookup(table, _tcp4(dst=DST4_C), 1) is None
    assert len(table.items_by_flow) == 2


def test_tcp_insert_appends_to_flow():
    table = TCPGROTable()
    pkt_a = _tcp4(seq=1)
    pkt_b = _tcp4(seq=500)
    table.insert(pkt_a, 12, 16, 20, 20, 0)
    table.insert(pkt_b, 12, 16, 20, 20, 1)
    items = table.items_by_flow[tcp_flow_key(pkt_a, 12, 16, 20)]
    assert [item.sent_seq for item in items] == [1, 500]
    assert items[0].psh_set is False


def test_tcp_update_and_delete():
    table = TCPGROTable()
    pkt = _tcp4(seq=1)
    table.insert(pkt, 12, 16, 20, 20, 0)
    table.insert(_tcp4(seq=900), 12, 16, 20, 20, 1)
    key = tcp_flow_key(pkt, 12, 16, 20)
    item = table.items_by_flow[key][0]
    item.num_merged = 2
    table.update_at(item, 0)
    assert table.items_by_flow[key][0].num_merged == 2
    table.delete_at(key, 0)
    assert [i.bufs_index for i in table.items_by_flow[key]] == [1]


def test_tcp_delete_out_of_range():
    table = TCPGROTable()
    pkt = _tcp4()
    table.insert(pkt, 12, 16, 20, 20, 0)
    with pytest.raises(IndexError):
        table.delete_at(tcp_flow_key(pkt, 12, 16, 20), 5)


def test_tcp_reset_clears_flows():
    table = TCPGROTable()
    _tcp4_lookup(table, _tcp4(), 0)
    _tcp4_lookup(table, _tcp4(dst=DST4_C), 1)
    table.reset()
    assert len(table) == 0
    assert _tcp4_lookup(table, _tcp4(), 2) is None


def test_udp_lookup_inserts_then_finds():
    table = UDPGROTable()
    pkt = _udp4()
    assert _udp4_lookup(table, pkt, 4) is None
    items = _udp4_lookup(table, _udp4(), 5)
    assert items is not None
    (item,) = items
    assert item.bufs_index == 4
    assert item.gso_size == 100
    assert item.iph_len == 20
    assert item.csum_known_invalid is False


def test_udp_insert_marks_invalid_checksum():
    table = UDPGROTable()
    pkt = _udp4()
    table.insert(pkt, 12, 16, 20, 0)
    table.insert(pkt, 12, 16, 20, 1, True)
    items = table.items_by_flow[udp_flow_key(pkt, 12, 16, 20)]
    assert [i.csum_known_invalid for i in items] == [False, True]


def test_udp_update_at_and_reset():
    table = UDPGROTable()
    pkt = _udp4()
    table.insert(pkt, 12, 16, 20, 0)
    key = udp_flow_key(pkt, 12, 16, 20)
    item = table.items_by_flow[key][0]
    item.num_merged = 1
    table.update_at(item, 0)
    assert table.items_by_flow[key][0].num_merged == 1
    table.reset()
    assert table.items_by_flow == {}


def test_udp_separate_flows_by_port():
    table = UDPGROTable()
    _udp4_lookup(table, _udp4(sport=1), 0)
    assert _udp4_lookup(table, _udp4(sport=2), 1) is None
    assert sorted(item.bufs_index for item in table) == [0, 1]