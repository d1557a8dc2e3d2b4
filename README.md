# tunoffload

A small library for working with TUN devices and the virtio-net header that
Linux puts in front of every packet when a TUN device is opened with
`IFF_VNET_HDR`. It has no dependencies outside the standard library.

## What is in it

- `tunoffload.device`: the abstract `Device` class (`file`, `read`, `write`,
  `mtu`, `name`, `events`, `close`, `batch_size`; it is also a context
  manager that closes on exit), the `Event` flags `UP`, `DOWN` and
  `MTU_UPDATE`, and `TooManySegmentsError`.
- `tunoffload.packet`: the `VirtioNetHdr` dataclass with `decode` and
  `encode`, the Internet checksum helpers `checksum`,
  `pseudo_header_checksum_no_fold` and `checksum_valid`, and the protocol and
  header constants they use.
- `tunoffload.flows`: flow keys (`TCPFlowKey`, `UDPFlowKey`), per-packet
  bookkeeping (`TCPGROItem`, `UDPGROItem`) and the tables that group them by
  flow (`TCPGROTable`, `UDPGROTable`).
- `tunoffload.gro`: generic receive offload. `handle_gro` merges packets of
  the same TCP or UDP flow in a batch into larger packets, writes a
  `VirtioNetHdr` in front of each remaining packet, and returns the indices
  of the buffers to write.
- `tunoffload.gso`: generic segmentation offload. `handle_virtio_read` takes
  one read from the device (virtio header plus packet) and places the
  resulting packets into the given buffers, splitting a segmented TCP or UDP
  packet into `gso_size` pieces with `gso_split`, or finishing a partial
  checksum with `gso_none_checksum`. Too few buffers raises
  `TooManySegmentsError`; malformed input raises `ValueError`.
- `tunoffload.linux`: `LinuxTun`, a real TUN device, created with
  `create_tun`, `create_tun_from_file` or `create_unmonitored_tun_from_fd`.
- `tunoffload.channel`: `ChannelTUN`, an in-memory device backed by queues,
  and `ping`, which builds an IPv4 ICMP echo request.

## Installation

```
pip install .
```

## Opening a TUN device on Linux

Creating a device needs `/dev/net/tun` and the `CAP_NET_ADMIN` capability.

```python
from tunoffload.linux import create_tun

tun = create_tun("tun0", 1420)
print(tun.name(), tun.mtu(), tun.batch_size())
tun.close()
```

`create_tun` opens the device with virtio headers; when the kernel accepts
the TCP offloads, `batch_size()` is 128 and writes are coalesced, otherwise it
is 1. `create_tun` and `create_tun_from_file` also watch the link over
netlink and deliver `Event` values through `events()`, an iterator that ends
when the device is closed. `create_unmonitored_tun_from_fd` returns
`(tun, name)` and does not watch the link.

`read(bufs, offset)` returns the size of each packet it placed into `bufs`.
`write(bufs, offset)` returns the number of bytes written; with virtio headers
on, `offset` must leave room for a `VirtioNetHdr` in front of each packet, and
`bufs` may be changed in place by coalescing.

## Coalescing a batch yourself

```python
from tunoffload.flows import TCPGROTable, UDPGROTable
from tunoffload.gro import handle_gro
from tunoffload.packet import VIRTIO_NET_HDR_LEN

offset = VIRTIO_NET_HDR_LEN
bufs = [bytearray(offset) + packet for packet in packets]
to_write = handle_gro(bufs, offset, TCPGROTable(), UDPGROTable(), True)
```

The last argument allows UDP coalescing. A buffer may grow to at most 65535
bytes, offset included.

## An in-memory device for tests

```python
from tunoffload.channel import ChannelTUN, ping

chan = ChannelTUN()
dev = chan.device()

chan.outbound.put(ping("192.0.2.2", "192.0.2.1"))
buf = bytearray(1500)
sizes = dev.read([buf], 0)          # the ping, copied into buf

dev.write([bytearray(b"packet")], 0)
print(chan.inbound.get())           # b"packet"
dev.close()
```

The device reports the name `loopbackTun1`, an MTU of 1420 and a batch size
of 1; its event stream starts with `Event.UP`. After `close`, reads and
writes raise `OSError`.

## What it does not do

- There is no command-line program; everything is used from Python.
- Only Linux TUN devices are supported. There is no device for macOS, the
  BSDs or Windows.
- It does not configure addresses or routes, and does not encrypt or tunnel
  traffic; it only moves IP packets to and from the device.

## Running the tests

```
pip install ".[test]"
pytest
```