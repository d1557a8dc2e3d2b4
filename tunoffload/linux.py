"""TUN devices on Linux, using virtio-net offloads when the kernel allows them."""

from __future__ import annotations

import errno
import fcntl
import os
import queue
import select
import socket
import struct
import threading
from collections.abc import Iterator
from typing import Optional

from .device import Device, Event
from .flows import TCPGROTable, UDPGROTable
from .gro import handle_gro
from .gso import handle_virtio_read
from .packet import MAX_UINT16, VIRTIO_NET_HDR_LEN

CLONE_DEVICE_PATH = "/dev/net/tun"
IFNAMSIZ = 16
IDEAL_BATCH_SIZE = 128

_IFREQ_SIZE = IFNAMSIZ + 64

_TUNSETIFF = 0x400454CA
_TUNGETIFF = 0x800454D2
_TUNSETOFFLOAD = 0x400454D0
_SIOCGIFMTU = 0x8921
_SIOCSIFMTU = 0x8922

IFF_TUN = 0x0001
IFF_NO_PI = 0x1000
IFF_VNET_HDR = 0x4000
IFF_RUNNING = 0x40

TUN_F_CSUM = 0x01
TUN_F_TSO4 = 0x02
TUN_F_TSO6 = 0x04
TUN_F_USO4 = 0x20
TUN_F_USO6 = 0x40

# TSO with ECN bits is not requested.
_TUN_TCP_OFFLOADS = TUN_F_CSUM | TUN_F_TSO4 | TUN_F_TSO6
_TUN_UDP_OFFLOADS = TUN_F_USO4 | TUN_F_USO6

_NETLINK_ROUTE = 0
_RTMGRP_LINK = 0x1
_RTMGRP_IPV4_IFADDR = 0x10
_RTMGRP_IPV6_IFADDR = 0x100
_NLMSG_DONE = 3
_RTM_NEWLINK = 16
_NLMSG_HDR = struct.Struct("=IHHII")
_IFINFOMSG = struct.Struct("=BxHiII")

_EBADFD = getattr(errno, "EBADFD", 77)
_POLL_INTERVAL = 0.05
_HACK_INTERVAL = 1.0


def _closed_error() -> OSError:
    return OSError(errno.EBADF, "file already closed")


class _PartialWriteError(OSError):
    """Some packets of a batch could not be written.

    ``written`` holds the bytes that did go out, ``errors`` every failure.
    """

    def __init__(self, written: int, errors: list[OSError]) -> None:
        super().__init__("; ".join(str(exc) for exc in errors))
        self.written = written
        self.errors = errors


def _ifreq(name: str, flags: Optional[int] = None) -> bytearray:
    raw = name.encode()
    if len(raw) >= IFNAMSIZ:
        raise ValueError("interface name too long")
    buf = bytearray(_IFREQ_SIZE)
    buf[: len(raw)] = raw
    if flags is not None:
        struct.pack_into("=H", buf, IFNAMSIZ, flags)
    return buf


def _ifreq_name(buf) -> str:
    return bytes(buf).split(b"\x00", 1)[0].decode()


def _link_events(msg: bytes, index: int) -> Iterator[Event]:
    """Yield the events that a batch of netlink messages signals for ``index``."""
    was_ever_up = False
    pos = 0
    while len(msg) - pos >= _NLMSG_HDR.size:
        length, msg_type = _NLMSG_HDR.unpack_from(msg, pos)[:2]
        if length > len(msg) - pos or length < _NLMSG_HDR.size:
            break
        if msg_type == _NLMSG_DONE:
            break
        if msg_type == _RTM_NEWLINK and length >= _NLMSG_HDR.size + _IFINFOMSG.size:
            _, _, if_index, flags, _ = _IFINFOMSG.unpack_from(msg, pos + _NLMSG_HDR.size)
            if if_index == index:
                if flags & IFF_RUNNING:
                    yield Event.UP
                    was_ever_up = True
                elif was_ever_up:
                    # No DOWN before an UP: the status hack may report UP first.
                    yield Event.DOWN
                yield Event.MTU_UPDATE
        pos += length


class LinuxTun(Device):
    """A Linux TUN interface backed by an open file.

    With ``vnet_hdr`` every packet carries a virtio-net header, batches are
    coalesced on write and split on read.
    """

    def __init__(self, file, *, name: Optional[str] = None, vnet_hdr: bool = False, udp_gso: bool = False):
        self._file = file
        self._vnet_hdr = vnet_hdr
        self._udp_gso = udp_gso
        self._batch_size = IDEAL_BATCH_SIZE if vnet_hdr else 1
        self._name = name
        self._name_error: Optional[OSError] = None
        self._name_lock = threading.Lock()
        self._errors: queue.Queue[OSError] = queue.Queue()
        self._events: queue.Queue[Optional[Event]] = queue.Queue()
        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._closed = threading.Event()
        self._tcp_table = TCPGROTable()
        self._udp_table = UDPGROTable()
        self._index = 0
        self._shutdown: Optional[threading.Event] = None
        self._netlink: Optional[socket.socket] = None
        self._cancel_r: Optional[socket.socket] = None
        self._cancel_w: Optional[socket.socket] = None
        self._netlink_thread: Optional[threading.Thread] = None
        self._hack_done = threading.Event()

    # -- setup --------------------------------------------------------------

    def _fileno(self) -> int:
        try:
            return self._file.fileno()
        except ValueError:
            raise _closed_error() from None

    def _query_name(self) -> str:
        buf = bytearray(_IFREQ_SIZE)
        try:
            fcntl.ioctl(self._fileno(), _TUNGETIFF, buf, True)
        except OSError as exc:
            raise OSError(exc.errno, f"failed to get name of TUN device: {exc.strerror}") from exc
        return _ifreq_name(buf)

    def _init_from_flags(self, name: str) -> None:
        fd = self._fileno()
        buf = _ifreq(name)
        fcntl.ioctl(fd, _TUNGETIFF, buf, True)
        (flags,) = struct.unpack_from("=H", buf, IFNAMSIZ)
        if flags & IFF_VNET_HDR:
            # TCP offloads are required once virtio headers are on.
            fcntl.ioctl(fd, _TUNSETOFFLOAD, _TUN_TCP_OFFLOADS)
            self._vnet_hdr = True
            self._batch_size = IDEAL_BATCH_SIZE
            try:
                fcntl.ioctl(fd, _TUNSETOFFLOAD, _TUN_TCP_OFFLOADS | _TUN_UDP_OFFLOADS)
            except OSError:
                self._udp_gso = False
            else:
                self._udp_gso = True
        else:
            self._batch_size = 1

    def _start_monitoring(self, name: str) -> None:
        self._index = socket.if_nametoindex(name)
        sock = socket.socket(socket.AF_NETLINK, socket.SOCK_RAW, _NETLINK_ROUTE)
        try:
            sock.bind((0, _RTMGRP_LINK | _RTMGRP_IPV4_IFADDR | _RTMGRP_IPV6_IFADDR))
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        self._netlink = sock
        self._cancel_r, self._cancel_w = socket.socketpair()
        self._shutdown = threading.Event()
        self._netlink_thread = threading.Thread(target=self._netlink_listener, daemon=True)
        self._netlink_thread.start()
        threading.Thread(target=self._hack_listener, daemon=True).start()

    def _stop_monitoring(self) -> Optional[OSError]:
        assert self._shutdown is not None and self._cancel_w is not None
        self._shutdown.set()
        try:
            self._cancel_w.send(b"\x00")
        except OSError as exc:
            if self._netlink_thread is not None and self._netlink_thread.is_alive():
                return exc
        return None

    # -- listeners ----------------------------------------------------------

    def _netlink_listener(self) -> None:
        assert self._netlink is not None and self._cancel_r is not None and self._shutdown is not None
        try:
            while True:
                try:
                    readable, _, _ = select.select([self._netlink, self._cancel_r], [], [])
                except OSError as exc:
                    self._errors.put(OSError(exc.errno, f"netlink socket closed: {exc.strerror}"))
                    return
                if self._cancel_r in readable:
                    return
                try:
                    msg = self._netlink.recv(1 << 16)
                except (BlockingIOError, InterruptedError):
                    continue
                except OSError as exc:
                    self._errors.put(OSError(exc.errno, f"failed to receive netlink message: {exc.strerror}"))
                    return
                if self._shutdown.is_set():
                    return
                for event in _link_events(msg, self._index):
                    self._events.put(event)
        finally:
            self._netlink.close()
            self._hack_done.wait()
            self._events.put(None)
            self._cancel_r.close()
            if self._cancel_w is not None:
                self._cancel_w.close()

    def _hack_listener(self) -> None:
        """Poll the link state with empty writes; this works across namespaces."""
        assert self._shutdown is not None
        try:
            last: Optional[Event] = None
            while True:
                try:
                    os.write(self._file.fileno(), b"")
                except ValueError:
                    return
                except OSError as exc:
                    code = exc.errno
                else:
                    return
                if code == errno.EINVAL:
                    # Up: the write is allowed but the data is invalid.
                    if last is not Event.UP:
                        self._events.put(Event.UP)
                        last = Event.UP
                elif code == errno.EIO:
                    # Down: no I/O is possible at all.
                    if last is not Event.DOWN:
                        self._events.put(Event.DOWN)
                        last = Event.DOWN
                else:
                    return
                if self._shutdown.wait(_HACK_INTERVAL):
                    return
        finally:
            self._hack_done.set()

    # -- I/O ----------------------------------------------------------------

    def _wait(self, fd: int, *, for_write: bool) -> None:
        try:
            if for_write:
                select.select([], [fd], [], _POLL_INTERVAL)
            else:
                select.select([fd], [], [], _POLL_INTERVAL)
        except (OSError, ValueError):
            pass

    def _read_fd(self, size: int) -> bytes:
        while True:
            if self._closed.is_set():
                raise _closed_error()
            fd = self._fileno()
            try:
                return os.read(fd, size)
            except BlockingIOError:
                self._wait(fd, for_write=False)
            except OSError as exc:
                if exc.errno == _EBADFD:
                    raise _closed_error() from exc
                raise

    def _write_fd(self, data) -> int:
        view = memoryview(bytes(data))
        written = 0
        while True:
            if self._closed.is_set():
                raise _closed_error()
            fd = self._fileno()
            try:
                written += os.write(fd, view[written:])
            except BlockingIOError:
                self._wait(fd, for_write=True)
                continue
            except OSError as exc:
                if exc.errno == _EBADFD:
                    raise _closed_error() from exc
                raise
            if written >= len(view):
                return written

    def file(self):
        return self._file

    def read(self, bufs, offset):
        """Read one packet, or one segmented packet split across ``bufs``."""
        with self._read_lock:
            try:
                pending = self._errors.get_nowait()
            except queue.Empty:
                pass
            else:
                raise pending
            if self._vnet_hdr:
                data = self._read_fd(VIRTIO_NET_HDR_LEN + MAX_UINT16)
                return handle_virtio_read(data, bufs, offset)
            data = self._read_fd(max(len(bufs[0]) - offset, 0))
            bufs[0][offset : offset + len(data)] = data
            return [len(data)]

    def write(self, bufs, offset):
        """Write ``bufs``, coalescing them first when virtio headers are on.

        Returns the number of bytes written. ``bufs`` may be modified.
        """
        with self._write_lock:
            try:
                if self._vnet_hdr:
                    to_write = handle_gro(bufs, offset, self._tcp_table, self._udp_table, self._udp_gso)
                    offset -= VIRTIO_NET_HDR_LEN
                else:
                    to_write = list(range(len(bufs)))
                total = 0
                failures: list[OSError] = []
                for i in to_write:
                    try:
                        total += self._write_fd(bufs[i][offset:])
                    except OSError as exc:
                        if exc.errno == errno.EBADF:
                            raise
                        failures.append(exc)
                if failures:
                    raise _PartialWriteError(total, failures)
                return total
            finally:
                self._tcp_table.reset()
                self._udp_table.reset()

    def mtu(self):
        name = self.name()
        request = bytes(_ifreq(name))
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            try:
                reply = fcntl.ioctl(sock.fileno(), _SIOCGIFMTU, request)
            except OSError as exc:
                raise OSError(exc.errno, f"failed to get MTU of TUN device: {exc.strerror}") from exc
        (value,) = struct.unpack_from("=i", reply, IFNAMSIZ)
        return value

    def set_mtu(self, n):
        """Set the MTU of the interface."""
        name = self.name()
        request = _ifreq(name)
        struct.pack_into("=I", request, IFNAMSIZ, n & 0xFFFFFFFF)
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            try:
                fcntl.ioctl(sock.fileno(), _SIOCSIFMTU, bytes(request))
            except OSError as exc:
                raise OSError(exc.errno, f"failed to set MTU of TUN device: {exc.strerror}") from exc

    def name(self):
        with self._name_lock:
            if self._name is None and self._name_error is None:
                try:
                    self._name = self._query_name()
                except OSError as exc:
                    self._name_error = exc
        if self._name_error is not None:
            raise self._name_error
        assert self._name is not None
        return self._name

    def events(self) -> Iterator[Event]:
        while True:
            event = self._events.get()
            if event is None:
                self._events.put(None)
                return
            yield event

    def close(self):
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()
            cancel_error = None
            if self._shutdown is not None:
                cancel_error = self._stop_monitoring()
            else:
                self._events.put(None)
            file_error = None
            try:
                self._file.close()
            except OSError as exc:
                file_error = exc
            if cancel_error is not None:
                raise cancel_error
            if file_error is not None:
                raise file_error

    def batch_size(self):
        return self._batch_size


def create_tun(name: str, mtu: int) -> LinuxTun:
    """Create a TUN interface called ``name`` (or kernel-named if empty)."""
    request = bytes(_ifreq(name, IFF_TUN | IFF_NO_PI | IFF_VNET_HDR))
    try:
        fd = os.open(CLONE_DEVICE_PATH, os.O_RDWR | os.O_CLOEXEC)
    except FileNotFoundError as exc:
        raise FileNotFoundError(
            errno.ENOENT, f"create_tun({name!r}) failed; {CLONE_DEVICE_PATH} does not exist"
        ) from exc
    try:
        fcntl.ioctl(fd, _TUNSETIFF, request)
        os.set_blocking(fd, False)
    except OSError:
        os.close(fd)
        raise
    file = os.fdopen(fd, "r+b", buffering=0)
    return create_tun_from_file(file, mtu)


def create_tun_from_file(file, mtu: int) -> LinuxTun:
    """Wrap an open TUN file, start watching its link and set its MTU."""
    tun = LinuxTun(file)
    name = tun.name()
    tun._init_from_flags(name)
    tun._start_monitoring(name)
    try:
        tun.set_mtu(mtu)
    except OSError:
        tun._stop_monitoring()
        raise
    return tun


def create_unmonitored_tun_from_fd(fd: int) -> tuple[LinuxTun, str]:
    """Wrap a TUN file descriptor without watching its link state."""
    os.set_blocking(fd, False)
    file = os.fdopen(fd, "r+b", buffering=0)
    tun = LinuxTun(file)
    name = tun.name()
    tun._init_from_flags(name)
    return tun, name