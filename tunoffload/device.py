"""The interface every TUN device implementation provides."""

from __future__ import annotations

import abc
import enum
from collections.abc import Iterator
from typing import BinaryIO, Optional


class Event(enum.IntFlag):
    """Device state notifications delivered through :meth:`Device.events`."""

    UP = 1
    DOWN = 2
    MTU_UPDATE = 4


class TooManySegmentsError(Exception):
    """A segmented packet needs more output buffers than were supplied."""


class Device(abc.ABC):
    """A virtual network interface that exchanges raw IP packets."""

    @abc.abstractmethod
    def file(self) -> Optional[BinaryIO]:
        """Return the file object backing the device, if there is one."""

    @abc.abstractmethod
    def read(self, bufs: list[bytearray], offset: int) -> list[int]:
        """Read one or more packets into ``bufs`` starting at ``offset``.

        Returns the size of each packet read, in the order of ``bufs``.
        """

    @abc.abstractmethod
    def write(self, bufs: list[bytearray], offset: int) -> int:
        """Write the packets held in ``bufs`` from ``offset`` onwards.

        Returns the number of packets (or bytes, as the device defines) written.
        """

    @abc.abstractmethod
    def mtu(self) -> int:
        """Return the MTU of the device."""

    @abc.abstractmethod
    def name(self) -> str:
        """Return the current interface name."""

    @abc.abstractmethod
    def events(self) -> Iterator[Event]:
        """Return an iterator of events; it ends once the device is closed."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop the device and end its event stream."""

    @abc.abstractmethod
    def batch_size(self) -> int:
        """Return the preferred maximum number of packets per read or write."""

    def __enter__(self) -> "Device":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()