"""TUN devices with virtio-net GRO/GSO offload handling, plus an in-memory test device."""

__version__ = "0.1.0"