"""
UDP sockets whose lifetime is tied to a gateway port mapping.
"""
import asyncio
import ipaddress
from typing import TYPE_CHECKING, Optional, Tuple

import structlog

if TYPE_CHECKING:
    from upnp_portmap.nat_method import UPnPNatMethod


class PortRange:
    """
    Local port range handed out round-robin.

    ``current`` remembers where the previous search stopped so consecutive
    sockets land on consecutive ports.
    """

    def __init__(self, base: int, max_port: int):
        self.base = base
        self.max_port = max_port
        self.current = base - 1

    @property
    def valid(self) -> bool:
        return 0 < self.base <= self.max_port <= 0xFFFF

    def __len__(self) -> int:
        return max(self.max_port - self.base + 1, 0)

    def next_port(self) -> int:
        """Advance the cursor, wrapping back to ``base`` past ``max_port``."""
        self.current += 1
        if self.current > self.max_port or self.current < self.base:
            self.current = self.base
        return self.current


class DatagramQueueProtocol(asyncio.DatagramProtocol):
    """Queues received datagrams for :meth:`MappedUDPSocket.recvfrom`."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        super().__init__()

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        self.queue.put_nowait((data, addr))

    def error_received(self, exc: Exception):
        structlog.get_logger().debug("udp_socket_error", error=str(exc))


class MappedUDPSocket:
    """
    A UDP socket that reports its masqueraded public address.

    Once :meth:`set_masq_address` is called, :meth:`get_local_address`
    returns the gateway's external address and port instead of the bind
    address, and closing the socket removes its mapping.
    """

    def __init__(self, nat_method: Optional["UPnPNatMethod"] = None):
        self.nat_method = nat_method
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.protocol: Optional[DatagramQueueProtocol] = None
        self.masq_address: Optional[Tuple[str, int]] = None
        self.logger = structlog.get_logger()

    @property
    def is_open(self) -> bool:
        return self.transport is not None

    @property
    def port(self) -> int:
        """Locally bound port (0 when not bound)."""
        return self.bind_address[1]

    @property
    def bind_address(self) -> Tuple[str, int]:
        if self.transport is None:
            return ("0.0.0.0", 0)
        sockname = self.transport.get_extra_info("sockname")
        return (sockname[0], sockname[1])

    async def bind(self, host: str, port: int) -> bool:
        """
        Bind to ``host:port``.

        Returns:
            False if the address is in use or otherwise unavailable
        """
        loop = asyncio.get_running_loop()
        try:
            self.transport, self.protocol = await loop.create_datagram_endpoint(
                DatagramQueueProtocol,
                local_addr=(host, port)
            )
        except OSError:
            return False
        return True

    def set_masq_address(self, ip: str, port: int):
        """Tag this socket with the gateway's external address for it."""
        self.masq_address = (ip, port)

    def get_local_address(self) -> Tuple[str, int]:
        """The address peers should use to reach this socket."""
        if self.masq_address is not None and is_specified_ip(self.masq_address[0]):
            return self.masq_address
        return self.bind_address

    def sendto(self, data: bytes, addr: Tuple[str, int]):
        if self.transport is None:
            raise ConnectionError("Socket is not open")
        self.transport.sendto(data, addr)

    async def recvfrom(self, timeout: Optional[float] = None) -> Tuple[bytes, Tuple[str, int]]:
        """Wait for the next datagram."""
        if self.protocol is None:
            raise ConnectionError("Socket is not open")
        return await asyncio.wait_for(self.protocol.queue.get(), timeout)

    async def close(self):
        """Close the socket and release its gateway mapping."""
        if self.transport is not None:
            self.transport.close()
            self.transport = None

        masq, self.masq_address = self.masq_address, None
        if masq is not None and self.nat_method is not None:
            await self.nat_method.remove_map(masq[1])


def is_specified_ip(address: str) -> bool:
    try:
        return not ipaddress.ip_address(address).is_unspecified
    except ValueError:
        return False


async def open_socket(sock: MappedUDPSocket, port_range: PortRange, binding: str) -> bool:
    """Bind ``sock`` to the next free port of ``port_range``."""
    for _ in range(len(port_range)):
        if await sock.bind(binding, port_range.next_port()):
            return True

    structlog.get_logger().warning(
        "udp_port_range_exhausted",
        base=port_range.base,
        max=port_range.max_port
    )
    return False
