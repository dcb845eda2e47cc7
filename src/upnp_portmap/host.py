"""
Contracts between the mapping manager and the endpoint that owns it.
"""
import socket
from typing import Optional, Protocol


class MapperHost(Protocol):
    """What the manager needs from its owner."""

    def set_available(self, device_name: Optional[str] = None):
        """Announce the capability and request upstream re-registration."""

    def set_external_address(self, address: str):
        """Push a newly learned public address."""

    def get_base_port(self) -> int:
        """Local port used for the self-test mapping."""


class Endpoint(Protocol):
    """The telephony endpoint a NAT method is attached to."""

    rtp_port_base: int
    rtp_port_max: int

    def force_reregistration(self):
        """Re-register with the upstream signalling peer."""


def get_local_ip(target: str = "8.8.8.8") -> str:
    """
    Address of the interface used to reach the outside world.

    No packet is sent; connecting a UDP socket only selects a route.
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect((target, 80))
        return s.getsockname()[0]
    except OSError:
        return socket.gethostbyname(socket.gethostname())
    finally:
        s.close()
