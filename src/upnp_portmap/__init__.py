"""
UPnP Port Mapper - gateway port mappings for real-time media.

This package provides:
- Discovery of UPnP Internet Gateway Devices on the local network
- Conflict-free allocation of single and paired (RTP/RTCP) external ports
- A mapping manager that keeps a mirror of the gateway's mapping table
  in sync through polling and gateway change events
- UDP socket pairs whose mappings are released when the sockets close
"""

__version__ = "0.1.0"

from upnp_portmap.config import MapperConfig
from upnp_portmap.manager import MappingManager, ManagerState
from upnp_portmap.mapping import PortMapping, Protocol
from upnp_portmap.nat_method import UPnPNatMethod

__all__ = [
    "MapperConfig",
    "MappingManager",
    "ManagerState",
    "PortMapping",
    "Protocol",
    "UPnPNatMethod",
]
