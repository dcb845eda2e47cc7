"""UPnP Internet Gateway Device control."""
from upnp_portmap.igd.client import UPnPGatewayClient

__all__ = ["UPnPGatewayClient"]
