"""
UPnP NAT traversal method exposed to a telephony endpoint.
"""
from enum import IntEnum
from typing import Optional, Tuple

import structlog

from upnp_portmap.config import MapperConfig
from upnp_portmap.gateway import GatewayClient
from upnp_portmap.host import Endpoint, get_local_ip
from upnp_portmap.igd import UPnPGatewayClient
from upnp_portmap.manager import MappingManager
from upnp_portmap.sockets import MappedUDPSocket, PortRange, is_specified_ip, open_socket


class RTPSupport(IntEnum):
    """Whether media can be sent through this NAT method."""
    UNSUPPORTED = 0
    SUPPORTED = 1


class UPnPNatMethod:
    """
    NAT traversal through gateway port mappings.

    Owns the mapping manager, tracks availability and the external address,
    and creates RTP/RTCP socket pairs with matching gateway mappings.
    """

    def __init__(
        self,
        config: Optional[MapperConfig] = None,
        client: Optional[GatewayClient] = None,
        local_ip: Optional[str] = None
    ):
        """
        Initialize the NAT method.

        Args:
            config: Mapper configuration (defaults if not provided)
            client: Gateway client (UPnP IGD client if not provided)
            local_ip: Address of this host (detected if not provided)
        """
        self.config = config or MapperConfig()
        self.config.validate()
        self.client = client or UPnPGatewayClient(self.config)
        self.local_ip = local_ip
        self.logger = structlog.get_logger()

        self.endpoint: Optional[Endpoint] = None
        self.manager: Optional[MappingManager] = None
        self.port_range = PortRange(self.config.rtp_port_base, self.config.rtp_port_max)

        self.available = False
        self.external_address: Optional[str] = None
        self._shutdown = False

    async def attach_endpoint(self, endpoint: Endpoint):
        """Bind to ``endpoint`` and start looking for a gateway."""
        self.endpoint = endpoint
        self.port_range = PortRange(endpoint.rtp_port_base, endpoint.rtp_port_max)
        self.manager = MappingManager(self.client, self, self.config, local_ip=self.local_ip)
        await self.manager.start()

    def set_available(self, device_name: Optional[str] = None):
        """Mark the method usable and have the endpoint re-register."""
        if self._shutdown:
            return
        if device_name is not None:
            self.logger.info("upnp_available", device=device_name)
        self.available = True

        # The gatekeeper must learn the newly reachable address
        if self.endpoint is not None:
            self.endpoint.force_reregistration()

    def set_external_address(self, address: str):
        """Record the gateway's external address reported by the manager."""
        self.logger.info("upnp_external_address", address=address)
        self.external_address = address

    def get_external_address(self) -> Optional[str]:
        """External address, once the method is available."""
        if self.available:
            return self.external_address
        return None

    def get_base_port(self) -> int:
        """First local RTP port; the endpoint's range wins over the config."""
        if self.endpoint is not None:
            return self.endpoint.rtp_port_base
        return self.config.rtp_port_base

    @property
    def rtp_support(self) -> RTPSupport:
        return RTPSupport.SUPPORTED if self.available else RTPSupport.UNSUPPORTED

    async def create_socket_pair(
        self,
        binding: str = "0.0.0.0"
    ) -> Optional[Tuple[MappedUDPSocket, MappedUDPSocket]]:
        """
        Open data and control sockets on consecutive local ports and map them.

        Returns:
            (data, control) sockets tagged with their external addresses, or
            None if the sockets or the mappings could not be created
        """
        if self.manager is None:
            self.logger.warning("upnp_not_attached")
            return None

        if not self.port_range.valid:
            self.logger.error(
                "invalid_udp_port_range",
                base=self.port_range.base,
                max=self.port_range.max_port
            )
            return None

        pair = await self._open_consecutive(binding)
        if pair is None:
            return None
        data, control = pair

        local_ip = binding
        if not is_specified_ip(binding):
            local_ip = self.local_ip or get_local_ip()

        result = await self.manager.create_map(True, "UDP", local_ip, data.port)
        if result is None:
            self.logger.warning("upnp_socket_pair_unmapped", local_port=data.port)
            await data.close()
            await control.close()
            return None

        external_ip, external_port = result
        # A kept partial pair leaves one socket on its bind address
        for sock in (data, control):
            mapping = self.manager.find_local(local_ip, sock.port)
            if mapping is not None:
                sock.set_masq_address(mapping.external_ip, mapping.external_port)
        self.logger.info(
            "upnp_socket_pair_mapped",
            local=f"{local_ip}:{data.port}-{data.port + 1}",
            external=f"{external_ip}:{external_port}",
            data_mapped=data.masq_address is not None,
            control_mapped=control.masq_address is not None
        )
        return data, control

    async def remove_map(self, port: int) -> bool:
        """Release a mapping when its socket closes."""
        if self.manager is None or self._shutdown:
            return False
        return await self.manager.remove_map(port)

    async def close(self):
        """Stop the manager and remove every remaining mapping."""
        self._shutdown = True
        if self.manager is not None:
            await self.manager.shutdown()
        else:
            await self.client.close()

    async def _open_consecutive(
        self,
        binding: str
    ) -> Optional[Tuple[MappedUDPSocket, MappedUDPSocket]]:
        for _ in range(len(self.port_range)):
            data = MappedUDPSocket(self)
            if not await open_socket(data, self.port_range, binding):
                break

            control = MappedUDPSocket(self)
            if await open_socket(control, self.port_range, binding) and control.port == data.port + 1:
                return data, control

            await data.close()
            await control.close()

        self.logger.warning(
            "udp_pair_unavailable",
            base=self.port_range.base,
            max=self.port_range.max_port
        )
        return None
