"""
Control-plane interface to a NAT gateway device.

The manager only talks to the gateway through this interface, so any
transport (UPnP IGD, a test double) can sit behind it.
"""
from abc import ABC, abstractmethod
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Union

from upnp_portmap.mapping import PortMapping, Protocol


ExternalIPCallback = Callable[[str], None]
EntryCountCallback = Callable[[int], None]


class Subscription:
    """
    Handle for an active gateway event subscription.

    Released exactly once; later calls to :meth:`cancel` are no-ops.
    """

    def __init__(self, on_cancel: Optional[Callable[[], Union[Awaitable[None], None]]] = None):
        self._on_cancel = on_cancel
        self.active = True

    async def cancel(self):
        """Stop receiving notifications."""
        if not self.active:
            return
        self.active = False
        if self._on_cancel:
            result = self._on_cancel()
            if result is not None:
                await result


class GatewayClient(ABC):
    """Abstract client for a gateway's port mapping service."""

    @abstractmethod
    async def discover(self, device_type: str) -> List[str]:
        """
        Search the local network for gateway devices.

        Args:
            device_type: Device type URN to search for

        Returns:
            Identifiers of the devices found; an empty
            list means no gateway answered.

        Raises:
            DiscoveryFailure: If the search itself could not be performed
        """

    @abstractmethod
    async def add_mapping(
        self,
        external_port: int,
        protocol: Protocol,
        internal_port: int,
        internal_client: str,
        enabled: bool,
        description: str
    ) -> str:
        """
        Create a forwarding rule.

        Returns:
            External IP address the gateway reports for the rule

        Raises:
            MappingCallFailure: If the gateway rejected the rule
            GatewayError: If the gateway could not be reached
        """

    @abstractmethod
    async def remove_mapping(self, external_port: int, protocol: Protocol):
        """
        Delete a forwarding rule.

        Raises:
            MappingCallFailure: If the gateway rejected the removal
            GatewayError: If the gateway could not be reached
        """

    @abstractmethod
    def enumerate_mappings(self) -> AsyncIterator[PortMapping]:
        """
        Iterate over every rule currently on the gateway.

        Each call starts a fresh, finite enumeration.
        """

    @abstractmethod
    async def subscribe(
        self,
        on_external_ip_changed: ExternalIPCallback,
        on_entry_count_changed: EntryCountCallback
    ) -> Subscription:
        """Register for external address and mapping count notifications."""

    async def close(self):
        """Release the connection to the gateway."""
