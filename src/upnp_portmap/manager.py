"""
Mapping manager: discovers the gateway, programs port mappings on it and
keeps a local view of the gateway's mapping table in sync.
"""
import asyncio
import ipaddress
from enum import IntEnum
from typing import Dict, List, Optional, Tuple

import structlog

from upnp_portmap.allocator import PortAllocator
from upnp_portmap.config import MapperConfig
from upnp_portmap.errors import (
    DiscoveryFailure,
    GatewayError,
    PortMapError,
    SelfTestFailure,
)
from upnp_portmap.events import EventBridge
from upnp_portmap.gateway import GatewayClient
from upnp_portmap.host import MapperHost, get_local_ip
from upnp_portmap.mapping import MappingTable, PortMapping, Protocol


class ManagerState(IntEnum):
    """Lifecycle states of the mapping manager."""
    INIT = 0
    DISCOVERING = 1
    SELF_TESTING = 2
    RUNNING = 3
    SHUTTING_DOWN = 4
    STOPPED = 5


def is_usable_external_ip(address: str) -> bool:
    """Check that a gateway-reported address can be handed to peers."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return not (ip.is_loopback or ip.is_unspecified)


class MappingManager:
    """
    Owns the local and mirror mapping tables for one gateway.

    A single lock serializes every table mutation together with the gateway
    call that goes with it, so at most one control request is in flight and
    two callers can never be handed the same external port.
    """

    def __init__(
        self,
        client: GatewayClient,
        host: MapperHost,
        config: Optional[MapperConfig] = None,
        local_ip: Optional[str] = None
    ):
        """
        Initialize the mapping manager.

        Args:
            client: Control-plane client for the gateway
            host: Owner notified about availability and address changes
            config: Mapper configuration (defaults if not provided)
            local_ip: Address of this host (detected if not provided)
        """
        self.config = config or MapperConfig()
        self.config.validate()
        self.client = client
        self.host = host
        self.local_ip = local_ip
        self.logger = structlog.get_logger()

        self.local = MappingTable()
        self.mirror = MappingTable()
        self.allocator = PortAllocator(self.local, self.mirror)
        self.bridge: Optional[EventBridge] = None

        self.state = ManagerState.INIT
        self.devices: List[str] = []
        self.external_ip: Optional[str] = None
        self.last_error: Optional[PortMapError] = None

        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._settled = asyncio.Event()
        self._mirror_stale = False
        self._shutdown = False
        self._released = False
        self._task: Optional[asyncio.Task] = None

        self.stats = {
            "mappings_created": 0,
            "mappings_removed": 0,
            "failed_calls": 0,
            "mirror_refreshes": 0,
        }

    @property
    def available(self) -> bool:
        """Whether the gateway passed the self-test and the loop is running."""
        return self.state == ManagerState.RUNNING

    @property
    def mirror_stale(self) -> bool:
        return self._mirror_stale

    async def start(self):
        """Start the background worker."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run())

    async def wait_settled(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until discovery and self-test have finished either way.

        Returns:
            True if the capability became available
        """
        await asyncio.wait_for(self._settled.wait(), timeout)
        return self.available

    async def discover(self) -> List[str]:
        """
        Look for gateway devices of the configured type.

        Returns:
            Identifiers of the devices found

        Raises:
            DiscoveryFailure: If no device was found or the search failed
        """
        try:
            devices = await self.client.discover(self.config.device_type)
        except GatewayError as e:
            raise DiscoveryFailure(f"Gateway discovery failed: {e}") from e

        if not devices:
            raise DiscoveryFailure(f"No {self.config.device_type} device found")

        self.devices = list(devices)
        self.logger.info("gateway_discovered", devices=self.devices)
        return self.devices

    async def self_test(self) -> bool:
        """
        Create and remove a paired mapping to prove the gateway honours requests.

        Returns:
            True if the gateway accepted the test mapping
        """
        local_ip = self.local_ip or get_local_ip()
        local_port = self.host.get_base_port()
        self.logger.info("port_mapping_test_started", local_ip=local_ip, local_port=local_port)

        result = await self.create_map(True, self.config.protocol, local_ip, local_port)
        if result is None:
            self.logger.warning("port_mapping_test_failed")
            return False

        external_ip, external_port = result
        await self.remove_map(external_port)
        await self.remove_map(external_port + 1)

        if self.external_ip is None:
            self.set_external_ip(external_ip)

        self.logger.info("port_mapping_test_succeeded", external_ip=external_ip)
        return True

    async def create_map(
        self,
        pair: bool,
        protocol,
        local_addr: str,
        local_port: int
    ) -> Optional[Tuple[str, int]]:
        """
        Map one external port, or two contiguous ones, to a local endpoint.

        Args:
            pair: Map ``local_port`` and ``local_port + 1`` on contiguous
                external ports
            protocol: Protocol to forward
            local_addr: Internal client address
            local_port: First internal port

        Returns:
            (external_ip, external_port) of the first leg that mapped, or
            None on failure
        """
        protocol = Protocol.parse(protocol)
        legs = 2 if pair else 1

        async with self._lock:
            if self._shutdown:
                return None

            try:
                port = self.allocator.next_free_port(pair, self.config.external_base_port)
            except ValueError as e:
                self.logger.warning("port_allocation_failed", error=str(e))
                return None

            created: List[PortMapping] = []
            for i in range(legs):
                request = PortMapping(
                    external_port=port + i,
                    internal_port=local_port + i,
                    internal_client=str(local_addr),
                    protocol=protocol,
                    enabled=True,
                    description=self.config.description
                )
                mapping = await self._add_mapping(request)
                if mapping is not None:
                    self.local.put(mapping)
                    created.append(mapping)

            if not created:
                return None

            if len(created) < legs:
                if not self.config.allow_partial_pairs:
                    self.logger.warning("partial_pair_rolled_back", external_port=port)
                    for mapping in created:
                        await self._remove_mapping(mapping)
                        self.local.pop(mapping.external_port)
                    return None
                self.logger.warning("partial_pair_kept", external_port=created[0].external_port)

            return created[0].external_ip, created[0].external_port

    async def remove_map(self, external_port: int) -> bool:
        """
        Remove a mapping this process created.

        Unknown ports are a successful no-op. The local entry is dropped even
        if the gateway call fails; the result reports the gateway call.
        """
        async with self._lock:
            mapping = self.local.get(external_port)
            if mapping is None:
                return True

            success = await self._remove_mapping(mapping)
            self.local.pop(external_port)
            return success

    async def refresh_mirror(self) -> bool:
        """
        Replace the mirror table with the gateway's current UDP mappings.

        Returns:
            True if the gateway could be enumerated
        """
        async with self._lock:
            # Cleared first so a notification arriving mid-enumeration
            # schedules another pass.
            self._mirror_stale = False
            entries: Dict[int, PortMapping] = {}
            try:
                async for mapping in self.client.enumerate_mappings():
                    if mapping.protocol == Protocol.UDP:
                        entries[mapping.external_port] = mapping
            except GatewayError as e:
                self._mirror_stale = True
                self.stats["failed_calls"] += 1
                self.logger.warning("mirror_refresh_failed", error=str(e))
                return False

            self.mirror.replace_all(entries)
            self.stats["mirror_refreshes"] += 1

        self.logger.debug("mirror_refreshed", entries=len(entries))
        return True

    def set_external_ip(self, address: str):
        """Record a new external address and pass it to the host."""
        self.external_ip = address
        self.logger.info("external_ip_detected", external_ip=address)
        self.host.set_external_address(address)

    def request_refresh(self):
        """Mark the mirror stale and wake the reconciliation loop."""
        self._mirror_stale = True
        self._wake.set()

    async def shutdown(self):
        """
        Stop the worker, remove every local mapping and release the gateway.

        Waits at most ``shutdown_timeout`` for the drain; resources are
        released afterwards whether or not it completed.
        """
        self._shutdown = True
        self._wake.set()

        task = self._task
        if task is None:
            # Never started: drain here instead of in the worker
            self._set_state(ManagerState.SHUTTING_DOWN)
            try:
                await asyncio.wait_for(self._drain(), timeout=self.config.shutdown_timeout)
            except asyncio.TimeoutError:
                self.logger.warning("mapping_drain_timeout", remaining=len(self.local))
        elif not task.done():
            done, _ = await asyncio.wait({task}, timeout=self.config.shutdown_timeout)
            if not done:
                self.logger.warning("mapping_drain_timeout", remaining=len(self.local))
                task.cancel()

        await self._release()
        self._set_state(ManagerState.STOPPED)

    def local_mappings(self) -> List[PortMapping]:
        """Mappings created by this process."""
        return list(self.local)

    def find_local(self, internal_client: str, internal_port: int) -> Optional[PortMapping]:
        """Local mapping forwarding to ``internal_client:internal_port``, if any."""
        for mapping in self.local:
            if mapping.internal_client == internal_client and mapping.internal_port == internal_port:
                return mapping
        return None

    def mirror_mappings(self) -> List[PortMapping]:
        """Mappings the gateway reported on the last refresh."""
        return list(self.mirror)

    def get_stats(self) -> dict:
        """Get manager statistics."""
        return {
            **self.stats,
            "state": self.state.name,
            "available": self.available,
            "external_ip": self.external_ip,
            "local_mappings": len(self.local),
            "mirror_mappings": len(self.mirror),
        }

    async def _run(self):
        try:
            self.bridge = EventBridge(self)
            try:
                await self.bridge.subscribe(self.client)
            except GatewayError as e:
                self.logger.warning("gateway_events_unavailable", error=str(e))

            self._set_state(ManagerState.DISCOVERING)
            await self.discover()
            if self._shutdown:
                return

            self._set_state(ManagerState.SELF_TESTING)
            if not await self.self_test():
                raise SelfTestFailure("Gateway rejected the test mapping")
            if self._shutdown:
                return

            self._set_state(ManagerState.RUNNING)
            self._mirror_stale = True
            self.host.set_available(self.devices[0])
            self._settled.set()
            await self._reconcile()
        except PortMapError as e:
            self.last_error = e
            self.logger.warning("port_mapping_unavailable", error=str(e))
        finally:
            # No new mappings once the worker is gone
            self._shutdown = True
            self._settled.set()
            self._set_state(ManagerState.SHUTTING_DOWN)
            await self._drain()
            self._set_state(ManagerState.STOPPED)

    async def _reconcile(self):
        while not self._shutdown:
            if self._mirror_stale:
                await self.refresh_mirror()

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.config.wake_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def _drain(self):
        async with self._lock:
            failed = 0
            for mapping in self.local:
                if not await self._remove_mapping(mapping):
                    failed += 1
            if len(self.local) or failed:
                self.logger.info("local_mappings_drained", count=len(self.local), failed=failed)
            self.local.clear()
            self.mirror.clear()

        await self._release()

    async def _release(self):
        if self._released:
            return
        self._released = True

        self.local.clear()
        self.mirror.clear()
        if self.bridge is not None:
            await self.bridge.unsubscribe()

        try:
            await self.client.close()
        except Exception as e:
            self.logger.debug("gateway_close_failed", error=str(e))

        self.logger.info("mapping_manager_stopped")

    async def _add_mapping(self, request: PortMapping) -> Optional[PortMapping]:
        try:
            external_ip = await self.client.add_mapping(
                request.external_port,
                request.protocol,
                request.internal_port,
                request.internal_client,
                request.enabled,
                request.description
            )
        except GatewayError as e:
            self.stats["failed_calls"] += 1
            self.logger.warning(
                "mapping_add_failed",
                external_port=request.external_port,
                protocol=request.protocol.value,
                error=str(e)
            )
            return None

        if not is_usable_external_ip(external_ip):
            self.logger.warning(
                "mapping_external_ip_invalid",
                external_port=request.external_port,
                external_ip=external_ip
            )
            await self._remove_mapping(request)
            return None

        self.stats["mappings_created"] += 1
        self.logger.info(
            "mapping_created",
            protocol=request.protocol.value,
            internal=f"{request.internal_client}:{request.internal_port}",
            external=f"{external_ip}:{request.external_port}"
        )
        return request.confirmed(external_ip)

    async def _remove_mapping(self, mapping: PortMapping) -> bool:
        try:
            await self.client.remove_mapping(mapping.external_port, mapping.protocol)
        except GatewayError as e:
            self.stats["failed_calls"] += 1
            self.logger.debug(
                "mapping_remove_failed",
                external_port=mapping.external_port,
                error=str(e)
            )
            return False

        self.stats["mappings_removed"] += 1
        self.logger.info(
            "mapping_removed",
            protocol=mapping.protocol.value,
            external_port=mapping.external_port
        )
        return True

    def _set_state(self, state: ManagerState):
        if self.state == ManagerState.STOPPED or self.state == state:
            return
        self.logger.debug("mapping_manager_state", old=self.state.name, new=state.name)
        self.state = state
