"""
UPnP Internet Gateway Device client.

Discovery and port mapping control go through miniupnpc. Its calls block,
so they run one at a time on a dedicated worker thread. Change
notifications come from a GENA subscription when the gateway's event URL
is configured, and from polling the gateway otherwise.
"""
import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import AsyncIterator, Dict, List, Optional
from urllib.parse import urlparse

import aiohttp
import miniupnpc
import structlog

from upnp_portmap.config import MapperConfig
from upnp_portmap.errors import DiscoveryFailure, GatewayError, MappingCallFailure
from upnp_portmap.gateway import (
    EntryCountCallback,
    ExternalIPCallback,
    GatewayClient,
    Subscription,
)
from upnp_portmap.host import get_local_ip
from upnp_portmap.igd.events import NOTIFY_PATH, EventListener, GenaSubscription
from upnp_portmap.mapping import PortMapping, Protocol


MAX_ENUMERATED_ENTRIES = 0xFFFF

# miniupnpc raises plain exceptions carrying the UPnP error description
UPNP_ERROR_CODES = {
    "Invalid Action": 401,
    "Invalid Args": 402,
    "Action Failed": 501,
    "Action not authorized": 606,
    "SpecifiedArrayIndexInvalid": 713,
    "NoSuchEntryInArray": 714,
    "WildCardNotPermittedInSrcIP": 715,
    "WildCardNotPermittedInExtPort": 716,
    "ConflictInMappingEntry": 718,
    "SamePortValuesRequired": 724,
    "OnlyPermanentLeasesSupported": 725,
}


def upnp_error_code(error: Exception) -> Optional[int]:
    """UPnP error code for a miniupnpc exception, if it names one."""
    return UPNP_ERROR_CODES.get(str(error).strip())


class UPnPGatewayClient(GatewayClient):
    """
    Gateway client speaking UPnP IGD through miniupnpc.

    The IGD selected by miniupnpc after discovery becomes the controlled
    gateway.
    """

    def __init__(
        self,
        config: Optional[MapperConfig] = None,
        upnp=None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Initialize the client.

        Args:
            config: Mapper configuration (defaults if not provided)
            upnp: ``miniupnpc.UPnP`` instance (created if not provided)
            session: HTTP session for GENA requests; one is created and
                owned otherwise
        """
        self.config = config or MapperConfig()
        self.logger = structlog.get_logger()
        self.upnp = upnp if upnp is not None else miniupnpc.UPnP()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="miniupnpc")
        self._closed = False

        self._session = session
        self._owns_session = session is None

        self.control_url: Optional[str] = None
        self.external_ip: Optional[str] = None
        self._entry_count: Optional[int] = None

        self._on_external_ip: Optional[ExternalIPCallback] = None
        self._on_entry_count: Optional[EntryCountCallback] = None
        self._listener: Optional[EventListener] = None
        self._gena: Optional[GenaSubscription] = None
        self._poll_task: Optional[asyncio.Task] = None

    async def _call(self, func, *args, timeout: Optional[float] = None):
        """
        Run a blocking miniupnpc call on the worker thread.

        Raises:
            GatewayError: If the call failed or timed out
        """
        if self._closed:
            raise GatewayError("Gateway client is closed")

        name = getattr(func, "__name__", "upnp_call")
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, func, *args)
        try:
            return await asyncio.wait_for(future, timeout or self.config.call_timeout)
        except asyncio.TimeoutError as e:
            raise GatewayError(f"{name} timed out") from e
        except Exception as e:
            raise GatewayError(f"{name} failed: {e}", upnp_error_code(e)) from e

    async def discover(self, device_type: str) -> List[str]:
        """
        Search for gateways and select the first valid IGD.

        Returns:
            The selected gateway's control URL, or an empty list
        """
        self.upnp.discoverdelay = int(self.config.discovery_timeout * 1000)
        try:
            count = await self._call(
                self.upnp.discover,
                timeout=self.config.discovery_timeout + self.config.call_timeout
            )
        except GatewayError as e:
            raise DiscoveryFailure(f"UPnP search failed: {e}") from e

        self.logger.debug("upnp_devices_found", count=count, device_type=device_type)
        if not count:
            return []

        try:
            control_url = await self._call(self.upnp.selectigd)
        except GatewayError as e:
            self.logger.debug("gateway_without_valid_igd", error=str(e))
            return []

        await self.use_device(control_url)
        return [control_url]

    async def use_device(self, control_url: str):
        """Control the IGD answering on ``control_url`` from now on."""
        self.control_url = control_url
        self.logger.debug("gateway_selected", control_url=control_url, lan_address=self.upnp.lanaddr)
        if self._listener is not None and self._gena is None:
            await self._start_gena()

    async def get_external_ip(self) -> str:
        """Ask the gateway for its external address."""
        self._require_device()
        self.external_ip = await self._call(self.upnp.externalipaddress)
        return self.external_ip

    async def get_connection_info(self) -> dict:
        """Connection type, link status and LAN address of the selected gateway."""
        self._require_device()
        connection_type = await self._call(self.upnp.connectiontype)
        status = await self._call(self.upnp.statusinfo)
        return {
            "control_url": self.control_url,
            "connection_type": connection_type,
            "status": status[0] if isinstance(status, tuple) else status,
            "lan_address": self.upnp.lanaddr,
        }

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
        Create a forwarding rule and report the gateway's external address.

        miniupnpc always creates rules enabled. If the address cannot be
        read back, the rule is deleted again before the failure is raised.
        """
        self._require_device()
        protocol = Protocol.parse(protocol)
        try:
            created = await self._call(
                self.upnp.addportmapping,
                external_port,
                protocol.value,
                internal_client,
                internal_port,
                description,
                ""
            )
        except GatewayError as e:
            raise MappingCallFailure(str(e), external_port, protocol.value, e.error_code) from e
        if created is False:
            raise MappingCallFailure("AddPortMapping refused", external_port, protocol.value)

        try:
            return await self.get_external_ip()
        except GatewayError as e:
            self.logger.warning(
                "mapping_rolled_back",
                external_port=external_port,
                reason="external address unavailable",
                error=str(e)
            )
            await self._delete_quietly(external_port, protocol)
            raise MappingCallFailure(
                f"External address unavailable after mapping: {e}",
                external_port,
                protocol.value,
                e.error_code
            ) from e

    async def remove_mapping(self, external_port: int, protocol: Protocol):
        self._require_device()
        protocol = Protocol.parse(protocol)
        try:
            removed = await self._call(self.upnp.deleteportmapping, external_port, protocol.value)
        except GatewayError as e:
            raise MappingCallFailure(str(e), external_port, protocol.value, e.error_code) from e
        if removed is False:
            raise MappingCallFailure("DeletePortMapping refused", external_port, protocol.value)

    async def enumerate_mappings(self) -> AsyncIterator[PortMapping]:
        self._require_device()
        for index in range(MAX_ENUMERATED_ENTRIES):
            entry = await self._call(self.upnp.getgenericportmapping, index)
            if entry is None:
                return

            mapping = self._entry_to_mapping(entry)
            if mapping is not None:
                yield mapping

    def _entry_to_mapping(self, entry: tuple) -> Optional[PortMapping]:
        # (ext_port, protocol, (int_client, int_port), description, enabled, remote_host, lease)
        try:
            external_port, protocol, internal, description, enabled = entry[:5]
            internal_client, internal_port = internal
            return PortMapping(
                external_ip=self.external_ip or "",
                external_port=int(external_port),
                internal_port=int(internal_port),
                internal_client=internal_client,
                protocol=protocol,
                enabled=bool(int(enabled)),
                description=description or "",
            )
        except (TypeError, ValueError) as e:
            self.logger.debug("gateway_entry_unparsable", entry=entry, error=str(e))
            return None

    async def subscribe(
        self,
        on_external_ip_changed: ExternalIPCallback,
        on_entry_count_changed: EntryCountCallback
    ) -> Subscription:
        """
        Start receiving gateway notifications.

        With ``event_sub_url`` configured a GENA lease is opened now if a
        gateway is selected, otherwise as soon as discovery selects one.
        Without it the gateway is polled every ``event_poll_interval``.
        """
        self._on_external_ip = on_external_ip_changed
        self._on_entry_count = on_entry_count_changed

        if self.config.event_sub_url:
            if self._listener is None:
                self._listener = EventListener(
                    self._handle_properties,
                    host=self.config.event_host,
                    port=self.config.event_port
                )
                try:
                    await self._listener.start()
                except OSError as e:
                    self._listener = None
                    raise GatewayError(f"Cannot open event listener: {e}") from e

            if self.control_url is not None and self._gena is None:
                await self._start_gena()
        elif self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())

        return Subscription(self._unsubscribe)

    async def close(self):
        await self._unsubscribe()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._closed = True
        self.control_url = None
        self._executor.shutdown(wait=False)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _start_gena(self):
        if self._listener is None:
            return

        event_sub_url = self.config.event_sub_url
        gateway_host = urlparse(event_sub_url).hostname or "8.8.8.8"
        callback_url = f"http://{get_local_ip(gateway_host)}:{self._listener.port}{NOTIFY_PATH}"
        gena = GenaSubscription(
            await self._get_session(),
            event_sub_url,
            callback_url,
            timeout=self.config.subscription_timeout,
            call_timeout=self.config.call_timeout
        )
        try:
            await gena.subscribe()
        except GatewayError as e:
            # Mappings still work; only change notifications are lost.
            self.logger.warning("gateway_events_unavailable", error=str(e))
            return
        self._gena = gena

    async def _poll_loop(self):
        while True:
            await asyncio.sleep(self.config.event_poll_interval)
            if self.control_url is None:
                continue

            variables = {}
            for name, func in (
                ("PortMappingNumberOfEntries", self.upnp.getportmappingnumberofentries),
                ("ExternalIPAddress", self.upnp.externalipaddress),
            ):
                try:
                    variables[name] = str(await self._call(func))
                except GatewayError as e:
                    self.logger.debug("gateway_poll_failed", variable=name, error=str(e))
            self._handle_properties(variables)

    async def _unsubscribe(self):
        self._on_external_ip = None
        self._on_entry_count = None

        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        gena, self._gena = self._gena, None
        if gena is not None:
            await gena.unsubscribe()
        listener, self._listener = self._listener, None
        if listener is not None:
            await listener.stop()

    def _handle_properties(self, variables: Dict[str, str]):
        """Forward changed evented variables to the callbacks."""
        address = variables.get("ExternalIPAddress")
        if address and address != self.external_ip:
            self.external_ip = address
            if self._on_external_ip:
                self._on_external_ip(address)

        count = variables.get("PortMappingNumberOfEntries")
        if count is not None:
            value = int(count) if count.isdigit() else 0
            if value != self._entry_count:
                self._entry_count = value
                if self._on_entry_count:
                    self._on_entry_count(value)

    def _require_device(self):
        if self.control_url is None:
            raise GatewayError("No gateway selected; run discovery first")

    async def _delete_quietly(self, external_port: int, protocol: Protocol):
        try:
            await self._call(self.upnp.deleteportmapping, external_port, protocol.value)
        except GatewayError as e:
            self.logger.debug("mapping_rollback_failed", external_port=external_port, error=str(e))
