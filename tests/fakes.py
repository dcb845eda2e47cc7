"""
Test doubles for the gateway and the mapper host.
"""
import asyncio
from typing import Dict, List, Optional

from upnp_portmap.errors import GatewayError, MappingCallFailure
from upnp_portmap.gateway import GatewayClient, Subscription
from upnp_portmap.mapping import PortMapping, Protocol


class FakeGatewayClient(GatewayClient):
    """In-memory gateway that records every control call."""

    def __init__(self, devices=("Test Gateway",), external_ip: str = "203.0.113.7"):
        self.devices = list(devices)
        self.external_ip = external_ip
        self.rules: Dict[int, PortMapping] = {}

        self.discover_calls: List[str] = []
        self.add_calls: List[tuple] = []
        self.remove_calls: List[tuple] = []
        self.enumerate_calls = 0

        self.fail_add_ports = set()
        self.fail_remove = False
        self.unreachable = False

        self.on_external_ip = None
        self.on_entry_count = None
        self.unsubscribed = 0
        self.closed = False

    async def discover(self, device_type: str) -> List[str]:
        self.discover_calls.append(device_type)
        if self.unreachable:
            raise GatewayError("device finder unavailable")
        return list(self.devices)

    async def add_mapping(self, external_port, protocol, internal_port, internal_client, enabled, description) -> str:
        self.add_calls.append((external_port, protocol, internal_port, internal_client, enabled, description))
        await asyncio.sleep(0)
        if self.unreachable:
            raise GatewayError("gateway unreachable")
        if external_port in self.fail_add_ports:
            raise MappingCallFailure("ConflictInMappingEntry", external_port, str(protocol), 718)

        self.rules[external_port] = PortMapping(
            external_ip=self.external_ip,
            external_port=external_port,
            internal_port=internal_port,
            internal_client=internal_client,
            protocol=protocol,
            enabled=enabled,
            description=description,
        )
        return self.external_ip

    async def remove_mapping(self, external_port, protocol):
        self.remove_calls.append((external_port, protocol))
        await asyncio.sleep(0)
        if self.unreachable:
            raise GatewayError("gateway unreachable")
        if self.fail_remove:
            raise MappingCallFailure("NoSuchEntryInArray", external_port, str(protocol), 714)
        self.rules.pop(external_port, None)

    async def enumerate_mappings(self):
        self.enumerate_calls += 1
        if self.unreachable:
            raise GatewayError("gateway unreachable")
        for mapping in list(self.rules.values()):
            await asyncio.sleep(0)
            yield mapping

    async def subscribe(self, on_external_ip_changed, on_entry_count_changed) -> Subscription:
        self.on_external_ip = on_external_ip_changed
        self.on_entry_count = on_entry_count_changed
        return Subscription(self._unsubscribe)

    def _unsubscribe(self):
        self.unsubscribed += 1

    async def close(self):
        self.closed = True

    def add_foreign_rule(self, external_port: int, protocol=Protocol.UDP, internal_client: str = "10.0.0.99"):
        """A rule created by some other agent on the network."""
        self.rules[external_port] = PortMapping(
            external_ip=self.external_ip,
            external_port=external_port,
            internal_port=external_port,
            internal_client=internal_client,
            protocol=protocol,
            description="other",
        )

    def notify_entry_count(self):
        self.on_entry_count(len(self.rules))

    def notify_external_ip(self, address: str):
        self.on_external_ip(address)


class HangingGatewayClient(FakeGatewayClient):
    """Gateway whose removals never complete."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.hang_removals = False
        self._never = asyncio.Event()

    async def remove_mapping(self, external_port, protocol):
        if self.hang_removals:
            self.remove_calls.append((external_port, protocol))
            await self._never.wait()
        await super().remove_mapping(external_port, protocol)


class FakeHost:
    """Mapper host recording availability and address updates."""

    def __init__(self, base_port: int = 6000):
        self.base_port = base_port
        self.available = False
        self.device_names: List[Optional[str]] = []
        self.addresses: List[str] = []

    def set_available(self, device_name: Optional[str] = None):
        self.available = True
        self.device_names.append(device_name)

    def set_external_address(self, address: str):
        self.addresses.append(address)

    def get_base_port(self) -> int:
        return self.base_port


class FakeEndpoint:
    """Telephony endpoint counting re-registrations."""

    def __init__(self, rtp_port_base: int = 42000, rtp_port_max: int = 42099):
        self.rtp_port_base = rtp_port_base
        self.rtp_port_max = rtp_port_max
        self.registrations = 0

    def force_reregistration(self):
        self.registrations += 1


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(interval)
    return True


class FakeMiniUPnP:
    """Stand-in for ``miniupnpc.UPnP`` backed by an in-memory rule list."""

    CONTROL_URL = "http://192.168.1.1:5000/ctl/IPConn"

    def __init__(self, devices: int = 1, external_ip: str = "203.0.113.7", lanaddr: str = "10.0.0.5"):
        self.devices = devices
        self.external_ip = external_ip
        self.lanaddr = lanaddr
        self.discoverdelay = 0
        self.valid_igd = True

        # (external_port, protocol) -> generic port mapping entry
        self.rules: Dict[tuple, tuple] = {}
        self.calls: List[str] = []

        self.reject_ports = set()
        self.fail_external_ip = False
        self.fail_discover = False

    def discover(self):
        self.calls.append("discover")
        if self.fail_discover:
            raise Exception("Miniupnpc Socket error")
        return self.devices

    def selectigd(self):
        self.calls.append("selectigd")
        if not self.devices or not self.valid_igd:
            raise Exception("No UPnP device discovered")
        return self.CONTROL_URL

    def externalipaddress(self):
        self.calls.append("externalipaddress")
        if self.fail_external_ip:
            raise Exception("Action Failed")
        return self.external_ip

    def addportmapping(self, eport, proto, host, iport, desc, rhost, duration=0):
        self.calls.append("addportmapping")
        if eport in self.reject_ports:
            raise Exception("ConflictInMappingEntry")
        self.rules[(eport, proto)] = (eport, proto, (host, iport), desc, "1", rhost, duration)
        return True

    def deleteportmapping(self, eport, proto, rhost=""):
        self.calls.append("deleteportmapping")
        if (eport, proto) not in self.rules:
            raise Exception("NoSuchEntryInArray")
        del self.rules[(eport, proto)]
        return True

    def getgenericportmapping(self, index):
        self.calls.append("getgenericportmapping")
        entries = list(self.rules.values())
        if index >= len(entries):
            return None
        return entries[index]

    def getportmappingnumberofentries(self):
        self.calls.append("getportmappingnumberofentries")
        return len(self.rules)

    def statusinfo(self):
        return ("Connected", 3600, "ERROR_NONE")

    def connectiontype(self):
        return "IP_Routed"

    def add_rule(self, port: int, protocol: str = "UDP", client: str = "10.0.0.99"):
        self.rules[(port, protocol)] = (port, protocol, (client, port), "other", "1", "", 0)
