"""
Example: Follow the gateway's mapping table as other hosts change it.
"""
import asyncio
from upnp_portmap import MapperConfig, MappingManager
from upnp_portmap.host import get_local_ip
from upnp_portmap.igd import UPnPGatewayClient


class PrintingHost:
    """Host that prints what the manager reports."""

    def set_available(self, device_name=None):
        print(f"Gateway ready: {device_name}")

    def set_external_address(self, address):
        print(f"External address: {address}")

    def get_base_port(self):
        return 5000


async def main():
    config = MapperConfig()
    manager = MappingManager(UPnPGatewayClient(config), PrintingHost(), config, local_ip=get_local_ip())
    await manager.start()

    try:
        if not await manager.wait_settled(timeout=30):
            print(f"UPnP unavailable: {manager.last_error}")
            return

        seen = None
        while True:
            await asyncio.sleep(2)
            ports = manager.mirror.ports()
            if ports != seen:
                seen = ports
                print(f"Gateway UDP mappings: {ports}")
    finally:
        await manager.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
