"""
Example: Map an RTP/RTCP socket pair through the local gateway.
"""
import asyncio
from upnp_portmap import MapperConfig, UPnPNatMethod
from upnp_portmap.log import configure_logging


class DemoEndpoint:
    """Minimal telephony endpoint."""

    rtp_port_base = 5000
    rtp_port_max = 5099

    def force_reregistration(self):
        print("Endpoint would re-register with its gatekeeper now")


async def main():
    """Map one socket pair and release it again."""
    config = MapperConfig(log_level="INFO")
    configure_logging(config.log_level)

    nat = UPnPNatMethod(config)
    await nat.attach_endpoint(DemoEndpoint())

    try:
        if not await nat.manager.wait_settled(timeout=30):
            print(f"UPnP unavailable: {nat.manager.last_error}")
            return

        pair = await nat.create_socket_pair()
        if pair is None:
            print("Could not map a socket pair")
            return

        data, control = pair
        print(f"RTP  {data.bind_address} reachable at {data.get_local_address()}")
        print(f"RTCP {control.bind_address} reachable at {control.get_local_address()}")

        await asyncio.sleep(10)

        # Closing a socket removes its mapping
        await data.close()
        await control.close()
    finally:
        await nat.close()


if __name__ == "__main__":
    asyncio.run(main())
