"""
GENA event subscription for a UPnP service.

Runs a small HTTP listener that receives NOTIFY requests from the gateway
and keeps the subscription renewed while it is active.
"""
import asyncio
import re
from typing import Callable, Dict, Optional
from xml.etree import ElementTree

import aiohttp
from aiohttp import web
import structlog

from upnp_portmap.errors import GatewayError


NOTIFY_PATH = "/upnp-events"

PropertyCallback = Callable[[Dict[str, str]], None]


def parse_property_set(body: str) -> Dict[str, str]:
    """Extract evented variables from a GENA property set."""
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError:
        return {}

    variables = {}
    for prop in root:
        if prop.tag.rsplit("}", 1)[-1] != "property":
            continue
        for variable in prop:
            name = variable.tag.rsplit("}", 1)[-1]
            variables[name] = (variable.text or "").strip()
    return variables


def parse_timeout(header: Optional[str], default: int) -> int:
    """Parse a ``TIMEOUT: Second-N`` header."""
    if not header:
        return default
    match = re.search(r"Second-(\d+)", header, re.IGNORECASE)
    return int(match.group(1)) if match else default


class EventListener:
    """HTTP endpoint the gateway sends NOTIFY requests to."""

    def __init__(self, on_properties: PropertyCallback, host: str = "0.0.0.0", port: int = 0):
        self.on_properties = on_properties
        self.host = host
        self.port = port
        self.logger = structlog.get_logger()
        self._runner: Optional[web.AppRunner] = None

    @property
    def running(self) -> bool:
        return self._runner is not None

    async def start(self) -> int:
        """Start listening and return the bound port."""
        app = web.Application()
        app.router.add_route("NOTIFY", NOTIFY_PATH, self._handle_notify)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        addresses = self._runner.addresses
        if addresses:
            self.port = addresses[0][1]
        self.logger.debug("event_listener_started", port=self.port)
        return self.port

    async def stop(self):
        """Stop listening."""
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()

    async def _handle_notify(self, request: web.Request) -> web.Response:
        if request.headers.get("NT") != "upnp:event" or request.headers.get("NTS") != "upnp:propchange":
            return web.Response(status=412)

        body = await request.text()
        variables = parse_property_set(body)
        if variables:
            self.on_properties(variables)
        return web.Response(status=200)


class GenaSubscription:
    """One SUBSCRIBE lease on a service's event URL, renewed at half-life."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        event_sub_url: str,
        callback_url: str,
        timeout: int = 1800,
        call_timeout: float = 5.0
    ):
        self.session = session
        self.event_sub_url = event_sub_url
        self.callback_url = callback_url
        self.timeout = timeout
        self.call_timeout = aiohttp.ClientTimeout(total=call_timeout)
        self.logger = structlog.get_logger()

        self.sid: Optional[str] = None
        self._renew_task: Optional[asyncio.Task] = None

    async def subscribe(self):
        """
        Open the subscription.

        Raises:
            GatewayError: If the gateway refuses the subscription
        """
        headers = {
            "CALLBACK": f"<{self.callback_url}>",
            "NT": "upnp:event",
            "TIMEOUT": f"Second-{self.timeout}",
        }
        granted = await self._request(headers)
        self._renew_task = asyncio.create_task(self._renew_loop(granted))
        self.logger.info("gateway_events_subscribed", sid=self.sid, timeout=granted)

    async def unsubscribe(self):
        """Cancel renewal and release the lease on the gateway."""
        if self._renew_task:
            self._renew_task.cancel()
            try:
                await self._renew_task
            except asyncio.CancelledError:
                pass
            self._renew_task = None

        if not self.sid:
            return
        sid, self.sid = self.sid, None
        try:
            async with self.session.request(
                "UNSUBSCRIBE",
                self.event_sub_url,
                headers={"SID": sid},
                timeout=self.call_timeout
            ):
                pass
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.debug("gateway_unsubscribe_failed", error=str(e))

    async def _request(self, headers: Dict[str, str]) -> int:
        try:
            async with self.session.request(
                "SUBSCRIBE",
                self.event_sub_url,
                headers=headers,
                timeout=self.call_timeout
            ) as resp:
                if resp.status != 200:
                    raise GatewayError(f"SUBSCRIBE failed with HTTP {resp.status}")
                sid = resp.headers.get("SID")
                if not sid:
                    raise GatewayError("SUBSCRIBE reply carries no SID")
                self.sid = sid
                return parse_timeout(resp.headers.get("TIMEOUT"), self.timeout)
        except asyncio.TimeoutError as e:
            raise GatewayError("SUBSCRIBE timed out") from e
        except aiohttp.ClientError as e:
            raise GatewayError(f"SUBSCRIBE failed: {e}") from e

    async def _renew_loop(self, granted: int):
        while True:
            try:
                await asyncio.sleep(max(granted / 2, 1))
                granted = await self._request({
                    "SID": self.sid or "",
                    "TIMEOUT": f"Second-{self.timeout}",
                })
                self.logger.debug("gateway_events_renewed", sid=self.sid, timeout=granted)
            except asyncio.CancelledError:
                break
            except GatewayError as e:
                # The lease may have lapsed; start a fresh one.
                self.logger.warning("gateway_events_renew_failed", error=str(e))
                try:
                    granted = await self._request({
                        "CALLBACK": f"<{self.callback_url}>",
                        "NT": "upnp:event",
                        "TIMEOUT": f"Second-{self.timeout}",
                    })
                except GatewayError as e:
                    self.logger.warning("gateway_events_resubscribe_failed", error=str(e))
                    granted = 60
