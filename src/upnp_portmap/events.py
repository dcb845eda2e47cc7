"""
Bridge between gateway notifications and the mapping manager.
"""
import asyncio
import threading
from typing import TYPE_CHECKING, Optional

import structlog

from upnp_portmap.gateway import GatewayClient, Subscription

if TYPE_CHECKING:
    from upnp_portmap.manager import MappingManager


class EventBridge:
    """
    Forwards gateway notifications to the manager.

    Notifications may arrive on the event loop or on a transport thread;
    the latter are handed over to the loop before touching manager state.
    """

    def __init__(self, manager: "MappingManager"):
        self.manager = manager
        self.logger = structlog.get_logger()
        self.subscription: Optional[Subscription] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None

        self.stats = {
            "external_ip_events": 0,
            "entry_count_events": 0,
        }

    async def subscribe(self, client: GatewayClient) -> Subscription:
        """Subscribe to the gateway's change notifications."""
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self.subscription = await client.subscribe(
            self.on_external_ip_changed,
            self.on_entry_count_changed
        )
        self.logger.debug("gateway_events_subscribed")
        return self.subscription

    async def unsubscribe(self):
        """Release the subscription handle."""
        subscription, self.subscription = self.subscription, None
        if subscription is None:
            return
        try:
            await subscription.cancel()
        except Exception as e:
            self.logger.debug("gateway_unsubscribe_failed", error=str(e))

    def on_external_ip_changed(self, address: str):
        """Handle an external address change notification."""
        self.stats["external_ip_events"] += 1
        self._dispatch(self.manager.set_external_ip, address)

    def on_entry_count_changed(self, count: int):
        """Handle a mapping entry count change notification."""
        self.stats["entry_count_events"] += 1
        self.logger.debug("gateway_entry_count_changed", count=count)
        self._dispatch(self.manager.request_refresh)

    def _dispatch(self, callback, *args):
        loop = self._loop
        if loop is None or threading.get_ident() == self._loop_thread:
            callback(*args)
        elif not loop.is_closed():
            loop.call_soon_threadsafe(callback, *args)
