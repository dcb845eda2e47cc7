"""
External port allocation over the current mapping state.
"""
from upnp_portmap.mapping import MappingTable


MAX_PORT = 0xFFFF


class PortAllocator:
    """
    Picks external ports that no known mapping occupies.

    A port is free only if it is absent from both the local and the mirror
    table. Callers must hold the manager lock across the scan and the
    insertion that follows it.
    """

    def __init__(self, local: MappingTable, mirror: MappingTable):
        self.local = local
        self.mirror = mirror

    def is_free(self, port: int) -> bool:
        """Check whether no table holds ``port``."""
        return port not in self.local and port not in self.mirror

    def next_free_port(self, pair: bool, base: int) -> int:
        """
        Find the first free port at or above ``base``.

        Args:
            pair: Also require ``port + 1`` to be free
            base: Port to start scanning from

        Returns:
            The allocated port (the lower one of a pair)

        Raises:
            ValueError: If the scan runs past the top of the port space
        """
        width = 2 if pair else 1
        port = base
        while port + width - 1 <= MAX_PORT:
            if self.is_free(port) and (not pair or self.is_free(port + 1)):
                return port
            port += 1

        raise ValueError(f"No free {'port pair' if pair else 'port'} at or above {base}")
