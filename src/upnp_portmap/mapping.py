"""
Port mapping records and the in-memory mapping tables.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterator, Optional


class Protocol(str, Enum):
    """Transport protocols a gateway can forward."""
    UDP = "UDP"
    TCP = "TCP"

    @classmethod
    def parse(cls, value) -> "Protocol":
        """Parse a protocol name case-insensitively."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().upper())


@dataclass
class PortMapping:
    """A forwarding rule from an external port to an internal host:port."""
    external_port: int
    internal_port: int
    internal_client: str
    protocol: Protocol = Protocol.UDP
    external_ip: str = ""  # Empty until the gateway confirms the rule
    enabled: bool = True
    description: str = ""

    def __post_init__(self):
        self.protocol = Protocol.parse(self.protocol)
        for port in (self.external_port, self.internal_port):
            if not 0 <= port <= 0xFFFF:
                raise ValueError(f"Invalid port: {port}")

    def confirmed(self, external_ip: str) -> "PortMapping":
        """Copy of this mapping carrying the address reported by the gateway."""
        return replace(self, external_ip=external_ip)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "external_ip": self.external_ip,
            "external_port": self.external_port,
            "internal_port": self.internal_port,
            "internal_client": self.internal_client,
            "protocol": self.protocol.value,
            "enabled": self.enabled,
            "description": self.description,
        }


class MappingTable:
    """
    Mappings keyed by external port.

    The manager keeps two of these: ``local`` for the rules this process
    created and ``mirror`` for the gateway's last reported state. Entries are
    stored by value so erasing a key never leaves a dangling record.
    """

    def __init__(self):
        self._entries: Dict[int, PortMapping] = {}

    def __contains__(self, port: int) -> bool:
        return port in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PortMapping]:
        return iter(list(self._entries.values()))

    def get(self, port: int) -> Optional[PortMapping]:
        """Get the mapping for an external port."""
        return self._entries.get(port)

    def put(self, mapping: PortMapping):
        """Insert a mapping, replacing any entry on the same external port."""
        self._entries[mapping.external_port] = mapping

    def pop(self, port: int) -> Optional[PortMapping]:
        """Remove and return the mapping for an external port."""
        return self._entries.pop(port, None)

    def replace_all(self, mappings: Dict[int, PortMapping]):
        """Discard every entry and take ``mappings`` as the new contents."""
        self._entries = dict(mappings)

    def clear(self):
        """Drop all entries."""
        self._entries.clear()

    def ports(self) -> list:
        """Sorted external ports present in the table."""
        return sorted(self._entries)

    def snapshot(self) -> Dict[int, PortMapping]:
        """Shallow copy of the table contents."""
        return dict(self._entries)
