"""
Configuration for the UPnP port mapper.
"""
from dataclasses import dataclass, asdict
import json

from upnp_portmap.mapping import Protocol


IGD_DEVICE_TYPE = "urn:schemas-upnp-org:device:InternetGatewayDevice:1"


@dataclass
class MapperConfig:
    """Configuration for gateway discovery and mapping management."""
    
    # Gateway discovery
    device_type: str = IGD_DEVICE_TYPE
    discovery_timeout: float = 3.0  # Seconds to wait for gateway replies
    call_timeout: float = 5.0  # Seconds per control call
    
    # Mapping allocation
    external_base_port: int = 55001
    description: str = "PacPhone"
    protocol: str = "UDP"
    allow_partial_pairs: bool = True  # Keep a pair even if only one leg maps
    
    # Reconciliation loop
    wake_interval: float = 0.2  # Upper bound between mirror checks
    shutdown_timeout: float = 2.0  # Seconds to wait for the drain
    
    # Gateway event subscription
    event_host: str = "0.0.0.0"
    event_port: int = 0  # 0 picks an ephemeral port
    subscription_timeout: int = 1800  # Requested lease in seconds
    event_sub_url: str = ""  # GENA URL of the WAN connection service; empty polls instead
    event_poll_interval: float = 2.0  # Seconds between gateway polls
    
    # Local RTP socket range
    rtp_port_base: int = 5000
    rtp_port_max: int = 5999
    
    # Logging
    log_level: str = "INFO"
    
    @classmethod
    def from_file(cls, path: str) -> "MapperConfig":
        """Load configuration from a JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        return cls(**data)
    
    def to_file(self, path: str):
        """Save configuration to a JSON file."""
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)
    
    def validate(self) -> bool:
        """Validate configuration parameters."""
        if not (1 <= self.external_base_port < 65535):
            raise ValueError(f"Invalid external_base_port: {self.external_base_port}")
        
        if not (0 <= self.event_port <= 65535):
            raise ValueError(f"Invalid event_port: {self.event_port}")
        
        if not (1 <= self.rtp_port_base <= 65535) or not (1 <= self.rtp_port_max <= 65535):
            raise ValueError("RTP port range must lie within 1-65535")
        
        if self.rtp_port_max < self.rtp_port_base + 1:
            raise ValueError("rtp_port_max must leave room for a socket pair")
        
        try:
            Protocol.parse(self.protocol)
        except ValueError:
            raise ValueError(f"Invalid protocol: {self.protocol}") from None
        
        for name in ("discovery_timeout", "call_timeout", "wake_interval", "shutdown_timeout", "event_poll_interval"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        
        if self.subscription_timeout < 1:
            raise ValueError("subscription_timeout must be at least 1 second")
        
        return True
