"""
Exceptions raised by the port mapping layer.
"""
from typing import Optional


class PortMapError(Exception):
    """Base exception for port mapping errors."""


class GatewayError(PortMapError):
    """A control-protocol call to the gateway failed."""

    def __init__(self, message: str, error_code: Optional[int] = None):
        super().__init__(message)
        self.error_code = error_code


class MappingCallFailure(GatewayError):
    """An individual add or remove mapping call was rejected or failed."""

    def __init__(
        self,
        message: str,
        external_port: int,
        protocol: str = "UDP",
        error_code: Optional[int] = None
    ):
        super().__init__(message, error_code)
        self.external_port = external_port
        self.protocol = protocol


class DiscoveryFailure(PortMapError):
    """No gateway device was found, or the device finder is unavailable."""


class SelfTestFailure(PortMapError):
    """The discovered gateway rejected the exploratory mapping."""
