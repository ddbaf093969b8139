"""Remote platform providers for the control plane."""

from .machines_client import (
    MachinesClient,
    RemoteAPIError,
    RemoteNotFoundError,
    RemoteTransportError,
)

__all__ = [
    "MachinesClient",
    "RemoteAPIError",
    "RemoteNotFoundError",
    "RemoteTransportError",
]
