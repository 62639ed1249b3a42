"""Exception hierarchy for discovery and dispatch failures.

Endpoint-resolution failures and transport failures are distinct types so a
caller can decide whether a retry makes sense.
"""

from __future__ import annotations

from druidlink.datastructures.type_aliases import ServiceName, ZNodePath


class DruidLinkError(Exception):
    """Base exception for all druidlink errors."""

    pass


class RegistryConnectionError(DruidLinkError, ConnectionError):
    """Raised when the coordination service cannot be reached."""

    pass


class RegistryNodeMissing(DruidLinkError):
    """Raised when a path does not exist in the coordination service."""

    def __init__(self, path: ZNodePath) -> None:
        self.path = path
        super().__init__(f"No node at {path}")


class ServiceUnavailable(DruidLinkError):
    """Raised when the expected service category is absent from discovery."""

    def __init__(self, service: ServiceName, discovery_path: ZNodePath) -> None:
        self.service = service
        self.discovery_path = discovery_path
        super().__init__(
            f"There aren't any {service} defined under {discovery_path}"
        )


class NoEndpointAvailable(DruidLinkError):
    """Raised when no static, discovered or fallback endpoint can be resolved."""

    pass


class EndpointMetadataError(DruidLinkError):
    """Raised when a registry node carries an unusable metadata payload."""

    pass


class RequestFailed(DruidLinkError):
    """Raised when the broker answers with a non-success response.

    ``status`` is ``None`` when no response was received at all (timeout or
    connection failure).
    """

    def __init__(self, status: int | None, body: str, *, url: str = "") -> None:
        self.status = status
        self.body = body
        self.url = url
        super().__init__(f"Request failed: {status}: {body}")
