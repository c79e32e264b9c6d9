"""
TCP reachability checks for collaborator services.

Only reachability is assessed; the Wyoming protocol spoken on these ports is
not. Each service is probed at its configured address and on loopback, and
both results are kept because a server may listen on only one of them.
"""

import logging
import socket
from dataclasses import dataclass
from typing import Mapping

from ..config import Config, ServiceEndpoint

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"
PIPER_SERVICE = "wyoming-piper"
OWW_SERVICE = "wyoming-openwakeword"


def probe(host: str, port: int, timeout: float = Config.PROBE_TIMEOUT) -> bool:
    """
    Check whether a TCP connection to host:port can be opened.

    Never raises: refusal, timeout and name resolution failures all
    count as unreachable.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


@dataclass(frozen=True)
class ServiceStatus:
    """Probe results for one collaborator service."""

    name: str
    endpoint: ServiceEndpoint
    remote: bool
    local: bool

    @property
    def reachable(self) -> bool:
        return self.remote or self.local


@dataclass(frozen=True)
class ServiceReport:
    """Probe results for all collaborator services, keyed by service name."""

    services: dict[str, ServiceStatus]

    def reachable(self, name: str) -> bool:
        status = self.services.get(name)
        return status is not None and status.reachable

    def lines(self) -> list[str]:
        """Human-readable summary, one line per probe target."""
        out = []
        for status in self.services.values():
            out.append(
                f"{status.name:<20} detected on {status.endpoint} => {int(status.remote)}"
            )
            out.append(
                f"{status.name:<20} detected on localhost:{status.endpoint.port} => {int(status.local)}"
            )
        return out


def probe_services(
    endpoints: Mapping[str, ServiceEndpoint],
    timeout: float = Config.PROBE_TIMEOUT,
) -> ServiceReport:
    """
    Probe each endpoint at its configured host and on loopback.

    Args:
        endpoints: Service name -> configured endpoint
        timeout: Per-connection timeout in seconds

    Returns:
        ServiceReport with independent remote/local flags
    """
    services: dict[str, ServiceStatus] = {}
    for name, endpoint in endpoints.items():
        remote = probe(endpoint.host, endpoint.port, timeout)
        local = probe(LOOPBACK_HOST, endpoint.port, timeout)
        logger.info(f"Detected: {name} on {endpoint} => {int(remote)}")
        logger.info(f"Detected: {name} on localhost:{endpoint.port} => {int(local)}")
        services[name] = ServiceStatus(
            name=name, endpoint=endpoint, remote=remote, local=local
        )
    return ServiceReport(services=services)
