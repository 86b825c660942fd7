"""DNS summary printed at the end of a deploy.

Every hostname a unit publishes through the edge router needs an A record
pointing at the server. Hostnames that do not resolve there yet are listed so
the operator can create them.
"""

from __future__ import annotations

import socket
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from .model import ServiceUnit
from .template import TemplateRenderer

Resolver = Callable[[str], str]


@dataclass
class DnsEntry:
    """A published hostname and where it currently resolves."""

    unit: str
    hostname: str
    resolved: str | None

    def points_to(self, address: str) -> bool:
        return self.resolved == address


def _resolve(hostname: str, resolver: Resolver) -> str | None:
    try:
        return resolver(hostname)
    except OSError:
        return None


def dns_entries(
    units: Iterable[ServiceUnit],
    params: Mapping[str, str],
    resolver: Resolver = socket.gethostbyname,
    renderer: TemplateRenderer | None = None,
) -> list[DnsEntry]:
    """Render and resolve every published hostname of ``units``."""
    renderer = renderer or TemplateRenderer()
    entries = []
    for unit in units:
        for domain in unit.domains:
            hostname = renderer.render_string(domain, params, name=f"{unit.name} domain")
            entries.append(DnsEntry(unit.name, hostname, _resolve(hostname, resolver)))
    return entries


def missing_records(entries: Iterable[DnsEntry], server_ip: str) -> list[DnsEntry]:
    """Entries whose hostname does not resolve to ``server_ip``."""
    return [entry for entry in entries if not entry.points_to(server_ip)]
