"""Tiered version discovery for installable software.

Each supported package resolves its available major versions through three
sources, trying the next only when the previous produced nothing:

``upstream``
    the project's own release index, fetched over HTTPS.
``package-index``
    the local APT cache (``apt-cache search``).
``hardcoded``
    a version-controlled default list, so resolution never comes back empty.

Network and subprocess failures are absorbed and treated as an empty tier.
"""
from __future__ import annotations

import http.client
import json
import logging
import re
import subprocess
import urllib.request
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from packaging.version import InvalidVersion, Version

LOGGER = logging.getLogger(__name__)

SOURCE_UPSTREAM = "upstream"
SOURCE_PACKAGE_INDEX = "package-index"
SOURCE_HARDCODED = "hardcoded"


class UnknownSoftwareError(ValueError):
    """Raised when a software identifier has no resolver definition."""


@dataclass(frozen=True)
class VersionCatalog:
    """Candidate versions for one piece of software, newest first."""

    software_id: str
    versions: tuple[str, ...]
    source: str

    @property
    def is_fallback(self) -> bool:
        """Return True when the catalog came from the hardcoded defaults."""
        return self.source == SOURCE_HARDCODED

    @property
    def latest(self) -> str:
        """Return the newest candidate."""
        return self.versions[0]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "software": self.software_id,
            "versions": list(self.versions),
            "source": self.source,
        }


def _postgresql_majors(payload: str) -> list[str]:
    return re.findall(r"v(\d+)\.\d+", payload)


def _node_majors(payload: str) -> list[str]:
    data = json.loads(payload)
    majors: list[str] = []
    if isinstance(data, list):
        for entry in data:
            if not isinstance(entry, dict):
                continue
            match = re.match(r"v?(\d+)\.", str(entry.get("version", "")))
            if match:
                majors.append(match.group(1))
    return majors


def _adoptium_releases(payload: str) -> list[str]:
    data = json.loads(payload)
    releases = data.get("available_releases", []) if isinstance(data, dict) else []
    return [str(item) for item in releases if isinstance(item, int)]


@dataclass(frozen=True)
class SoftwareSpec:
    """How to discover versions for one software identifier."""

    software_id: str
    upstream_url: str
    parse_upstream: Callable[[str], list[str]]
    package_query: str
    package_pattern: re.Pattern[str]
    fallback: tuple[str, ...]


KNOWN_SOFTWARE: dict[str, SoftwareSpec] = {
    "postgresql": SoftwareSpec(
        software_id="postgresql",
        upstream_url="https://www.postgresql.org/ftp/source/",
        parse_upstream=_postgresql_majors,
        package_query="postgresql",
        package_pattern=re.compile(r"\bpostgresql-(\d+)\b"),
        fallback=("17", "16", "15", "14", "13"),
    ),
    "node": SoftwareSpec(
        software_id="node",
        upstream_url="https://nodejs.org/dist/index.json",
        parse_upstream=_node_majors,
        package_query="nodejs",
        package_pattern=re.compile(r"\bnodejs-(\d+)\b"),
        fallback=("22", "20", "18"),
    ),
    "java": SoftwareSpec(
        software_id="java",
        upstream_url="https://api.adoptium.net/v3/info/available_releases",
        parse_upstream=_adoptium_releases,
        package_query="openjdk",
        package_pattern=re.compile(r"\bopenjdk-(\d+)\b"),
        fallback=("21", "17", "11", "8"),
    ),
}


def normalize_versions(candidates: Iterable[str], *, limit: int | None = None) -> list[str]:
    """Deduplicate *candidates* and sort them newest first, numerically."""
    parsed: dict[str, Version] = {}
    for raw in candidates:
        token = str(raw).strip().lstrip("v")
        if not token or token in parsed:
            continue
        try:
            parsed[token] = Version(token)
        except InvalidVersion:
            continue
    ordered = sorted(parsed, key=lambda item: parsed[item], reverse=True)
    return ordered[:limit] if limit is not None else ordered


class VersionResolver:
    """Resolve :class:`VersionCatalog` objects through the tiered sources."""

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        offline: bool = False,
        limit: int = 10,
        apt_cache_bin: str = "apt-cache",
        software: dict[str, SoftwareSpec] | None = None,
    ) -> None:
        self.timeout = timeout
        self.offline = offline
        self.limit = limit
        self.apt_cache_bin = apt_cache_bin
        self.software = dict(KNOWN_SOFTWARE if software is None else software)

    def known(self) -> list[str]:
        """Return the software identifiers this resolver understands."""
        return sorted(self.software)

    def resolve(self, software_id: str) -> VersionCatalog:
        """Return the first non-empty catalog for *software_id*."""
        spec = self.software.get(software_id)
        if spec is None:
            known = ", ".join(self.known())
            raise UnknownSoftwareError(f"Unknown software '{software_id}'. Known: {known}.")

        if not self.offline:
            upstream = normalize_versions(self._from_upstream(spec), limit=self.limit)
            if upstream:
                return VersionCatalog(spec.software_id, tuple(upstream), SOURCE_UPSTREAM)

        indexed = normalize_versions(self._from_package_index(spec), limit=self.limit)
        if indexed:
            return VersionCatalog(spec.software_id, tuple(indexed), SOURCE_PACKAGE_INDEX)

        LOGGER.warning("Using hardcoded version list for %s.", spec.software_id)
        fallback = normalize_versions(spec.fallback, limit=self.limit)
        return VersionCatalog(spec.software_id, tuple(fallback), SOURCE_HARDCODED)

    @staticmethod
    def validate(version: str, catalog: VersionCatalog) -> bool:
        """Return True when *version* is exactly one of the catalog entries."""
        return str(version).strip() in catalog.versions

    # ------------------------------------------------------------------
    def _from_upstream(self, spec: SoftwareSpec) -> list[str]:
        try:
            payload = self._fetch(spec.upstream_url)
            return spec.parse_upstream(payload)
        except (OSError, ValueError, http.client.HTTPException) as exc:
            LOGGER.info("Upstream lookup for %s failed: %s", spec.software_id, exc)
            return []

    def _from_package_index(self, spec: SoftwareSpec) -> list[str]:
        try:
            result = self._run_command([self.apt_cache_bin, "search", spec.package_query])
        except (OSError, subprocess.SubprocessError) as exc:
            LOGGER.info("Package index lookup for %s failed: %s", spec.software_id, exc)
            return []
        if result.returncode != 0:
            return []
        return spec.package_pattern.findall(result.stdout or "")

    def _fetch(self, url: str) -> str:
        request = urllib.request.Request(url, headers={"User-Agent": "cicdctl"})
        with urllib.request.urlopen(request, timeout=self.timeout) as response:  # noqa: S310
            return response.read().decode("utf-8", errors="replace")

    def _run_command(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(  # noqa: S603
            list(args),
            capture_output=True,
            text=True,
            check=False,
            timeout=self.timeout,
        )


__all__ = [
    "KNOWN_SOFTWARE",
    "SOURCE_HARDCODED",
    "SOURCE_PACKAGE_INDEX",
    "SOURCE_UPSTREAM",
    "SoftwareSpec",
    "UnknownSoftwareError",
    "VersionCatalog",
    "VersionResolver",
    "normalize_versions",
]
