"""Release feed access and candidate selection."""

import platform
import re
from typing import Callable, FrozenSet, List, Optional, Sequence

import requests

from proxyupgrader.constants import METADATA_TIMEOUT
from proxyupgrader.errors import FetchFailed, NoVersionAvailable, ParseError
from proxyupgrader.errors_catalog import actionable_error
from proxyupgrader.models import CandidateVersion, ReleaseDescriptor, strip_version_prefix

_OS_ALIASES = {
    "darwin": frozenset({"darwin", "macos", "mac", "osx"}),
    "linux": frozenset({"linux"}),
    "windows": frozenset({"windows", "win", "win64", "win32"}),
    "freebsd": frozenset({"freebsd"}),
}
_ARCH_ALIASES = {
    "amd64": frozenset({"amd64", "x86_64", "x64"}),
    "arm64": frozenset({"arm64", "aarch64"}),
    "386": frozenset({"386", "i386", "i686", "x86"}),
    "arm": frozenset({"arm", "armv7", "armv7l", "armv6l"}),
}
_TOKEN_SPLIT = re.compile(r"[_\-.\s]+")


def _canonical(value: str, aliases) -> str:
    value = value.strip().lower()
    for canonical, names in aliases.items():
        if value in names:
            return canonical
    return value


class PlatformMatcher:
    """Matches release asset names against an operating system and architecture."""

    def __init__(self, system: Optional[str] = None, machine: Optional[str] = None):
        self.system = _canonical(system or platform.system(), _OS_ALIASES)
        self.machine = _canonical(machine or platform.machine(), _ARCH_ALIASES)

    @property
    def label(self) -> str:
        return f"{self.system}/{self.machine}"

    def _names(self, value: str, aliases) -> FrozenSet[str]:
        return aliases.get(value, frozenset({value}))

    def __call__(self, asset_name: str) -> bool:
        tokens = set(_TOKEN_SPLIT.split(asset_name.lower()))
        return bool(tokens & self._names(self.system, _OS_ALIASES)) and bool(
            tokens & self._names(self.machine, _ARCH_ALIASES)
        )

    def __repr__(self) -> str:
        return f"PlatformMatcher({self.label!r})"


class ReleaseCatalog:
    """Reads the release feed and resolves checksummed candidates."""

    def __init__(
        self,
        feed_url: str,
        session: requests.Session,
        logger,
        timeout: float = METADATA_TIMEOUT,
    ):
        self.feed_url = feed_url
        self.session = session
        self.logger = logger
        self.timeout = timeout

    def fetch_releases(self) -> List[ReleaseDescriptor]:
        self.logger.debug("Fetching releases from %s", self.feed_url)
        try:
            response = self.session.get(
                self.feed_url,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise FetchFailed(
                actionable_error("fetch_failed", detail=str(exc), url=self.feed_url)
            ) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ParseError(f"Release feed returned invalid JSON: {exc}") from exc

        if not isinstance(payload, list):
            raise ParseError("Release feed must return a JSON list of releases.")

        releases = [ReleaseDescriptor.from_payload(item) for item in payload]
        self.logger.debug("Release feed returned %s release(s).", len(releases))
        return releases

    def select_compatible(
        self,
        releases: Sequence[ReleaseDescriptor],
        platform_matcher: Callable[[str], bool],
        include_prereleases: bool = True,
    ) -> Optional[CandidateVersion]:
        for release in releases:
            if release.prerelease and not include_prereleases:
                continue

            candidate = self._candidate_from_release(release, platform_matcher)
            if candidate is not None:
                return candidate
        return None

    def latest_candidate(
        self,
        platform_matcher: Optional[Callable[[str], bool]] = None,
        include_prereleases: bool = True,
    ) -> CandidateVersion:
        matcher = platform_matcher or PlatformMatcher()
        candidate = self.select_compatible(
            self.fetch_releases(),
            matcher,
            include_prereleases=include_prereleases,
        )
        if candidate is None:
            label = getattr(matcher, "label", "this platform")
            raise NoVersionAvailable(actionable_error("no_version_available", platform=label))
        return candidate

    def find_candidate(
        self,
        ver: str,
        platform_matcher: Optional[Callable[[str], bool]] = None,
    ) -> CandidateVersion:
        """Candidate for one specific release version (tag prefix ignored)."""
        matcher = platform_matcher or PlatformMatcher()
        wanted = strip_version_prefix(ver)
        releases = [release for release in self.fetch_releases() if release.version == wanted]
        if not releases:
            raise NoVersionAvailable(f"Release {wanted} was not found in the release feed.")

        candidate = self.select_compatible(releases, matcher)
        if candidate is None:
            label = getattr(matcher, "label", "this platform")
            raise NoVersionAvailable(actionable_error("no_version_available", platform=label))
        return candidate

    def _candidate_from_release(
        self,
        release: ReleaseDescriptor,
        platform_matcher: Callable[[str], bool],
    ) -> Optional[CandidateVersion]:
        matching = [asset for asset in release.assets if platform_matcher(asset.name)]
        for asset in matching:
            candidate = CandidateVersion.from_release(release, asset)
            if candidate is not None:
                return candidate

        if matching:
            self.logger.warning(
                "Skipping release %s: no SHA-256 digest for asset(s) %s.",
                release.tag,
                ", ".join(asset.name for asset in matching),
            )
        return None

