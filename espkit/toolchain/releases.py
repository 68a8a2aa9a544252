"""
Release lookup against the GitHub releases API.

The locator pages through *all* releases of a repository (older versions
are not on the first page), caches the result for the current run, and
selects the asset matching a component, version and host.

Transient failures (rate limiting, server errors, network errors) are
retried page by page under the injected RetryPolicy, so a retried page
continues the listing instead of restarting it. A missing release or asset
is terminal.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import requests

from espkit.core.exceptions import (
    ConfigurationError,
    IndexUnreachable,
    RateLimited,
    ReleaseIndexError,
    ReleaseNotFound,
)
from espkit.core.filesystem import ArchiveKind
from espkit.core.platform import HostPlatform
from espkit.core.retry import RetryExhausted, RetryPolicy
from espkit.toolchain.components import Component, asset_names
from espkit.toolchain.versions import version_key

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
PER_PAGE = 100


@dataclass(frozen=True)
class ReleaseAsset:
    """A downloadable archive selected for one component on one host."""

    component: str
    version: str
    host: str
    name: str
    url: str
    archive_kind: ArchiveKind
    size: int = 0
    sha256: Optional[str] = None


@dataclass
class Release:
    """One published release as reported by the index."""

    tag: str
    prerelease: bool = False
    draft: bool = False
    assets: Dict[str, dict] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict) -> "Release":
        return cls(
            tag=data["tag_name"],
            prerelease=bool(data.get("prerelease", False)),
            draft=bool(data.get("draft", False)),
            assets={a["name"]: a for a in data.get("assets", [])},
        )


class ReleaseIndexCache:
    """
    Release listings fetched during one orchestrator run.

    Pass one instance to the locator per run; it is never shared between
    unrelated invocations.
    """

    def __init__(self):
        self._releases: Dict[str, List[Release]] = {}
        self._lock = threading.Lock()

    def get_or_fetch(
        self, repository: str, fetch: Callable[[], List[Release]]
    ) -> List[Release]:
        with self._lock:
            if repository not in self._releases:
                self._releases[repository] = fetch()
            else:
                logger.debug(f"Release index cache hit for {repository}")
            return self._releases[repository]

    def __contains__(self, repository: str) -> bool:
        return repository in self._releases


class ReleaseLocator:
    """
    Resolve versions and assets from GitHub release listings.

    Args:
        cache: Per-run release cache
        token: Optional GitHub token sent as a bearer token
        retry_policy: Backoff policy for each page request
        session: HTTP session (carries proxy settings)
        timeout: Request timeout in seconds
        api_url: GitHub API base URL
    """

    def __init__(
        self,
        cache: ReleaseIndexCache,
        token: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
        api_url: str = GITHUB_API,
    ):
        self.cache = cache
        self.token = token
        self.retry_policy = retry_policy or RetryPolicy()
        self.session = session or requests.Session()
        self.timeout = timeout
        self.api_url = api_url.rstrip("/")

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "espkit",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def list_releases(self, repository: str) -> List[Release]:
        """All releases of ``repository``, newest first as the index reports them."""
        return self.cache.get_or_fetch(repository, lambda: self._fetch_all(repository))

    def _fetch_all(self, repository: str) -> List[Release]:
        url: Optional[str] = (
            f"{self.api_url}/repos/{repository}/releases?per_page={PER_PAGE}&page=1"
        )
        releases: List[Release] = []
        page = 0

        while url:
            page += 1
            page_url = url
            try:
                data, url = self.retry_policy.call(
                    lambda: self._fetch_page(page_url, repository),
                    retry_on=(ReleaseIndexError,),
                    description=f"Release index page {page} of {repository}",
                )
            except RetryExhausted as e:
                raise e.last_error from e

            if not data:
                break
            releases.extend(Release.from_api(item) for item in data)

        logger.debug(f"Fetched {len(releases)} releases of {repository} in {page} page(s)")
        return releases

    def _fetch_page(self, url: str, repository: str):
        """Fetch one page; returns (items, next page URL or None)."""
        try:
            response = self.session.get(url, headers=self._headers(), timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise IndexUnreachable(f"Cannot reach release index for {repository}: {e}") from e

        status = response.status_code
        if status == 404:
            raise ReleaseNotFound(f"Repository {repository} was not found on the release index")
        if status == 401:
            raise ConfigurationError(
                "The release index rejected the supplied GitHub token (HTTP 401)"
            )
        if self._is_rate_limited(response):
            hint = "" if self.token else " Set GITHUB_TOKEN to raise the rate limit."
            raise RateLimited(f"Release index rate limit exceeded for {repository}.{hint}")
        if status >= 500:
            raise IndexUnreachable(f"Release index returned HTTP {status} for {repository}")
        if status >= 400:
            raise IndexUnreachable(
                f"Release index returned HTTP {status} for {repository}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise IndexUnreachable(f"Malformed release index response for {repository}") from e
        if not isinstance(data, list):
            raise IndexUnreachable(f"Unexpected release index payload for {repository}")

        next_url = response.links.get("next", {}).get("url")
        return data, next_url

    @staticmethod
    def _is_rate_limited(response: requests.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code != 403:
            return False
        if response.headers.get("X-RateLimit-Remaining") == "0":
            return True
        return "rate limit" in response.text.lower()

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def versions(self, component: Component) -> List[str]:
        """Published stable versions of ``component``, highest first."""
        found = set()
        for release in self.list_releases(component.repository):
            if release.draft or release.prerelease:
                continue
            version = component.version_from_tag(release.tag)
            if version:
                found.add(version)
        return sorted(found, key=version_key, reverse=True)

    def latest_version(self, component: Component) -> str:
        """
        Highest published stable version.

        Raises:
            ReleaseNotFound: If the index lists no usable release
        """
        versions = self.versions(component)
        if not versions:
            raise ReleaseNotFound(f"No releases of {component.name} found in {component.repository}")
        return versions[0]

    # ------------------------------------------------------------------
    # Assets
    # ------------------------------------------------------------------

    def _find_release(self, component: Component, version: str) -> Release:
        tag = component.tag_for(version)
        for release in self.list_releases(component.repository):
            if release.tag == tag:
                return release
        raise ReleaseNotFound(
            f"{component.name} {version} is not published (no release '{tag}' in {component.repository})"
        )

    def locate_all(
        self,
        component: Component,
        version: str,
        host: HostPlatform,
        variant: Optional[str] = None,
    ) -> List[ReleaseAsset]:
        """
        Every asset needed to install ``component`` at ``version`` on ``host``.

        Raises:
            ReleaseNotFound: If the release or one of its assets is missing
        """
        release = self._find_release(component, version)
        selected = []
        for name in asset_names(component, version, host, variant):
            data = release.assets.get(name)
            if data is None:
                raise ReleaseNotFound(
                    f"Release '{release.tag}' of {component.name} has no asset '{name}' for host {host}"
                )
            selected.append(_to_asset(component, version, host, data))
        return selected

    def locate(
        self,
        component: Component,
        version: str,
        host: HostPlatform,
        variant: Optional[str] = None,
    ) -> ReleaseAsset:
        """The main archive of ``component`` for ``host``."""
        return self.locate_all(component, version, host, variant)[0]


def _to_asset(component: Component, version: str, host: HostPlatform, data: dict) -> ReleaseAsset:
    digest = data.get("digest") or ""
    sha256 = digest.split(":", 1)[1] if digest.startswith("sha256:") else None
    return ReleaseAsset(
        component=component.name,
        version=version,
        host=host.triple,
        name=data["name"],
        url=data["browser_download_url"],
        archive_kind=ArchiveKind.from_filename(data["name"]),
        size=int(data.get("size") or 0),
        sha256=sha256,
    )
