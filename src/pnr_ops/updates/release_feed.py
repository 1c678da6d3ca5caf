"""
Release feed client for PNR Ops.

Queries the release-hosting service (GitHub REST API) for the latest published
release of a project and resolves the artifact to download.

Response models ignore fields they do not know about, so feed additions never
break parsing.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pnr_ops.errors import ReleaseFeedError
from pnr_ops.logging import get_logger

if TYPE_CHECKING:
    from pnr_ops.config import UpdatesConfig

logger = get_logger(__name__)

DEFAULT_API_BASE = "https://api.github.com"
DEFAULT_USER_AGENT = "PNRServerUpdater"


class Asset(BaseModel):
    """
    A downloadable file attached to a release.

    Attributes:
        url: API URL of the asset.
        name: File name.
        content_type: MIME type reported by the feed.
        size: Size in bytes.
        browser_download_url: Direct download URL.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    url: str | None = None
    name: str | None = None
    content_type: str | None = None
    size: int | None = None
    browser_download_url: str | None = None


class Release(BaseModel):
    """
    A published release of a project.

    Attributes:
        tag_name: Version identifier, unique per project.
        name: Display name.
        draft: Whether the release is a draft.
        prerelease: Whether the release is a pre-release.
        created_at: Creation timestamp as reported by the feed.
        published_at: Publication timestamp as reported by the feed.
        assets: Attached artifacts, in feed order.
        tarball_url: Source tarball URL.
        zipball_url: Source zip archive URL.
        body: Release notes.
        html_url: Human-facing release page.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    tag_name: str | None = None
    name: str | None = None
    draft: bool = False
    prerelease: bool = False
    created_at: str | None = None
    published_at: str | None = None
    assets: list[Asset] = Field(default_factory=list)
    tarball_url: str | None = None
    zipball_url: str | None = None
    body: str | None = None
    html_url: str | None = None

    def artifact_url(self) -> str | None:
        """
        Resolve the URL to download for this release.

        Returns:
            The first asset's download URL when assets exist, otherwise the
            source zip archive URL, otherwise None.
        """
        if self.assets:
            return self.assets[0].browser_download_url or None
        return self.zipball_url or None


class ReleaseFeedClient:
    """
    Fetches release metadata for one project.

    Example:
        >>> client = ReleaseFeedClient("rob011235", "PointOfNoReturnGameServer")
        >>> release = await client.get_latest_release()
        >>> release.tag_name
        'v1.2.0'
    """

    def __init__(
        self,
        owner: str,
        repo: str,
        *,
        token: str | None = None,
        api_base: str = DEFAULT_API_BASE,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 60.0,
    ) -> None:
        """
        Initialize the client.

        Args:
            owner: Repository owner.
            repo: Repository name.
            token: Optional token for private repositories.
            api_base: Base URL of the API.
            user_agent: User-Agent header value.
            timeout: Request timeout in seconds.
        """
        self.owner = owner
        self.repo = repo
        self._token = token
        self.api_base = api_base.rstrip("/")
        self.user_agent = user_agent
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: UpdatesConfig) -> ReleaseFeedClient:
        """Create a client from the updates configuration."""
        return cls(
            owner=config.repo_owner,
            repo=config.repo_name,
            token=config.token,
            api_base=config.api_base,
            user_agent=config.user_agent,
            timeout=config.request_timeout_seconds,
        )

    @property
    def latest_release_url(self) -> str:
        """URL of the latest-release endpoint."""
        return f"{self.api_base}/repos/{self.owner}/{self.repo}/releases/latest"

    @property
    def headers(self) -> dict[str, str]:
        """Request headers, including authorization when a token is set."""
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "application/vnd.github+json",
        }
        if self._token:
            headers["Authorization"] = f"token {self._token}"
        return headers

    def create_http_client(self) -> httpx.AsyncClient:
        """Create an HTTP client carrying this feed's headers."""
        return httpx.AsyncClient(
            headers=self.headers,
            timeout=self.timeout,
            follow_redirects=True,
        )

    async def fetch_latest_release(self) -> Release:
        """
        Fetch the latest published release.

        Returns:
            The parsed release.

        Raises:
            ReleaseFeedError: If the feed is unreachable, answers with an error
                status, or returns no usable data.
        """
        url = self.latest_release_url
        logger.debug("Fetching latest release", extra={"url": url})

        try:
            async with self.create_http_client() as client:
                response = await client.get(url)
                response.raise_for_status()
                data: Any = response.json()
        except httpx.HTTPError as e:
            raise ReleaseFeedError(
                f"Failed to fetch latest release: {e}",
                details={"url": url},
            ) from e
        except ValueError as e:
            raise ReleaseFeedError(
                f"Invalid release feed response: {e}",
                details={"url": url},
            ) from e

        if not isinstance(data, dict) or not data:
            raise ReleaseFeedError(
                "Release feed returned no data",
                details={"url": url},
            )

        try:
            release = Release.model_validate(data)
        except ValidationError as e:
            raise ReleaseFeedError(
                f"Unexpected release feed payload: {e.error_count()} invalid fields",
                details={"url": url},
            ) from e

        logger.info(
            "Latest release fetched",
            extra={"tag": release.tag_name, "assets": len(release.assets)},
        )
        return release

    async def get_latest_release(self) -> Release | None:
        """
        Fetch the latest release, failing softly.

        Returns:
            The release, or None when the feed is unreachable or empty.
        """
        try:
            return await self.fetch_latest_release()
        except ReleaseFeedError as e:
            logger.warning(e.message, extra=e.details)
            return None
