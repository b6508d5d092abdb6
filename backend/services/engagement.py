"""
Engagement lookups: latest views / likes / comments for a submission's post.

Contract:
  measure(submission_id, asset_url, platform) → EngagementSnapshot
  Never raises. Any failure yields an all-unknown snapshot so the tracking
  job soft-skips the submission.

Each platform has an ordered list of named strategies. Each strategy is tried
up to MAX_RETRIES times with a fixed delay between attempts and a bounded
per-request timeout; the first non-empty result wins.

  tiktok     tikwm        GET  https://tikwm.com/api/?url=<post url>
  youtube    youtube_api  GET  https://www.googleapis.com/youtube/v3/videos
                               ?part=statistics&id=<id>&key=<YOUTUBE_API_KEY>
  instagram  apify        POST https://api.apify.com/v2/acts/apify~instagram-scraper
                               /run-sync-get-dataset-items?token=<APIFY_API_TOKEN>
"""

import logging
import re
import time
from typing import Callable, Optional
from urllib.parse import parse_qs, urlparse

import httpx

from config import Settings
from models.schemas import EngagementSnapshot, Platform
from services.errors import ExternalServiceError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
MAX_RETRIES = 3            # attempts per strategy
RETRY_DELAY = 1.5          # fixed seconds between attempts
REQUEST_TIMEOUT = 15.0     # HTTP timeout per request in seconds

TIKWM_URL = "https://tikwm.com/api/"
YOUTUBE_VIDEOS_URL = "https://www.googleapis.com/youtube/v3/videos"
APIFY_INSTAGRAM_URL = (
    "https://api.apify.com/v2/acts/apify~instagram-scraper/run-sync-get-dataset-items"
)

INSTAGRAM_SHORTCODE = re.compile(r"instagram\.com/(?:p|reel|tv)/([A-Za-z0-9_-]+)")


# ===========================================================================
# Strategies
# ===========================================================================

class EngagementStrategy:
    """One way of reading engagement. Raises on failure, empty when no data."""

    name = "base"

    def fetch(self, client: httpx.Client, url: str) -> EngagementSnapshot:
        raise NotImplementedError


class TikWMStrategy(EngagementStrategy):
    name = "tikwm"

    def fetch(self, client: httpx.Client, url: str) -> EngagementSnapshot:
        response = client.get(
            TIKWM_URL,
            params={"url": url},
            headers={"Accept": "application/json"},
        )
        _raise_for_status(self.name, response)

        body = response.json()
        if not isinstance(body, dict):
            logger.debug(f"tikwm returned an unexpected body: {str(body)[:200]}")
            return EngagementSnapshot()
        data = body.get("data")
        if body.get("code") != 0 or not isinstance(data, dict):
            logger.debug(f"tikwm returned no data: {body.get('msg')}")
            return EngagementSnapshot()

        return EngagementSnapshot(
            views=_safe_int(data.get("play_count")),
            likes=_safe_int(data.get("digg_count")),
            comments=_safe_int(data.get("comment_count")),
        )


class YouTubeDataApiStrategy(EngagementStrategy):
    name = "youtube_api"

    def __init__(self, api_key: str):
        self.api_key = api_key

    def fetch(self, client: httpx.Client, url: str) -> EngagementSnapshot:
        video_id = extract_youtube_video_id(url)
        if not video_id:
            logger.debug(f"Could not extract YouTube video id from {url}")
            return EngagementSnapshot()

        response = client.get(
            YOUTUBE_VIDEOS_URL,
            params={"part": "statistics", "id": video_id, "key": self.api_key},
        )
        _raise_for_status(self.name, response)

        body = response.json()
        items = body.get("items") if isinstance(body, dict) else None
        if not isinstance(items, list) or not items or not isinstance(items[0], dict):
            return EngagementSnapshot()

        stats = items[0].get("statistics")
        if not isinstance(stats, dict):
            return EngagementSnapshot()
        return EngagementSnapshot(
            views=_safe_int(stats.get("viewCount")),
            likes=_safe_int(stats.get("likeCount")),
            comments=_safe_int(stats.get("commentCount")),
        )


class ApifyInstagramStrategy(EngagementStrategy):
    name = "apify"

    def __init__(self, api_token: str):
        self.api_token = api_token

    def fetch(self, client: httpx.Client, url: str) -> EngagementSnapshot:
        if not INSTAGRAM_SHORTCODE.search(url):
            logger.debug(f"Could not extract Instagram shortcode from {url}")
            return EngagementSnapshot()

        response = client.post(
            APIFY_INSTAGRAM_URL,
            params={"token": self.api_token},
            json={
                "directUrls": [url],
                "resultsLimit": 1,
                "resultsType": "posts",
                "addParentData": False,
            },
        )
        _raise_for_status(self.name, response)

        items = response.json()
        if not isinstance(items, list) or not items or not isinstance(items[0], dict):
            return EngagementSnapshot()

        post = items[0]
        return EngagementSnapshot(
            views=_safe_int(post.get("videoPlayCount") or post.get("videoViewCount")),
            likes=_safe_int(post.get("likesCount")),
            comments=_safe_int(post.get("commentsCount")),
        )


# ===========================================================================
# Tracker
# ===========================================================================

class EngagementTracker:
    def __init__(
        self,
        strategies: dict[Platform, list[EngagementStrategy]],
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        timeout: float = REQUEST_TIMEOUT,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.strategies = strategies
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client = http_client or httpx.Client(timeout=timeout, follow_redirects=True)
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: Optional[httpx.Client] = None
    ) -> "EngagementTracker":
        strategies: dict[Platform, list[EngagementStrategy]] = {
            Platform.TIKTOK: [TikWMStrategy()],
            Platform.YOUTUBE: [],
            Platform.INSTAGRAM: [],
        }
        if settings.youtube_api_key:
            strategies[Platform.YOUTUBE].append(YouTubeDataApiStrategy(settings.youtube_api_key))
        else:
            logger.warning("YOUTUBE_API_KEY not set; YouTube submissions will not be tracked")
        if settings.apify_api_token:
            strategies[Platform.INSTAGRAM].append(ApifyInstagramStrategy(settings.apify_api_token))
        else:
            logger.warning("APIFY_API_TOKEN not set; Instagram submissions will not be tracked")

        return cls(
            strategies,
            max_retries=settings.engagement_max_retries,
            retry_delay=settings.engagement_retry_delay,
            timeout=settings.request_timeout,
            http_client=http_client,
        )

    def measure(
        self,
        submission_id: str,
        asset_url: str,
        platform: Optional[Platform],
    ) -> EngagementSnapshot:
        strategies = self.strategies.get(platform, []) if platform else []
        if not strategies:
            logger.info(f"No engagement strategy for submission {submission_id} ({platform})")
            return EngagementSnapshot()

        for strategy in strategies:
            snapshot = self._try_strategy(strategy, submission_id, asset_url)
            if not snapshot.is_empty:
                logger.info(
                    f"Submission {submission_id} via {strategy.name}: "
                    f"views={snapshot.views}, likes={snapshot.likes}, "
                    f"comments={snapshot.comments}"
                )
                return snapshot

        logger.warning(f"Unable to track engagement for submission {submission_id}")
        return EngagementSnapshot()

    def _try_strategy(
        self,
        strategy: EngagementStrategy,
        submission_id: str,
        url: str,
    ) -> EngagementSnapshot:
        for attempt in range(1, self.max_retries + 1):
            try:
                snapshot = strategy.fetch(self._client, url)
                if not snapshot.is_empty:
                    return snapshot
                logger.debug(
                    f"{strategy.name}: empty result for {submission_id}, "
                    f"attempt {attempt}/{self.max_retries}"
                )
            except (httpx.HTTPError, ExternalServiceError, ValueError) as e:
                logger.warning(
                    f"{strategy.name} failed for {submission_id}, "
                    f"attempt {attempt}/{self.max_retries}: {e}"
                )
            except (TypeError, AttributeError, KeyError, IndexError) as e:
                logger.warning(
                    f"{strategy.name} returned a malformed response for {submission_id}, "
                    f"attempt {attempt}/{self.max_retries}: {e!r}"
                )

            if attempt < self.max_retries:
                self._sleep(self.retry_delay)

        return EngagementSnapshot()

    def close(self) -> None:
        self._client.close()


# ===========================================================================
# Parsing helpers
# ===========================================================================

def extract_youtube_video_id(url: str) -> Optional[str]:
    """
    Handles youtu.be/<id>, youtube.com/watch?v=<id>, /shorts/<id>, /v/<id>
    and /embed/<id>.
    """
    parsed = urlparse(url)
    host = parsed.netloc.lower()

    if host.endswith("youtu.be"):
        video_id = parsed.path.lstrip("/").split("/")[0]
        return video_id or None

    if "youtube.com" in host:
        if parsed.path == "/watch":
            values = parse_qs(parsed.query).get("v")
            return values[0] if values else None
        parts = [p for p in parsed.path.split("/") if p]
        if len(parts) >= 2 and parts[0] in ("shorts", "v", "embed"):
            return parts[1]

    return None


def _raise_for_status(name: str, response: httpx.Response) -> None:
    if response.status_code != 200:
        raise ExternalServiceError(
            f"{name} returned {response.status_code}: {response.text[:200]}"
        )


def _safe_int(value, default: Optional[int] = None) -> Optional[int]:
    """
    Safely convert a value to int.
    Returns default if value is None or cannot be converted.
    """
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default
