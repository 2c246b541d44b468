"""Meta Graph API client for Instagram Business accounts.

Covers the calls the ingestion jobs need: page-token exchange, media
listing with cursor pagination, per-metric media insights and account-level
daily insight series. Every metric is requested on its own so a metric the
account or media type does not support only costs that one value.

Nothing is retried here. Failures are raised as the upstream error types in
`services.errors`, classified by `classify_error`.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, AsyncIterator, Optional

import httpx
from pydantic import BaseModel, Field

from config import get_settings
from services.days import day_from_timestamp, parse_graph_timestamp, to_epoch
from services.errors import (
    UpstreamAuthExpired,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamTransient,
    UpstreamUnknown,
    UpstreamUnsupportedMetric,
)

logger = logging.getLogger(__name__)
settings = get_settings()

NO_CACHE_HEADERS = {"Cache-Control": "no-cache"}

MEDIA_FIELDS = "id,media_type,timestamp,permalink,caption,like_count,comments_count"
MEDIA_PAGE_SIZE = 100

BASELINE_MEDIA_METRICS = ("reach", "saved", "impressions")
VIDEO_MEDIA_METRICS = ("plays", "shares")
# Newer Graph versions renamed some media metrics
METRIC_FALLBACKS = {"impressions": "views", "plays": "video_views"}

ACCOUNT_DAILY_METRICS = ("reach", "impressions", "total_interactions", "accounts_engaged")
# Only available as a single total per request, so fetched one day at a time
TOTAL_VALUE_METRICS = {"total_interactions", "accounts_engaged"}
# Graph rejects insight ranges longer than this
MAX_SERIES_SPAN_DAYS = 30

AUTH_ERROR_CODES = {102, 190}
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613}
UNSUPPORTED_METRIC_ERROR_CODES = {100}

AUTH_PATTERNS = ("session has expired", "error validating access token", "invalid oauth", "access token")
RATE_LIMIT_PATTERNS = ("rate limit", "too many calls", "request limit", "too many requests")
UNSUPPORTED_PATTERNS = ("unsupported", "invalid metric", "does not support", "metric")
TRANSIENT_PATTERNS = ("timeout", "timed out", "temporarily unavailable", "unexpected error", "try again")


def classify_error(
    status: Optional[int],
    message: str,
    graph_code: Optional[int] = None,
) -> UpstreamError:
    """Map a failed Graph response onto the upstream error taxonomy.

    Order matters: an expired token is reported as auth even when Graph also
    says the metric is invalid, and throttling wins over anything generic.
    """
    text = (message or "").lower()

    if status == 401 or graph_code in AUTH_ERROR_CODES or any(p in text for p in AUTH_PATTERNS):
        return UpstreamAuthExpired(message, status=status, graph_code=graph_code)
    if status == 429 or graph_code in RATE_LIMIT_ERROR_CODES or any(p in text for p in RATE_LIMIT_PATTERNS):
        return UpstreamRateLimited(message, status=status, graph_code=graph_code)
    if graph_code in UNSUPPORTED_METRIC_ERROR_CODES or any(p in text for p in UNSUPPORTED_PATTERNS):
        return UpstreamUnsupportedMetric(message, status=status, graph_code=graph_code)
    if (status is not None and status >= 500) or any(p in text for p in TRANSIENT_PATTERNS):
        return UpstreamTransient(message, status=status, graph_code=graph_code)
    return UpstreamUnknown(message, status=status, graph_code=graph_code)


def is_video_like(media_type: Optional[str]) -> bool:
    """VIDEO and any reel variant report plays and shares."""
    if not media_type:
        return False
    upper = media_type.upper()
    return upper == "VIDEO" or "REEL" in upper


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


class PageToken(BaseModel):
    """Page-scoped token plus the IG profile fields returned alongside it."""
    token: str
    ig_user_id: Optional[str] = None
    username: Optional[str] = None
    followers_count: Optional[int] = None


class MediaItem(BaseModel):
    """One entry of the media listing."""
    id: str
    media_type: Optional[str] = None
    timestamp: Optional[str] = None
    permalink: Optional[str] = None
    caption: Optional[str] = None
    like_count: int = 0
    comments_count: int = 0
    raw: dict = Field(default_factory=dict)

    @classmethod
    def from_graph(cls, data: dict) -> "MediaItem":
        return cls(
            id=str(data["id"]),
            media_type=data.get("media_type") if isinstance(data.get("media_type"), str) else None,
            timestamp=data.get("timestamp") if isinstance(data.get("timestamp"), str) else None,
            permalink=data.get("permalink") if isinstance(data.get("permalink"), str) else None,
            caption=data.get("caption") if isinstance(data.get("caption"), str) else None,
            like_count=_to_int(data.get("like_count")) or 0,
            comments_count=_to_int(data.get("comments_count")) or 0,
            raw=data,
        )

    @property
    def day(self) -> Optional[date]:
        return day_from_timestamp(self.timestamp)

    @property
    def published_at(self) -> Optional[datetime]:
        return parse_graph_timestamp(self.timestamp)

    @property
    def is_video_like(self) -> bool:
        return is_video_like(self.media_type)


class MediaListing(BaseModel):
    items: list[MediaItem]
    page_count: int


class MetricFailure(BaseModel):
    """A single metric that could not be fetched for an item."""
    metric: str
    code: str
    status: Optional[int] = None
    message: str = ""

    @classmethod
    def from_error(cls, metric: str, error: UpstreamError) -> "MetricFailure":
        return cls(metric=metric, code=error.code, status=error.status, message=error.message)


class ResilientInsights(BaseModel):
    """Whatever metrics could be fetched for one item, plus what failed."""
    metrics: dict[str, Optional[int]] = Field(default_factory=dict)
    errors: list[MetricFailure] = Field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)


class SeriesValue(BaseModel):
    """One point of an account-level insight series."""
    end_time: str
    value: int

    @property
    def day(self) -> Optional[date]:
        return day_from_timestamp(self.end_time)


class GraphClient:
    """Thin async wrapper over the Graph REST API."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._http = http
        self.base_url = (base_url or settings.graph_api_root).rstrip("/")
        # Per-request override of the session timeout
        self.timeout = timeout

    def with_timeout(self, timeout: Optional[float]) -> "GraphClient":
        """Same HTTP session, different per-request timeout."""
        return GraphClient(self._http, base_url=self.base_url, timeout=timeout)

    async def _get(self, path: str, params: dict) -> dict:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            if self.timeout is None:
                response = await self._http.get(url, params=params, headers=NO_CACHE_HEADERS)
            else:
                response = await self._http.get(
                    url, params=params, headers=NO_CACHE_HEADERS, timeout=self.timeout
                )
        except httpx.TimeoutException as e:
            raise UpstreamTransient(f"timeout: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamTransient(f"network error: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        error = data.get("error")
        if response.status_code >= 400 or error:
            error = error if isinstance(error, dict) else {}
            message = error.get("message") or f"status_{response.status_code}"
            raise classify_error(response.status_code, message, _to_int(error.get("code")))
        return data

    async def exchange_token(self, user_token: str, page_id: str | int) -> PageToken:
        """Exchange a stored user token for the page-scoped token.

        The same request returns the linked IG profile, so the follower count
        comes for free.
        """
        data = await self._get(
            str(page_id),
            {
                "fields": "access_token,instagram_business_account{id,username,followers_count}",
                "access_token": user_token,
            },
        )
        token = data.get("access_token")
        if not isinstance(token, str) or not token:
            raise UpstreamAuthExpired("page access token missing from exchange response")

        profile = data.get("instagram_business_account") or {}
        return PageToken(
            token=token,
            ig_user_id=str(profile["id"]) if profile.get("id") else None,
            username=profile.get("username"),
            followers_count=_to_int(profile.get("followers_count")),
        )

    async def list_media(
        self,
        ig_user_id: str | int,
        token: str,
        cutoff_day: Optional[date],
        max_items: int = 300,
    ) -> MediaListing:
        """List media newest-first until the cutoff day or the item cap.

        The next page is requested with the `after` cursor rather than by
        following `paging.next`, which embeds the access token.
        """
        items: list[MediaItem] = []
        page_count = 0
        after: Optional[str] = None

        while len(items) < max_items:
            params = {
                "fields": MEDIA_FIELDS,
                "limit": MEDIA_PAGE_SIZE,
                "access_token": token,
            }
            if after:
                params["after"] = after
            data = await self._get(f"{ig_user_id}/media", params)
            page_count += 1

            reached_cutoff = False
            for raw in data.get("data") or []:
                if not isinstance(raw, dict) or not raw.get("id"):
                    continue
                item = MediaItem.from_graph(raw)
                if cutoff_day and item.day and item.day < cutoff_day:
                    reached_cutoff = True
                    break
                items.append(item)
                if len(items) >= max_items:
                    break

            if reached_cutoff:
                break
            paging = data.get("paging") or {}
            if not paging.get("next"):
                break
            after = (paging.get("cursors") or {}).get("after")
            if not after:
                break

        logger.info(
            f"Listed {len(items)} media for IG user {ig_user_id} over {page_count} page(s)"
        )
        return MediaListing(items=items, page_count=page_count)

    async def fetch_metric(self, item_id: str, metric: str, token: str) -> Optional[int]:
        """Fetch a single lifetime insight metric for a media item."""
        data = await self._get(
            f"{item_id}/insights",
            {"metric": metric, "access_token": token},
        )
        for entry in data.get("data") or []:
            if entry.get("name") not in (None, metric):
                continue
            values = entry.get("values") or []
            if values:
                return _to_int(values[0].get("value"))
            return _to_int((entry.get("total_value") or {}).get("value"))
        return None

    async def _fetch_with_fallback(self, item_id: str, metric: str, token: str) -> Optional[int]:
        try:
            return await self.fetch_metric(item_id, metric, token)
        except UpstreamUnsupportedMetric:
            fallback = METRIC_FALLBACKS.get(metric)
            if fallback is None:
                raise
            return await self.fetch_metric(item_id, fallback, token)

    async def fetch_resilient_insights(
        self,
        item_id: str,
        is_video_like: bool,
        token: str,
    ) -> ResilientInsights:
        """Fetch insights metric by metric, isolating each failure.

        Baseline metrics are always attempted. Plays and shares are only
        requested for video-like items, and their being unsupported is not
        an error. An expired token or throttling stops the item early since
        every remaining call would fail the same way.
        """
        result = ResilientInsights()
        wanted = [(m, False) for m in BASELINE_MEDIA_METRICS]
        if is_video_like:
            wanted += [(m, True) for m in VIDEO_MEDIA_METRICS]

        for metric, optional in wanted:
            try:
                result.metrics[metric] = await self._fetch_with_fallback(item_id, metric, token)
            except UpstreamUnsupportedMetric as e:
                result.metrics[metric] = None
                if not optional:
                    result.errors.append(MetricFailure.from_error(metric, e))
            except (UpstreamAuthExpired, UpstreamRateLimited) as e:
                result.errors.append(MetricFailure.from_error(metric, e))
                logger.warning(f"Stopping insights for media {item_id}: {e.code}")
                break
            except UpstreamError as e:
                result.metrics[metric] = None
                result.errors.append(MetricFailure.from_error(metric, e))
        return result

    async def fetch_account_series(
        self,
        ig_user_id: str | int,
        token: str,
        since: date,
        until: date,
        metrics: tuple[str, ...] = ACCOUNT_DAILY_METRICS,
    ) -> dict[str, list[SeriesValue]]:
        """Daily account insights for `[since, until)`, one request per metric.

        Unsupported metrics are logged and left out of the result.
        """
        series: dict[str, list[SeriesValue]] = {}
        for metric in metrics:
            try:
                if metric in TOTAL_VALUE_METRICS:
                    values = await self._fetch_total_value_days(ig_user_id, token, metric, since, until)
                else:
                    values = await self._fetch_day_series(ig_user_id, token, metric, since, until)
            except UpstreamUnsupportedMetric as e:
                logger.info(f"Account metric {metric} unsupported for {ig_user_id}: {e.message}")
                continue
            series[metric] = values
        return series

    async def _fetch_day_series(
        self, ig_user_id: str | int, token: str, metric: str, since: date, until: date
    ) -> list[SeriesValue]:
        values: list[SeriesValue] = []
        chunk_start = since
        while chunk_start < until:
            chunk_end = min(chunk_start + timedelta(days=MAX_SERIES_SPAN_DAYS), until)
            data = await self._get(
                f"{ig_user_id}/insights",
                {
                    "metric": metric,
                    "period": "day",
                    "since": to_epoch(chunk_start),
                    "until": to_epoch(chunk_end),
                    "access_token": token,
                },
            )
            for entry in data.get("data") or []:
                if entry.get("name") != metric:
                    continue
                for point in entry.get("values") or []:
                    value = _to_int(point.get("value"))
                    end_time = point.get("end_time")
                    if value is not None and isinstance(end_time, str):
                        values.append(SeriesValue(end_time=end_time, value=value))
            chunk_start = chunk_end
        return values

    async def _fetch_total_value_days(
        self, ig_user_id: str | int, token: str, metric: str, since: date, until: date
    ) -> list[SeriesValue]:
        values: list[SeriesValue] = []
        day = since
        while day < until:
            next_day = day + timedelta(days=1)
            data = await self._get(
                f"{ig_user_id}/insights",
                {
                    "metric": metric,
                    "period": "day",
                    "metric_type": "total_value",
                    "since": to_epoch(day),
                    "until": to_epoch(next_day),
                    "access_token": token,
                },
            )
            for entry in data.get("data") or []:
                if entry.get("name") != metric:
                    continue
                value = _to_int((entry.get("total_value") or {}).get("value"))
                if value is not None:
                    # Same end-of-period convention as the `values` series
                    end_time = datetime.combine(next_day, time(), tzinfo=timezone.utc)
                    values.append(
                        SeriesValue(end_time=end_time.strftime("%Y-%m-%dT%H:%M:%S+0000"), value=value)
                    )
            day = next_day
        return values


@asynccontextmanager
async def open_graph_client(
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[GraphClient]:
    """Graph client bound to a fresh httpx session for one job run."""
    async with httpx.AsyncClient(
        timeout=timeout or settings.graph_timeout_seconds,
        transport=transport,
    ) as http:
        yield GraphClient(http)


async def polite_pause(seconds: float) -> None:
    if seconds > 0:
        await asyncio.sleep(seconds)
