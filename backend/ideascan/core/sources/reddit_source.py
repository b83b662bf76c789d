# backend/ideascan/core/sources/reddit_source.py
"""
Reddit content source over httpx.

Authenticates with the OAuth2 password grant of a "script" app, pages
through /r/{topic}/new and keeps posts inside the scan window that meet
the engagement thresholds. Listings are newest-first, so paging stops as
soon as a page reaches posts older than the window start.

Usage:
    source = RedditSource()
    page = await source.fetch_items("SaaS", date_from, date_to, cursor=None)
    replies = await source.fetch_replies("SaaS", page.items[0].source_id)
    await source.aclose()
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from ...config import settings
from ..exceptions import ContentSourceError, TransientSourceError
from .base import ContentSource, FetchPage, SourceItem, SourceReply

logger = logging.getLogger("ideascan.sources.reddit")


def _utc(timestamp: Any) -> Optional[datetime]:
    try:
        return datetime.utcfromtimestamp(float(timestamp))
    except (TypeError, ValueError):
        return None


class RedditSource(ContentSource):
    def __init__(self, client: Optional[httpx.AsyncClient] = None, request_delay: Optional[float] = None):
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=10.0),
            headers={"User-Agent": settings.reddit_user_agent},
        )
        self._request_delay = settings.reddit_request_delay_seconds if request_delay is None else request_delay
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._last_request_at = 0.0

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _get_access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        try:
            response = await self._client.post(
                settings.reddit_token_url,
                auth=(settings.reddit_client_id or "", settings.reddit_client_secret or ""),
                data={
                    "grant_type": "password",
                    "username": settings.reddit_username or "",
                    "password": settings.reddit_password or "",
                },
            )
        except httpx.HTTPError as e:
            raise TransientSourceError(f"Reddit token request failed: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientSourceError(f"Reddit token endpoint returned {response.status_code}")
        data = response.json() if response.status_code == 200 else {}
        token = data.get("access_token")
        if not token:
            raise ContentSourceError(f"Reddit authentication failed (status {response.status_code})")

        self._token = token
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + max(60, int(data.get("expires_in", 3600)) - 60)
        return token

    async def _throttle(self) -> None:
        wait = self._request_delay - (time.monotonic() - self._last_request_at)
        if wait > 0:
            await asyncio.sleep(wait)
        self._last_request_at = time.monotonic()

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        token = await self._get_access_token()
        await self._throttle()
        try:
            response = await self._client.get(
                f"{settings.reddit_api_base_url}{path}",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise TransientSourceError(f"Reddit request failed: {e}") from e

        if response.status_code == 401:
            self._token = None
            raise TransientSourceError("Reddit access token rejected")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSourceError(f"Reddit returned {response.status_code} for {path}")
        if response.status_code >= 400:
            raise ContentSourceError(f"Reddit returned {response.status_code} for {path}")
        return response.json()

    # ------------------------------------------------------------------
    # ContentSource
    # ------------------------------------------------------------------

    def _meets_engagement(self, item: SourceItem) -> bool:
        return item.upvotes >= settings.reddit_min_upvotes and item.num_comments >= settings.reddit_min_comments

    @staticmethod
    def _to_item(data: Dict[str, Any]) -> SourceItem:
        return SourceItem(
            source_id=str(data.get("id") or data.get("name")),
            title=data.get("title") or "",
            body=data.get("selftext") or None,
            author=data.get("author"),
            permalink=data.get("permalink"),
            url=data.get("url"),
            upvotes=int(data.get("ups") or 0),
            downvotes=int(data.get("downs") or 0),
            num_comments=int(data.get("num_comments") or 0),
            upvote_ratio=data.get("upvote_ratio"),
            created_at=_utc(data.get("created_utc")),
        )

    async def fetch_items(
        self,
        topic: str,
        date_from: Optional[datetime],
        date_to: Optional[datetime],
        cursor: Optional[str] = None,
    ) -> FetchPage:
        params: Dict[str, Any] = {"limit": min(settings.reddit_posts_per_request, 100), "raw_json": 1}
        if cursor:
            params["after"] = cursor

        listing = await self._get(f"/r/{topic}/new", params)
        data = listing.get("data", {}) if isinstance(listing, dict) else {}
        children = data.get("children", [])

        items: List[SourceItem] = []
        reached_window_start = False
        for child in children:
            item = self._to_item(child.get("data", {}))
            if item.created_at is not None:
                if date_to is not None and item.created_at > date_to:
                    continue
                if date_from is not None and item.created_at < date_from:
                    reached_window_start = True
                    continue
            if self._meets_engagement(item):
                items.append(item)

        next_cursor = None if reached_window_start or not children else data.get("after")
        logger.debug(f"r/{topic}: {len(items)}/{len(children)} posts kept, next={next_cursor}")
        return FetchPage(items=items, next_cursor=next_cursor)

    def _flatten(self, children: List[Dict[str, Any]], parent: Optional[str], depth: int) -> List[SourceReply]:
        replies: List[SourceReply] = []
        for child in children:
            if child.get("kind") != "t1":
                continue
            data = child.get("data", {})
            reply = SourceReply(
                source_id=str(data.get("id")),
                parent_source_id=parent,
                author=data.get("author"),
                body=data.get("body") or "",
                upvotes=int(data.get("ups") or 0),
                depth=depth,
                created_at=_utc(data.get("created_utc")),
            )
            replies.append(reply)
            nested = data.get("replies")
            if depth < settings.reddit_comment_depth and isinstance(nested, dict):
                replies.extend(self._flatten(nested.get("data", {}).get("children", []), reply.source_id, depth + 1))
        return replies

    async def fetch_replies(self, topic: str, item_source_id: str) -> List[SourceReply]:
        params = {
            "limit": settings.reddit_max_comments_per_post,
            "depth": settings.reddit_comment_depth + 1,
            "sort": "top",
            "raw_json": 1,
        }
        payload = await self._get(f"/r/{topic}/comments/{item_source_id}", params)
        if not isinstance(payload, list) or len(payload) < 2:
            return []
        children = payload[1].get("data", {}).get("children", [])
        return self._flatten(children, None, 0)[: settings.reddit_max_comments_per_post]

    async def aclose(self) -> None:
        await self._client.aclose()
