# backend/ideascan/core/sources/base.py
"""
Content source interface consumed by the fetch stage.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class SourceItem(BaseModel):
    source_id: str
    title: str
    body: Optional[str] = None
    author: Optional[str] = None
    permalink: Optional[str] = None
    url: Optional[str] = None
    upvotes: int = 0
    downvotes: int = 0
    num_comments: int = 0
    upvote_ratio: Optional[float] = None
    created_at: Optional[datetime] = None


class SourceReply(BaseModel):
    source_id: str
    parent_source_id: Optional[str] = None
    author: Optional[str] = None
    body: str = ""
    upvotes: int = 0
    depth: int = 0
    created_at: Optional[datetime] = None


class FetchPage(BaseModel):
    """One page of items plus the cursor for the next page (None = exhausted)."""
    items: List[SourceItem] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class ContentSource(ABC):
    @abstractmethod
    async def fetch_items(
        self,
        topic: str,
        date_from: Optional[datetime],
        date_to: Optional[datetime],
        cursor: Optional[str] = None,
    ) -> FetchPage:
        """
        Fetch one page of items for a topic within a date window.

        Raises:
            TransientSourceError: rate limited / temporarily unavailable
            ContentSourceError: request rejected
        """

    @abstractmethod
    async def fetch_replies(self, topic: str, item_source_id: str) -> List[SourceReply]:
        """Fetch replies for one item, flattened to the configured depth."""

    async def aclose(self) -> None:
        pass
