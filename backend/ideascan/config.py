# ============================================================================
# ideascan - Application Configuration
# ============================================================================
"""
Application configuration module using Pydantic Settings.

This module defines all configuration parameters for the scan pipeline,
including:
- LLM provider credentials, models and timeouts
- Consensus classification thresholds
- Retry policy and chunk sizes
- Content source (Reddit) fetch settings
- Scan window defaults and batch guards

Environment Variables:
    Every field can be overridden by an upper-case environment variable
    of the same name (e.g. CONSENSUS_KEEP_THRESHOLD=0.65).

Usage:
    from ideascan.config import settings
    chunk_size = settings.classify_chunk_size
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # =========================================================================
    # GENERAL
    # =========================================================================
    app_name: str = "ideascan"
    debug: bool = Field(default=False, description="Enable verbose logging & SQL echo")

    # =========================================================================
    # LLM CREDENTIALS / ENDPOINTS
    # =========================================================================
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API key")
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com/v1/messages", description="Anthropic Messages endpoint"
    )
    anthropic_api_version: str = Field(default="2023-06-01", description="anthropic-version header")
    anthropic_haiku_model: str = Field(default="claude-3-5-haiku-latest", description="Classification model")
    claude_sonnet_model: str = Field(default="claude-sonnet-4-5", description="Extraction model")

    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI base URL")
    openai_model: str = Field(default="gpt-4o-mini", description="OpenAI classification model")
    openai_verify_ssl: bool = Field(default=True, description="Verify SSL for OpenAI requests")

    llm_connect_timeout: float = Field(default=30.0, description="Connect timeout (s) for LLM requests")
    llm_request_timeout: float = Field(default=120.0, description="Request timeout (s) for LLM requests")

    # =========================================================================
    # CLASSIFICATION
    # =========================================================================
    classification_providers: List[str] = Field(
        default=["anthropic-haiku", "openai-gpt4-mini"],
        description="Ordered classification providers (first = primary slot, second = secondary slot)",
    )
    classification_max_tokens: int = Field(default=1024, description="Max tokens for classification")
    classification_temperature: float = Field(default=0.3, description="Temperature for classification")
    classification_reply_limit: int = Field(default=50, description="Top replies included in classify prompt")

    consensus_keep_threshold: float = Field(default=0.6, description="score >= threshold -> keep")
    consensus_discard_threshold: float = Field(default=0.4, description="score < threshold -> discard")
    consensus_shortcut_confidence: float = Field(
        default=0.8, description="Both models agree with confidence above this -> shortcut decision"
    )
    consensus_partial_failure_penalty: float = Field(
        default=0.5, description="Confidence multiplier when one of two requested models failed"
    )

    # =========================================================================
    # EXTRACTION
    # =========================================================================
    extraction_provider: str = Field(default="claude-sonnet", description="Idea extraction provider")
    extraction_max_tokens: int = Field(default=4096, description="Max tokens for extraction")
    extraction_temperature: float = Field(default=0.5, description="Temperature for extraction")
    extraction_reply_limit: int = Field(default=100, description="Top replies included in extract prompt")
    max_ideas_per_item: int = Field(default=5, description="Cap on ideas persisted per item")

    # =========================================================================
    # RETRY POLICY
    # =========================================================================
    retry_max_attempts: int = Field(default=3, description="Attempt ceiling for transient failures")
    retry_max_backoff_seconds: float = Field(default=30.0, description="Backoff cap: min(2^attempt, cap)")

    # =========================================================================
    # CHUNKING / BATCHES
    # =========================================================================
    classify_chunk_size: int = Field(default=10, description="Items per classify chunk worker")
    extract_chunk_size: int = Field(default=5, description="Items per extract chunk worker")
    reply_chunk_size: int = Field(default=10, description="Items per reply-fetch job")
    batch_stale_after_seconds: int = Field(
        default=7200, description="A dispatched stage batch older than this may be re-dispatched"
    )

    # =========================================================================
    # FETCH STAGE
    # =========================================================================
    default_timeframe_weeks: int = Field(default=1, description="Initial scan look-back window")
    rescan_timeframe_weeks: int = Field(default=2, description="Rescan look-back window")
    fetch_check_interval_seconds: int = Field(default=10, description="Delay between fetch completion polls")
    fetch_check_max_polls: int = Field(
        default=360, description="Polls before the scan proceeds with the replies fetched so far"
    )

    # =========================================================================
    # REDDIT CONTENT SOURCE
    # =========================================================================
    reddit_client_id: Optional[str] = Field(default=None, description="Reddit OAuth client id")
    reddit_client_secret: Optional[str] = Field(default=None, description="Reddit OAuth client secret")
    reddit_username: Optional[str] = Field(default=None, description="Reddit script-app username")
    reddit_password: Optional[str] = Field(default=None, description="Reddit script-app password")
    reddit_user_agent: str = Field(default="ideascan/1.0", description="User-Agent for Reddit requests")
    reddit_token_url: str = Field(default="https://www.reddit.com/api/v1/access_token")
    reddit_api_base_url: str = Field(default="https://oauth.reddit.com")
    reddit_request_delay_seconds: float = Field(default=1.0, description="Delay between Reddit requests")
    reddit_min_upvotes: int = Field(default=5, description="Engagement filter: minimum upvotes")
    reddit_min_comments: int = Field(default=3, description="Engagement filter: minimum comments")
    reddit_posts_per_request: int = Field(default=100, description="Listing page size (max 100)")
    reddit_comment_depth: int = Field(default=1, description="Reply nesting depth (0 = top-level only)")
    reddit_max_comments_per_post: int = Field(default=100, description="Replies fetched per item")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# Global settings instance (imported elsewhere)
settings = Settings()
