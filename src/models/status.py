from pydantic import BaseModel


class OAuthTokens(BaseModel):
    """Current OAuth2 token set. ``expires_at`` is epoch seconds."""

    access_token: str = ""
    refresh_token: str
    expires_at: float = 0.0


class CacheStats(BaseModel):
    size: int
    max_size: int
    hit_rate: float
    total_hits: int
    ttl: float


class QueueStats(BaseModel):
    pending: int
    active: int
    requests_in_last_minute: int
    rate_limit_per_minute: int
    concurrency: int
    is_paused: bool


class ApiLimits(BaseModel):
    calls_limit: int
    calls_remaining: int
    reset_time: str
