from typing import Final, Optional

import attr

__all__ = ("RESTConfig", "BASE_URL")

BASE_URL: Final[str] = "https://discord.com/api/v10"


@attr.frozen(kw_only=True)
class RESTConfig:
    """Tunables for the REST client. Every client owns its own config
    (and with it its own buckets), nothing here is process-global.
    """

    base_url: str = attr.field(default=BASE_URL)
    """ Prefix that compiled routes are appended to """

    max_server_retries: int = attr.field(
        default=3, validator=attr.validators.ge(0)
    )
    """ How many times a request that got a 5xx response is retried
    before failing with a `TransportError`
    """

    server_retry_base: float = attr.field(default=0.5)
    """ Initial backoff (seconds) between 5xx retries """

    server_retry_max: float = attr.field(default=10.0)
    """ Upper bound for the 5xx backoff """

    max_ratelimit_retries: int = attr.field(
        default=5, validator=attr.validators.ge(0)
    )
    """ Safety cap on automatic 429 retries for a single request """

    default_timeout: Optional[float] = attr.field(default=300.0)
    """ Timeout (seconds) applied to every action that does not override
    it, `None` disables timeouts
    """

    global_ratelimit_fallback: float = attr.field(default=1.0)
    """ Pause used when a global 429 does not say how long to wait """

    bucket_expiry: float = attr.field(default=30.0)
    """ Seconds an idle bucket is kept around before being dropped """

    def server_backoff(self, attempt: int) -> float:
        """Exponential backoff for the given (0-indexed) 5xx retry."""
        return min(self.server_retry_base * (2**attempt), self.server_retry_max)
