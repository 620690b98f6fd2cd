import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from utils.logger import get_logger

logger = get_logger("retry")

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior.

    ``max_retries`` counts the attempts made *after* the first one, so a call
    is tried at most ``max_retries + 1`` times. The delay between attempts is
    fixed.
    """

    def __init__(self, max_retries: int = 3, delay_seconds: float = 2.0):
        self.max_retries = max(0, int(max_retries))
        self.delay_seconds = max(0.0, float(delay_seconds))

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        from config import settings

        return cls(
            max_retries=settings.RETRY_ATTEMPTS,
            delay_seconds=settings.RETRY_DELAY_SECONDS,
        )


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    should_retry: Callable[[BaseException], bool],
    *,
    description: str = "operation",
) -> T:
    """Run ``operation`` with a bounded, fixed-delay retry loop.

    The last error is re-raised once every attempt has failed or as soon as
    ``should_retry`` rejects it.
    """
    last_error: Optional[BaseException] = None

    for attempt in range(config.max_attempts):
        try:
            return await operation()
        except Exception as e:
            last_error = e

            if not should_retry(e):
                logger.debug(
                    "Non-retryable error",
                    operation=description,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            if attempt < config.max_attempts - 1:
                logger.warning(
                    "Retrying after error",
                    operation=description,
                    attempt=attempt + 1,
                    max_attempts=config.max_attempts,
                    delay=config.delay_seconds,
                    error=str(e) or type(e).__name__,
                )
                await asyncio.sleep(config.delay_seconds)
            else:
                logger.error(
                    "All retry attempts exhausted",
                    operation=description,
                    attempts=config.max_attempts,
                    error=str(e) or type(e).__name__,
                )

    assert last_error is not None
    raise last_error
