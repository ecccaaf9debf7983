import asyncio
import logging
import random
from functools import wraps
from typing import Callable, Type, Tuple

logger = logging.getLogger("automation_engine")

class RetryManager:
    """
    Manages retry logic with exponential backoff and jitter.
    """

    @staticmethod
    def is_transient_error(exception: Exception) -> bool:
        """
        Determines if an error is transient and worth retrying.
        """
        if getattr(exception, "retryable", False):
            return True

        error_msg = str(exception).lower()
        transient_keywords = [
            "timeout",
            "timed out",
            "connection",
            "rate limit",
            "429",
            "500", "502", "503", "504"
        ]

        return any(keyword in error_msg for keyword in transient_keywords)

    @staticmethod
    def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
        # base * 2^(attempt-1) + jitter
        delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
        return delay + random.uniform(0, 0.1 * delay)

    @staticmethod
    def with_retry(
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        retry_on: Tuple[Type[Exception], ...] = (Exception,)
    ):
        """
        Decorator to retry an async function upon transient failure.
        """
        def decorator(func: Callable):
            @wraps(func)
            async def wrapper(*args, **kwargs):
                attempt = 0
                while True:
                    try:
                        return await func(*args, **kwargs)
                    except retry_on as e:
                        attempt += 1
                        if attempt >= max_attempts:
                            logger.warning(f"Max retry attempts ({max_attempts}) reached for {func.__name__}. Last error: {e}")
                            raise

                        if not RetryManager.is_transient_error(e):
                            logger.warning(f"Non-transient error encountered in {func.__name__}: {e}. Not retrying.")
                            raise

                        final_delay = RetryManager.backoff_delay(attempt, base_delay, max_delay)
                        logger.info(f"Transient error in {func.__name__}: {e}. Retrying in {final_delay:.2f}s (Attempt {attempt}/{max_attempts})")
                        await asyncio.sleep(final_delay)
            return wrapper
        return decorator
