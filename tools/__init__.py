from .retry import RetryPolicy, is_retryable, with_retry

__all__ = ["RetryPolicy", "is_retryable", "with_retry"]
