from .auth import require_webhook_token
from .logging import RequestLoggingMiddleware
from .rate_limiting import RateLimitMiddleware

__all__ = ["require_webhook_token", "RequestLoggingMiddleware", "RateLimitMiddleware"]
