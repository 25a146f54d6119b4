"""
Resilience wrappers applied around every outbound call.

- retry with exponential backoff (cancellation aborts the wait)
- circuit breaker (one per downstream dependency)
- token-bucket rate limiter (rejects immediately when empty)
"""
