"""Error tracking (Sentry) for the API and the refresh worker.

Logging uses the standard `logging` module with bracketed component tags
such as "[HYBRID_FETCH]"; this package only reports what those logs cannot
alert on.
"""

from adsync.telemetry.sentry import capture_exception, capture_message, init_sentry

__all__ = ["init_sentry", "capture_exception", "capture_message"]
