"""Infrastructure modules for holdwatch"""

from .alerting import NotificationService, Channel  # noqa: F401
from .metrics import MetricsRecorder, CycleStats  # noqa: F401
from .quote_cache import QuoteCache, CacheKind  # noqa: F401

__all__ = [
	"NotificationService",
	"Channel",
	"MetricsRecorder",
	"CycleStats",
	"QuoteCache",
	"CacheKind",
]
