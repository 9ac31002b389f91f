from .async_utils import elapsed_ms, guarded_call, now_ms
from .logging import log_event, sanitize_text, sanitize_value

__all__ = [
    "elapsed_ms",
    "guarded_call",
    "log_event",
    "now_ms",
    "sanitize_text",
    "sanitize_value",
]
