from .bootstrap import Runtime, build_runtime
from .logging import setup_logger
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "Runtime",
    "build_runtime",
    "setup_logger",
]
