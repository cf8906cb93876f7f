from .events import Observers, Subscription
from .logging import JsonFormatter, configure_logging

__all__ = ["JsonFormatter", "Observers", "Subscription", "configure_logging"]
