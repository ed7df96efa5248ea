"""
Relay Core - local inference gateway and service supervisor
"""

__version__ = "1.0.0"

from relay_core.config import RelayConfig, get_config
from relay_core.errors import RelayError

__all__ = [
    "RelayConfig",
    "RelayError",
    "get_config",
    "__version__",
]
