"""
ServiceAdapter ABC - Base class for external service adapters.

Adapters wrap the black-box services the ingestion pipeline depends on (the
document conversion service and the website crawler). Configuration comes
from constructor arguments, falling back to environment settings.

Subclasses must implement:
    - CONNECTION_TYPE: short name used in logs and health output
    - resolve_config(): returns the effective config dict (secrets masked)
    - test_connection(): verifies the service is reachable
    - is_available: property indicating if the adapter is configured
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


def mask_secret(value: Optional[str]) -> Optional[str]:
    """Keep the last 4 characters of a secret for display."""
    if not value:
        return None
    return f"***{value[-4:]}" if len(value) > 4 else "***"


class ServiceAdapter(ABC):
    """
    Base class for external service adapters.

    Subclasses must implement:
        - CONNECTION_TYPE
        - resolve_config()
        - test_connection()
        - is_available
    """

    CONNECTION_TYPE: str

    @abstractmethod
    def resolve_config(self) -> Dict[str, Any]:
        """Effective configuration of this adapter instance."""
        ...

    @abstractmethod
    async def test_connection(self) -> Dict[str, Any]:
        """Test the service connection. Returns dict with 'success', 'message', etc."""
        ...

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Whether the adapter has the configuration it needs to make calls."""
        ...
