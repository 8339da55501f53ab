"""
Adapters package for the Gateway Service.

Contains HTTP client wrappers for the upstream systems the gateway fronts
(the NPHIES exchange and the AI completion service). These adapters
encapsulate:

- Base URLs and request shapes
- Retry policies and access-token handling
- Error handling that maps to shared errors

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .nphies_client import NphiesClient
from .ai_proxy import AICompletionProxy

__all__ = [
    "NphiesClient",
    "AICompletionProxy",
]
