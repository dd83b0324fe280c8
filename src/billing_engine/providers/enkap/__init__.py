"""E-nkap OAuth2 order gateway."""

from billing_engine.providers.enkap.client import EnkapClient, OrderItem, OrderRequest
from billing_engine.providers.enkap.status import normalize_enkap_status
from billing_engine.providers.enkap.token_cache import TokenCache

__all__ = [
    "EnkapClient",
    "OrderItem",
    "OrderRequest",
    "TokenCache",
    "normalize_enkap_status",
]
