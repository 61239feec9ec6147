"""External API integrations.

This package contains:
- Provider protocol: normalized holding types shared by every ingestion path
- Kite client: integration with the Zerodha Kite Connect API
- Parsing utilities: number/text coercion for untrusted payloads
"""

from integrations.provider_protocol import AssetType, ProviderHolding

__all__ = [
    "AssetType",
    "ProviderHolding",
]
