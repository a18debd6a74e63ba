"""Provider adapters for Fitdash.

Each adapter implements the ProviderAdapter ABC and handles:
- Calling the provider's data API with a valid bearer token
- Pagination (cursor tokens, next links, bounded date windows)
- Normalizing provider JSON into NormalizedMetricRecord rows
- Classifying HTTP failures into the sync error taxonomy

Available adapters:
    WhoopAdapter  — WHOOP Developer API v2
    OuraAdapter   — Oura API v2
    FitbitAdapter — Fitbit Web API
    GarminAdapter — Garmin Health API (OAuth 2.0)
"""

from fitdash.wearables.adapters.fitbit import FitbitAdapter
from fitdash.wearables.adapters.garmin import GarminAdapter
from fitdash.wearables.adapters.oura import OuraAdapter
from fitdash.wearables.adapters.whoop import WhoopAdapter
from fitdash.wearables.base import Provider, ProviderAdapter

__all__ = [
    "WhoopAdapter",
    "OuraAdapter",
    "FitbitAdapter",
    "GarminAdapter",
    "ADAPTER_REGISTRY",
    "get_adapter",
]

# Registry: provider → adapter class
ADAPTER_REGISTRY: dict[Provider, type[ProviderAdapter]] = {
    Provider.WHOOP: WhoopAdapter,
    Provider.OURA: OuraAdapter,
    Provider.FITBIT: FitbitAdapter,
    Provider.GARMIN: GarminAdapter,
}


def get_adapter(provider: Provider | str) -> type[ProviderAdapter]:
    """Return the adapter class for a provider.

    Args:
        provider: Provider enum or its slug, e.g. 'whoop'.

    Returns:
        The adapter class (not an instance).

    Raises:
        KeyError: If the provider is not registered.
    """
    try:
        key = Provider(provider)
    except ValueError:
        key = None
    if key not in ADAPTER_REGISTRY:
        raise KeyError(
            f"No adapter registered for provider '{provider}'. "
            f"Available: {[p.value for p in ADAPTER_REGISTRY]}"
        )
    return ADAPTER_REGISTRY[key]
