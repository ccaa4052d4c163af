"""Remote highlight-export clients for Marginalia.

Each client implements the HighlightProvider ABC and handles:
- Credential validation against the provider's auth endpoint
- Paginated export fetching with retry/backoff
- Normalizing provider JSON into HighlightRecord instances

Available clients:
    ReadwiseClient — Readwise Export API v2 (personal access token)
"""

from src.highlights.adapters.readwise import ReadwiseClient

__all__ = [
    "ReadwiseClient",
]

# Registry: sync kind → client class
PROVIDER_REGISTRY: dict[str, type] = {
    "readwise": ReadwiseClient,
}


def get_provider(kind: str) -> "type":
    """Return the client class for a given sync kind.

    Args:
        kind: e.g. 'readwise'

    Returns:
        The client class (not an instance).

    Raises:
        KeyError: If the kind is not registered.
    """
    if kind not in PROVIDER_REGISTRY:
        raise KeyError(
            f"No provider registered for sync kind '{kind}'. "
            f"Available: {list(PROVIDER_REGISTRY)}"
        )
    return PROVIDER_REGISTRY[kind]
