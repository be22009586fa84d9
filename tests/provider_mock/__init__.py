"""In-memory provider mock for engine tests.

Usage:
    from provider_mock import MockProvider

    provider = MockProvider()
    result = await Reconciler(config).apply(plan, provider, MemoryStateStore())
    assert provider.count("create") == len(plan.order())
"""

from .provider import MockCall, MockProvider, MockRemoteObject

__all__ = [
    "MockCall",
    "MockProvider",
    "MockRemoteObject",
]
