"""In-memory provider for engine tests.

Provides a recording, controllable stand-in for a cloud control plane:
- Every call is recorded in order
- Transient/permanent failures can be injected per resource
- Calls can be held open on a gate to observe concurrency

Usage:
    from provider_mock import FakeProvider, declaration

    provider = FakeProvider()
    provider.fail("Compute", PermanentProviderError("quota exceeded"))

    reconciler = Reconciler(provider, StateStore(MemoryStateBackend()))
    ...
    assert provider.created_names() == ["Network", "Role"]
"""

from .builders import declaration, resource
from .provider import FakeProvider, ProviderCall

__all__ = [
    "FakeProvider",
    "ProviderCall",
    "declaration",
    "resource",
]
