"""In-memory remote API mock for engine tests.

Provides a scripted implementation of the RemoteResourceClient contract so
that the poller, guard and reconciler can be exercised without Azure.

Key Features:
- In-memory resource state keyed by identity
- Scripted phase sequences for operation handles and resource status
- Call recording for "exactly once" / "never called" assertions
- Error injection for transient and hard failures

Usage:
    from remote_mock import MockRemoteClient, ScriptedStatus

    client = MockRemoteClient()
    client.put(identity, phase="Succeeded", properties={...})
    reconciler = Reconciler(client, kind, config=fast_config())
    await reconciler.delete(identity)
    assert client.count("cancel") == 1
"""

from .client import GONE, MockRemoteClient, MockRemoteResource, fast_config
from .status import ScriptedStatus

__all__ = [
    "GONE",
    "MockRemoteClient",
    "MockRemoteResource",
    "ScriptedStatus",
    "fast_config",
]
