"""In-memory compute API for tests.

Provides a test double of the compute API that enables orchestration
tests without network access.

Key Features:
- In-memory servers, NICs and floating IPs
- Call log in issue order, for sequencing assertions
- Scripted status sequences for convergence tests
- Error injection per method
- Platform rules: a floating IP can be bound once, a NIC with a bound
  floating IP cannot be detached

Usage:
    from vps_mock import MockComputeAPI

    api = MockComputeAPI()
    api.add_floating_ip("fip-1", "203.0.113.10")
    state = await orchestrator.create(spec)
    assert api.mutations()[0][0] == "create"
"""

from .clock import FakeClock
from .compute import MockComputeAPI, MockNic, MockServer

__all__ = [
    "FakeClock",
    "MockComputeAPI",
    "MockNic",
    "MockServer",
]
