"""Client and wire format for the public key-value relay."""
from __future__ import annotations

from colormatch.p2p.relay.client import RelayClient
