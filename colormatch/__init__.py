"""Peer-to-peer color matching sessions signaled through a public relay."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('colormatch')
