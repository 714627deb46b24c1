"""Peer-to-peer connections signaled through a key-value relay.

Two peers exchange session descriptions and ICE candidates by publishing
them to named topics on a public, last-write-wins key-value relay. The
topics are namespaced by a short human-shareable session code.
"""
from __future__ import annotations
