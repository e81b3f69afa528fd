"""apiscope.store — per-project document store connections.

Exports:
    ConnectionRegistry — tenant id → pooled MongoDB handle, plus document operations
    StoreHandle        — a registered live client
"""

from __future__ import annotations

from apiscope.store.manager import ConnectionRegistry, StoreHandle

__all__ = ["ConnectionRegistry", "StoreHandle"]
