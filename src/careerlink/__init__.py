"""CareerLink core: application lifecycle engine and real-time notification delivery."""

from __future__ import annotations

__all__ = []
