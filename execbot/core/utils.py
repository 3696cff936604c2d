"""
Small async helpers shared by the long-running loops.
"""

from __future__ import annotations

import asyncio


async def wait_for_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to timeout seconds, waking early on stop. Returns True if stopped."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=max(0.0, timeout))
    except asyncio.TimeoutError:
        return False
    return True
