"""Tests for the single-shot timer slot."""

import asyncio

import pytest

from chatpsi.client.timers import TimerSlot


class TestTimerSlot:
    @pytest.mark.asyncio
    async def test_fires_once(self):
        slot = TimerSlot("test")
        fired = []

        slot.schedule(0.01, fired.append, "a")
        assert slot.active
        await asyncio.sleep(0.05)

        assert fired == ["a"]
        assert not slot.active

    @pytest.mark.asyncio
    async def test_reschedule_replaces_pending(self):
        slot = TimerSlot("test")
        fired = []

        slot.schedule(0.01, fired.append, "first")
        slot.schedule(0.02, fired.append, "second")
        await asyncio.sleep(0.06)

        assert fired == ["second"]

    @pytest.mark.asyncio
    async def test_cancel_prevents_firing(self):
        slot = TimerSlot("test")
        fired = []

        slot.schedule(0.01, fired.append, "x")
        slot.cancel()
        await asyncio.sleep(0.03)

        assert fired == []
        assert not slot.active

    @pytest.mark.asyncio
    async def test_stale_firing_is_ignored(self):
        slot = TimerSlot("test")
        fired = []

        slot.schedule(0.01, fired.append, "x")
        # Simulate a callback the loop already dequeued before cancel ran.
        stale_token = slot._token
        slot.cancel()
        slot._fire(stale_token, fired.append, ("x",))

        assert fired == []
