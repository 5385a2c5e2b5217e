"""Tests for the background session expiry sweeper (core/scheduler.py)."""

import asyncio
from datetime import timedelta

import pytest

from core.scheduler import ExpirySweeper
from db.models import RegistrationSession, utcnow
from modules import registration


class TestExpirySweeper:

    @pytest.mark.asyncio
    async def test_sweep_once_expires_stale_drafts(self, db, session_factory, maker):
        sid = (await registration.create_session(db, maker))["session_id"]
        session = await db.get(RegistrationSession, sid)
        session.expires_at = utcnow() - timedelta(hours=1)
        await db.commit()

        sweeper = ExpirySweeper(interval_seconds=60, session_factory=session_factory)
        assert await sweeper.sweep_once() == 1
        assert sweeper.last_expired == 1

        await db.refresh(session)
        assert session.status == "EXPIRED"

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory):
        sweeper = ExpirySweeper(interval_seconds=3600, session_factory=session_factory)
        await sweeper.start()
        assert sweeper.is_running()
        await asyncio.sleep(0.05)
        await sweeper.stop()
        assert not sweeper.is_running()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, session_factory):
        sweeper = ExpirySweeper(interval_seconds=1, session_factory=session_factory)
        await sweeper.stop()
        assert not sweeper.is_running()
