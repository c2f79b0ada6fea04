import pytest

from ageproof.models.consent import LinkStatus
from ageproof.models.session import Provider, SessionStatus, VerificationOutcome
from ageproof.services.sweeper import ExpirySweeper
from helpers import build_components


class TestExpirySweeper:
    @pytest.fixture(autouse=True)
    def _components(self, settings):
        self.c = build_components(settings)
        self.sweeper = ExpirySweeper(self.c.repository, self.c.linker, clock=self.c.clock)

    async def test_abandoned_pending_session_expires(self):
        # Arrange
        start = await self.c.sessions.begin_session("w1", Provider.DIRECT)
        self.c.clock.advance(601)

        # Act
        counts = await self.sweeper.sweep()

        # Assert
        assert counts == (1, 0)
        session = await self.c.repository.get_session(start.session_id)
        assert session.status is SessionStatus.EXPIRED
        assert session.outcome is VerificationOutcome.EXPIRED

    async def test_fresh_and_finished_sessions_untouched(self):
        # Arrange
        fresh = await self.c.sessions.begin_session("w1", Provider.DIRECT)
        done = await self.c.sessions.begin_session("w1", Provider.DIRECT)
        await self.c.repository.update_session_if(
            done.session_id, SessionStatus.PENDING, status=SessionStatus.VERIFIED, verified_age=30
        )
        self.c.clock.advance(300)

        # Act
        counts = await self.sweeper.sweep()

        # Assert
        assert counts == (0, 0)
        assert (await self.c.repository.get_session(fresh.session_id)).status is SessionStatus.PENDING
        assert (await self.c.repository.get_session(done.session_id)).status is SessionStatus.VERIFIED

    async def test_overdue_links_expire_and_repeat_sweeps_are_no_ops(self):
        # Arrange
        start = await self.c.sessions.begin_session("w1", Provider.DIRECT)
        await self.c.repository.update_session_if(
            start.session_id, SessionStatus.PENDING, status=SessionStatus.FAILED, verified_age=14
        )
        link = await self.c.linker.create_link(start.session_id)
        self.c.clock.advance(self.c.linker.link_ttl_seconds + 1)

        # Act
        first = await self.sweeper.sweep()
        second = await self.sweeper.sweep()

        # Assert
        assert first == (0, 1)
        assert second == (0, 0)
        assert (await self.c.repository.get_link(link.id)).status is LinkStatus.EXPIRED
