from unittest.mock import AsyncMock, Mock, patch

import pytest

from ticobot.services.connection_state import ConnectionState, ReadinessSource
from ticobot.services.watchdog import ConnectionWatchdog, RestartPolicy


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self):
        return self.now


async def _no_sleep(_seconds):
    return None


def make_watchdog(fake_channel, fake_backend, clock=None, **kwargs):
    watchdog = ConnectionWatchdog(
        fake_channel,
        fake_backend,
        RestartPolicy(clock=clock or FakeClock()),
        sleep_func=_no_sleep,
        **kwargs,
    )
    watchdog.poller = Mock()
    return watchdog


class TestRestartPolicy:
    def test_allows_first_restart(self):
        assert RestartPolicy(clock=FakeClock()).rejection_reason() is None

    def test_cooldown_after_restart(self):
        clock = FakeClock()
        policy = RestartPolicy(clock=clock)
        policy.record()
        clock.now += 5
        assert policy.rejection_reason() == "cooldown"
        clock.now += 15
        assert policy.rejection_reason() is None

    def test_window_cap(self):
        clock = FakeClock()
        policy = RestartPolicy(clock=clock)
        for _ in range(3):
            policy.record()
            clock.now += 60
        assert policy.rejection_reason() == "window_cap_reached"

    def test_window_slides(self):
        clock = FakeClock()
        policy = RestartPolicy(clock=clock)
        for _ in range(3):
            policy.record()
            clock.now += 60
        clock.now += 600
        assert policy.rejection_reason() is None
        assert policy.timestamps == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_ready_signal_starts_polling(self, fake_channel, fake_backend):
        watchdog = make_watchdog(fake_channel, fake_backend)
        await watchdog.on_ready()
        assert watchdog.state == ConnectionState.READY
        assert watchdog.readiness_source == ReadinessSource.SIGNAL
        watchdog.poller.start.assert_called_once()
        fake_backend.report_ready.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_scan_required_reports_qr(self, fake_channel, fake_backend):
        watchdog = make_watchdog(fake_channel, fake_backend)
        await watchdog.on_scan_required("qr-data")
        assert watchdog.state == ConnectionState.AWAITING_SCAN
        fake_backend.report_qr.assert_awaited_once_with("qr-data")
        watchdog.poller.stop.assert_called()

    @pytest.mark.asyncio
    async def test_backend_report_failure_is_not_fatal(self, fake_channel, fake_backend):
        fake_backend.report_ready.side_effect = Exception("backend down")
        watchdog = make_watchdog(fake_channel, fake_backend)
        await watchdog.on_ready()
        assert watchdog.is_ready is True

    @pytest.mark.asyncio
    async def test_authenticated_ignored_when_ready(self, fake_channel, fake_backend):
        watchdog = make_watchdog(fake_channel, fake_backend)
        await watchdog.on_ready()
        await watchdog.on_authenticated()
        assert watchdog.state == ConnectionState.READY

    @pytest.mark.asyncio
    @patch("ticobot.services.watchdog.alert_critical", new_callable=AsyncMock)
    async def test_auth_failure_alerts(self, mock_alert, fake_channel, fake_backend):
        watchdog = make_watchdog(fake_channel, fake_backend)
        await watchdog.on_auth_failure("bad session")
        fake_backend.report_disconnected.assert_awaited_once_with("bad session")
        mock_alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_attach_registers_handlers(self, fake_channel, fake_backend):
        watchdog = make_watchdog(fake_channel, fake_backend)
        watchdog.attach()
        await fake_channel.emit("ready")
        assert watchdog.is_ready is True


class TestInferredReadiness:
    @pytest.mark.asyncio
    async def test_connected_and_probe_ok_infers_ready(self, fake_channel, fake_backend):
        watchdog = make_watchdog(fake_channel, fake_backend)
        watchdog.state = ConnectionState.AUTHENTICATED
        fake_channel.state = "CONNECTED"

        await watchdog.check_stuck()

        assert watchdog.state == ConnectionState.READY
        assert watchdog.readiness_source == ReadinessSource.INFERRED
        watchdog.poller.start.assert_called_once()
        fake_backend.report_ready.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_probe_failure_without_auto_restart_leaves_session(self, fake_channel, fake_backend):
        watchdog = make_watchdog(fake_channel, fake_backend)
        watchdog.state = ConnectionState.AUTHENTICATED
        fake_channel.list_chats = AsyncMock(side_effect=Exception("timeout"))

        await watchdog.check_stuck()

        assert watchdog.state == ConnectionState.AUTHENTICATED
        assert fake_channel.connect_calls == 0

    @pytest.mark.asyncio
    async def test_stuck_restart_happens_once(self, fake_channel, fake_backend):
        clock = FakeClock()
        watchdog = make_watchdog(fake_channel, fake_backend, clock=clock, auto_restart_on_stuck=True)
        watchdog.state = ConnectionState.AUTHENTICATED
        fake_channel.state = "OPENING"

        await watchdog.check_stuck()
        watchdog.state = ConnectionState.AUTHENTICATED
        clock.now += 120
        await watchdog.check_stuck()

        assert fake_channel.connect_calls == 1

    @pytest.mark.asyncio
    async def test_check_stuck_noop_when_ready(self, fake_channel, fake_backend):
        watchdog = make_watchdog(fake_channel, fake_backend, auto_restart_on_stuck=True)
        await watchdog.on_ready()
        await watchdog.check_stuck()
        assert fake_channel.connect_calls == 0


class TestRestarts:
    @pytest.mark.asyncio
    async def test_disconnect_triggers_one_restart(self, fake_channel, fake_backend):
        watchdog = make_watchdog(fake_channel, fake_backend)
        await watchdog.on_ready()
        await watchdog.on_disconnected("LOGOUT")
        assert watchdog.state == ConnectionState.DISCONNECTED
        assert fake_channel.disconnect_calls == 1
        assert fake_channel.connect_calls == 1
        fake_backend.report_disconnected.assert_awaited_with("LOGOUT")

    @pytest.mark.asyncio
    @patch("ticobot.services.watchdog.alert_warning", new_callable=AsyncMock)
    async def test_no_restart_storm(self, mock_alert, fake_channel, fake_backend):
        clock = FakeClock()
        watchdog = make_watchdog(fake_channel, fake_backend, clock=clock)

        # burst of disconnects within the cooldown
        for _ in range(5):
            await watchdog.on_disconnected("NAVIGATION")
        assert fake_channel.connect_calls == 1

        # spaced past the cooldown, capped by the window
        for _ in range(5):
            clock.now += 20
            await watchdog.on_disconnected("NAVIGATION")
        assert fake_channel.connect_calls == 3
        assert len(watchdog.policy.timestamps) == 3
        mock_alert.assert_awaited()

    @pytest.mark.asyncio
    async def test_restart_skipped_while_in_progress(self, fake_channel, fake_backend):
        watchdog = make_watchdog(fake_channel, fake_backend)
        watchdog.restart_in_progress = True
        assert await watchdog.safe_restart("manual") is False
        assert fake_channel.connect_calls == 0

    @pytest.mark.asyncio
    async def test_failed_connect_clears_in_progress(self, fake_channel, fake_backend):
        fake_channel.connect = AsyncMock(side_effect=Exception("gateway down"))
        watchdog = make_watchdog(fake_channel, fake_backend)
        assert await watchdog.safe_restart("manual") is False
        assert watchdog.restart_in_progress is False
