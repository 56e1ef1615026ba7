"""Tests for the connection supervisor (state machine, backoff, retries)."""

import asyncio

import pytest

from conftest import FakeBus, RecordingSleep, settle
from nats_relay.errors import RelayConnectionError, RelayRetryExhaustedError
from nats_relay.supervisor import ConnectionSupervisor, compute_backoff
from nats_relay.types import ConnectionState, ReconnectConfig


def _supervisor(bus, *, max_attempts=10, base_delay=2.0, sleep=None, **kwargs):
    statuses = []
    sup = ConnectionSupervisor(
        bus.connect,
        servers=["nats://fake:4222"],
        reconnect=ReconnectConfig(base_delay=base_delay, max_attempts=max_attempts),
        on_status=statuses.append,
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )
    return sup, statuses


class TestBackoff:
    def test_exponential_sequence(self):
        cfg = ReconnectConfig(base_delay=2.0)
        delays = [compute_backoff(n, cfg) for n in range(4)]
        assert delays == [2.0, 3.0, 4.5, 6.75]

    def test_capped_at_max_delay(self):
        cfg = ReconnectConfig(base_delay=2.0)
        assert compute_backoff(8, cfg) == 30.0
        assert compute_backoff(50, cfg) == 30.0

    def test_jitter_stays_within_ten_percent(self):
        cfg = ReconnectConfig(base_delay=10.0, jitter=True)
        for _ in range(50):
            delay = compute_backoff(0, cfg)
            assert 9.0 <= delay <= 11.0


class TestConnect:
    @pytest.mark.asyncio
    async def test_initial_state(self, bus):
        sup, _ = _supervisor(bus)
        assert sup.state == ConnectionState.DISCONNECTED
        assert sup.status.connected is False
        assert sup.connection is None

    @pytest.mark.asyncio
    async def test_connect_success(self, bus):
        connected = []
        sup, statuses = _supervisor(bus, on_connected=lambda: connected.append(True))
        ok = await sup.connect()
        assert ok is True
        assert sup.state == ConnectionState.CONNECTED
        assert sup.status.connected is True
        assert sup.status.reconnect_attempt == 0
        assert sup.status.error is None
        assert connected == [True]
        assert [s.state for s in statuses] == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]
        assert bus.servers_seen == [["nats://fake:4222"]]
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_connect_overrides_servers(self, bus):
        sup, _ = _supervisor(bus)
        await sup.connect(["nats://other:4222"])
        assert bus.servers_seen == [["nats://other:4222"]]
        assert sup.servers == ["nats://other:4222"]
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_connect_when_connected_is_noop(self, bus):
        sup, _ = _supervisor(bus)
        await sup.connect()
        assert await sup.connect() is True
        assert bus.attempts == 1
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_fails_three_times_then_succeeds(self):
        bus = FakeBus(fail_times=3)
        sleep = RecordingSleep()
        sup, statuses = _supervisor(bus, max_attempts=10, base_delay=2.0, sleep=sleep)

        ok = await sup.connect()
        assert ok is False
        await settle()

        attempts = [s.reconnect_attempt for s in statuses if s.reconnecting]
        assert attempts == [1, 2, 3]
        assert sleep.delays == [2.0, 3.0, 4.5]
        assert sup.status.connected is True
        assert sup.status.reconnect_attempt == 0
        assert bus.attempts == 4
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_retry_status_reports_delay(self):
        bus = FakeBus(fail_times=1)
        sup, statuses = _supervisor(bus, base_delay=2.0)
        await sup.connect()
        reconnecting = [s for s in statuses if s.reconnecting]
        assert reconnecting[0].error == "Retry in 2s..."
        assert isinstance(sup.last_error, RelayConnectionError)
        await settle()
        await sup.shutdown()


class TestRetryExhaustion:
    @pytest.mark.asyncio
    async def test_fails_after_max_attempts(self):
        bus = FakeBus(fail_times=100)
        sleep = RecordingSleep()
        sup, _ = _supervisor(bus, max_attempts=3, base_delay=2.0, sleep=sleep)

        await sup.connect()
        await settle()

        assert sup.state == ConnectionState.FAILED
        assert sup.status.connected is False
        assert sup.status.reconnecting is False
        assert sup.status.reconnect_attempt == 3
        assert sup.status.error == "Failed after 3 attempts"
        assert isinstance(sup.last_error, RelayRetryExhaustedError)
        assert bus.attempts == 4  # initial attempt + 3 retries
        assert sleep.delays == [2.0, 3.0, 4.5]

    @pytest.mark.asyncio
    async def test_no_retry_after_failed(self):
        bus = FakeBus(fail_times=100)
        sup, _ = _supervisor(bus, max_attempts=2)
        await sup.connect()
        await settle()
        attempts = bus.attempts
        await settle()
        assert bus.attempts == attempts
        assert sup.reconnect_pending is False

    @pytest.mark.asyncio
    async def test_connect_leaves_failed(self):
        bus = FakeBus(fail_times=3)
        sup, _ = _supervisor(bus, max_attempts=2)
        await sup.connect()
        await settle()
        assert sup.state == ConnectionState.FAILED

        ok = await sup.connect()
        assert ok is True
        assert sup.state == ConnectionState.CONNECTED
        assert sup.status.error is None
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_zero_attempts_fails_immediately(self):
        bus = FakeBus(fail_times=1)
        sup, _ = _supervisor(bus, max_attempts=0)
        await sup.connect()
        assert sup.state == ConnectionState.FAILED
        assert sup.status.error == "Failed after 0 attempts"


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_triggers_reconnect(self, bus):
        lost = []
        sup, statuses = _supervisor(bus, on_disconnected=lambda: lost.append(True))
        await sup.connect()
        first = sup.connection

        first.drop()
        await settle()

        assert lost == [True]
        assert ConnectionState.RECONNECTING in [s.state for s in statuses]
        assert sup.state == ConnectionState.CONNECTED
        assert sup.connection is not first
        assert bus.attempts == 2
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_error_event_counts_as_lost(self, bus):
        sup, _ = _supervisor(bus)
        await sup.connect()
        first = sup.connection
        first.emit("error", "stale connection")
        await settle()
        assert sup.connection is not first
        assert bus.attempts == 2
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_other_status_events_ignored(self, bus):
        sup, _ = _supervisor(bus)
        await sup.connect()
        first = sup.connection
        first.emit("reconnect")
        await settle()
        assert sup.connection is first
        assert bus.attempts == 1
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_stream_end_counts_as_lost(self, bus):
        sup, _ = _supervisor(bus)
        await sup.connect()
        first = sup.connection
        await first.close()
        await settle()
        assert sup.connection is not first
        assert sup.state == ConnectionState.CONNECTED
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_reconnecting_state_while_retry_pends(self, bus):
        sup, _ = _supervisor(bus, sleep=asyncio.sleep, base_delay=10.0)
        await sup.connect()
        sup.connection.drop()
        await settle()

        assert sup.state == ConnectionState.RECONNECTING
        assert sup.connection is None
        assert sup.status.reconnecting is True
        assert sup.status.reconnect_attempt == 1
        assert sup.reconnect_pending is True
        await sup.shutdown()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_closes_connection(self, bus):
        sup, _ = _supervisor(bus)
        await sup.connect()
        conn = sup.connection
        await sup.shutdown()
        assert conn.closed is True
        assert sup.connection is None
        assert sup.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, bus):
        sup, _ = _supervisor(bus)
        await sup.shutdown()
        await sup.connect()
        await sup.shutdown()
        await sup.shutdown()
        assert sup.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_retry(self):
        bus = FakeBus(fail_times=100)
        sup, _ = _supervisor(bus, sleep=asyncio.sleep, base_delay=10.0)
        await sup.connect()
        assert sup.reconnect_pending is True

        await sup.shutdown()
        assert sup.reconnect_pending is False
        assert sup.state == ConnectionState.DISCONNECTED
        assert sup.status.reconnecting is False
        await settle()
        assert bus.attempts == 1

    @pytest.mark.asyncio
    async def test_shutdown_during_attempt_discards_connection(self, bus):
        gate = asyncio.Event()

        async def slow_connect(servers):
            await gate.wait()
            return await bus.connect(servers)

        sup = ConnectionSupervisor(slow_connect, sleep=RecordingSleep())
        task = asyncio.ensure_future(sup.connect())
        await settle()
        assert sup.state == ConnectionState.CONNECTING

        await sup.shutdown()
        gate.set()
        assert await task is False
        await settle()

        assert sup.state == ConnectionState.DISCONNECTED
        assert sup.connection is None
        assert bus.connections[0].closed is True


    @pytest.mark.asyncio
    async def test_shutdown_cancels_retry_in_flight(self, bus):
        gate = asyncio.Event()
        calls = []

        async def connector(servers):
            calls.append(servers)
            if len(calls) == 1:
                raise ConnectionRefusedError("bus unavailable")
            await gate.wait()
            return await bus.connect(servers)

        sup = ConnectionSupervisor(connector, sleep=RecordingSleep())
        assert await sup.connect() is False
        await settle()
        assert len(calls) == 2
        assert sup.reconnect_pending is False

        await sup.shutdown()
        gate.set()
        await settle()

        assert bus.connections == []
        assert sup.connection is None
        assert sup.state == ConnectionState.DISCONNECTED


class TestTimeout:
    @pytest.mark.asyncio
    async def test_attempt_timeout_is_a_failure(self):
        async def hang(servers):
            await asyncio.sleep(10)

        sup = ConnectionSupervisor(
            hang,
            reconnect=ReconnectConfig(max_attempts=0),
            connect_timeout=0.01,
        )
        ok = await sup.connect()
        assert ok is False
        assert sup.state == ConnectionState.FAILED
        assert sup.get_stats()["last_error"] == "Failed after 0 attempts"


class TestStats:
    @pytest.mark.asyncio
    async def test_stats(self, bus):
        sup, _ = _supervisor(bus)
        await sup.connect()
        stats = sup.get_stats()
        assert stats["state"] == "connected"
        assert stats["connect_count"] == 1
        assert stats["reconnect_pending"] is False
        await sup.shutdown()
