"""In-memory message bus for relay tests."""

import asyncio

import pytest

from nats_relay.types import BusStatusEvent


async def settle(seconds: float = 0.02) -> None:
    """Let background tasks run."""
    await asyncio.sleep(seconds)


class FakeSubscription:
    def __init__(self, connection: "FakeConnection", subject: str):
        self.connection = connection
        self.subject = subject
        self.unsubscribed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def end(self) -> None:
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def unsubscribe(self) -> None:
        if self.connection.closed:
            raise RuntimeError("connection closed")
        self.unsubscribed = True
        self.end()


class FakeConnection:
    def __init__(self, bus: "FakeBus"):
        self.bus = bus
        self.closed = False
        self.subs: list[FakeSubscription] = []
        self.published: list[tuple[str, bytes]] = []
        self._status: asyncio.Queue = asyncio.Queue()
        self.subscribe_gate: asyncio.Event | None = None

    @property
    def live_subs(self) -> list[FakeSubscription]:
        return [s for s in self.subs if not s.unsubscribed]

    async def subscribe(self, subject: str) -> FakeSubscription:
        if self.subscribe_gate is not None:
            await self.subscribe_gate.wait()
        if self.closed:
            raise RuntimeError("connection closed")
        sub = FakeSubscription(self, subject)
        self.subs.append(sub)
        return sub

    async def publish(self, subject: str, data: bytes) -> None:
        if self.closed:
            raise RuntimeError("connection closed")
        self.published.append((subject, data))
        self.bus.deliver(subject, data)

    async def status(self):
        while True:
            event = await self._status.get()
            if event is None:
                return
            yield event

    def emit(self, type: str, data: str | None = None) -> None:
        self._status.put_nowait(BusStatusEvent(type, data))

    def drop(self) -> None:
        """Simulate the server going away."""
        self.closed = True
        for sub in self.subs:
            sub.end()
        self.emit("disconnect", "nats://fake:4222")

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for sub in self.subs:
            sub.end()
        self._status.put_nowait(None)


class FakeBus:
    """Connector that fails a configurable number of times, then succeeds."""

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.attempts = 0
        self.servers_seen: list[list[str]] = []
        self.connections: list[FakeConnection] = []

    @property
    def current(self) -> FakeConnection | None:
        live = [c for c in self.connections if not c.closed]
        return live[-1] if live else None

    async def connect(self, servers: list[str]) -> FakeConnection:
        self.attempts += 1
        self.servers_seen.append(servers)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionRefusedError("bus unavailable")
        conn = FakeConnection(self)
        self.connections.append(conn)
        return conn

    def deliver(self, subject: str, data: bytes) -> None:
        for conn in self.connections:
            if conn.closed:
                continue
            for sub in conn.live_subs:
                if sub.subject == subject:
                    sub.feed(data)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def bus():
    return FakeBus()


@pytest.fixture
def clock():
    return FakeClock()
