"""Listen on NATS subjects through the deduplicating relay.

Subscribes to the given subjects, prints every delivered event and
status change, and optionally publishes a test notification.

    pip install nats-relay

    # Default server (ws://localhost:8080)
    python examples/relay_listener.py --subjects user.created,user.deleted

    # Plain NATS, publish one test event after connecting
    python examples/relay_listener.py --servers nats://localhost:4222 --ping
"""

import argparse
import asyncio
import logging
import signal

from nats_relay import (
    EventKind,
    NotificationPayload,
    RelayConfig,
    RelayEvent,
    connect,
)


async def main(servers: list[str] | None, subjects: list[str], ping: bool):
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    config = RelayConfig.from_env()
    async with connect(servers, config=config) as relay:
        relay.on_status(lambda s: print(f"[status] {s.state.value} {s.error or ''}"))

        for subject in subjects:
            relay.subscribe(subject, lambda data, subject=subject: print(f"[{subject}] {data}"))

        print(f"Subscribed to: {subjects}")
        print("Listening for events... (Ctrl+C to stop)\n")

        if ping:
            event = RelayEvent(EventKind.NOTIFICATION_SHOW, NotificationPayload("ping"))
            sent = await relay.publish_event(event)
            print(f"Test notification {'sent' if sent else 'dropped'}")

        await stop.wait()
        print(relay.get_stats())


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="NATS relay listener")
    parser.add_argument(
        "--servers",
        default=None,
        help="Comma-separated server URLs (default: NATS_RELAY_SERVERS or ws://localhost:8080)",
    )
    parser.add_argument(
        "--subjects",
        default="user.created,user.updated,user.deleted,notification.show",
        help="Comma-separated subjects",
    )
    parser.add_argument("--ping", action="store_true", help="Publish a test notification")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    servers = [s.strip() for s in args.servers.split(",")] if args.servers else None
    subjects = [s.strip() for s in args.subjects.split(",")]
    asyncio.run(main(servers, subjects, args.ping))
