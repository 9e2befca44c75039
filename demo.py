#!/usr/bin/env python3
"""
immustreams Demo - A channel stored in immudb.

Runs the channel lifecycle twice against the same store: the first run
announces a new channel, the second recovers the author from the stored
announcement and synchronizes everything the first run published.

Uses an in-memory immudb stand-in by default. Set
IMMUSTREAMS_DEMO_SERVER=1 to use the server at IMMUSTREAMS_STORE_ADDRESS.

For the full command line tool, use `immustreams-demo --help`.
"""

import asyncio
import logging
import os

from sdk.immustreams.cli import run_demo
from sdk.immustreams.config import Settings


async def main():
    print("=" * 60)
    print("immustreams Demo - Channel over immudb")
    print("=" * 60)
    print()

    settings = Settings(author_seed="A", subscriber_seed="B")
    use_server = os.environ.get("IMMUSTREAMS_DEMO_SERVER", "0") == "1"
    where = settings.store_url if use_server else "in-memory store"
    print(f"[Setup] Store: {where}, database '{settings.database}'")
    print(f"[Setup] Channel type: {settings.channel_type.value}")

    reports = await run_demo(settings, runs=2, in_memory=not use_server)

    for run, report in enumerate(reports, start=1):
        print(f"\n[Run {run}] {'Announced new channel' if report.is_new else 'Recovered existing channel'}")
        print("-" * 50)
        print(f"  Announcement:      {report.announcement_link}")
        print(f"  Synchronized:      {report.synchronized} messages")
        print(f"  Subscriber is new: {report.subscriber_is_new}")
        print(f"  Keyload:           {report.keyload_link}")
        print(f"  Packets sent:      {report.sent_packets}")
        print(f"  Messages received: {len(report.received)}")

        payloads = report.packet_payloads
        print(f"  Packet payloads:   {len(payloads)}")
        print(f"    first: {payloads[0]!r}")
        print(f"    last:  {payloads[-1]!r}")

    print()
    print("=" * 60)
    print("Demo Complete!")
    print("=" * 60)


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    asyncio.run(main())
