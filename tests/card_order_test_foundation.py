"""
Card order test foundation
Constants and small fakes shared by the card order test suites
"""

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Optional

from aiohttp import web
from aiohttp.test_utils import TestServer

from config import CardOrderSettings

MAIN_WALLET_ADDRESS = "0x" + "ab" * 20
SUB_WALLET_ADDRESS = "0x" + "ef" * 20
FEE_RECIPIENT = "0x" + "cd" * 20
TX_HASH = "0x" + "12" * 32


async def no_sleep(_seconds):
    return None


class RecordingSleep:
    """Injected sleep that records requested delays instead of waiting"""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def make_settings(fee: Optional[str] = "50", network_type: Optional[str] = "MAINET",
                  recipient: Optional[str] = FEE_RECIPIENT) -> CardOrderSettings:
    return CardOrderSettings(
        network_type=network_type,
        order_fee=Decimal(fee) if fee is not None else None,
        fee_recipient_address=recipient,
    )


class SettingsSequence:
    """Settings provider returning a different snapshot on each read; the last one repeats"""

    def __init__(self, *snapshots: CardOrderSettings):
        self.snapshots = list(snapshots)
        self.reads = 0

    def __call__(self) -> CardOrderSettings:
        index = min(self.reads, len(self.snapshots) - 1)
        self.reads += 1
        return self.snapshots[index]


@asynccontextmanager
async def json_rpc_endpoint(handler) -> AsyncIterator[str]:
    """Serve handler on a local port for the duration of the block; yields its URL"""
    app = web.Application()
    app.router.add_post("/", handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("/"))
    finally:
        await server.close()
