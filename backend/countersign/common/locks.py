import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class EnvelopeLocks:
    """Key-striped in-process mutexes, one stripe per envelope id bucket.

    Backed by a row lock on the envelope (``SELECT ... FOR UPDATE``) taken
    inside the transaction, so the DB remains the arbiter across processes.
    """

    def __init__(self, stripes: int = 64):
        self._stripes = [asyncio.Lock() for _ in range(stripes)]

    def _stripe(self, envelope_id: int) -> asyncio.Lock:
        return self._stripes[hash(envelope_id) % len(self._stripes)]

    @asynccontextmanager
    async def hold(self, envelope_id: int) -> AsyncIterator[None]:
        lock = self._stripe(envelope_id)
        async with lock:
            yield
