from typing import AsyncIterator, List

import pytest
import pytest_asyncio

from aioS7.server import AreaAccessEvent, S7DataStore, S7Server


@pytest.fixture
def store() -> S7DataStore:
    return S7DataStore(data_blocks={1: 1024, 2: 200})


@pytest.fixture
def events(store: S7DataStore) -> List[AreaAccessEvent]:
    recorded: List[AreaAccessEvent] = []
    store.subscribe(recorded.append)
    return recorded


@pytest_asyncio.fixture
async def server(store: S7DataStore) -> AsyncIterator[S7Server]:
    async with S7Server(store) as server:
        yield server
