"""Run a client against the in-process PLC simulator."""

import asyncio

from aioS7 import AreaAccessEvent, MemoryArea, S7Client, S7DataStore, S7Server


def print_event(event: AreaAccessEvent) -> None:
    print(f"{event.kind.value:<5} {event.memory_area.value} DB{event.db_number} [{event.start}:{event.start + event.length}]")


async def main() -> None:
    store = S7DataStore(data_blocks={1: 1024})
    store.write_area(MemoryArea.DB, 1, 10, b"\x00\x2a")
    store.subscribe(print_event)

    async with S7Server(store) as server:
        async with S7Client("127.0.0.1", port=server.port) as client:
            print((await client.read("DB1.DBW10")).value)  # 42
            await client.write("DB1.DBX5.3", True)
            print(store.snapshot(MemoryArea.DB, 1)[5])  # 8
            print(len((await client.read_bytes("DB1.DBB0", 400)).value))  # 400, read in 3 telegrams


if __name__ == "__main__":
    asyncio.run(main())
