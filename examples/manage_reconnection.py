"""
#######################################################################
# This code serves as an illustrative example demonstrating how
# the client survives unexpected disconnections from a Siemens PLC.
# A persistent session reconnects on its own before retrying the
# failed operation once.
#######################################################################
"""

import asyncio
import logging

from aioS7 import ConnectionLifetime, S7Client


async def main() -> None:
    logging.basicConfig(level=logging.INFO)

    client = S7Client(
        address="192.168.5.100",
        rack=0,
        slot=1,
        lifetime=ConnectionLifetime.PERSISTENT,
        auto_reconnect=True,
        max_reconnect_attempts=5,
        reconnect_delay=2.0,
    )

    # Start an infinite loop to continuously read from the PLC.
    while True:
        result = await client.batch_read({"DB1.DBX0.0": None, "DB1.DBX0.1": None, "DB2.DBW2": None}, timeout=10)
        if result:
            print(result.value)
        else:
            # Reconnection gave up, the next call starts over
            print(client.connection_state, result.message)
        await asyncio.sleep(1)


if __name__ == "__main__":
    asyncio.run(main())
