import asyncio

from aioS7 import S7Client, ValueType


async def main() -> None:
    # Create a new S7Client object to connect to S7-300/400/1200/1500 PLC.
    # Provide the PLC's IP address and slot/rack information
    async with S7Client(address="192.168.5.100", rack=0, slot=1) as client:
        # Single reads, the value type defaults to the natural type of the unit
        print((await client.read("DB1.DBW10")).value)  # 42
        print((await client.read("DB1.DBD4", ValueType.FLOAT32)).value)  # 20.5

        # Batch read, contiguous addresses are merged into one telegram
        addresses = {
            "DB1.DBX0.0": None,  # BIT 0 of byte 0 of DB1
            "DB1.DBX0.6": None,  # BIT 6 of byte 0 of DB1
            "DB1.DBW30": ValueType.INT16,  # signed WORD at byte 30 of DB1
            "M54.4": None,  # BIT 4 of byte 54 in the merker area
            "IW22": None,  # WORD at byte 22 in the input area
            "QD24": ValueType.FLOAT32,  # REAL at byte 24 in the output area
            "VW100": None,  # WORD at byte 100 of V memory (DB1)
        }
        result = await client.batch_read(addresses)

        if not result.is_success:
            print(result.message)

        for address, (value_type, value) in result.value.items():
            print(f"{address:<12} {value_type.name:<8} {value}")


if __name__ == "__main__":
    asyncio.run(main())
