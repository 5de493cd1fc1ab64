import asyncio

from aioS7 import S7Client, ValueType


async def main() -> None:
    client = S7Client(address="192.168.5.100", rack=0, slot=1)

    # Establish connection with the PLC
    result = await client.connect()
    if not result:
        print(result.message)
        return

    await client.write("DB1.DBX0.0", False)
    await client.write("DB1.DBW30", -25000, ValueType.INT16)

    # Each address is written with its own telegram
    values = {
        "DB1.DBX0.6": (ValueType.BOOL, True),
        "M54.4": True,  # bare values use the natural type of the address
        "QD24": (ValueType.FLOAT32, 1.2345),
        "DB5.DBD50": (ValueType.FLOAT64, 3.14),  # 64-bit values span two double words
    }
    result = await client.batch_write(values)
    print(result.is_success, result.errors)

    # Raw bytes, split into several telegrams when larger than one item
    await client.write_bytes("DB2.DBB0", bytes(400))

    await client.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
