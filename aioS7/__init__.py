from .address import AddressDescriptor
from .address_parser import construct_address, parse_address, parse_addresses
from .client import S7Client
from .constants import ConnectionLifetime, ConnectionState, MemoryArea, PlcFamily, Unit, ValueType
from .errors import (
    S7AddressError,
    S7ConnectionError,
    S7Error,
    S7PartialBatchError,
    S7ProtocolError,
    S7RemoteRejectedError,
    S7TimeoutError,
    S7ValueError,
)
from .optimizer import AddressBlock, optimize_blocks
from .result import OperationResult
from .server import AccessKind, AreaAccessEvent, S7DataStore, S7Server
from .values import ByteOrder
