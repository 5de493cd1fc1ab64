import struct
from typing import Any, Dict, List, NamedTuple, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .address import AddressDescriptor
from .constants import (
    ADDRESS_MISSING_CODES,
    COTP_CONNECTION_CONFIRM,
    COTP_DATA_HEADER,
    COTP_SIZE,
    PROTOCOL_ID,
    RES_HEADER_SIZE,
    RES_ITEMS_OFFSET,
    RES_OVERHEAD,
    TPKT_SIZE,
    TPKT_VERSION,
    DataTransportSize,
    ErrorClassDict,
    Function,
    MessageType,
    ReturnCode,
    ValueTypeSize,
)
from .errors import S7ProtocolError, S7RemoteRejectedError, S7ValueError
from .requests import _finalize_packet
from .values import ByteOrder, Value, decode_value

COTP_DISCONNECT_REASONS: Dict[int, str] = {
    0x00: "Reason not specified",
    0x01: "Congestion at the destination transport endpoint",
    0x02: "Session entity congestion",
    0x03: "Address unknown",
    0x05: "Connection refused by remote transport endpoint",
    0x06: "Connection rejected due to remote transport endpoint being unavailable",
    0x07: "Connection rejected due to protocol error",
    0x09: "User initiated disconnect",
    0x0A: "Protocol error detected by the peer",
    0x0B: "Duplicate source reference",
}

# Data section tags whose length field counts bits rather than bytes
BIT_LENGTH_TAGS = (
    DataTransportSize.BIT.value,
    DataTransportSize.BYTE_WORD_DWORD.value,
    DataTransportSize.INTEGER.value,
)


@runtime_checkable
class Response(Protocol):
    def parse(self) -> Any:
        ...


def _return_code_name(return_code: int) -> str:
    try:
        return ReturnCode(return_code).name
    except ValueError:
        return f"UNKNOWN_RETURN_CODE_0x{return_code:02X}"


class ConnectionResponse:
    def __init__(self, response: bytes) -> None:
        self.response = response

    def parse(self) -> Dict[str, Any]:
        if len(self.response) < 11:
            raise S7ProtocolError("Connection response too short")

        version, reserved, tpkt_length = struct.unpack_from(">BBH", self.response, offset=0)
        if version != TPKT_VERSION:
            raise S7ProtocolError("Unsupported TPKT version in connection response")

        if tpkt_length != len(self.response):
            raise S7ProtocolError("TPKT length mismatch in connection response")

        cotp_length = self.response[4]
        if cotp_length != len(self.response) - 5:
            raise S7ProtocolError("COTP length mismatch in connection response")

        pdu_type = self.response[5]
        destination_reference, source_reference = struct.unpack_from(">HH", self.response, offset=6)
        header_field = self.response[10]

        parameters: List[Dict[str, Any]] = []
        offset = 11
        while offset + 1 < len(self.response):
            parameter_code = self.response[offset]
            parameter_length = self.response[offset + 1]
            value_start = offset + 2
            value_end = value_start + parameter_length

            if value_end > len(self.response):
                raise S7ProtocolError("Malformed COTP parameter in connection response")

            parameters.append(
                {
                    "code": parameter_code,
                    "length": parameter_length,
                    "value": bytes(self.response[value_start:value_end]),
                }
            )
            offset = value_end

        is_success = pdu_type == COTP_CONNECTION_CONFIRM

        cotp_info: Dict[str, Any] = {
            "length": cotp_length,
            "pdu_type": pdu_type,
            "destination_reference": destination_reference,
            "source_reference": source_reference,
            "parameters": parameters,
        }

        if is_success:
            cotp_info["class_options"] = header_field
        else:
            cotp_info["reason"] = header_field
            reason_description = COTP_DISCONNECT_REASONS.get(header_field)
            if reason_description:
                cotp_info["reason_description"] = reason_description

        return {
            "tpkt": {
                "version": version,
                "reserved": reserved,
                "length": tpkt_length,
            },
            "cotp": cotp_info,
            "success": is_success,
        }


class ResponseHeader(NamedTuple):
    total_length: int
    message_type: int
    pdu_reference: int
    parameter_length: int
    data_length: int
    error_class: int
    error_code: int

    @property
    def is_error(self) -> bool:
        return self.error_class != 0 or self.error_code != 0

    @property
    def error_description(self) -> str:
        description = ErrorClassDict.get(self.error_class, f"Unknown error class 0x{self.error_class:02X}")
        return f"{description} (class 0x{self.error_class:02X}, code 0x{self.error_code:02X})"


def parse_response_header(response: bytes) -> ResponseHeader:
    """Validate the envelope of an ACK_DATA telegram and decode its 12-byte S7 header.

    Raises:
        S7ProtocolError: If the telegram is short, not framed as TPKT/COTP data,
            not an S7 telegram or not an ACK_DATA.
    """
    if len(response) < RES_OVERHEAD:
        raise S7ProtocolError(f"Response too short: {len(response)} bytes, expected at least {RES_OVERHEAD}")

    version, _, total_length = struct.unpack_from(">BBH", response, 0)
    if version != TPKT_VERSION:
        raise S7ProtocolError(f"Unsupported TPKT version 0x{version:02X}")
    if total_length != len(response):
        raise S7ProtocolError(f"TPKT length {total_length} does not match the {len(response)} bytes received")
    if bytes(response[TPKT_SIZE : TPKT_SIZE + COTP_SIZE]) != COTP_DATA_HEADER:
        raise S7ProtocolError("Response is not a COTP data transfer")
    if response[TPKT_SIZE + COTP_SIZE] != PROTOCOL_ID:
        raise S7ProtocolError(f"Unexpected protocol id 0x{response[TPKT_SIZE + COTP_SIZE]:02X}")

    message_type = response[TPKT_SIZE + COTP_SIZE + 1]
    if message_type != MessageType.RESPONSE.value:
        raise S7ProtocolError(f"Unexpected message type {message_type}, expected ACK_DATA")

    pdu_reference, parameter_length, data_length, error_class, error_code = struct.unpack_from(
        ">HHHBB", response, TPKT_SIZE + COTP_SIZE + 4
    )
    if RES_OVERHEAD + parameter_length + data_length != total_length:
        raise S7ProtocolError("Parameter/data lengths do not match the response size")

    return ResponseHeader(
        total_length=total_length,
        message_type=message_type,
        pdu_reference=pdu_reference,
        parameter_length=parameter_length,
        data_length=data_length,
        error_class=error_class,
        error_code=error_code,
    )


def _check_job_response(response: bytes, function: Function) -> ResponseHeader:
    header = parse_response_header(response)
    if header.is_error:
        raise S7RemoteRejectedError(
            f"PLC rejected the {function.name} job: {header.error_description}",
            return_code=header.error_code,
        )
    if header.parameter_length < 2 or response[RES_OVERHEAD] != function.value:
        raise S7ProtocolError(f"Response does not answer a {function.name} job")
    return header


class PDUNegotiationResponse:
    def __init__(self, response: bytes) -> None:
        self.response = response

    def parse(self) -> Tuple[int, int, int]:
        _check_job_response(self.response, Function.COMM_SETUP)
        if len(self.response) < RES_ITEMS_OFFSET + 6:
            raise S7ProtocolError("PDU negotiation response too short")

        max_jobs_calling, max_jobs_called, pdu_size = struct.unpack_from(
            ">HHH", self.response, offset=RES_ITEMS_OFFSET
        )
        return (max_jobs_calling, max_jobs_called, pdu_size)


class ReadItem(NamedTuple):
    return_code: int
    transport_tag: int
    data: bytes

    @property
    def is_success(self) -> bool:
        return self.return_code == ReturnCode.SUCCESS.value


def parse_read_response(response: bytes) -> List[ReadItem]:
    """Split a read-var ACK_DATA into its data items."""
    _check_job_response(response, Function.READ_VAR)

    item_count = response[RES_OVERHEAD + 1]
    items: List[ReadItem] = []
    offset = RES_ITEMS_OFFSET

    for i in range(item_count):
        if offset + 1 > len(response):
            raise S7ProtocolError(f"Read response truncated before item {i}")

        return_code = response[offset]
        if return_code != ReturnCode.SUCCESS.value:
            # Failed items carry a 4 byte header and no payload
            tag = response[offset + 1] if offset + 1 < len(response) else 0
            items.append(ReadItem(return_code, tag, b""))
            offset += 4
            continue

        if offset + 4 > len(response):
            raise S7ProtocolError(f"Read response truncated in item {i} header")
        tag, length = struct.unpack_from(">BH", response, offset + 1)
        byte_length = (length + 7) // 8 if tag in BIT_LENGTH_TAGS else length
        offset += 4

        data = bytes(response[offset : offset + byte_length])
        if len(data) != byte_length:
            raise S7ProtocolError(f"Read response truncated in item {i} payload")
        items.append(ReadItem(return_code, tag, data))

        offset += byte_length
        # Fill byte after odd payloads
        if byte_length % 2 and i < item_count - 1:
            offset += 1

    return items


def check_return_code(return_code: int, context: str) -> None:
    """Raise the matching rejection for any non-success per-item *return_code*."""
    if return_code == ReturnCode.SUCCESS.value:
        return
    if return_code in ADDRESS_MISSING_CODES:
        raise S7RemoteRejectedError(
            f"{context}: address does not exist ({_return_code_name(return_code)})",
            return_code=return_code,
            address_missing=True,
        )
    raise S7RemoteRejectedError(
        f"{context}: {_return_code_name(return_code)}", return_code=return_code
    )


def extract_area_bytes(response: bytes, expected_length: int, item_index: int = 0) -> bytes:
    """Return the ``expected_length`` payload bytes of one read-var item.

    Raises:
        S7ProtocolError: If the telegram is malformed or carries fewer bytes.
        S7RemoteRejectedError: If the item return code is not success.
    """
    items = parse_read_response(response)
    if item_index >= len(items):
        raise S7ProtocolError(f"Read response holds {len(items)} items, item {item_index} requested")

    item = items[item_index]
    check_return_code(item.return_code, f"Read item {item_index}")

    if len(item.data) < expected_length:
        raise S7ProtocolError(f"Read item {item_index} carries {len(item.data)} bytes, expected {expected_length}")

    return item.data[:expected_length]


def parse_write_response(response: bytes) -> List[int]:
    """Return the per-item return codes of a write-var ACK_DATA."""
    _check_job_response(response, Function.WRITE_VAR)

    item_count = response[RES_OVERHEAD + 1]
    codes = list(response[RES_ITEMS_OFFSET : RES_ITEMS_OFFSET + item_count])
    if len(codes) != item_count:
        raise S7ProtocolError("Write response truncated")
    return codes


def extract_value(
    area_bytes: bytes,
    relative_offset: int,
    descriptor: AddressDescriptor,
    byte_order: ByteOrder = ByteOrder.ABCD,
) -> Value:
    """Interpret the bytes of *descriptor* found at *relative_offset* of *area_bytes*.

    Bit descriptors test their mask against the containing byte. Other
    descriptors decode ``descriptor.size`` bytes as the descriptor's value
    type, which must have exactly that width.

    Raises:
        S7ValueError: On a short buffer or a width mismatch.
    """
    if relative_offset < 0:
        raise S7ValueError(f"{descriptor}: negative offset {relative_offset} in area bytes")

    if descriptor.is_bit:
        if relative_offset >= len(area_bytes):
            raise S7ValueError(f"{descriptor}: byte {relative_offset} outside {len(area_bytes)} area bytes")
        return (area_bytes[relative_offset] & (1 << descriptor.bit_offset)) != 0

    value_type = descriptor.value_type
    if ValueTypeSize[value_type] != descriptor.size:
        raise S7ValueError(
            f"{descriptor}: {value_type.name} cannot be read from a {descriptor.size} byte {descriptor.unit.name}"
        )

    return decode_value(area_bytes, value_type, byte_order, relative_offset)


def _init_ack_packet(function: Function, pdu_reference: int, error_class: int = 0, error_code: int = 0) -> Tuple[bytearray, int]:
    packet = bytearray()
    packet.extend(b"\x03\x00\x00\x00")  # TPKT header with placeholder length
    packet.extend(COTP_DATA_HEADER)
    packet.extend(PROTOCOL_ID.to_bytes(1, byteorder="big"))
    packet.extend(MessageType.RESPONSE.value.to_bytes(1, byteorder="big"))
    packet.extend(b"\x00\x00")  # Redundancy identification (reserved)
    packet.extend(pdu_reference.to_bytes(2, byteorder="big"))
    packet.extend(b"\x00\x00")  # Parameter length placeholder
    packet.extend(b"\x00\x00")  # Data length placeholder
    packet.extend(error_class.to_bytes(1, byteorder="big"))
    packet.extend(error_code.to_bytes(1, byteorder="big"))

    parameter_start = len(packet)
    packet.extend(function.value.to_bytes(1, byteorder="big"))
    return packet, parameter_start


def build_connection_confirm(request: bytes, source_reference: int = 0x0001) -> bytes:
    """COTP connection confirm answering the connection request *request*."""
    if len(request) < 11 or request[5] != 0xE0:
        raise S7ProtocolError("Not a COTP connection request")

    response = bytearray(request)
    response[5] = COTP_CONNECTION_CONFIRM
    response[6:8] = request[8:10]  # destination reference is the caller's source reference
    response[8:10] = source_reference.to_bytes(2, byteorder="big")
    return bytes(response)


def build_setup_response(pdu_reference: int, pdu_size: int, max_jobs: int = 1) -> bytes:
    packet, parameter_start = _init_ack_packet(Function.COMM_SETUP, pdu_reference)
    packet.extend(b"\x00")  # Reserved
    packet.extend(max_jobs.to_bytes(2, byteorder="big"))  # Max AmQ calling
    packet.extend(max_jobs.to_bytes(2, byteorder="big"))  # Max AmQ called
    packet.extend(pdu_size.to_bytes(2, byteorder="big"))
    _finalize_packet(packet, parameter_start, len(packet))
    return bytes(packet)


def build_read_response(pdu_reference: int, items: Sequence[Tuple[int, bytes, bool]]) -> bytes:
    """ACK_DATA for a read-var job from ``(return_code, data, is_bit)`` triples."""
    packet, parameter_start = _init_ack_packet(Function.READ_VAR, pdu_reference)
    packet.extend(len(items).to_bytes(1, byteorder="big"))
    data_start = len(packet)

    for i, (return_code, data, is_bit) in enumerate(items):
        packet.extend(return_code.to_bytes(1, byteorder="big"))
        if return_code != ReturnCode.SUCCESS.value:
            packet.extend(b"\x00\x00\x00")
            continue

        if is_bit:
            packet.extend(DataTransportSize.BIT.value.to_bytes(1, byteorder="big"))
            packet.extend(len(data).to_bytes(2, byteorder="big"))
        else:
            packet.extend(DataTransportSize.BYTE_WORD_DWORD.value.to_bytes(1, byteorder="big"))
            packet.extend((len(data) * 8).to_bytes(2, byteorder="big"))
        packet.extend(data)

        if len(data) % 2 and i < len(items) - 1:
            packet.extend(b"\x00")

    _finalize_packet(packet, parameter_start, data_start)
    return bytes(packet)


def build_write_response(pdu_reference: int, return_codes: Sequence[int]) -> bytes:
    packet, parameter_start = _init_ack_packet(Function.WRITE_VAR, pdu_reference)
    packet.extend(len(return_codes).to_bytes(1, byteorder="big"))
    data_start = len(packet)
    packet.extend(bytes(return_codes))
    _finalize_packet(packet, parameter_start, data_start)
    return bytes(packet)


def build_error_response(
    pdu_reference: int, function: Optional[int], error_class: int, error_code: int
) -> bytes:
    """Header-level rejection of a whole job."""
    packet, parameter_start = _init_ack_packet(
        Function.READ_VAR, pdu_reference, error_class=error_class, error_code=error_code
    )
    if function is not None:
        packet[parameter_start] = function
    packet.extend(b"\x00")
    _finalize_packet(packet, parameter_start, len(packet))
    return bytes(packet)
