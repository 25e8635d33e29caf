"""
Checksum Module - RFC 1071 Internet checksum and ICMP echo construction.

Used by the host liveness check to build ICMP echo requests for raw
sockets and to validate the replies.

Implementation follows RFC 1071 "Computing the Internet Checksum":
1. Sum all 16-bit words with a wide accumulator
2. Fold the carries back into 16 bits
3. Return the ones-complement
"""

import struct
from typing import Optional, Tuple


class ChecksumError(Exception):
    """Raised when checksum calculation or packet parsing fails."""
    pass


ICMP_ECHO_REPLY = 0
ICMP_ECHO_REQUEST = 8
ICMP_HEADER_LEN = 8


def _fold(total: int) -> int:
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return total & 0xFFFF


def in_cksum(data: bytes, start: int = 0) -> int:
    """
    Compute the Internet checksum of ``data``.

    Args:
        data: Bytes to checksum (odd lengths are zero-padded)
        start: Initial value added to the sum

    Returns:
        16-bit ones-complement checksum

    Raises:
        ChecksumError: If data is not bytes

    Example:
        >>> in_cksum(b'\\x00\\x01\\x00\\x02')
        65532
    """
    if not isinstance(data, (bytes, bytearray)):
        raise ChecksumError("Data must be bytes")

    if len(data) % 2:
        data = bytes(data) + b'\x00'

    total = start
    for i in range(0, len(data), 2):
        total += (data[i] << 8) | data[i + 1]

    return (~_fold(total)) & 0xFFFF


def verify_checksum(data: bytes) -> bool:
    """True when data (checksum field included) sums to zero."""
    return in_cksum(data) == 0


def build_icmp_echo(identifier: int, sequence: int, payload: bytes = b"") -> bytes:
    """
    Craft an ICMPv4 echo request.

    Args:
        identifier: 16-bit echo identifier
        sequence: 16-bit sequence number
        payload: Optional data carried in the request

    Returns:
        Complete ICMP message with a valid checksum
    """
    if not (0 <= identifier <= 0xFFFF and 0 <= sequence <= 0xFFFF):
        raise ChecksumError("identifier and sequence must be 16-bit values")

    body = struct.pack('!HH', identifier, sequence) + payload
    checksum = in_cksum(struct.pack('!BBH', ICMP_ECHO_REQUEST, 0, 0) + body)
    return struct.pack('!BBH', ICMP_ECHO_REQUEST, 0, checksum) + body


def parse_icmp_echo_reply(packet: bytes) -> Optional[Tuple[int, int]]:
    """
    Extract (identifier, sequence) from a raw IPv4 datagram carrying an echo reply.

    Returns:
        None when the datagram is not a well-formed echo reply
    """
    if len(packet) < 20:
        return None
    header_len = (packet[0] & 0x0F) * 4
    icmp = packet[header_len:]
    if len(icmp) < ICMP_HEADER_LEN:
        return None

    icmp_type, code, _ = struct.unpack('!BBH', icmp[:4])
    if icmp_type != ICMP_ECHO_REPLY or code != 0 or not verify_checksum(icmp):
        return None
    identifier, sequence = struct.unpack('!HH', icmp[4:8])
    return identifier, sequence


__all__ = [
    'ChecksumError',
    'in_cksum',
    'verify_checksum',
    'build_icmp_echo',
    'parse_icmp_echo_reply',
    'ICMP_ECHO_REQUEST',
    'ICMP_ECHO_REPLY',
]
