"""Wire protocol exchanged between buyer and seeder.

Messages use a compact binary encoding (variable-length integers, length
prefixed strings and byte vectors, fixed 32-byte arrays written raw).
On a stream each message is framed as ``[u32 little-endian length][body]``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Protocol, Union

CONDUIT_ALPN = b"/conduit/chunk/1"
"""Protocol identifier for the chunk protocol."""

MAX_MSG_SIZE = 16 * 1024 * 1024
"""Largest message body accepted on the wire (16 MiB)."""

_U8_MAX = 0xFF
_U32_MAX = 0xFFFF_FFFF
_U64_MAX = 0xFFFF_FFFF_FFFF_FFFF


class WireError(Exception):
    """Raised when a message cannot be encoded, decoded or framed."""


def _hash32(value: bytes, name: str) -> bytes:
    value = bytes(value)
    if len(value) != 32:
        raise ValueError(f"{name} must be 32 bytes, got {len(value)}")
    return value


# ── Primitive encoding ────────────────────────────────────────────────


class _Writer:
    def __init__(self) -> None:
        self.buf = bytearray()

    def u8(self, value: int) -> None:
        if not 0 <= value <= _U8_MAX:
            raise WireError(f"value {value} does not fit in u8")
        self.buf.append(value)

    def varint(self, value: int, limit: int) -> None:
        if not 0 <= value <= limit:
            raise WireError(f"value {value} out of range")
        while True:
            low = value & 0x7F
            value >>= 7
            if value:
                self.buf.append(low | 0x80)
            else:
                self.buf.append(low)
                return

    def u32(self, value: int) -> None:
        self.varint(value, _U32_MAX)

    def u64(self, value: int) -> None:
        self.varint(value, _U64_MAX)

    def boolean(self, value: bool) -> None:
        self.buf.append(1 if value else 0)

    def array32(self, value: bytes) -> None:
        if len(value) != 32:
            raise WireError("fixed array must be 32 bytes")
        self.buf.extend(value)

    def byte_vec(self, value: bytes) -> None:
        self.varint(len(value), _U64_MAX)
        self.buf.extend(value)

    def string(self, value: str) -> None:
        self.byte_vec(value.encode("utf-8"))

    def u32_vec(self, values: list[int]) -> None:
        self.varint(len(values), _U64_MAX)
        for value in values:
            self.u32(value)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = memoryview(bytes(data))
        self.pos = 0

    def take(self, count: int) -> bytes:
        end = self.pos + count
        if end > len(self.data):
            raise WireError("unexpected end of message")
        chunk = bytes(self.data[self.pos:end])
        self.pos = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def varint(self, bits: int) -> int:
        max_bytes = (bits + 6) // 7
        result = 0
        for shift_index in range(max_bytes):
            byte = self.u8()
            result |= (byte & 0x7F) << (7 * shift_index)
            if not byte & 0x80:
                if result >> bits:
                    raise WireError("varint overflows its type")
                return result
        raise WireError("varint too long")

    def u32(self) -> int:
        return self.varint(32)

    def u64(self) -> int:
        return self.varint(64)

    def length(self) -> int:
        return self.varint(64)

    def boolean(self) -> bool:
        value = self.u8()
        if value > 1:
            raise WireError(f"invalid boolean byte {value}")
        return value == 1

    def array32(self) -> bytes:
        return self.take(32)

    def byte_vec(self) -> bytes:
        return self.take(self.length())

    def string(self) -> str:
        raw = self.byte_vec()
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WireError("string is not valid UTF-8") from exc

    def u32_vec(self) -> list[int]:
        return [self.u32() for _ in range(self.length())]


# ── Messages ──────────────────────────────────────────────────────────


class RejectReason(Enum):
    """Why a seeder refused a request."""

    OVERLOADED = 0
    CHUNKS_UNAVAILABLE = 1
    INVALID_REQUEST = 2
    PAYMENT_REQUIRED = 3


@dataclass
class Handshake:
    """First message on every connection: protocol version and content of interest."""

    CURRENT_VERSION: ClassVar[int] = 1

    encrypted_hash: bytes
    lightning_pubkey: str
    version: int = 1

    def __post_init__(self) -> None:
        self.encrypted_hash = _hash32(self.encrypted_hash, "encrypted_hash")

    def _encode(self, out: _Writer) -> None:
        out.u8(self.version)
        out.array32(self.encrypted_hash)
        out.string(self.lightning_pubkey)

    @classmethod
    def _decode(cls, src: _Reader) -> Handshake:
        version = src.u8()
        encrypted_hash = src.array32()
        pubkey = src.string()
        return cls(encrypted_hash, pubkey, version)


@dataclass
class Bitfield:
    """Chunk availability; bit i (MSB first within each byte) set means chunk i is held."""

    bits: bytearray
    chunk_count: int
    chunk_size: int
    encrypted_root: bytes

    def __post_init__(self) -> None:
        self.bits = bytearray(self.bits)
        self.encrypted_root = _hash32(self.encrypted_root, "encrypted_root")

    @staticmethod
    def _position(index: int) -> tuple[int, int]:
        return index // 8, 7 - (index % 8)

    def has_chunk(self, index: int) -> bool:
        """Whether the chunk at ``index`` is available."""
        if index < 0:
            return False
        byte_idx, bit_idx = self._position(index)
        return byte_idx < len(self.bits) and bool(self.bits[byte_idx] & (1 << bit_idx))

    def set_chunk(self, index: int) -> None:
        """Mark the chunk at ``index`` available; indices past the bit array are ignored."""
        if index < 0:
            return
        byte_idx, bit_idx = self._position(index)
        if byte_idx < len(self.bits):
            self.bits[byte_idx] |= 1 << bit_idx

    @classmethod
    def from_bools(cls, available, chunk_size: int, encrypted_root: bytes) -> Bitfield:
        """Build a bitfield from one flag per chunk."""
        flags = list(available)
        bits = bytearray((len(flags) + 7) // 8)
        for i, has in enumerate(flags):
            if has:
                byte_idx, bit_idx = cls._position(i)
                bits[byte_idx] |= 1 << bit_idx
        return cls(bits, len(flags), chunk_size, encrypted_root)

    def _encode(self, out: _Writer) -> None:
        out.byte_vec(bytes(self.bits))
        out.u32(self.chunk_count)
        out.u32(self.chunk_size)
        out.array32(self.encrypted_root)

    @classmethod
    def _decode(cls, src: _Reader) -> Bitfield:
        bits = src.byte_vec()
        chunk_count = src.u32()
        chunk_size = src.u32()
        root = src.array32()
        return cls(bytearray(bits), chunk_count, chunk_size, root)


@dataclass
class Have:
    """A seeder just acquired a new chunk."""

    chunk_index: int

    def _encode(self, out: _Writer) -> None:
        out.u32(self.chunk_index)

    @classmethod
    def _decode(cls, src: _Reader) -> Have:
        return cls(src.u32())


@dataclass
class ChunkRequest:
    """Buyer asks for a batch of chunks, paid with one invoice."""

    indices: list[int] = field(default_factory=list)

    def _encode(self, out: _Writer) -> None:
        out.u32_vec(self.indices)

    @classmethod
    def _decode(cls, src: _Reader) -> ChunkRequest:
        return cls(src.u32_vec())


@dataclass
class ChunkInvoice:
    """Seeder's Lightning invoice for the requested chunks."""

    bolt11: str
    amount_msat: int
    chunk_count: int

    def _encode(self, out: _Writer) -> None:
        out.string(self.bolt11)
        out.u64(self.amount_msat)
        out.u32(self.chunk_count)

    @classmethod
    def _decode(cls, src: _Reader) -> ChunkInvoice:
        bolt11 = src.string()
        amount = src.u64()
        count = src.u32()
        return cls(bolt11, amount, count)


@dataclass
class PaymentProof:
    """Buyer proves payment by revealing the 32-byte preimage."""

    preimage: bytes

    def __post_init__(self) -> None:
        self.preimage = _hash32(self.preimage, "preimage")

    def _encode(self, out: _Writer) -> None:
        out.array32(self.preimage)

    @classmethod
    def _decode(cls, src: _Reader) -> PaymentProof:
        return cls(src.array32())


@dataclass
class ProofNode:
    """One sibling in a Merkle inclusion proof; ``is_left`` means it sits on the left."""

    hash: bytes
    is_left: bool

    def __post_init__(self) -> None:
        self.hash = _hash32(self.hash, "hash")


@dataclass
class ChunkData:
    """A transport-encrypted chunk with its Merkle proof."""

    chunk_index: int
    data: bytes
    proof: list[ProofNode] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.data = bytes(self.data)

    def _encode(self, out: _Writer) -> None:
        out.u32(self.chunk_index)
        out.byte_vec(self.data)
        out.varint(len(self.proof), _U64_MAX)
        for node in self.proof:
            out.array32(node.hash)
            out.boolean(node.is_left)

    @classmethod
    def _decode(cls, src: _Reader) -> ChunkData:
        index = src.u32()
        data = src.byte_vec()
        proof = []
        for _ in range(src.length()):
            node_hash = src.array32()
            proof.append(ProofNode(node_hash, src.boolean()))
        return cls(index, data, proof)


@dataclass
class Cancel:
    """Buyer cancels pending chunk requests."""

    indices: list[int] = field(default_factory=list)

    def _encode(self, out: _Writer) -> None:
        out.u32_vec(self.indices)

    @classmethod
    def _decode(cls, src: _Reader) -> Cancel:
        return cls(src.u32_vec())


@dataclass
class Reject:
    """Seeder refuses a request."""

    reason: RejectReason

    def _encode(self, out: _Writer) -> None:
        out.u32(self.reason.value)

    @classmethod
    def _decode(cls, src: _Reader) -> Reject:
        value = src.u32()
        try:
            return cls(RejectReason(value))
        except ValueError as exc:
            raise WireError(f"unknown reject reason {value}") from exc


Message = Union[
    Handshake, Bitfield, Have, ChunkRequest, ChunkInvoice,
    PaymentProof, ChunkData, Cancel, Reject,
]

_VARIANTS: tuple[type, ...] = (
    Handshake, Bitfield, Have, ChunkRequest, ChunkInvoice,
    PaymentProof, ChunkData, Cancel, Reject,
)
_DISCRIMINANTS = {cls: i for i, cls in enumerate(_VARIANTS)}


def encode_message(message: Message) -> bytes:
    """Serialize a message, variant tag first."""
    try:
        tag = _DISCRIMINANTS[type(message)]
    except KeyError:
        raise WireError(f"not a wire message: {type(message).__name__}") from None
    out = _Writer()
    out.u32(tag)
    message._encode(out)
    return bytes(out.buf)


def decode_message(data: bytes) -> Message:
    """Parse a message produced by :func:`encode_message`."""
    src = _Reader(data)
    tag = src.u32()
    if tag >= len(_VARIANTS):
        raise WireError(f"unknown message variant {tag}")
    return _VARIANTS[tag]._decode(src)


class _StreamWriter(Protocol):
    def write(self, data: bytes) -> object: ...

    async def drain(self) -> None: ...


async def write_msg(writer: _StreamWriter, message: Message) -> None:
    """Write one length-prefixed message to an asyncio-style stream writer."""
    body = encode_message(message)
    if len(body) > MAX_MSG_SIZE:
        raise WireError(f"message too large: {len(body)} bytes")
    writer.write(len(body).to_bytes(4, "little") + body)
    await writer.drain()


async def read_msg(reader: asyncio.StreamReader) -> Message:
    """Read one length-prefixed message from an asyncio stream reader."""
    try:
        header = await reader.readexactly(4)
    except asyncio.IncompleteReadError as exc:
        raise WireError("stream closed before message length") from exc
    length = int.from_bytes(header, "little")
    if length > MAX_MSG_SIZE:
        raise WireError(f"message too large: {length} bytes")
    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise WireError("stream closed inside message body") from exc
    return decode_message(body)