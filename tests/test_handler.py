import asyncio
import contextlib

import pytest

from conduit.handler import ChunkProtocol, ChunkStore
from conduit.wire import (
    Bitfield,
    Cancel,
    ChunkData,
    ChunkInvoice,
    ChunkRequest,
    Handshake,
    Have,
    PaymentProof,
    ProofNode,
    Reject,
    RejectReason,
    WireError,
    decode_message,
    encode_message,
    read_msg,
    write_msg,
)

HASH = bytes([0x01] * 32)
ROOT = bytes([0x07] * 32)
PREIMAGE = bytes([0x42] * 32)
SIBLING = ProofNode(bytes([0x09] * 32), True)


class MockStore(ChunkStore):
    def __init__(self, chunks, fail_invoice=False):
        self.chunks = dict(enumerate(chunks))
        self.fail_invoice = fail_invoice
        self.pending_preimage = None

    def get_chunk(self, encrypted_hash, index):
        if encrypted_hash != HASH:
            return None
        return self.chunks.get(index)

    def get_proof(self, encrypted_hash, index):
        if encrypted_hash != HASH or index not in self.chunks:
            return None
        return [SIBLING]

    def get_bitfield(self, encrypted_hash):
        if encrypted_hash != HASH:
            return None
        return Bitfield.from_bools([True] * len(self.chunks), 256, ROOT)

    def create_invoice(self, encrypted_hash, chunk_indices, buyer_ln_pubkey):
        if self.fail_invoice:
            raise RuntimeError("node offline")
        self.pending_preimage = PREIMAGE
        return "lnbcrt1mock_invoice_for_test", len(chunk_indices) * 100

    def verify_payment(self, encrypted_hash, preimage):
        return self.pending_preimage == preimage


class CaptureWriter:
    def __init__(self):
        self.buffer = bytearray()
        self.closed = False

    def write(self, data):
        self.buffer.extend(data)

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    def replies(self):
        out = []
        pos = 0
        while pos < len(self.buffer):
            length = int.from_bytes(self.buffer[pos:pos + 4], "little")
            out.append(decode_message(bytes(self.buffer[pos + 4:pos + 4 + length])))
            pos += 4 + length
        return out


def feed(*messages):
    reader = asyncio.StreamReader()
    for message in messages:
        body = encode_message(message)
        reader.feed_data(len(body).to_bytes(4, "little") + body)
    reader.feed_eof()
    return reader


CHUNKS = [b"aaa", b"bbb", b"ccc", b"ddd"]


@pytest.mark.asyncio
async def test_handshake_answered_with_bitfield():
    protocol = ChunkProtocol(MockStore(CHUNKS))
    writer = CaptureWriter()
    await protocol.handle_connection(feed(Handshake(HASH, "02abc")), writer)
    replies = writer.replies()
    assert len(replies) == 1
    bf = replies[0]
    assert isinstance(bf, Bitfield)
    assert bf.chunk_count == 4
    assert bf.chunk_size == 256
    assert bf.encrypted_root == ROOT
    assert all(bf.has_chunk(i) for i in range(4))
    assert writer.closed


@pytest.mark.asyncio
async def test_full_exchange_sends_paid_chunks_in_order():
    protocol = ChunkProtocol(MockStore(CHUNKS))
    writer = CaptureWriter()
    reader = feed(
        Handshake(HASH, "buyer_ln"),
        ChunkRequest([0, 2]),
        PaymentProof(bytes([0x01] * 32)),
        PaymentProof(PREIMAGE),
    )
    await protocol.handle_connection(reader, writer)
    replies = writer.replies()
    assert isinstance(replies[0], Bitfield)
    assert replies[1] == ChunkInvoice("lnbcrt1mock_invoice_for_test", 200, 2)
    assert replies[2] == Reject(RejectReason.PAYMENT_REQUIRED)
    assert replies[3] == ChunkData(0, b"aaa", [SIBLING])
    assert replies[4] == ChunkData(2, b"ccc", [SIBLING])
    assert len(replies) == 5


@pytest.mark.asyncio
async def test_request_for_missing_chunk_is_rejected():
    protocol = ChunkProtocol(MockStore(CHUNKS))
    writer = CaptureWriter()
    await protocol.handle_connection(
        feed(Handshake(HASH, "ln"), ChunkRequest([1, 9])), writer
    )
    assert writer.replies()[1:] == [Reject(RejectReason.CHUNKS_UNAVAILABLE)]


@pytest.mark.asyncio
async def test_invoice_failure_is_rejected_as_payment_required():
    protocol = ChunkProtocol(MockStore(CHUNKS, fail_invoice=True))
    writer = CaptureWriter()
    await protocol.handle_connection(
        feed(Handshake(HASH, "ln"), ChunkRequest([0])), writer
    )
    assert writer.replies()[1:] == [Reject(RejectReason.PAYMENT_REQUIRED)]


@pytest.mark.asyncio
async def test_cancel_clears_pending_chunks():
    protocol = ChunkProtocol(MockStore(CHUNKS))
    writer = CaptureWriter()
    reader = feed(
        Handshake(HASH, "ln"),
        ChunkRequest([1]),
        Cancel([1]),
        PaymentProof(PREIMAGE),
        ChunkRequest([0]),
    )
    await protocol.handle_connection(reader, writer)
    replies = writer.replies()
    assert [type(r) for r in replies] == [Bitfield, ChunkInvoice, ChunkInvoice]
    assert replies[2].chunk_count == 1


@pytest.mark.asyncio
async def test_unexpected_messages_are_ignored():
    protocol = ChunkProtocol(MockStore(CHUNKS))
    writer = CaptureWriter()
    await protocol.handle_connection(
        feed(Handshake(HASH, "ln"), Have(3), ChunkRequest([3])), writer
    )
    replies = writer.replies()
    assert replies[1] == ChunkInvoice("lnbcrt1mock_invoice_for_test", 100, 1)


@pytest.mark.asyncio
async def test_wrong_version_is_rejected():
    protocol = ChunkProtocol(MockStore(CHUNKS))
    writer = CaptureWriter()
    with pytest.raises(WireError, match="unsupported protocol version: 7"):
        await protocol.handle_connection(feed(Handshake(HASH, "ln", version=7)), writer)
    assert writer.replies() == [Reject(RejectReason.INVALID_REQUEST)]
    assert writer.closed


@pytest.mark.asyncio
async def test_first_message_must_be_handshake():
    protocol = ChunkProtocol(MockStore(CHUNKS))
    writer = CaptureWriter()
    with pytest.raises(WireError, match="expected Handshake"):
        await protocol.handle_connection(feed(ChunkRequest([0])), writer)
    assert writer.replies() == [Reject(RejectReason.INVALID_REQUEST)]


@pytest.mark.asyncio
async def test_unknown_content_closes_without_reply():
    protocol = ChunkProtocol(MockStore(CHUNKS))
    writer = CaptureWriter()
    with pytest.raises(LookupError, match="content not found"):
        await protocol.handle_connection(feed(Handshake(bytes(32), "ln")), writer)
    assert writer.replies() == []
    assert writer.closed


@pytest.mark.asyncio
async def test_accept_swallows_errors_after_rejecting():
    protocol = ChunkProtocol(MockStore(CHUNKS))
    writer = CaptureWriter()
    result = await protocol.accept(feed(Handshake(HASH, "ln", version=2)), writer)
    assert result is None
    assert writer.replies() == [Reject(RejectReason.INVALID_REQUEST)]
    assert writer.closed


@pytest.mark.asyncio
async def test_sessions_tracked_while_connected():
    protocol = ChunkProtocol(MockStore(CHUNKS))
    server = await asyncio.start_server(protocol.accept, "127.0.0.1", 0)
    host, port = server.sockets[0].getsockname()[:2]
    try:
        reader, writer = await asyncio.open_connection(host, port)
        await write_msg(writer, Handshake(HASH, "ln"))
        reply = await read_msg(reader)
        assert isinstance(reply, Bitfield)
        assert protocol.active_sessions() == frozenset({HASH})

        writer.close()
        with contextlib.suppress(Exception):
            await writer.wait_closed()
        for _ in range(100):
            if not protocol.active_sessions():
                break
            await asyncio.sleep(0.02)
        assert protocol.active_sessions() == frozenset()
    finally:
        server.close()
        await server.wait_closed()