"""Seeder side of the chunk protocol.

A :class:`ChunkProtocol` serves one buyer per connection. It answers the
handshake with a bitfield, prices chunk requests with an invoice, and sends
the chunks once the buyer proves payment. The application supplies the
chunk data and the invoicing through a :class:`ChunkStore`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from conduit.wire import (
    Bitfield,
    Cancel,
    ChunkData,
    ChunkInvoice,
    ChunkRequest,
    Handshake,
    PaymentProof,
    ProofNode,
    Reject,
    RejectReason,
    WireError,
    read_msg,
    write_msg,
)

log = logging.getLogger(__name__)


class ChunkStore(ABC):
    """Chunk data and Lightning invoicing supplied by the application."""

    @abstractmethod
    def get_chunk(self, encrypted_hash: bytes, index: int) -> Optional[bytes]:
        """Encrypted chunk data for the content and index, or None."""

    @abstractmethod
    def get_proof(self, encrypted_hash: bytes, index: int) -> Optional[list[ProofNode]]:
        """Merkle proof for the chunk, or None."""

    @abstractmethod
    def get_bitfield(self, encrypted_hash: bytes) -> Optional[Bitfield]:
        """Which chunks of the content are available, or None if unknown."""

    @abstractmethod
    def create_invoice(
        self, encrypted_hash: bytes, chunk_indices: list[int], buyer_ln_pubkey: str
    ) -> tuple[str, int]:
        """Issue an invoice for the chunks; returns ``(bolt11, amount_msat)``.

        Raise any exception when no invoice can be created.
        """

    @abstractmethod
    def verify_payment(self, encrypted_hash: bytes, preimage: bytes) -> bool:
        """Whether ``preimage`` settles a pending invoice for the content."""


@dataclass
class _Session:
    pending_indices: list[int] = field(default_factory=list)
    invoice_issued: bool = False

    def reset(self) -> None:
        self.pending_indices = []
        self.invoice_issued = False


class ChunkProtocol:
    """Serves the chunk protocol over asyncio streams."""

    def __init__(self, store: ChunkStore) -> None:
        self._store = store
        self._sessions: dict[bytes, _Session] = {}

    def active_sessions(self) -> frozenset[bytes]:
        """Content hashes that currently have a buyer session open."""
        return frozenset(self._sessions)

    async def accept(self, reader: asyncio.StreamReader, writer) -> None:
        """Serve one connection, logging rather than raising any failure.

        Suitable as the callback of :func:`asyncio.start_server`.
        """
        try:
            await self.handle_connection(reader, writer)
        except Exception as exc:  # noqa: BLE001 - a failed session must not kill the server
            log.warning("connection handler error: %s", exc)

    async def handle_connection(self, reader: asyncio.StreamReader, writer) -> None:
        """Serve one buyer session and close the stream afterwards.

        Raises :class:`WireError` for a missing or unsupported handshake and
        :class:`LookupError` when the requested content is not held.
        """
        try:
            await self._serve(reader, writer)
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    async def _reject(self, writer, reason: RejectReason) -> None:
        await write_msg(writer, Reject(reason))

    async def _serve(self, reader: asyncio.StreamReader, writer) -> None:
        try:
            first = await read_msg(reader)
        except WireError as exc:
            raise WireError(f"reading handshake: {exc}") from exc

        if not isinstance(first, Handshake):
            await self._reject(writer, RejectReason.INVALID_REQUEST)
            raise WireError(f"expected Handshake, got {type(first).__name__}")
        if first.version != Handshake.CURRENT_VERSION:
            await self._reject(writer, RejectReason.INVALID_REQUEST)
            raise WireError(f"unsupported protocol version: {first.version}")

        key = first.encrypted_hash
        buyer_ln = first.lightning_pubkey
        log.info("buyer connected for content %s", key.hex())

        bitfield = self._store.get_bitfield(key)
        if bitfield is None:
            raise LookupError("content not found")
        await write_msg(writer, bitfield)

        self._sessions[key] = _Session()
        try:
            await self._session_loop(reader, writer, key, buyer_ln)
        finally:
            self._sessions.pop(key, None)

    async def _session_loop(self, reader, writer, key: bytes, buyer_ln: str) -> None:
        while True:
            try:
                msg = await read_msg(reader)
            except (WireError, ConnectionError):
                log.debug("buyer disconnected")
                return

            if isinstance(msg, ChunkRequest):
                await self._on_request(writer, key, buyer_ln, msg)
            elif isinstance(msg, PaymentProof):
                await self._on_payment(writer, key, msg)
            elif isinstance(msg, Cancel):
                log.debug("buyer cancelled request")
                session = self._sessions.get(key)
                if session is not None:
                    session.reset()
            else:
                log.warning("unexpected message from buyer: %s", type(msg).__name__)

    async def _on_request(self, writer, key: bytes, buyer_ln: str, req: ChunkRequest) -> None:
        log.debug("chunk request received for %d chunks", len(req.indices))
        if not all(self._store.get_chunk(key, i) is not None for i in req.indices):
            await self._reject(writer, RejectReason.CHUNKS_UNAVAILABLE)
            return
        try:
            bolt11, amount_msat = self._store.create_invoice(key, list(req.indices), buyer_ln)
        except Exception as exc:  # noqa: BLE001 - any invoicing failure is reported to the buyer
            log.warning("invoice creation failed: %s", exc)
            await self._reject(writer, RejectReason.PAYMENT_REQUIRED)
            return
        session = self._sessions.get(key)
        if session is not None:
            session.pending_indices = list(req.indices)
            session.invoice_issued = True
        await write_msg(writer, ChunkInvoice(bolt11, amount_msat, len(req.indices)))

    def _load_chunk(self, key: bytes, index: int) -> Optional[tuple[bytes, list[ProofNode]]]:
        data = self._store.get_chunk(key, index)
        if data is None:
            return None
        return data, self._store.get_proof(key, index) or []

    async def _on_payment(self, writer, key: bytes, proof: PaymentProof) -> None:
        if not self._store.verify_payment(key, proof.preimage):
            await self._reject(writer, RejectReason.PAYMENT_REQUIRED)
            return
        log.info("payment verified, sending chunks")

        session = self._sessions.get(key)
        indices = list(session.pending_indices) if session is not None else []
        for index in indices:
            loaded = await asyncio.to_thread(self._load_chunk, key, index)
            if loaded is None:
                continue
            data, nodes = loaded
            await write_msg(writer, ChunkData(index, data, nodes))

        session = self._sessions.get(key)
        if session is not None:
            session.reset()