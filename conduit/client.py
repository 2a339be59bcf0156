"""Buyer side of the chunk protocol.

A :class:`BuyerClient` connects to a seeder, reads its bitfield, requests
the chunks it holds, pays the invoice and receives the chunks, checking
each against the encrypted Merkle root announced by the seeder.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from conduit.wire import (
    Bitfield,
    ChunkData,
    ChunkInvoice,
    ChunkRequest,
    Handshake,
    PaymentProof,
    ProofNode,
    Reject,
    WireError,
    read_msg,
    write_msg,
)

log = logging.getLogger(__name__)

SeederAddr = tuple
"""A seeder address: ``(host, port)``."""

ProofVerifier = Callable[[bytes, int, list, bytes], bool]
"""Checks ``(data, chunk_index, proof_nodes, root)`` against a Merkle root."""


class DownloadError(Exception):
    """Raised when a download session fails."""


@dataclass
class DownloadResult:
    """Outcome of a successful download session."""

    chunks: list[tuple[int, bytes]] = field(default_factory=list)
    """Downloaded ``(chunk_index, data)`` pairs in arrival order."""
    total_paid_msat: int = 0


class PaymentHandler(ABC):
    """Pays Lightning invoices on behalf of the buyer."""

    @abstractmethod
    def pay_invoice(self, bolt11: str) -> bytes:
        """Pay the BOLT11 invoice and return the 32-byte preimage.

        Raise any exception when the payment fails. Called in a worker
        thread, so it may block.
        """


async def _close(writer) -> None:
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()


class BuyerClient:
    """Downloads chunks from a single seeder."""

    def __init__(
        self,
        ln_pubkey: str,
        verify_proof: ProofVerifier,
        *,
        connect_timeout: float = 15.0,
        chunk_timeout: float = 30.0,
    ) -> None:
        self.ln_pubkey = ln_pubkey
        self.verify_proof = verify_proof
        self.connect_timeout = connect_timeout
        self.chunk_timeout = chunk_timeout

    async def download(
        self,
        seeder_addr: SeederAddr,
        encrypted_hash: bytes,
        desired_indices: Sequence[int],
        payment: PaymentHandler,
        expected_encrypted_root: Optional[bytes] = None,
    ) -> DownloadResult:
        """Connect to a seeder and download those of ``desired_indices`` it holds.

        When ``expected_encrypted_root`` is given, the seeder's announced root
        must match it, which stops a seeder from passing off fabricated chunks
        under a fabricated root.
        """
        host, port = seeder_addr
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), self.connect_timeout
            )
        except asyncio.TimeoutError:
            raise DownloadError(
                f"P2P connect timed out after {self.connect_timeout:g}s"
            ) from None
        except OSError as exc:
            raise DownloadError(f"connecting to seeder: {exc}") from exc

        log.info("connected to seeder for %s", bytes(encrypted_hash).hex())
        try:
            return await self._run_session(
                reader, writer, encrypted_hash, desired_indices, payment,
                expected_encrypted_root,
            )
        except (WireError, ConnectionError) as exc:
            raise DownloadError(str(exc)) from exc
        finally:
            await _close(writer)

    async def _run_session(
        self,
        reader: asyncio.StreamReader,
        writer,
        encrypted_hash: bytes,
        desired_indices: Sequence[int],
        payment: PaymentHandler,
        expected_encrypted_root: Optional[bytes],
    ) -> DownloadResult:
        await write_msg(writer, Handshake(encrypted_hash, self.ln_pubkey))

        reply = await read_msg(reader)
        if isinstance(reply, Reject):
            raise DownloadError(f"seeder rejected: {reply.reason.name}")
        if not isinstance(reply, Bitfield):
            raise DownloadError(f"expected Bitfield, got {type(reply).__name__}")
        bitfield = reply
        log.debug(
            "received bitfield: %d chunks of %d bytes",
            bitfield.chunk_count, bitfield.chunk_size,
        )

        encrypted_root = bitfield.encrypted_root
        if expected_encrypted_root is not None:
            expected = bytes(expected_encrypted_root)
            if encrypted_root != expected:
                raise DownloadError(
                    f"seeder encrypted_root mismatch: expected {expected.hex()}, "
                    f"got {encrypted_root.hex()} -- possible MITM"
                )
            log.info("encrypted_root matches registry expectation")

        available = [i for i in desired_indices if bitfield.has_chunk(i)]
        if not available:
            raise DownloadError("seeder has none of the requested chunks")
        unavailable = [i for i in desired_indices if not bitfield.has_chunk(i)]
        if unavailable:
            log.warning(
                "seeder missing chunks %s, requesting only available ones", unavailable
            )

        await write_msg(writer, ChunkRequest(list(available)))

        reply = await read_msg(reader)
        if isinstance(reply, Reject):
            raise DownloadError(f"seeder rejected request: {reply.reason.name}")
        if not isinstance(reply, ChunkInvoice):
            raise DownloadError(f"expected Invoice, got {type(reply).__name__}")
        invoice = reply
        log.info(
            "received invoice for %d msat covering %d chunks, paying",
            invoice.amount_msat, invoice.chunk_count,
        )

        try:
            preimage = await asyncio.to_thread(payment.pay_invoice, invoice.bolt11)
            proof = PaymentProof(preimage)
        except Exception as exc:  # noqa: BLE001 - any payment failure ends the session
            raise DownloadError(f"paying invoice: {exc}") from exc
        await write_msg(writer, proof)

        chunks: list[tuple[int, bytes]] = []
        while len(chunks) < invoice.chunk_count:
            try:
                msg = await asyncio.wait_for(read_msg(reader), self.chunk_timeout)
            except asyncio.TimeoutError:
                raise DownloadError(
                    f"timed out waiting for chunk {len(chunks) + 1}/{invoice.chunk_count}"
                ) from None
            if isinstance(msg, ChunkData):
                if not self.verify_proof(msg.data, msg.chunk_index, msg.proof, encrypted_root):
                    log.warning("Merkle proof failed for chunk %d", msg.chunk_index)
                    raise DownloadError(
                        f"chunk {msg.chunk_index} failed Merkle verification "
                        "(source may be malicious)"
                    )
                log.debug("chunk %d verified (%d bytes)", msg.chunk_index, len(msg.data))
                chunks.append((msg.chunk_index, msg.data))
            elif isinstance(msg, Reject):
                raise DownloadError(f"seeder rejected mid-transfer: {msg.reason.name}")
            else:
                log.warning("unexpected message during transfer: %s", type(msg).__name__)

        log.info(
            "download complete: %d chunks, %d msat paid", len(chunks), invoice.amount_msat
        )
        return DownloadResult(chunks, invoice.amount_msat)


class MultiSourceDownloader:
    """Queries several seeders for the chunks they hold."""

    def __init__(self, ln_pubkey: str) -> None:
        self.ln_pubkey = ln_pubkey

    async def probe_seeders(
        self, seeders: Sequence[SeederAddr], encrypted_hash: bytes
    ) -> list[tuple[SeederAddr, Bitfield]]:
        """Fetch each seeder's bitfield without downloading; failed seeders are skipped."""
        results = []
        for addr in seeders:
            try:
                bitfield = await self._probe_one(addr, encrypted_hash)
            except (OSError, WireError, DownloadError, ValueError) as exc:
                log.warning("failed to probe seeder %s: %s", addr, exc)
                continue
            results.append((addr, bitfield))
        return results

    async def _probe_one(self, addr: SeederAddr, encrypted_hash: bytes) -> Bitfield:
        host, port = addr
        reader, writer = await asyncio.open_connection(host, port)
        try:
            await write_msg(writer, Handshake(encrypted_hash, self.ln_pubkey))
            reply = await read_msg(reader)
            if not isinstance(reply, Bitfield):
                raise DownloadError("expected Bitfield")
            return reply
        finally:
            await _close(writer)


__all_proof_types__ = (ProofNode,)