# conduit

Building blocks for paid, verified chunk transfer between a buyer and a
seeder over asyncio streams.

A seeder holds an encrypted file split into chunks. A buyer connects and
sends a handshake naming the content. The seeder answers with a bitfield of
the chunks it holds. The buyer requests some of them and receives an
invoice. It pays the invoice and sends the 32-byte preimage as proof. The
seeder then streams the chunks, and the buyer checks each one against the
encrypted Merkle root from the bitfield before accepting it.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

### `conduit.wire`

- **Constants**
  - `CONDUIT_ALPN` is the protocol identifier.
  - `MAX_MSG_SIZE` is the 16 MiB limit on a message body.
- **Message dataclasses**
  - `Handshake(encrypted_hash, lightning_pubkey, version=1)`
  - `Bitfield(bits, chunk_count, chunk_size, encrypted_root)`, with
    `has_chunk`, `set_chunk` and `Bitfield.from_bools(available, chunk_size, encrypted_root)`.
    Bits are packed most significant bit first within each byte.
  - `Have`
  - `ChunkRequest`
  - `ChunkInvoice`
  - `PaymentProof`
  - `ChunkData`
  - `ProofNode`
  - `Cancel`
  - `Reject`, with a `RejectReason`.
  - 32-byte fields are checked on construction and raise `ValueError` when
    the length is wrong.
- **Encoding**
  - `encode_message` and `decode_message` convert a message to bytes and
    back.
  - Integers are written as varints, strings and byte vectors carry a length
    prefix, and the variant tag comes first.
- **Framing**
  - `write_msg(writer, message)` and `read_msg(reader)` frame messages on
    asyncio streams, each preceded by a 4-byte little-endian length.
- **Errors**: malformed, truncated or oversized data raises `WireError`.

### `conduit.handler`

This module is the seeder side of the protocol.

- **`ChunkStore`** is an abstract base class. Subclass it to supply the
  following:
  - `get_chunk`
  - `get_proof`
  - `get_bitfield`
  - `create_invoice`, which returns `(bolt11, amount_msat)`
  - `verify_payment`
- **`ChunkProtocol(store)`** serves one buyer per connection.
  - `accept(reader, writer)` can be passed directly to
    `asyncio.start_server`. It logs failures and does not raise them.
  - `handle_connection(reader, writer)` raises instead. It raises
    `WireError` for a bad or unsupported handshake and `LookupError` for
    unknown content.
  - `active_sessions()` returns the content hashes that have an open
    session.
- **Rejections**: the protocol sends `Reject` with `CHUNKS_UNAVAILABLE` when
  a requested chunk is missing. It sends `PAYMENT_REQUIRED` when invoicing
  fails or the preimage is not accepted.

### `conduit.client`

This module is the buyer side of the protocol.

- **`BuyerClient(ln_pubkey, verify_proof, *, connect_timeout=15.0, chunk_timeout=30.0)`**
  - `verify_proof(data, chunk_index, proof_nodes, root)` is a callable you
    provide that checks a chunk against the Merkle root.
  - `download(seeder_addr, encrypted_hash, desired_indices, payment, expected_encrypted_root=None)`
    connects to `(host, port)`.
  - It requests only the chunks the seeder holds and pays through your
    `PaymentHandler.pay_invoice`, which runs in a worker thread.
  - It returns a `DownloadResult` with `chunks` as `(index, data)` pairs and
    `total_paid_msat`.
  - When `expected_encrypted_root` is given, the seeder's root must match
    it.
- **`MultiSourceDownloader(ln_pubkey).probe_seeders(seeders, encrypted_hash)`**
  collects `(addr, Bitfield)` pairs and skips any seeder that fails.
- **Errors**: all session failures raise `DownloadError`.

### `conduit.dht`

- **`SeederRegistry`** is a thread-safe, in-memory record of content seeded
  locally and of remote `SeederInfo` entries.
  - `announce_local`, `withdraw_local` and `local_addr` manage local
    announcements.
  - `add_remote_seeder` adds a seeder, or refreshes the existing entry with
    the same node id.
  - `get_seeders` returns the known seeders for a content hash.
  - `prune_stale(max_age)` accepts seconds or a `timedelta`.
- **`discover_seeders(encrypted_hash, registry)`** returns the seeders the
  registry knows for that hash.

### `conduit.planner`

- **`IcsMode.select(complete_sources)`** picks the strategy:
  - `RELEASE` for 3 or fewer complete sources: rarest chunks first.
  - `SPREAD` for 4 to 10: chunks held by partial sources first, then rarest.
  - `SHARE` for more than 10: random order.
- **`count_complete_sources(seeder_bitfields, chunk_count)`** counts the
  sources that hold every chunk.
- **`plan_chunk_assignments_ics(chunk_count, seeder_bitfields, complete_sources)`**
  returns `(download_order, assignments, mode)`. Each chunk is assigned to
  the least-loaded source that holds it, or to `None` when no source holds
  it.
- **`plan_chunk_assignments`** is the same plan in `RELEASE` mode.

### `conduit.batching`

- `rarity_histogram` counts the chunks held by each number of sources.
- `group_chunks_by_seeder` lists each source's chunks in download order.
- `unassigned_chunks` lists the chunks that have no source.
- `reassemble(chunks, original_size=0)` joins chunks and trims any padding
  beyond `original_size`. It raises `LookupError` for a missing chunk.

### `conduit.catalog`

This module persists two lists as pretty-printed JSON in a storage
directory:

- the catalog, in `catalog.json`, whose entries are plain dicts;
- the trusted-manufacturer list, in `trusted_manufacturers.json`, whose
  entries are `TrustedManufacturer` objects.

The functions are `catalog_path`, `load_catalog` and `save_catalog`, and
`trust_list_path`, `load_trust_list` and `save_trust_list`. Loading returns
an empty list when the file is missing or unreadable. Saving creates the
directory when needed.

## Example

```python
from conduit.wire import Bitfield, Handshake, decode_message, encode_message

bf = Bitfield.from_bools([True, False, True], 256, bytes(32))
assert bf.has_chunk(0) and not bf.has_chunk(1)

data = encode_message(Handshake(bytes([0x42]) * 32, "02abcdef"))
assert decode_message(data).lightning_pubkey == "02abcdef"
```

## What this package does not do

- **No command-line program.** The package is a library only.
- **No Merkle tree.** It does not build Merkle trees or proofs. The buyer
  checks chunks with the `verify_proof` callable you supply.
- **No Lightning node.** It does not create or pay invoices. That is left to
  your `ChunkStore` and `PaymentHandler`.
- **No encryption.** It does not encrypt or decrypt chunks.
- **No network discovery.** `SeederRegistry` and `discover_seeders` do not
  query any network. They return only the seeders that were added to the
  registry.
- **No catalog maintenance.** `conduit.catalog` only loads and saves the two
  JSON files. It does not migrate or resynchronise catalog entries.