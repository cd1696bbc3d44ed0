"""
Compact Block Serialization Module

Handles serialization and deserialization of compact blocks for the local
cache. Blocks are stored as canonical JSON documents with hex-encoded binary
fields; decoding validates field presence, types and sizes so that a payload
that does not describe a compact block is reported as a decode error rather
than surfacing later as a confusing scan failure.
"""

from __future__ import annotations

import json
from typing import Any

from shieldsync.core.compact_formats import (
    COMPACT_NOTE_SIZE,
    HASH_SIZE,
    CompactBlock,
    CompactOutput,
    CompactSpend,
    CompactTx,
)
from shieldsync.core.sync_exceptions import BlockDecodeError


class CompactBlockSerializer:
    """Handles compact block encoding and decoding."""

    @staticmethod
    def _hex_field(data: dict[str, Any], key: str, size: int | None = None, required: bool = True) -> bytes:
        if not isinstance(data, dict):
            raise BlockDecodeError(f"Expected an object holding '{key}'", details={"field": key})
        raw = data.get(key)
        if raw is None or raw == "":
            if required:
                raise BlockDecodeError(f"Missing field '{key}'", details={"field": key})
            return b""
        if not isinstance(raw, str):
            raise BlockDecodeError(
                f"Field '{key}' must be a hex string, got {type(raw).__name__}",
                details={"field": key},
            )
        try:
            value = bytes.fromhex(raw)
        except ValueError as exc:
            raise BlockDecodeError(f"Field '{key}' is not valid hex", details={"field": key}) from exc
        if size is not None and len(value) != size:
            raise BlockDecodeError(
                f"Field '{key}' must be {size} bytes, got {len(value)}",
                details={"field": key, "size": len(value)},
            )
        return value

    @staticmethod
    def _int_field(data: dict[str, Any], key: str) -> int:
        value = data.get(key)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise BlockDecodeError(
                f"Field '{key}' must be a non-negative integer",
                details={"field": key},
            )
        return value

    @classmethod
    def _output_from_dict(cls, data: dict[str, Any]) -> CompactOutput:
        return CompactOutput(
            cmu=cls._hex_field(data, "cmu", HASH_SIZE),
            epk=cls._hex_field(data, "epk", HASH_SIZE),
            ciphertext=cls._hex_field(data, "ciphertext", COMPACT_NOTE_SIZE),
        )

    @classmethod
    def _tx_from_dict(cls, data: dict[str, Any]) -> CompactTx:
        if not isinstance(data, dict):
            raise BlockDecodeError("Transaction entry must be an object")
        spends = data.get("spends", [])
        outputs = data.get("outputs", [])
        if not isinstance(spends, list) or not isinstance(outputs, list):
            raise BlockDecodeError("Transaction spends and outputs must be lists")
        return CompactTx(
            index=cls._int_field(data, "index"),
            txid=cls._hex_field(data, "hash", HASH_SIZE),
            spends=[CompactSpend(nf=cls._hex_field(s, "nf", HASH_SIZE)) for s in spends],
            outputs=[cls._output_from_dict(o) for o in outputs],
        )

    @classmethod
    def deserialize_block(cls, payload: bytes) -> CompactBlock:
        """
        Convert encoded bytes into a CompactBlock.

        Args:
            payload: Bytes previously produced by :meth:`serialize_block`

        Returns:
            The decoded block

        Raises:
            BlockDecodeError: If the payload is not a well-formed compact block
        """
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise BlockDecodeError(f"Payload is not a compact block document: {exc}") from exc
        if not isinstance(data, dict):
            raise BlockDecodeError("Compact block document must be an object")

        vtx = data.get("vtx", [])
        if not isinstance(vtx, list):
            raise BlockDecodeError("Field 'vtx' must be a list", details={"field": "vtx"})

        block_time = data.get("time")
        if block_time is not None and (isinstance(block_time, bool) or not isinstance(block_time, int)):
            raise BlockDecodeError("Field 'time' must be an integer", details={"field": "time"})

        header = cls._hex_field(data, "header", required=False)
        # Hashes may be omitted when the full header is embedded
        hashes_required = not header
        block = CompactBlock(
            height=cls._int_field(data, "height"),
            block_hash=cls._hex_field(data, "hash", HASH_SIZE, required=hashes_required),
            parent_hash=cls._hex_field(data, "prevHash", HASH_SIZE, required=hashes_required),
            vtx=[cls._tx_from_dict(tx) for tx in vtx],
            time=block_time,
            header=header,
        )
        return block

    @staticmethod
    def serialize_block(block: CompactBlock) -> bytes:
        """Encode a CompactBlock as canonical JSON bytes."""
        data: dict[str, Any] = {
            "height": block.height,
            "hash": block.block_hash.hex(),
            "prevHash": block.parent_hash.hex(),
            "time": block.time,
            "vtx": [
                {
                    "index": tx.index,
                    "hash": tx.txid.hex(),
                    "spends": [{"nf": spend.nf.hex()} for spend in tx.spends],
                    "outputs": [
                        {
                            "cmu": out.cmu.hex(),
                            "epk": out.epk.hex(),
                            "ciphertext": out.ciphertext.hex(),
                        }
                        for out in tx.outputs
                    ],
                }
                for tx in block.vtx
            ],
        }
        if block.header:
            data["header"] = block.header.hex()
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def encode_block(block: CompactBlock) -> bytes:
    return CompactBlockSerializer.serialize_block(block)


def decode_block(payload: bytes) -> CompactBlock:
    return CompactBlockSerializer.deserialize_block(payload)
