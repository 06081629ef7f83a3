"""Keyed BLAKE3 hashing used to route keys to shards."""

from __future__ import annotations

import itertools
import struct
from dataclasses import dataclass

from rollblock.errors import NoShardsConfigured

SHARD_HASH_VERSION = 1
"""Bump when the seed or hashing strategy changes, so layouts can be told apart."""

_SHARD_HASH_KEY_V1 = b"RollblockShardHashSeedV1-2024-10"

_MASK = 0xFFFFFFFF
_IV = (
    0x6A09E667,
    0xBB67AE85,
    0x3C6EF372,
    0xA54FF53A,
    0x510E527F,
    0x9B05688C,
    0x1F83D9AB,
    0x5BE0CD19,
)
_PERMUTATION = (2, 6, 3, 10, 7, 0, 4, 13, 1, 11, 12, 5, 9, 14, 15, 8)

_BLOCK_LEN = 64
_CHUNK_LEN = 1024
_OUT_LEN = 32

_CHUNK_START = 1 << 0
_CHUNK_END = 1 << 1
_PARENT = 1 << 2
_ROOT = 1 << 3
_KEYED_HASH = 1 << 4


def _rotr(x: int, n: int) -> int:
    return ((x >> n) | (x << (32 - n))) & _MASK


def _g(s: list[int], a: int, b: int, c: int, d: int, x: int, y: int) -> None:
    s[a] = (s[a] + s[b] + x) & _MASK
    s[d] = _rotr(s[d] ^ s[a], 16)
    s[c] = (s[c] + s[d]) & _MASK
    s[b] = _rotr(s[b] ^ s[c], 12)
    s[a] = (s[a] + s[b] + y) & _MASK
    s[d] = _rotr(s[d] ^ s[a], 8)
    s[c] = (s[c] + s[d]) & _MASK
    s[b] = _rotr(s[b] ^ s[c], 7)


def _round(s: list[int], m: list[int]) -> None:
    _g(s, 0, 4, 8, 12, m[0], m[1])
    _g(s, 1, 5, 9, 13, m[2], m[3])
    _g(s, 2, 6, 10, 14, m[4], m[5])
    _g(s, 3, 7, 11, 15, m[6], m[7])
    _g(s, 0, 5, 10, 15, m[8], m[9])
    _g(s, 1, 6, 11, 12, m[10], m[11])
    _g(s, 2, 7, 8, 13, m[12], m[13])
    _g(s, 3, 4, 9, 14, m[14], m[15])


def _compress(
    cv: tuple[int, ...], block: tuple[int, ...], counter: int, block_len: int, flags: int
) -> list[int]:
    state = [
        *cv,
        *_IV[:4],
        counter & _MASK,
        (counter >> 32) & _MASK,
        block_len,
        flags,
    ]
    message = list(block)
    for round_number in range(7):
        _round(state, message)
        if round_number < 6:
            message = [message[i] for i in _PERMUTATION]
    for i, word in enumerate(cv):
        state[i] ^= state[i + 8]
        state[i + 8] ^= word
    return state


def _words(block: bytes) -> tuple[int, ...]:
    return struct.unpack("<16I", block.ljust(_BLOCK_LEN, b"\x00"))


@dataclass(frozen=True)
class _Output:
    input_cv: tuple[int, ...]
    block: tuple[int, ...]
    counter: int
    block_len: int
    flags: int

    def chaining_value(self) -> tuple[int, ...]:
        return tuple(
            _compress(self.input_cv, self.block, self.counter, self.block_len, self.flags)[:8]
        )

    def root_bytes(self, length: int) -> bytes:
        out = bytearray()
        for counter in itertools.count():
            if len(out) >= length:
                break
            words = _compress(
                self.input_cv, self.block, counter, self.block_len, self.flags | _ROOT
            )
            out += struct.pack("<16I", *words)
        return bytes(out[:length])


def _chunk_output(
    key_words: tuple[int, ...], chunk: bytes, counter: int, flags: int
) -> _Output:
    blocks = [chunk[i : i + _BLOCK_LEN] for i in range(0, len(chunk), _BLOCK_LEN)] or [b""]
    cv = key_words
    for position, block in enumerate(blocks[:-1]):
        start = _CHUNK_START if position == 0 else 0
        cv = tuple(_compress(cv, _words(block), counter, _BLOCK_LEN, flags | start)[:8])
    last = blocks[-1]
    start = _CHUNK_START if len(blocks) == 1 else 0
    return _Output(cv, _words(last), counter, len(last), flags | start | _CHUNK_END)


def _parent_output(
    left: tuple[int, ...], right: tuple[int, ...], key_words: tuple[int, ...], flags: int
) -> _Output:
    return _Output(key_words, left + right, 0, _BLOCK_LEN, flags | _PARENT)


def _digest(data: bytes, key_words: tuple[int, ...], flags: int, length: int = _OUT_LEN) -> bytes:
    chunks = [data[i : i + _CHUNK_LEN] for i in range(0, len(data), _CHUNK_LEN)] or [b""]
    stack: list[tuple[int, ...]] = []
    for counter, chunk in enumerate(chunks[:-1]):
        cv = _chunk_output(key_words, chunk, counter, flags).chaining_value()
        total = counter + 1
        while total & 1 == 0:
            cv = _parent_output(stack.pop(), cv, key_words, flags).chaining_value()
            total >>= 1
        stack.append(cv)
    output = _chunk_output(key_words, chunks[-1], len(chunks) - 1, flags)
    while stack:
        output = _parent_output(stack.pop(), output.chaining_value(), key_words, flags)
    return output.root_bytes(length)


def keyed_hash(key: bytes, data: bytes) -> bytes:
    """Return the 32-byte BLAKE3 keyed hash of ``data`` under a 32-byte ``key``."""
    key = bytes(key)
    if len(key) != 32:
        raise ValueError(f"a BLAKE3 key must be 32 bytes long, got {len(key)}")
    return _digest(bytes(data), struct.unpack("<8I", key), _KEYED_HASH)


def shard_hash(key: bytes) -> int:
    """Return the stable 64-bit routing hash of a key."""
    digest = keyed_hash(_SHARD_HASH_KEY_V1, bytes(key))
    return int.from_bytes(digest[:8], "little")


def shard_index_for(key: bytes, shard_count: int) -> int:
    """Return the index of the shard that owns ``key``."""
    if shard_count <= 0:
        raise NoShardsConfigured()
    return shard_hash(key) % shard_count