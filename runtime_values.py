"""
Runtime Values

A value produced by compiled code is either an immediate (a small integer
stored in the word itself, used for constant constructors and machine
integers) or a pointer to a block (a header word followed by fields).
No type information survives compilation; only the decoder, which knows
the static type, gives meaning to these shapes.

Word layout of the runtime:
  - odd words are immediates, the integer is the word shifted right by one
  - even words point at the first field of a block; the header sits in the
    word before it with the tag in bits 0-7 and the field count from bit 10
  - floats are boxed in a block tagged DOUBLE_TAG whose single word holds
    the IEEE-754 bit pattern; the reader returns that pattern as an
    Immediate and the decoder reinterprets it under a float type
"""

import ctypes
import struct
from dataclasses import dataclass
from typing import Dict, List, Set, Tuple, Union

from eval_errors import EvalError, IllFormedValueError

WORD_SIZE = 8
WORD_MASK = (1 << 64) - 1
HEADER_TAG_MASK = 0xFF
HEADER_SIZE_SHIFT = 10
# Blocks tagged at or above NO_SCAN_TAG hold raw data instead of values
NO_SCAN_TAG = 251
DOUBLE_TAG = 253


@dataclass(frozen=True)
class Immediate:
    value: int


@dataclass(frozen=True)
class Block:
    tag: int
    fields: Tuple['RuntimeValue', ...] = ()


RuntimeValue = Union[Immediate, Block]


def float_to_bits(x: float) -> int:
    return struct.unpack("<Q", struct.pack("<d", x))[0]


def bits_to_float(bits: int) -> float:
    return struct.unpack("<d", struct.pack("<Q", bits & WORD_MASK))[0]


def _untag(word: int) -> Immediate:
    if word & (1 << 63):
        word -= 1 << 64
    return Immediate(word >> 1)


def read_value(word: int) -> RuntimeValue:
    """Read the value rooted at a machine word returned by native code.

    Shared sub-blocks are read once. The walk uses an explicit stack so
    deep values (long lists, large unary numbers) do not exhaust the
    Python stack.
    """
    if ctypes.sizeof(ctypes.c_void_p) != WORD_SIZE:
        raise EvalError("Native values can only be read on 64-bit hosts")
    word &= WORD_MASK
    if word & 1:
        return _untag(word)

    memo: Dict[int, RuntimeValue] = {}
    expanded: Set[int] = set()
    stack: List[int] = [word]
    while stack:
        addr = stack[-1]
        if addr in memo:
            stack.pop()
            continue
        if addr == 0:
            raise IllFormedValueError(None, None, True, "null pointer")
        header = ctypes.c_uint64.from_address(addr - WORD_SIZE).value
        tag = header & HEADER_TAG_MASK
        size = header >> HEADER_SIZE_SHIFT
        if tag == DOUBLE_TAG:
            memo[addr] = Immediate(ctypes.c_uint64.from_address(addr).value)
            stack.pop()
            continue
        if tag >= NO_SCAN_TAG:
            raise IllFormedValueError(None, tag, True, f"unsupported raw block at {addr:#x}")
        words = list((ctypes.c_uint64 * size).from_address(addr))
        pending = [w for w in words if not w & 1 and w not in memo]
        if pending:
            if addr in expanded:
                raise IllFormedValueError(None, tag, True, f"cyclic value at {addr:#x}")
            expanded.add(addr)
            stack.extend(pending)
            continue
        memo[addr] = Block(tag, tuple(_untag(w) if w & 1 else memo[w] for w in words))
        stack.pop()
    return memo[word]
