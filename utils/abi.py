"""ABI call-data helpers"""

from typing import Any, Sequence

from eth_abi import encode
from eth_utils import keccak, to_checksum_address


def function_selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def encode_call(name: str, arg_types: Sequence[str], args: Sequence[Any]) -> str:
    """
    Encode a contract call as 0x-prefixed hex call data.

    Args:
        name: Function name, e.g. 'commit'
        arg_types: Canonical ABI types, e.g. ['bytes32']
        args: Values matching arg_types
    """
    signature = f"{name}({','.join(arg_types)})"
    return '0x' + (function_selector(signature) + encode(list(arg_types), list(args))).hex()


def checksum(address: str) -> str:
    return to_checksum_address(address)


def hex_to_bytes32(value: str) -> bytes:
    raw = bytes.fromhex(value[2:] if value.startswith('0x') else value)
    if len(raw) != 32:
        raise ValueError(f"Expected 32 bytes, got {len(raw)}")
    return raw
