import re

from eth_abi import encode as abi_encode
from web3 import Web3

from .schemas import TaskArg

_SIGNATURE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\(([^()]*)\)$")


def parse_signature(fn: str) -> tuple[str, list[str]]:
    """Split ``name(t1,t2)`` into the name and its ABI type list."""
    match = _SIGNATURE.match(fn.replace(" ", ""))
    if not match:
        raise ValueError(f"malformed function signature: {fn!r}")
    name, params = match.groups()
    types = [t for t in params.split(",") if t] if params else []
    return name, types


def selector(fn: str) -> bytes:
    name, types = parse_signature(fn)
    return Web3.keccak(text=f"{name}({','.join(types)})")[:4]


def _coerce(value, abi_type: str):
    if abi_type == "address":
        return Web3.to_checksum_address(value)
    if abi_type.startswith("bytes"):
        if isinstance(value, str):
            hex_value = value[2:] if value.startswith("0x") else value
            try:
                raw = bytes.fromhex(hex_value)
            except ValueError as exc:
                raise ValueError(f"invalid hex for {abi_type}: {value!r}") from exc
        else:
            raw = bytes(value)
        size = abi_type[len("bytes"):]
        if size and len(raw) != int(size):
            raise ValueError(f"{abi_type} expects {size} bytes, got {len(raw)}")
        return raw
    if abi_type.startswith(("uint", "int")):
        if isinstance(value, bool):
            raise ValueError(f"{abi_type} does not accept booleans")
        return int(value, 0) if isinstance(value, str) else int(value)
    if abi_type == "bool":
        return bool(value)
    return value


def encode_args(fn: str, args) -> bytes:
    """ABI-encode ``args`` (``(value, type)`` pairs) for signature ``fn``."""
    _, types = parse_signature(fn)
    typed = [TaskArg.of(a) for a in args]
    if len(typed) != len(types):
        raise ValueError(f"{fn} takes {len(types)} arguments, got {len(typed)}")
    for i, (arg, expected) in enumerate(zip(typed, types)):
        if arg.abi_type != expected:
            raise ValueError(f"argument {i} of {fn} is {expected}, tagged {arg.abi_type}")
    values = [_coerce(a.value, a.abi_type) for a in typed]
    return abi_encode(types, values)
