"""
Base class for contracts that accept calls through a trusted forwarder.

Calls are ``selector ++ abi.encode(args)``, as on an EVM chain. Methods are
exposed with ``@external`` and receive the explicit ``CallContext`` first.
"""

from functools import lru_cache
from typing import Any, Callable, Optional

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .errors import RecipientError
from .host import Contract, Host
from .models import CallContext


def function_selector(signature: str) -> bytes:
    """First 4 bytes of keccak of a function signature, e.g. ``"transfer(address,uint256)"``."""
    return bytes(Web3.keccak(text=signature)[:4])


def argument_types(signature: str) -> list[str]:
    """ABI types of a signature's arguments; tuple types are kept whole."""
    params = signature[signature.index("(") + 1 : signature.rindex(")")]
    types, depth, start = [], 0, 0
    for i, char in enumerate(params):
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif char == "," and depth == 0:
            types.append(params[start:i])
            start = i + 1
    if params:
        types.append(params[start:])
    return types


def encode_function_call(signature: str, *args: Any) -> bytes:
    """Calldata for calling ``signature`` with ``args``."""
    return function_selector(signature) + encode(argument_types(signature), list(args))


def external(signature: str, returns: tuple[str, ...] = ()) -> Callable:
    """Expose a recipient method under an ABI function signature."""

    def decorator(fn: Callable) -> Callable:
        fn.__external__ = (signature, tuple(returns))
        return fn

    return decorator


@lru_cache(maxsize=None)
def _external_methods(cls: type) -> dict[bytes, Callable]:
    methods = {}
    for name in dir(cls):
        method = getattr(cls, name, None)
        exposed = getattr(method, "__external__", None)
        if exposed:
            methods[function_selector(exposed[0])] = method
    return methods


class BaseRelayRecipient(Contract):
    """
    A contract that trusts one forwarder to report the original sender.
    """

    def __init__(self, host: Host, trusted_forwarder: str, address: Optional[str] = None):
        super().__init__(host, address)
        self.trusted_forwarder = trusted_forwarder

    def is_trusted_forwarder(self, forwarder: str) -> bool:
        return forwarder == self.trusted_forwarder

    def _msg_sender(self, ctx: CallContext) -> str:
        """The request signer for forwarded calls, the direct caller otherwise."""
        if self.is_trusted_forwarder(ctx.sender) and ctx.original_sender:
            return ctx.original_sender
        return ctx.sender

    def handle_call(self, ctx: CallContext, data: bytes) -> bytes:
        method = _external_methods(type(self)).get(bytes(data[:4]))
        if method is None:
            raise RecipientError("function not supported")

        signature, returns = method.__external__
        try:
            args = decode(argument_types(signature), bytes(data[4:]))
        except DecodingError as e:
            raise RecipientError(f"invalid call data: {e}") from e

        result = method(self, ctx, *args)
        if not returns:
            return b""
        if len(returns) == 1:
            result = (result,)
        return encode(list(returns), list(result))
