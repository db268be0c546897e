"""
Forwarder - signature verification and replay guard for signed requests.
"""

import re
from typing import Optional

import structlog
from web3 import Web3

from .eip712 import (
    FORWARD_REQUEST_TYPE,
    GENERIC_PARAMS,
    domain_value,
    encode_request,
    keccak,
    recover_signer,
    type_hash,
)
from .errors import ForwarderError
from .host import Contract, Host
from .models import CallContext, ForwardRequest, ForwardResult

logger = structlog.get_logger()

_TYPE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _account(address: str) -> str:
    try:
        return Web3.to_checksum_address(address)
    except ValueError:
        raise ForwarderError("FWD: invalid address") from None


def _balanced(text: str) -> bool:
    depth = 0
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


class Forwarder(Contract):
    """
    Verifies signed requests and executes each ``(from, nonce)`` at most once.

    Requests are EIP-712 typed data. A request type is ``ForwardRequest`` or
    any registered extension of it (such as ``RelayRequest``) whose extra
    fields are passed, already encoded, as suffix data.
    """

    def __init__(self, host: Host, address: Optional[str] = None):
        super().__init__(host, address)
        self.nonces: dict[str, int] = {}  # checksummed signer -> next nonce
        self.domains: set[bytes] = set()
        self.type_hashes: set[bytes] = set()
        self._register_type(FORWARD_REQUEST_TYPE)

    def get_nonce(self, from_address: str) -> int:
        return self.nonces.get(_account(from_address), 0)

    def register_domain_separator(self, sender: str, name: str, version: str) -> bytes:
        """
        Register the domain ``(name, version, chain id, this forwarder)``.

        Returns the domain separator. Registering the same domain twice
        leaves the registry unchanged.
        """
        value = domain_value(name, version, self.host.chain_id, self.address)
        separator = keccak(value)
        self.domains.add(separator)
        self.emit("DomainRegistered", domain_separator=separator, domain_value=value)

        logger.info(
            "domain_registered",
            forwarder=self.address,
            sender=sender,
            name=name,
            version=version,
            domain_separator="0x" + separator.hex(),
        )
        return separator

    def register_request_type(self, sender: str, type_name: str, type_suffix: str) -> bytes:
        """
        Register ``type_name(GENERIC_PARAMS,type_suffix`` as a request type.

        ``type_suffix`` holds the extra fields, the closing parenthesis and
        any referenced struct types, e.g.
        ``"RelayData relayData)RelayData(...)"``.

        Raises:
            ForwarderError: malformed type name or suffix
        """
        if not _TYPE_NAME.match(type_name):
            raise ForwarderError("FWD: invalid typename")
        if not type_suffix or not type_suffix.endswith(")") or not _balanced("(" + type_suffix):
            raise ForwarderError("FWD: invalid type suffix")

        registered = self._register_type(f"{type_name}({GENERIC_PARAMS},{type_suffix}")
        logger.info("request_type_registered", forwarder=self.address, sender=sender, type_name=type_name)
        return registered

    def _register_type(self, type_str: str) -> bytes:
        request_type_hash = type_hash(type_str)
        self.type_hashes.add(request_type_hash)
        self.emit("RequestTypeRegistered", type_hash=request_type_hash, type_str=type_str)
        return request_type_hash

    def verify(
        self,
        request: ForwardRequest,
        domain_separator: bytes,
        request_type_hash: bytes,
        suffix_data: bytes,
        signature: bytes,
    ) -> None:
        """
        Check a signed request without changing any state.

        Raises:
            ForwarderError: unknown domain or type, stale nonce, expired
                request, or a signature not made by ``request.from_address``
        """
        if domain_separator not in self.domains:
            raise ForwarderError("FWD: unregistered domain sep.")
        if request_type_hash not in self.type_hashes:
            raise ForwarderError("FWD: unregistered typehash")
        if self.get_nonce(request.from_address) != request.nonce:
            raise ForwarderError("FWD: nonce mismatch")
        if request.valid_until != 0 and self.host.block_number > request.valid_until:
            raise ForwarderError("FWD: request expired")

        encoded = encode_request(request, request_type_hash, suffix_data)
        signer = recover_signer(domain_separator, encoded, signature)
        if signer != _account(request.from_address):
            raise ForwarderError("FWD: signature mismatch")

    def execute(
        self,
        sender: str,
        request: ForwardRequest,
        domain_separator: bytes,
        request_type_hash: bytes,
        suffix_data: bytes,
        signature: bytes,
        value: int = 0,
    ) -> ForwardResult:
        """
        Verify a request, consume its nonce and run the forwarded call.

        ``value`` is native coin sent along by ``sender``; the forwarded call
        spends ``request.value`` of it and the rest goes back to the signer.

        Returns:
            ForwardResult. ``forwarder_success`` is False only when the
            request was not executed; a reverted target is reported through
            ``call_success`` and its nonce stays consumed.
        """
        metering = self.host.metering
        self.host.use_gas(metering.signature_verification_gas)

        try:
            self.verify(request, domain_separator, request_type_hash, suffix_data, signature)
        except ForwarderError as e:
            logger.warning(
                "forward_request_rejected",
                from_address=request.from_address,
                nonce=request.nonce,
                reason=e.reason,
            )
            return ForwardResult(forwarder_success=False, call_success=False, return_data=e.data)

        required_gas = request.gas + (metering.value_transfer_gas if request.value else 0)
        if metering.forwardable(self.host.gas_left()) < required_gas:
            logger.warning(
                "forward_request_insufficient_gas",
                from_address=request.from_address,
                gas=request.gas,
                gas_left=self.host.gas_left(),
            )
            return ForwardResult(
                forwarder_success=False, call_success=False, return_data=b"FWD: insufficient gas"
            )

        from_address = _account(request.from_address)
        if value:
            self.host.transfer(sender, self.address, value)
        self.nonces[from_address] = request.nonce + 1

        call = self.host.call(request.gas, self._dispatch, request)

        if value and self.host.balance_of(self.address):
            self.host.transfer(self.address, from_address, self.host.balance_of(self.address))

        logger.info(
            "forward_request_executed",
            from_address=request.from_address,
            to=request.to,
            nonce=request.nonce,
            call_success=call.success,
        )

        if call.success:
            return ForwardResult(forwarder_success=True, call_success=True, return_data=call.value)
        return ForwardResult(forwarder_success=True, call_success=False, return_data=call.revert_data)

    def _dispatch(self, request: ForwardRequest) -> bytes:
        if request.value:
            self.host.use_gas(self.host.metering.value_transfer_gas)
            self.host.transfer(self.address, request.to, request.value)

        target = self.host.contract(request.to)
        if target is None:
            return b""

        ctx = CallContext(
            sender=self.address, value=request.value, original_sender=_account(request.from_address)
        )
        return target.handle_call(ctx, request.data) or b""
