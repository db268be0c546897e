"""
EIP-712 typed data for forwarded and relayed requests.

The Forwarder rebuilds the digest from registered domain and type hashes
(``encode_request`` + ``typed_data_digest``); clients build the same digest
from a full typed-data document (``forward_request_typed_data`` /
``relay_request_typed_data``) and sign it with eth-account. Both sides must
agree byte for byte.
"""

from typing import Any

import structlog
from eth_abi import encode
from eth_account import Account
from eth_account.messages import SignableMessage
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as KeyValidationError
from web3 import Web3

from .errors import ForwarderError
from .models import ForwardRequest, RelayData, RelayRequest

logger = structlog.get_logger()

GENERIC_PARAMS = (
    "address from,address to,uint256 value,uint256 gas,uint256 nonce,bytes data,uint256 validUntil"
)
EIP712_DOMAIN_TYPE = (
    "EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
)
FORWARD_REQUEST_TYPE = f"ForwardRequest({GENERIC_PARAMS})"

RELAY_DATA_TYPE = (
    "RelayData(uint256 gasPrice,uint256 pctRelayFee,uint256 baseRelayFee,address relayWorker,"
    "address paymaster,address forwarder,bytes paymasterData,uint256 clientId)"
)
RELAY_REQUEST_NAME = "RelayRequest"
RELAY_REQUEST_SUFFIX = f"RelayData relayData){RELAY_DATA_TYPE}"
RELAY_REQUEST_TYPE = f"{RELAY_REQUEST_NAME}({GENERIC_PARAMS},{RELAY_REQUEST_SUFFIX}"

DEFAULT_DOMAIN_NAME = "GSN Relayed Transaction"
DEFAULT_DOMAIN_VERSION = "2"

EIP712_DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

FORWARD_REQUEST_FIELDS = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "gas", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "data", "type": "bytes"},
    {"name": "validUntil", "type": "uint256"},
]

RELAY_DATA_FIELDS = [
    {"name": "gasPrice", "type": "uint256"},
    {"name": "pctRelayFee", "type": "uint256"},
    {"name": "baseRelayFee", "type": "uint256"},
    {"name": "relayWorker", "type": "address"},
    {"name": "paymaster", "type": "address"},
    {"name": "forwarder", "type": "address"},
    {"name": "paymasterData", "type": "bytes"},
    {"name": "clientId", "type": "uint256"},
]


def keccak(data: bytes) -> bytes:
    return bytes(Web3.keccak(data))


def type_hash(type_str: str) -> bytes:
    """Hash of an EIP-712 type string."""
    return keccak(type_str.encode("utf-8"))


EIP712_DOMAIN_TYPEHASH = type_hash(EIP712_DOMAIN_TYPE)
FORWARD_REQUEST_TYPEHASH = type_hash(FORWARD_REQUEST_TYPE)
RELAY_DATA_TYPEHASH = type_hash(RELAY_DATA_TYPE)
RELAY_REQUEST_TYPEHASH = type_hash(RELAY_REQUEST_TYPE)


def domain_value(name: str, version: str, chain_id: int, verifying_contract: str) -> bytes:
    """ABI-encoded domain struct; its hash is the domain separator."""
    return encode(
        ["bytes32", "bytes32", "bytes32", "uint256", "address"],
        [
            EIP712_DOMAIN_TYPEHASH,
            keccak(name.encode("utf-8")),
            keccak(version.encode("utf-8")),
            chain_id,
            verifying_contract,
        ],
    )


def domain_separator(name: str, version: str, chain_id: int, verifying_contract: str) -> bytes:
    return keccak(domain_value(name, version, chain_id, verifying_contract))


def encode_request(request: ForwardRequest, request_type_hash: bytes, suffix_data: bytes = b"") -> bytes:
    """
    Struct encoding of a request under ``request_type_hash``.

    Extended request types append their extra fields, already encoded, as
    ``suffix_data``.
    """
    return (
        request_type_hash
        + encode(
            ["address", "address", "uint256", "uint256", "uint256", "bytes32", "uint256"],
            [
                request.from_address,
                request.to,
                request.value,
                request.gas,
                request.nonce,
                keccak(request.data),
                request.valid_until,
            ],
        )
        + suffix_data
    )


def hash_relay_data(relay_data: RelayData) -> bytes:
    """EIP-712 struct hash of RelayData."""
    return keccak(
        encode(
            [
                "bytes32",
                "uint256",
                "uint256",
                "uint256",
                "address",
                "address",
                "address",
                "bytes32",
                "uint256",
            ],
            [
                RELAY_DATA_TYPEHASH,
                relay_data.gas_price,
                relay_data.pct_relay_fee,
                relay_data.base_relay_fee,
                relay_data.relay_worker,
                relay_data.paymaster,
                relay_data.forwarder,
                keccak(relay_data.paymaster_data),
                relay_data.client_id,
            ],
        )
    )


def relay_request_suffix(relay_data: RelayData) -> bytes:
    """Suffix data of a RelayRequest: the nested RelayData hash."""
    return encode(["bytes32"], [hash_relay_data(relay_data)])


def typed_data_digest(separator: bytes, encoded_request: bytes) -> bytes:
    """The digest a signer signs: keccak(0x1901 ++ domain ++ structHash)."""
    return keccak(b"\x19\x01" + separator + keccak(encoded_request))


def recover_signer(separator: bytes, encoded_request: bytes, signature: bytes) -> str:
    """
    Recover the address that signed a request.

    Raises:
        ForwarderError: signature is malformed or unrecoverable
    """
    message = SignableMessage(version=b"\x01", header=separator, body=keccak(encoded_request))
    try:
        return Account.recover_message(message, signature=signature)
    except (ValueError, BadSignature, KeyValidationError) as e:
        logger.debug("signature_recovery_failed", error=str(e))
        raise ForwarderError("FWD: signature mismatch") from e


def create_eip712_domain(
    chain_id: int,
    verifying_contract: str,
    name: str = DEFAULT_DOMAIN_NAME,
    version: str = DEFAULT_DOMAIN_VERSION,
) -> dict[str, Any]:
    """Create EIP-712 domain data."""
    return {
        "name": name,
        "version": version,
        "chainId": chain_id,
        "verifyingContract": verifying_contract,
    }


def _request_message(request: ForwardRequest) -> dict[str, Any]:
    return {
        "from": request.from_address,
        "to": request.to,
        "value": request.value,
        "gas": request.gas,
        "nonce": request.nonce,
        "data": request.data,
        "validUntil": request.valid_until,
    }


def forward_request_typed_data(
    request: ForwardRequest,
    chain_id: int,
    verifying_contract: str,
    name: str = DEFAULT_DOMAIN_NAME,
    version: str = DEFAULT_DOMAIN_VERSION,
) -> dict[str, Any]:
    """Full typed-data document for a plain ForwardRequest."""
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_FIELDS,
            "ForwardRequest": FORWARD_REQUEST_FIELDS,
        },
        "primaryType": "ForwardRequest",
        "domain": create_eip712_domain(chain_id, verifying_contract, name, version),
        "message": _request_message(request),
    }


def relay_request_typed_data(
    relay_request: RelayRequest,
    chain_id: int,
    verifying_contract: str,
    name: str = DEFAULT_DOMAIN_NAME,
    version: str = DEFAULT_DOMAIN_VERSION,
) -> dict[str, Any]:
    """Full typed-data document for a RelayRequest (request plus nested RelayData)."""
    relay_data = relay_request.relay_data
    message = _request_message(relay_request.request)
    message["relayData"] = {
        "gasPrice": relay_data.gas_price,
        "pctRelayFee": relay_data.pct_relay_fee,
        "baseRelayFee": relay_data.base_relay_fee,
        "relayWorker": relay_data.relay_worker,
        "paymaster": relay_data.paymaster,
        "forwarder": relay_data.forwarder,
        "paymasterData": relay_data.paymaster_data,
        "clientId": relay_data.client_id,
    }
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_FIELDS,
            RELAY_REQUEST_NAME: FORWARD_REQUEST_FIELDS + [{"name": "relayData", "type": "RelayData"}],
            "RelayData": RELAY_DATA_FIELDS,
        },
        "primaryType": RELAY_REQUEST_NAME,
        "domain": create_eip712_domain(chain_id, verifying_contract, name, version),
        "message": message,
    }


def sign_typed_data(full_message: dict[str, Any], private_key: str) -> bytes:
    """
    Sign a typed-data document.

    Returns:
        65-byte signature (r || s || v)
    """
    account = Account.from_key(private_key)
    signed = account.sign_typed_data(full_message=full_message)

    logger.debug(
        "signed_typed_data",
        primary_type=full_message["primaryType"],
        signer=account.address,
    )

    return bytes(signed.signature)


def sign_forward_request(
    request: ForwardRequest,
    private_key: str,
    chain_id: int,
    verifying_contract: str,
    name: str = DEFAULT_DOMAIN_NAME,
    version: str = DEFAULT_DOMAIN_VERSION,
) -> bytes:
    """Sign a ForwardRequest for direct Forwarder execution."""
    return sign_typed_data(
        forward_request_typed_data(request, chain_id, verifying_contract, name, version),
        private_key,
    )


def sign_relay_request(
    relay_request: RelayRequest,
    private_key: str,
    chain_id: int,
    verifying_contract: str,
    name: str = DEFAULT_DOMAIN_NAME,
    version: str = DEFAULT_DOMAIN_VERSION,
) -> bytes:
    """Sign a RelayRequest for submission through a RelayHub."""
    full_message = relay_request_typed_data(relay_request, chain_id, verifying_contract, name, version)
    signature = sign_typed_data(full_message, private_key)

    logger.info(
        "signed_relay_request",
        sender=relay_request.request.from_address,
        to=relay_request.request.to,
        nonce=relay_request.request.nonce,
        paymaster=relay_request.relay_data.paymaster,
    )

    return signature
