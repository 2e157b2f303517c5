"""OfferFactory access-control helpers.

The factory is an OpenZeppelin AccessControl contract that also deploys
tender offers. This module covers:

- role identifiers (``DEFAULT_ADMIN_ROLE`` and ``keccak256("<NAME>_ROLE")``)
- calldata for ``hasRole``, ``grantRole``, ``revokeRole`` and ``createOffer``
- decoding of the ``OfferCreated(address indexed, address indexed)`` event
- RoleReader, the read-only ``hasRole`` query used for preconditions
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from eth_abi import decode, encode
from web3 import Web3

from .exceptions import MalformedDataError

logger = logging.getLogger(__name__)

# bytes32(0), as in OpenZeppelin AccessControl
DEFAULT_ADMIN_ROLE = "0x" + "00" * 32

KNOWN_ROLES = ("admin", "tender", "entrepreneur", "expert")

# Function selectors
_HAS_ROLE_SELECTOR = Web3.keccak(text="hasRole(bytes32,address)")[:4]
_GRANT_ROLE_SELECTOR = Web3.keccak(text="grantRole(bytes32,address)")[:4]
_REVOKE_ROLE_SELECTOR = Web3.keccak(text="revokeRole(bytes32,address)")[:4]
_CREATE_OFFER_SELECTOR = Web3.keccak(text="createOffer()")[:4]

# Event topics
OFFER_CREATED_TOPIC = Web3.to_hex(Web3.keccak(text="OfferCreated(address,address)"))


def role_hash(role_name: str) -> str:
    """On-chain identifier of a role name (case-insensitive)."""
    name = role_name.strip()
    if not name:
        raise ValueError("Role name must not be empty")
    if name.lower() == "admin":
        return DEFAULT_ADMIN_ROLE
    return Web3.to_hex(Web3.keccak(text=f"{name.upper()}_ROLE"))


def is_valid_address(address: Optional[str]) -> bool:
    return bool(address) and Web3.is_address(address)


def _role_call(selector: bytes, role_name: str, account: str) -> str:
    if not is_valid_address(account):
        raise ValueError(f"Invalid account address: {account!r}")
    params = encode(
        ["bytes32", "address"],
        [bytes.fromhex(role_hash(role_name)[2:]), Web3.to_checksum_address(account)],
    )
    return "0x" + bytes(selector + params).hex()


def encode_has_role(role_name: str, account: str) -> str:
    """Encode ``hasRole(bytes32,address)`` calldata for eth_call."""
    return _role_call(_HAS_ROLE_SELECTOR, role_name, account)


def encode_grant_role(role_name: str, account: str) -> str:
    return _role_call(_GRANT_ROLE_SELECTOR, role_name, account)


def encode_revoke_role(role_name: str, account: str) -> str:
    return _role_call(_REVOKE_ROLE_SELECTOR, role_name, account)


def encode_create_offer() -> str:
    return "0x" + bytes(_CREATE_OFFER_SELECTOR).hex()


def decode_bool(result: Optional[str]) -> bool:
    """Decode a single ABI ``bool`` return value."""
    if not result or result == "0x":
        raise MalformedDataError("Empty eth_call result")
    try:
        (value,) = decode(["bool"], bytes.fromhex(result[2:] if result.startswith("0x") else result))
    except Exception as e:  # eth_abi raises several decoding error types
        raise MalformedDataError(f"Cannot decode bool from {result!r}: {e}") from e
    return bool(value)


def _topic_address(topic: Any) -> str:
    text = topic if isinstance(topic, str) else Web3.to_hex(topic)
    return Web3.to_checksum_address("0x" + text[-40:])


@dataclass(frozen=True)
class OfferCreated:
    """Decoded ``OfferCreated`` event."""
    offer_address: str
    tender: str


def find_offer_created(logs: Iterable[Dict[str, Any]]) -> Optional[OfferCreated]:
    """Return the first OfferCreated event in receipt logs, if any."""
    for log in logs or []:
        topics = log.get("topics") or []
        if len(topics) < 3:
            continue
        topic0 = topics[0] if isinstance(topics[0], str) else Web3.to_hex(topics[0])
        if topic0.lower() != OFFER_CREATED_TOPIC.lower():
            continue
        return OfferCreated(
            offer_address=_topic_address(topics[1]),
            tender=_topic_address(topics[2]),
        )
    return None


class RoleReader:
    """
    Read-only role queries against the OfferFactory.

    Used for coordinator preconditions: the caller's role is checked on
    chain, never assumed from the off-chain record.
    """

    def __init__(self, client: Any, factory_address: str):
        if not is_valid_address(factory_address):
            raise ValueError(f"Invalid factory address: {factory_address!r}")
        self._client = client
        self._factory_address = Web3.to_checksum_address(factory_address)

    @property
    def factory_address(self) -> str:
        return self._factory_address

    async def has_role(self, role_name: str, account: str) -> bool:
        result = await self._client.eth_call({
            "to": self._factory_address,
            "data": encode_has_role(role_name, account),
        })
        granted = decode_bool(result)
        logger.debug(f"hasRole({role_name}, {account}) = {granted}")
        return granted
