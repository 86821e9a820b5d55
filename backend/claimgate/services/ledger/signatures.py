"""
Claim Authorization Signatures

A claim authorization is an EIP-191 personal signature over

    keccak256(abi.encodePacked(address claimant, uint256 tokenId,
                               string observation, uint256 nonce))

The claimant's current nonce is part of the message, so a signature is
valid for exactly one successful claim: once the nonce advances, the same
signature recovers to a different key and is rejected.
"""
from typing import Optional

from eth_abi.packed import encode_packed
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.exceptions import BadSignature, ValidationError as KeyValidationError
from eth_utils import decode_hex, is_address, keccak, to_checksum_address

from ...models.ledger import ZERO_ADDRESS

SIGNATURE_LENGTH = 65


def normalize_address(address: str) -> str:
    """Checksum an address; raises ValueError if it is not one."""
    if not isinstance(address, str) or not is_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    return to_checksum_address(address)


def is_valid_address(address: Optional[str]) -> bool:
    return isinstance(address, str) and is_address(address)


def is_zero_address(address: Optional[str]) -> bool:
    return address is None or address.lower() == ZERO_ADDRESS


def claim_message_hash(claimant: str, token_id: int, observation: str, nonce: int) -> bytes:
    """Deterministic 32-byte digest of the claim tuple."""
    packed = encode_packed(
        ["address", "uint256", "string", "uint256"],
        [to_checksum_address(claimant), token_id, observation, nonce],
    )
    return keccak(packed)


def sign_claim(private_key: str, claimant: str, token_id: int, observation: str, nonce: int) -> str:
    """Sign a claim authorization with the authority key. Returns 0x-hex."""
    digest = claim_message_hash(claimant, token_id, observation, nonce)
    signed = Account.sign_message(encode_defunct(primitive=digest), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def _signature_bytes(signature) -> Optional[bytes]:
    """65 raw r||s||v bytes, or None for anything else."""
    if isinstance(signature, (bytes, bytearray)):
        raw = bytes(signature)
    elif isinstance(signature, str):
        try:
            raw = decode_hex(signature)
        except ValueError:
            return None
    else:
        return None
    return raw if len(raw) == SIGNATURE_LENGTH else None


def recover_claim_signer(
    claimant: str,
    token_id: int,
    observation: str,
    nonce: int,
    signature: str,
) -> Optional[str]:
    """Recover the signing address, or None if the signature is malformed."""
    raw = _signature_bytes(signature)
    if raw is None:
        return None
    digest = claim_message_hash(claimant, token_id, observation, nonce)
    try:
        return Account.recover_message(encode_defunct(primitive=digest), signature=raw)
    except (ValueError, TypeError, IndexError, BadSignature, KeyValidationError):
        return None


def derive_address(label: str) -> str:
    """Stable pseudo-address for a named engine account (pool, collection)."""
    return to_checksum_address(keccak(text=label)[-20:])
