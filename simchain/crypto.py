"""
Hashing and address derivation for the simulated chain.
"""
import rlp
from Crypto.Hash import keccak


def generate_hash(data: bytes) -> bytes:
    """Generates a Keccak-256 hash."""
    return keccak.new(digest_bits=256, data=data).digest()


def address_from_label(label: str) -> bytes:
    """Derives a deterministic wallet address from a human-readable label."""
    return generate_hash(label.encode("utf-8"))[12:]


def contract_address(sender: bytes, nonce: int) -> bytes:
    """Address of a contract created by `sender` at `nonce`."""
    return generate_hash(rlp.encode([sender, nonce]))[12:]


def event_topic(signature: str) -> bytes:
    """Topic hash of an event signature such as "Transfer(address,address,uint256)"."""
    return generate_hash(signature.encode("utf-8"))


def transaction_hash(sender: bytes, to, value: int, data: bytes, gas_limit: int,
                     gas_price: int, nonce: int, seq: int) -> bytes:
    """
    Hash identifying a submitted transaction.

    The queue sequence number is part of the preimage, so two otherwise
    identical requests (e.g. both with an auto-assigned nonce) never collide.
    """
    return generate_hash(rlp.encode([
        sender, to or b"", value, data, gas_limit, gas_price, nonce, seq,
    ]))
