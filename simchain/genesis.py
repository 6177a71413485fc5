"""
Genesis allocation loading.

The allocation is a JSON file in the geth style:

    {
      "alloc": {
        "0x1111...": {"balance": "0x3635c9adc5dea00000", "nonce": 0,
                      "code": "0x0061736d...", "storage": {"0x00..": "0x01.."}}
      }
    }

Balances and nonces may be decimal or hex; storage keys and values are
left-padded to 32 bytes.
"""
import json
import logging

from .core import Account
from .errors import ValidationError
from .utils.encoding import pad32, parse_address, parse_data, parse_quantity

logger = logging.getLogger(__name__)


def parse_alloc(alloc: dict) -> dict:
    """Converts a JSON allocation mapping into {address: Account}."""
    accounts = {}
    for address_hex, info in alloc.items():
        try:
            address = parse_address(address_hex if address_hex.startswith("0x") else "0x" + address_hex)
            storage = {}
            for key, value in info.get("storage", {}).items():
                word = pad32(parse_data(value))
                if any(word):
                    storage[pad32(parse_data(key))] = word
            accounts[address] = Account(
                balance=parse_quantity(info.get("balance", 0)),
                nonce=parse_quantity(info.get("nonce", 0)),
                code=parse_data(info.get("code", "0x")),
                storage=storage,
            )
        except (ValueError, AttributeError) as e:
            raise ValidationError(f"invalid genesis entry for {address_hex}: {e}") from e
    return accounts


def load_genesis(path: str) -> dict:
    """Reads a genesis allocation file."""
    logger.info(f"Loading genesis allocation from: {path}")
    with open(path, 'r') as f:
        config = json.load(f)
    accounts = parse_alloc(config.get('alloc', {}))
    logger.info(f"Processed {len(accounts)} genesis accounts.")
    return accounts


def write_genesis(path: str, accounts: dict):
    """Writes {address: Account} as a genesis allocation file."""
    alloc = {}
    for address, account in sorted(accounts.items()):
        entry = {"balance": hex(account.balance)}
        if account.nonce:
            entry["nonce"] = hex(account.nonce)
        if account.code:
            entry["code"] = "0x" + account.code.hex()
        if account.storage:
            entry["storage"] = {"0x" + k.hex(): "0x" + v.hex() for k, v in sorted(account.storage.items())}
        alloc["0x" + address.hex()] = entry
    with open(path, 'w') as f:
        json.dump({"alloc": alloc}, f, indent=2)
