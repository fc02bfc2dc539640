import re

# Legacy P2PKH (1...) / P2SH (3...) in base58, and bech32 (bc1...)
LEGACY_ADDRESS_RE = re.compile(r"^[13][a-km-zA-HJ-NP-Z1-9]{25,34}$")
BECH32_ADDRESS_RE = re.compile(r"^bc1[a-z0-9]{39,59}$", re.IGNORECASE)


def is_valid_bitcoin_address(address) -> bool:
    if not address or not isinstance(address, str):
        return False
    trimmed = address.strip()
    return bool(LEGACY_ADDRESS_RE.match(trimmed) or BECH32_ADDRESS_RE.match(trimmed))
