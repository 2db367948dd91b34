import base58

from .errors import InvalidAddressError

PUBLIC_KEY_LENGTH = 32


def is_valid_address(address: str) -> bool:
    """Check that a string is a base58 encoded 32 byte public key"""
    if not isinstance(address, str) or not 32 <= len(address) <= 44:
        return False
    try:
        return len(base58.b58decode(address)) == PUBLIC_KEY_LENGTH
    except ValueError:
        return False


def validate_address(address: str, label: str = "address") -> str:
    if not is_valid_address(address):
        raise InvalidAddressError(f"Invalid {label}: {address!r}", {label: address})
    return address
