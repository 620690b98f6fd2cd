import re
from typing import Optional

from web3 import Web3


# Ethereum address regex
ETH_ADDRESS_REGEX = re.compile(r"^0x[a-fA-F0-9]{40}$")
MAX_LABEL_LENGTH = 64


class InvalidAddressError(ValueError):
    """Raised when an input cannot be turned into a checksummed address."""

    pass


def validate_eth_address(address: str) -> str:
    """Validate an Ethereum address and return its EIP-55 checksummed form"""
    if not address:
        raise InvalidAddressError("Address cannot be empty")

    address = str(address).strip()

    if not ETH_ADDRESS_REGEX.match(address):
        raise InvalidAddressError(f"Invalid Ethereum address format: {address}")

    # Mixed-case input must already carry a valid checksum.
    if not Web3.is_address(address):
        raise InvalidAddressError(f"Invalid address checksum: {address}")

    return Web3.to_checksum_address(address)


def safe_checksum_address(value: Optional[str]) -> Optional[str]:
    """Checksum ``value`` or return None when it is not an address"""
    try:
        return validate_eth_address(value or "")
    except InvalidAddressError:
        return None


def validate_label(label: Optional[str]) -> Optional[str]:
    """Normalize an optional watcher label"""
    if label is None:
        return None
    text = str(label).strip()
    if not text:
        return None
    if len(text) > MAX_LABEL_LENGTH:
        raise ValueError(f"Label must be at most {MAX_LABEL_LENGTH} characters")
    return text

