"""
Payout address format validation.

Payouts go to Stellar accounts: public keys are 56 characters, start with
``G`` and use the base32 alphabet.
"""

from __future__ import annotations

import re

_STELLAR_ACCOUNT = re.compile(r"^G[A-Z2-7]{55}$")


def validate_payout_address(address: str) -> str:
    """
    Normalize and validate a payout address.

    Returns:
        The stripped address.

    Raises:
        ValueError: If the address is not a Stellar public key.
    """
    if not address or not isinstance(address, str):
        msg = "Address must be a non-empty string"
        raise ValueError(msg)

    candidate = address.strip()
    if not _STELLAR_ACCOUNT.match(candidate):
        msg = "Invalid Stellar wallet address format"
        raise ValueError(msg)
    return candidate
