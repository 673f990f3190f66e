from __future__ import annotations

import json
import logging

import base58
from solders.keypair import Keypair  # type: ignore
from solders.pubkey import Pubkey  # type: ignore
from solders.transaction import VersionedTransaction  # type: ignore

from pump_trader.exceptions import WalletException


def load_keypair(secret: str) -> Keypair:
    """Accepts a base58 secret key or a JSON byte array as exported by solana-keygen."""
    secret = (secret or "").strip()
    if not secret:
        raise WalletException("Private key is empty")
    try:
        if secret.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(secret)))
        raw = base58.b58decode(secret)
        return Keypair.from_bytes(raw)
    except (ValueError, TypeError) as e:
        raise WalletException("Invalid private key format") from e


class WalletSigner:
    """Holds the trading key. Exposes only the address and a signing capability."""

    def __init__(self, secret: str) -> None:
        self._keypair = load_keypair(secret)
        self.logger = logging.getLogger("pump_trader.wallet")
        self.logger.info("Wallet loaded: %s", self.address)

    @property
    def pubkey(self) -> Pubkey:
        return self._keypair.pubkey()

    @property
    def address(self) -> str:
        return str(self._keypair.pubkey())

    def sign_transaction(self, payload: bytes) -> VersionedTransaction:
        """Sign a serialized unsigned transaction returned by the trade API."""
        try:
            unsigned = VersionedTransaction.from_bytes(payload)
        except ValueError as e:
            raise WalletException("Trade payload is not a transaction", size=len(payload)) from e
        return VersionedTransaction(unsigned.message, [self._keypair])
