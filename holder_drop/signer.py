import base64
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from spl.token.instructions import (
    TransferCheckedParams,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignedTransfer:
    """A signed transaction ready to send, and the signature that identifies it on chain"""
    payload: str
    signature: str


class TransferSigner(ABC):
    """Produces signed, serialized token transfers for the gateway to send"""

    @property
    @abstractmethod
    def public_key(self) -> str:
        ...

    @abstractmethod
    def sign_transfer(self, destination: str, mint: str, amount: int, decimals: int,
                      recent_blockhash: str, token_program: str) -> SignedTransfer:
        """Return the base64 encoded signed transaction with its signature"""


class KeypairSigner(TransferSigner):
    """Signs with a local keypair.

    The transaction creates the recipient's associated token account when it
    is missing (idempotent instruction) and then moves the tokens with
    `transfer_checked`, so the mint's decimals are verified on chain.
    """

    def __init__(self, keypair: Keypair):
        self.keypair = keypair

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "KeypairSigner":
        """Load a keypair stored as a JSON array of secret key bytes"""
        path = Path(path).expanduser()
        try:
            secret = json.loads(path.read_text())
            keypair = Keypair.from_bytes(bytes(secret))
        except FileNotFoundError:
            raise ConfigurationError(f"Keypair file not found: {path}", {"path": str(path)})
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid keypair file {path}: {e}", {"path": str(path)})
        logger.info(f"Loaded signing keypair for {keypair.pubkey()}")
        return cls(keypair)

    @property
    def public_key(self) -> str:
        return str(self.keypair.pubkey())

    def sign_transfer(self, destination: str, mint: str, amount: int, decimals: int,
                      recent_blockhash: str, token_program: str) -> SignedTransfer:
        owner = self.keypair.pubkey()
        mint_key = Pubkey.from_string(mint)
        dest_owner = Pubkey.from_string(destination)
        program_id = Pubkey.from_string(token_program)

        source_ata = get_associated_token_address(owner, mint_key, program_id)
        dest_ata = get_associated_token_address(dest_owner, mint_key, program_id)

        instructions = [
            create_idempotent_associated_token_account(owner, dest_owner, mint_key, program_id),
            transfer_checked(TransferCheckedParams(
                program_id=program_id,
                source=source_ata,
                mint=mint_key,
                dest=dest_ata,
                owner=owner,
                amount=amount,
                decimals=decimals,
            )),
        ]
        blockhash = Hash.from_string(recent_blockhash)
        message = Message.new_with_blockhash(instructions, owner, blockhash)
        transaction = Transaction([self.keypair], message, blockhash)
        return SignedTransfer(
            payload=base64.b64encode(bytes(transaction)).decode("ascii"),
            signature=str(transaction.signatures[0]),
        )
