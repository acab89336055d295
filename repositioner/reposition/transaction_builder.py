"""
Unsigned transaction assembly.

Instructions come from the pool service as JSON (program id, account metas,
base64 data). They are prefixed with compute-budget instructions and packed
into a legacy message with the wallet as fee payer. Nothing is signed here;
the serialized transaction goes back to the caller's wallet.
"""
import base64
import binascii
import hashlib
from typing import Any, Dict, List, Sequence, Tuple

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from repositioner.domain.protocols import LedgerCapability
from repositioner.exceptions import RpcError, ValidationError
from repositioner.monitoring.logger import get_logger

logger = get_logger(__name__)


def parse_instruction(raw: Dict[str, Any]) -> Instruction:
    """
    Map one pool-service instruction to a solders ``Instruction``.

    Raises:
        RpcError: the service returned something that is not an instruction
    """
    try:
        program_id = Pubkey.from_string(raw["programId"])
        metas = [
            AccountMeta(
                Pubkey.from_string(key["pubkey"]),
                bool(key.get("isSigner", False)),
                bool(key.get("isWritable", False)),
            )
            for key in raw.get("keys") or raw.get("accounts") or []
        ]
        data = base64.b64decode(raw.get("data") or "", validate=True)
    except (KeyError, TypeError, ValueError, binascii.Error) as e:
        raise RpcError("Pool service returned a malformed instruction", str(e))
    return Instruction(program_id, data, metas)


class TransactionBuilder:
    """Builds unsigned, serialized transactions for the caller to sign."""

    def __init__(self, ledger: LedgerCapability, compute_unit_limit: int = 200_000):
        self.ledger = ledger
        self.compute_unit_limit = compute_unit_limit

    async def build_unsigned(
        self,
        fee_payer: str,
        instructions: Sequence[Dict[str, Any]],
        priority_fee_micro_lamports: int = 0,
    ) -> Tuple[str, str]:
        """
        Assemble an unsigned transaction.

        Returns:
            (base64 transaction, hex SHA-256 of the message bytes)
        """
        if not instructions:
            raise ValidationError("No instructions to build a transaction from")
        try:
            payer = Pubkey.from_string(fee_payer)
        except ValueError as e:
            raise ValidationError("Invalid fee payer address", str(e))

        ixs: List[Instruction] = [set_compute_unit_limit(self.compute_unit_limit)]
        if priority_fee_micro_lamports > 0:
            ixs.append(set_compute_unit_price(priority_fee_micro_lamports))
        ixs.extend(parse_instruction(raw) for raw in instructions)

        blockhash = Hash.from_string(await self.ledger.get_latest_blockhash())
        message = Message.new_with_blockhash(ixs, payer, blockhash)
        tx = Transaction.new_unsigned(message)

        serialized = base64.b64encode(bytes(tx)).decode()
        tx_hash = hashlib.sha256(bytes(message)).hexdigest()
        logger.info(
            "TRANSACTION_BUILT",
            fee_payer=fee_payer,
            instructions=len(ixs),
            size=len(bytes(tx)),
            tx_hash=tx_hash,
        )
        return serialized, tx_hash
