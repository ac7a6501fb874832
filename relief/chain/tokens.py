import logging

from web3 import Web3

from .abi import ERC20_ABI

logger = logging.getLogger(__name__)


async def ensure_allowance(chain, token: str, spender: str, amount: int, *, label: str = "approve") -> str | None:
    """Approve ``spender`` for at least ``amount``.

    Tokens in the USDT family reject changing a nonzero allowance to another
    nonzero value, so an insufficient existing allowance is reset to 0 first.
    Returns the approval tx hash, or None when the allowance already covers it.
    """
    owner = chain.address
    current = int(
        await chain.read(
            token,
            ERC20_ABI,
            "allowance",
            Web3.to_checksum_address(owner),
            Web3.to_checksum_address(spender),
        )
    )
    if current >= amount:
        logger.debug("allowance_sufficient token=%s spender=%s allowance=%s", token, spender, current)
        return None
    if current > 0:
        logger.info("allowance_reset token=%s spender=%s previous=%s", token, spender, current)
        await chain.transact(
            token,
            ERC20_ABI,
            "approve",
            Web3.to_checksum_address(spender),
            0,
            label=f"{label}_reset",
        )
    receipt = await chain.transact(
        token,
        ERC20_ABI,
        "approve",
        Web3.to_checksum_address(spender),
        int(amount),
        label=label,
    )
    return receipt.get("transactionHash")


async def transfer_token(chain, token: str, to: str, amount: int, *, label: str = "transfer") -> str | None:
    receipt = await chain.transact(
        token,
        ERC20_ABI,
        "transfer",
        Web3.to_checksum_address(to),
        int(amount),
        label=label,
    )
    return receipt.get("transactionHash")
