import logging
from dataclasses import dataclass

from web3 import Web3

from ..chain.abi import SWAP_ROUTER_ABI
from ..chain.tokens import ensure_allowance
from ..core.errors import BalanceInsufficientError, SwapStarvedError

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class SwapResult:
    amount_in: int
    amount_out: int
    min_amount_out: int
    tx_hash: str | None


def min_amount_out(amount_in: int, slippage_bps: int) -> int:
    """``amountIn * (100 - slippageBps / 100) / 100`` in integer arithmetic."""
    if slippage_bps < 0 or slippage_bps >= BPS_DENOMINATOR:
        raise ValueError(f"slippage_bps out of range: {slippage_bps}")
    return int(amount_in) * (BPS_DENOMINATOR - int(slippage_bps)) // BPS_DENOMINATOR


class SwapAdapter:
    """Single-hop exact-input swap through a Uniswap v3 style router.

    Both token balances are read around the swap; a zero delta on the output
    token is reported as pool starvation even when the call itself succeeded.
    """

    def __init__(self, chain, router_address: str) -> None:
        self.chain = chain
        self.router_address = router_address

    async def swap(
        self,
        token_in: str,
        token_out: str,
        fee_tier: int,
        amount_in: int,
        slippage_bps: int,
    ) -> SwapResult:
        amount_in = int(amount_in)
        if amount_in <= 0:
            raise BalanceInsufficientError("swap amount must be positive", context={"amount_in": amount_in})
        recipient = self.chain.address
        before_in = await self.chain.token_balance(token_in, recipient)
        before_out = await self.chain.token_balance(token_out, recipient)
        if before_in < amount_in:
            raise BalanceInsufficientError(
                "insufficient input token balance for swap",
                context={"token_in": token_in, "balance": before_in, "amount_in": amount_in},
            )

        await ensure_allowance(self.chain, token_in, self.router_address, amount_in, label="swap_approve")
        minimum = min_amount_out(amount_in, slippage_bps)
        params = (
            Web3.to_checksum_address(token_in),
            Web3.to_checksum_address(token_out),
            int(fee_tier),
            Web3.to_checksum_address(recipient),
            amount_in,
            minimum,
            0,
        )
        logger.info(
            "swap_submitting token_in=%s token_out=%s fee=%s amount_in=%s min_out=%s slippage_bps=%s",
            token_in,
            token_out,
            fee_tier,
            amount_in,
            minimum,
            slippage_bps,
        )
        receipt = await self.chain.transact(
            self.router_address,
            SWAP_ROUTER_ABI,
            "exactInputSingle",
            params,
            label="swap",
        )

        after_in = await self.chain.token_balance(token_in, recipient)
        after_out = await self.chain.token_balance(token_out, recipient)
        received = after_out - before_out
        spent = before_in - after_in
        tx_hash = receipt.get("transactionHash")
        if received <= 0:
            logger.error(
                "swap_starved token_out=%s spent=%s received=%s tx=%s",
                token_out,
                spent,
                received,
                tx_hash,
            )
            raise SwapStarvedError(
                "swap returned no output tokens",
                context={"tx_hash": tx_hash, "spent": spent, "received": received},
            )
        if received < minimum:
            logger.warning(
                "swap_output_below_minimum received=%s minimum=%s tx=%s",
                received,
                minimum,
                tx_hash,
            )
        logger.info("swap_completed spent=%s received=%s tx=%s", spent, received, tx_hash)
        return SwapResult(amount_in=amount_in, amount_out=received, min_amount_out=minimum, tx_hash=tx_hash)
