from decimal import Decimal
from types import SimpleNamespace

from fakes import SIGNER, FakeChain, no_sleep
from relief.adapters.bridge import BridgeResult, BridgeStep
from relief.adapters.positions import Position, PositionScan
from relief.adapters.settlement import LoserPayout, NgoPayout, WinnerPayout
from relief.adapters.vault import WithdrawResult
from relief.chain.config import home_chain, vault_chain
from relief.core.errors import SimulationRevertError
from relief.custody.poller import TransactionPoller
from relief.custody.schemas import CustodialWallet, TokenBalance, TransferResult
from relief.models import Market, MarketState, Ngo, Outcome, Trade, Trader
from relief.payouts.calculator import PayoutCalculator
from relief.payouts.distribution import PayoutDistributor
from relief.payouts.orchestrator import PayoutOrchestrator

MARKET_ONCHAIN_ID = "0x" + "a0" * 32
ESCROW = "0x" + "e5" * 20
NGO_ONCHAIN_ID = "0x" + "ee" * 32
NGO_WALLET = "0x" + "0e" * 20
TREASURY_ADDRESS = "0x" + "7e" * 20
WINNER_1 = "0x" + "a1" * 20
WINNER_2 = "0x" + "a2" * 20
LOSER = "0x" + "b1" * 20
POSITION_1 = "0x" + "01" * 32
POSITION_2 = "0x" + "02" * 32


class FakeCustody:
    def __init__(self, usdc_address):
        self.created = []
        self.transfers = {}
        self.fail_destinations = set()
        self.pending_destinations = set()
        self.token_balances = [
            TokenBalance(token_id="usdc-token", symbol="USDC", token_address=usdc_address, amount="0")
        ]

    async def get_wallet(self, wallet_id):
        return CustodialWallet(id=wallet_id, address=TREASURY_ADDRESS, blockchain="ARC-TESTNET")

    async def get_token_balances(self, wallet_id):
        return list(self.token_balances)

    async def create_transfer(self, *, wallet_id, token_id, destination_address, amount, idempotency_key, fee_level=None):
        self.created.append(
            {
                "wallet_id": wallet_id,
                "token_id": token_id,
                "destination_address": destination_address,
                "amount": amount,
                "idempotency_key": idempotency_key,
            }
        )
        transfer_id = f"transfer-{len(self.created)}"
        if destination_address in self.fail_destinations:
            final = TransferResult(id=transfer_id, state="FAILED", error_reason="INSUFFICIENT_TOKEN")
        elif destination_address in self.pending_destinations:
            final = TransferResult(id=transfer_id, state="SENT")
        else:
            final = TransferResult(id=transfer_id, state="COMPLETE", tx_hash=f"0x{len(self.created):064x}")
        self.transfers[transfer_id] = final
        return TransferResult(id=transfer_id, state="INITIATED")

    async def get_transfer(self, transfer_id):
        return self.transfers[transfer_id]

    def settle(self, transfer_id):
        self.transfers[transfer_id] = TransferResult(id=transfer_id, state="COMPLETE", tx_hash="0xsettled")


class FakePositions:
    def __init__(self, positions, failed_ranges=None):
        self.positions = positions
        self.failed_ranges = failed_ranges or []
        self.calls = 0

    async def find_all(self, market_onchain_id, from_block=None):
        self.calls += 1
        return PositionScan(list(self.positions), 0, 100, list(self.failed_ranges))


class FakeVaultAdapter:
    def __init__(self, results):
        self.results = results
        self.withdrawn = []
        self.transfers_out = []
        self.revert_positions = set()
        self.held = 0

    async def withdraw(self, position_id):
        if position_id in self.revert_positions:
            raise SimulationRevertError("vault_withdraw would revert: position closed")
        self.withdrawn.append(position_id)
        principal, yield_amount = self.results[position_id]
        self.held += principal + yield_amount
        return WithdrawResult(position_id, principal, yield_amount, f"0xw{len(self.withdrawn)}")

    async def find_withdrawal(self, position_id, from_block, to_block=None):
        if position_id not in self.results:
            return None
        principal, yield_amount = self.results[position_id]
        self.held += principal + yield_amount
        return WithdrawResult(position_id, principal, yield_amount, "0xrecovered")

    async def balance(self):
        return self.held

    async def transfer_out(self, to, amount):
        self.transfers_out.append((to, amount))
        self.held -= amount
        return "0xout"


class FakeBridge:
    def __init__(self, home, home_config, vault=None, vault_config=None):
        self.home = home
        self.home_config = home_config
        self.vault = vault
        self.vault_config = vault_config
        self.calls = []
        self.failures = 0

    async def bridge(self, source, destination, amount, recipient=None):
        self.calls.append((source.name, destination.name, amount))
        if self.failures:
            self.failures -= 1
            return BridgeResult(
                state="error",
                source_chain=source.name,
                destination_chain=destination.name,
                amount=amount,
                recipient=recipient or SIGNER,
                steps=[BridgeStep("approve", "success"), BridgeStep("burn", "error", error_message="execution reverted")],
            )
        if destination.chain_id == self.home_config.chain_id:
            self.home.add_balance(self.home_config.usdc_address, amount)
        elif self.vault is not None and destination.chain_id == self.vault_config.chain_id:
            self.vault.add_balance(self.vault_config.usdc_address, amount)
        return BridgeResult(
            state="success",
            source_chain=source.name,
            destination_chain=destination.name,
            amount=amount,
            recipient=recipient or SIGNER,
            steps=[BridgeStep("burn", "success", "0xburn"), BridgeStep("mint", "success", "0xmint")],
            message="0x" + "ab" * 16,
            message_hash="0x" + "cd" * 32,
        )

    async def resume(self, result, destination):
        return result


class FakeSettlement:
    def __init__(self, winners, losers, ngo_rows=()):
        self.winners = list(winners)
        self.losers = list(losers)
        self.ngo_rows = list(ngo_rows)
        self.recorded = 0
        self.record_calls = []
        self.resolve_calls = 0
        self.calculate_calls = 0

    async def total_yield(self, market_onchain_id):
        return self.recorded

    async def record_yield(self, market_onchain_id, amount):
        self.record_calls.append(amount)
        self.recorded += amount
        return "0xyield"

    async def ensure_resolved(self, market_onchain_id, market_address):
        self.resolve_calls += 1
        return 2

    async def calculate_payouts(self, market_address):
        self.calculate_calls += 1
        return "0xcalc"

    async def winner_payouts(self, market_onchain_id):
        return list(self.winners)

    async def loser_payouts(self, market_onchain_id):
        return list(self.losers)

    async def ngo_payouts(self, market_onchain_id):
        return list(self.ngo_rows)


def seed_market(db, *, state=MarketState.RESOLVED, outcome=Outcome.YES):
    ngo = Ngo(name="Relief Org", onchain_id=NGO_ONCHAIN_ID, wallet_address=NGO_WALLET)
    db.add(ngo)
    db.flush()
    market = Market(
        onchain_id=MARKET_ONCHAIN_ID,
        escrow_address=ESCROW,
        question="Will the river flood before March?",
        state=state,
        outcome=outcome,
        eligible_ngo_ids=[str(ngo.id)],
    )
    db.add(market)
    db.flush()
    for wallet, side in ((WINNER_1, "YES"), (WINNER_2, "YES"), (LOSER, "NO")):
        trader = Trader(wallet_address=wallet)
        db.add(trader)
        db.flush()
        db.add(Trade(market_id=market.id, trader_id=trader.id, side=side, principal_amount=Decimal("0.5")))
    db.commit()
    return market, ngo


def build_saga(db, **overrides):
    home_config = home_chain()
    vault_config = vault_chain()
    home = FakeChain()
    home.set_balance(home_config.usdc_address, 100_000)
    vault = FakeChain()
    custody = FakeCustody(home_config.usdc_address)
    bridge = FakeBridge(home, home_config)
    positions = FakePositions(
        [
            Position(POSITION_1, MARKET_ONCHAIN_ID, 1_000_000, block_number=10),
            Position(POSITION_2, MARKET_ONCHAIN_ID, 500_000, block_number=11),
        ]
    )
    vault_adapter = FakeVaultAdapter({POSITION_1: (1_000_000, 600_000), POSITION_2: (500_000, 400_000)})
    settlement = FakeSettlement(
        [WinnerPayout(WINNER_1, 500_000, 150_000), WinnerPayout(WINNER_2, 500_000, 150_000)],
        [LoserPayout(LOSER, 500_000)],
        [NgoPayout(NGO_ONCHAIN_ID, "", 600_000, home_config.chain_id)],
    )
    poller = TransactionPoller(custody.get_transfer, interval_seconds=0, max_attempts=3, sleep=no_sleep)
    distributor = PayoutDistributor(db, custody, poller, home=home_config, bridge=bridge)
    parts = SimpleNamespace(
        home=home,
        vault=vault,
        home_config=home_config,
        vault_config=vault_config,
        custody=custody,
        bridge=bridge,
        positions=positions,
        vault_adapter=vault_adapter,
        settlement=settlement,
        distributor=distributor,
    )
    for key, value in overrides.items():
        setattr(parts, key, value)
    parts.orchestrator = PayoutOrchestrator(
        db,
        home=parts.home,
        vault=parts.vault,
        home_config=parts.home_config,
        vault_config=parts.vault_config,
        positions=parts.positions,
        vault_adapter=parts.vault_adapter,
        swap=None,
        bridge=parts.bridge,
        settlement=parts.settlement,
        custody=parts.custody,
        distributor=parts.distributor,
        calculator=PayoutCalculator(ngo_pct=60, winner_pct=30),
        treasury_wallet_id="treasury-wallet",
        vault_token=parts.vault_config.usdc_address,
        sleep=no_sleep,
    )
    return parts


