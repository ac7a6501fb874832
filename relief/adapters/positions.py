import logging
from dataclasses import asdict, dataclass, field

from ..chain.abi import YIELD_CONTROLLER_ABI
from ..core.retry import RetryableOperation
from ..core.units import normalize_hex
from ..settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Position:
    position_id: str
    market_id: str
    amount: int
    block_number: int
    log_index: int = 0
    tx_hash: str | None = None


@dataclass
class PositionScan:
    positions: list[Position]
    from_block: int
    to_block: int
    failed_ranges: list[tuple[int, int]] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed_ranges)

    @property
    def total_deposited(self) -> int:
        return sum(position.amount for position in self.positions)

    def to_dict(self) -> dict:
        return {
            "positions": [asdict(position) for position in self.positions],
            "from_block": self.from_block,
            "to_block": self.to_block,
            "failed_ranges": [list(item) for item in self.failed_ranges],
        }


class PositionResolver:
    """Recover every vault position opened for a market.

    The market id is not an indexed topic on ``Deployed``, so the resolver
    pulls every ``Deployed`` log in the window chunk by chunk and filters on the
    emitter and the market id client-side. A chunk that still fails after
    retries is reported in ``failed_ranges`` instead of being skipped silently.
    """

    def __init__(
        self,
        chain,
        vault_address: str,
        *,
        window_blocks: int | None = None,
        chunk_blocks: int | None = None,
        retry: RetryableOperation | None = None,
    ) -> None:
        self.chain = chain
        self.vault_address = vault_address
        self.window_blocks = max(
            int(settings.POSITION_SCAN_WINDOW_BLOCKS if window_blocks is None else window_blocks), 1
        )
        self.chunk_blocks = max(
            int(settings.POSITION_SCAN_CHUNK_BLOCKS if chunk_blocks is None else chunk_blocks), 1
        )
        self.retry = retry or RetryableOperation("position_scan")

    async def find_all(self, market_onchain_id: str, from_block: int | None = None) -> PositionScan:
        market_key = normalize_hex(market_onchain_id)
        latest = await self.chain.block_number()
        if from_block is None:
            start = max(latest - self.window_blocks + 1, 0)
        else:
            start = max(int(from_block), 0)

        positions: dict[str, Position] = {}
        failed_ranges: list[tuple[int, int]] = []
        ignored_foreign = 0
        for chunk_start in range(start, latest + 1, self.chunk_blocks):
            chunk_end = min(chunk_start + self.chunk_blocks - 1, latest)
            try:
                events = await self.retry.run(
                    lambda s=chunk_start, e=chunk_end: self.chain.get_logs(
                        self.vault_address, YIELD_CONTROLLER_ABI, "Deployed", s, e
                    )
                )
            except Exception as exc:
                logger.error(
                    "position_scan_chunk_failed market=%s from_block=%s to_block=%s error=%s",
                    market_key,
                    chunk_start,
                    chunk_end,
                    exc,
                )
                failed_ranges.append((chunk_start, chunk_end))
                continue
            for event in events:
                if str(event.get("address", "")).lower() != self.vault_address.lower():
                    ignored_foreign += 1
                    continue
                args = event["args"]
                if normalize_hex(args.get("marketId")) != market_key:
                    continue
                position_id = normalize_hex(args.get("positionId"))
                positions[position_id] = Position(
                    position_id=position_id,
                    market_id=market_key,
                    amount=int(args.get("amount", 0)),
                    block_number=int(event["block_number"]),
                    log_index=int(event.get("log_index", 0)),
                    tx_hash=event.get("tx_hash"),
                )

        ordered = sorted(positions.values(), key=lambda item: (item.block_number, item.log_index))
        scan = PositionScan(ordered, start, latest, failed_ranges)
        logger.info(
            "position_scan_completed market=%s from_block=%s to_block=%s positions=%s deposited=%s "
            "foreign_logs=%s partial=%s",
            market_key,
            start,
            latest,
            len(ordered),
            scan.total_deposited,
            ignored_foreign,
            scan.partial,
        )
        return scan
