from functools import lru_cache

from sqlalchemy.orm import Session

from ..adapters.attestation import AttestationClient
from ..adapters.bridge import BridgeAdapter
from ..adapters.positions import PositionResolver
from ..adapters.settlement import SettlementContracts
from ..adapters.swap import SwapAdapter
from ..adapters.vault import YieldVaultAdapter
from ..chain.client import ChainClient
from ..chain.config import ChainConfig, home_chain, vault_chain
from ..core.errors import ConfigurationError
from ..custody.client import CustodialWalletClient
from ..custody.poller import TransactionPoller
from ..security.crypto import load_signer_key
from ..services.deployment import MarketDeployer
from ..services.reconciliation import PayoutReconciler
from ..settings import settings
from .distribution import PayoutDistributor
from .orchestrator import PayoutOrchestrator


@lru_cache(maxsize=1)
def _signer_key() -> str | None:
    return load_signer_key()


class ChainClients:
    """One signing client per chain, created on first use."""

    def __init__(self, private_key: str | None) -> None:
        self._private_key = private_key
        self._clients: dict[int, ChainClient] = {}

    def __call__(self, config: ChainConfig) -> ChainClient:
        client = self._clients.get(config.chain_id)
        if client is None:
            client = ChainClient.from_private_key(config, self._private_key)
            self._clients[config.chain_id] = client
        return client


def build_bridge(clients: ChainClients) -> BridgeAdapter:
    return BridgeAdapter(clients, AttestationClient(settings.ATTESTATION_API_BASE))


def build_settlement(home: ChainClient) -> SettlementContracts:
    return SettlementContracts(
        home,
        treasury_vault=settings.TREASURY_VAULT_ADDRESS,
        market_factory=settings.MARKET_FACTORY_ADDRESS,
        payout_executor=settings.PAYOUT_EXECUTOR_ADDRESS,
        bridge_manager=settings.BRIDGE_MANAGER_ADDRESS,
    )


def build_vault_adapter(vault: ChainClient, vault_config: ChainConfig) -> YieldVaultAdapter:
    if not settings.YIELD_CONTROLLER_ADDRESS:
        raise ConfigurationError("YIELD_CONTROLLER_ADDRESS is not configured")
    return YieldVaultAdapter(
        vault,
        settings.YIELD_CONTROLLER_ADDRESS,
        settings.VAULT_TOKEN_ADDRESS or vault_config.usdc_address,
    )


def build_swap(vault: ChainClient) -> SwapAdapter:
    vault_token = settings.VAULT_TOKEN_ADDRESS or settings.VAULT_USDC_ADDRESS
    if not settings.SWAP_ROUTER_ADDRESS and vault_token.lower() != settings.VAULT_USDC_ADDRESS.lower():
        raise ConfigurationError("SWAP_ROUTER_ADDRESS is not configured")
    return SwapAdapter(vault, settings.SWAP_ROUTER_ADDRESS or "")


def build_distributor(db: Session, custody: CustodialWalletClient, bridge: BridgeAdapter) -> PayoutDistributor:
    poller = TransactionPoller(custody.get_transfer)
    return PayoutDistributor(db, custody, poller, home=home_chain(), bridge=bridge)


def build_orchestrator(db: Session) -> PayoutOrchestrator:
    home_config = home_chain()
    vault_config = vault_chain()
    clients = ChainClients(_signer_key())
    home = clients(home_config)
    vault = clients(vault_config)
    bridge = build_bridge(clients)
    custody = CustodialWalletClient()
    return PayoutOrchestrator(
        db,
        home=home,
        vault=vault,
        home_config=home_config,
        vault_config=vault_config,
        positions=PositionResolver(vault, settings.YIELD_CONTROLLER_ADDRESS or ""),
        vault_adapter=build_vault_adapter(vault, vault_config),
        swap=build_swap(vault),
        bridge=bridge,
        settlement=build_settlement(home),
        custody=custody,
        distributor=build_distributor(db, custody, bridge),
    )


def build_deployer() -> MarketDeployer:
    home_config = home_chain()
    vault_config = vault_chain()
    clients = ChainClients(_signer_key())
    home = clients(home_config)
    vault = clients(vault_config)
    return MarketDeployer(
        home=home,
        vault=vault,
        home_config=home_config,
        vault_config=vault_config,
        bridge=build_bridge(clients),
        settlement=build_settlement(home),
        swap=build_swap(vault),
        vault_adapter=build_vault_adapter(vault, vault_config),
    )


def build_reconciler(db: Session) -> PayoutReconciler:
    clients = ChainClients(_signer_key())
    custody = CustodialWalletClient()
    return PayoutReconciler(
        db,
        custody,
        bridge=build_bridge(clients),
        home=home_chain(),
    )
