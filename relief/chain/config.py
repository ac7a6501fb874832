from dataclasses import dataclass

from ..core.errors import ConfigurationError
from ..settings import settings


@dataclass(frozen=True)
class ChainConfig:
    name: str
    chain_id: int
    rpc_url: str
    cctp_domain: int | None = None
    usdc_address: str | None = None
    token_messenger: str | None = None
    message_transmitter: str | None = None
    explorer_url: str | None = None
    # on chains like Arc the settlement token also pays for gas
    native_settlement_asset: bool = False

    def tx_url(self, tx_hash: str | None) -> str | None:
        if not tx_hash or not self.explorer_url:
            return None
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"

    def require_cctp(self) -> None:
        missing = [
            field
            for field in ("cctp_domain", "usdc_address", "token_messenger", "message_transmitter")
            if getattr(self, field) in (None, "")
        ]
        if missing:
            raise ConfigurationError(
                f"chain {self.name} is missing bridge settings",
                context={"chain": self.name, "missing": missing},
            )


def home_chain() -> ChainConfig:
    return ChainConfig(
        name=settings.HOME_CHAIN_NAME,
        chain_id=settings.HOME_CHAIN_ID,
        rpc_url=settings.HOME_RPC_URL,
        cctp_domain=settings.HOME_CCTP_DOMAIN,
        usdc_address=settings.HOME_USDC_ADDRESS,
        token_messenger=settings.HOME_TOKEN_MESSENGER_ADDRESS,
        message_transmitter=settings.HOME_MESSAGE_TRANSMITTER_ADDRESS,
        explorer_url=settings.HOME_EXPLORER_URL,
        native_settlement_asset=settings.HOME_NATIVE_SETTLEMENT_ASSET,
    )


def vault_chain() -> ChainConfig:
    return ChainConfig(
        name=settings.VAULT_CHAIN_NAME,
        chain_id=settings.VAULT_CHAIN_ID,
        rpc_url=settings.VAULT_RPC_URL,
        cctp_domain=settings.VAULT_CCTP_DOMAIN,
        usdc_address=settings.VAULT_USDC_ADDRESS,
        token_messenger=settings.VAULT_TOKEN_MESSENGER_ADDRESS,
        message_transmitter=settings.VAULT_MESSAGE_TRANSMITTER_ADDRESS,
        explorer_url=settings.VAULT_EXPLORER_URL,
        native_settlement_asset=settings.VAULT_NATIVE_SETTLEMENT_ASSET,
    )


def known_chains() -> dict[str, ChainConfig]:
    chains = {home_chain().name: home_chain(), vault_chain().name: vault_chain()}
    for name, raw in (settings.EXTRA_CHAINS or {}).items():
        try:
            chains[name] = ChainConfig(
                name=name,
                chain_id=int(raw["chain_id"]),
                rpc_url=str(raw["rpc_url"]),
                cctp_domain=_optional_int(raw.get("cctp_domain")),
                usdc_address=raw.get("usdc_address"),
                token_messenger=raw.get("token_messenger"),
                message_transmitter=raw.get("message_transmitter"),
                explorer_url=raw.get("explorer_url"),
                native_settlement_asset=bool(raw.get("native_settlement_asset", False)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"invalid EXTRA_CHAINS entry for {name}",
                context={"chain": name, "error": str(exc)},
            ) from exc
    return chains


def chain_by_name(name: str) -> ChainConfig:
    chains = known_chains()
    key = (name or "").strip().upper()
    for chain_name, config in chains.items():
        if chain_name.upper() == key:
            return config
    raise ConfigurationError(f"unknown chain {name}", context={"chain": name})


def _optional_int(value) -> int | None:
    if value is None or value == "":
        return None
    return int(value)
