"""Wires configuration into a ready-to-use engine."""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field

from .chains import EvmClient, ManualChain
from .config import AppConfig
from .controller import Controller
from .interfaces.chain import ChainClient
from .interfaces.notifier import Notifier
from .interfaces.price_oracle import PriceOracle
from .notifications import TelegramNotifier
from .oracles import PythOracle, StaticPriceOracle
from .protocols.fixed_rate import FixedRatePlatformAdapter
from .services import BorrowManager, Converter, DebtMonitor, Keeper

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    controller: Controller
    borrow_manager: BorrowManager
    debt_monitor: DebtMonitor
    converter: Converter
    keeper: Keeper
    oracle: PriceOracle
    chain: ChainClient
    venues: dict[str, FixedRatePlatformAdapter] = field(default_factory=dict)


def build_oracle(config: AppConfig) -> PriceOracle:
    provider = config.price_oracle.provider
    if provider == "pyth":
        return PythOracle(config.price_oracle.pyth, config.assets)
    if provider == "static":
        return StaticPriceOracle.from_usd(
            {
                config.assets[symbol].address: price
                for symbol, price in config.price_oracle.static_prices.items()
                if symbol in config.assets
            }
        )
    raise ValueError(f"Unknown price oracle provider '{provider}'")


def build_chain(config: AppConfig) -> ChainClient:
    if config.chain.rpc_endpoints:
        return EvmClient(config.chain)
    logger.info("No RPC endpoints configured, using a manual block clock")
    return ManualChain()


def build_notifiers(config: AppConfig) -> list[Notifier]:
    notifiers: list[Notifier] = []
    if config.notifications.telegram.enabled:
        notifiers.append(TelegramNotifier(config.notifications.telegram))
    return notifiers


def build_engine(
    config: AppConfig,
    oracle: PriceOracle | None = None,
    chain: ChainClient | None = None,
) -> Engine:
    """Create every component and register the configured venues."""
    oracle = oracle or build_oracle(config)
    chain = chain or build_chain(config)

    controller = Controller(config.governance, config.keeper.address, config.risk)
    borrow_manager = BorrowManager(controller)
    debt_monitor = DebtMonitor(controller, borrow_manager, chain)
    converter = Converter(controller, borrow_manager, debt_monitor, chain)
    keeper = Keeper(converter, config.keeper, build_notifiers(config))

    venues: dict[str, FixedRatePlatformAdapter] = {}
    for name, venue_cfg in config.venues.items():
        venue = FixedRatePlatformAdapter(venue_cfg, config.assets, oracle, chain)
        addresses = [config.assets[symbol].address for symbol in venue_cfg.assets]
        pairs = list(itertools.combinations(addresses, 2))
        borrow_manager.add_asset_pairs(
            venue,
            [left for left, _ in pairs],
            [right for _, right in pairs],
            config.governance,
        )
        venues[name] = venue
        logger.info("Venue %s registered with %d pairs", name, len(pairs))

    return Engine(
        controller=controller,
        borrow_manager=borrow_manager,
        debt_monitor=debt_monitor,
        converter=converter,
        keeper=keeper,
        oracle=oracle,
        chain=chain,
        venues=venues,
    )
