"""YAML snapshots of the engine state that outlives a process.

The snapshot keeps the risk configuration, frozen venues, the pair table,
the keeper's scan offset and every registered position with its venue-side
amounts, so a restarted engine can rebuild the registry.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import RiskConfig
from .controller import Controller
from .models import PoolAdapterConfig, PoolAdapterState
from .services.borrow_manager import BorrowManager
from .services.debt_monitor import DebtMonitor
from .services.keeper import Keeper

logger = logging.getLogger(__name__)

STATE_VERSION = 2


@dataclass(frozen=True)
class PositionRecord:
    pool_adapter: str
    converter: str
    user: str
    collateral_asset: str
    borrow_asset: str
    last_reconversion_block: int
    collateral_amount: int = 0
    debt: int = 0
    collateral_amount_liquidated: int = 0
    last_accrual_block: int = 0

    def config(self) -> PoolAdapterConfig:
        return PoolAdapterConfig(self.converter, self.user, self.collateral_asset, self.borrow_asset)

    def state(self) -> PoolAdapterState:
        return PoolAdapterState(
            self.collateral_amount,
            self.debt,
            self.collateral_amount_liquidated,
            self.last_accrual_block,
        )


@dataclass(frozen=True)
class StateSnapshot:
    risk: RiskConfig = field(default_factory=RiskConfig)
    frozen_platform_adapters: tuple[str, ...] = ()
    asset_pairs: tuple[tuple[str, str, str], ...] = ()
    positions: tuple[PositionRecord, ...] = ()
    next_index_to_check0: int = 0


def take_snapshot(
    controller: Controller,
    borrow_manager: BorrowManager,
    debt_monitor: DebtMonitor,
    keeper: Keeper | None = None,
) -> StateSnapshot:
    positions = []
    for address in debt_monitor.positions:
        pool_adapter = borrow_manager.pool_adapter(address)
        cfg = pool_adapter.config()
        state = pool_adapter.export_state()
        positions.append(
            PositionRecord(
                pool_adapter=address,
                converter=cfg.origin_converter,
                user=cfg.user,
                collateral_asset=cfg.collateral_asset,
                borrow_asset=cfg.borrow_asset,
                last_reconversion_block=debt_monitor.last_reconversion_block(address),
                collateral_amount=state.collateral_amount,
                debt=state.debt,
                collateral_amount_liquidated=state.collateral_amount_liquidated,
                last_accrual_block=state.last_accrual_block,
            )
        )
    pairs = tuple(
        (platform_adapter, left, right)
        for (left, right), adapters in borrow_manager.asset_pairs().items()
        for platform_adapter in adapters
    )
    return StateSnapshot(
        risk=controller.risk,
        frozen_platform_adapters=tuple(sorted(controller.frozen_platform_adapters)),
        asset_pairs=pairs,
        positions=tuple(positions),
        next_index_to_check0=keeper.next_index_to_check0 if keeper is not None else 0,
    )


def save_state(path: str | Path, snapshot: StateSnapshot) -> None:
    """Write ``snapshot`` atomically (temp file + rename)."""
    path = Path(path)
    data: dict[str, Any] = {
        "version": STATE_VERSION,
        "risk": asdict(snapshot.risk),
        "frozen_platform_adapters": list(snapshot.frozen_platform_adapters),
        "asset_pairs": [
            {"platform_adapter": pa, "left": left, "right": right}
            for pa, left, right in snapshot.asset_pairs
        ],
        "positions": [asdict(p) for p in snapshot.positions],
        "keeper": {"next_index_to_check0": snapshot.next_index_to_check0},
    }
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    tmp.replace(path)
    logger.info("State saved to %s (%d positions)", path, len(snapshot.positions))


def load_state(path: str | Path) -> StateSnapshot:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"State file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    version = raw.get("version", STATE_VERSION)
    if version != STATE_VERSION:
        raise ValueError(f"Unsupported state version {version}")

    risk_raw = dict(raw.get("risk", {}))
    risk_raw["target_health_factors2"] = dict(risk_raw.get("target_health_factors2") or {})
    snapshot = StateSnapshot(
        risk=RiskConfig(**risk_raw),
        frozen_platform_adapters=tuple(raw.get("frozen_platform_adapters", [])),
        asset_pairs=tuple(
            (p["platform_adapter"], p["left"], p["right"]) for p in raw.get("asset_pairs", [])
        ),
        positions=tuple(PositionRecord(**p) for p in raw.get("positions", [])),
        next_index_to_check0=int(raw.get("keeper", {}).get("next_index_to_check0", 0)),
    )
    logger.info("State loaded from %s (%d positions)", path, len(snapshot.positions))
    return snapshot


async def apply_snapshot(
    snapshot: StateSnapshot,
    controller: Controller,
    borrow_manager: BorrowManager,
    debt_monitor: DebtMonitor,
    keeper: Keeper | None = None,
) -> None:
    """Restore configuration, the position registry and the keeper offset.

    Saved positions the engine does not know yet are recreated on their
    venues under their saved addresses and registered in saved order. A
    position whose converter is no longer configured raises
    ``ConverterNotFound``.
    """
    controller.restore(snapshot.risk, set(snapshot.frozen_platform_adapters))
    for record in snapshot.positions:
        if debt_monitor.is_position_registered(record.pool_adapter):
            debt_monitor.record_reconversion(record.pool_adapter, record.last_reconversion_block)
            continue
        if borrow_manager.is_pool_adapter(record.pool_adapter):
            logger.warning("Saved position %s was closed since", record.pool_adapter)
            continue
        await borrow_manager.restore_pool_adapter(record.pool_adapter, record.config(), record.state())
        await debt_monitor.on_open_position(record.pool_adapter, record.last_reconversion_block)
    if keeper is not None:
        keeper.next_index_to_check0 = (
            snapshot.next_index_to_check0
            if snapshot.next_index_to_check0 < debt_monitor.get_count_positions()
            else 0
        )
