"""Integration tests for the converter — borrow, repay, rebalance and migration."""
from __future__ import annotations

from dataclasses import replace
from unittest.mock import AsyncMock, patch

import pytest

from borrow_optimizer.chains import ManualChain
from borrow_optimizer.config import AppConfig
from borrow_optimizer.engine import Engine, build_engine
from borrow_optimizer.errors import (
    ConverterNotFound,
    GovernanceOnly,
    IncorrectValue,
    KeeperOnly,
    MigrationFailed,
    PositionNotRegistered,
    RepayToRebalanceNotAllowed,
    VenueUnavailable,
    WrongHealthFactor,
    ZeroAddress,
)
from borrow_optimizer.models import NULL_PLAN, ZERO_ADDRESS, EntryData, RepayResult
from borrow_optimizer.oracles import StaticPriceOracle

from conftest import (
    ALPHA_CONVERTER,
    ALPHA_PLATFORM_ADAPTER,
    BETA_CONVERTER,
    BETA_PLATFORM_ADAPTER,
    GOVERNANCE,
    KEEPER,
    STRANGER,
    USDC,
    USDC_LIQUIDITY,
    USER,
    WAD,
    WETH,
    make_venue,
    open_position,
)


@pytest.fixture()
def gap_engine(
    sample_app_config: AppConfig, oracle: StaticPriceOracle, chain: ManualChain
) -> Engine:
    """Engine whose beta venue requires a debt gap on full repayment."""
    venues = dict(sample_app_config.venues)
    venues["beta"] = make_venue(
        "beta", BETA_PLATFORM_ADAPTER, BETA_CONVERTER, 2 * 10**9, debt_gap_required=True
    )
    return build_engine(replace(sample_app_config, venues=venues), oracle=oracle, chain=chain)


class TestQuotes:
    @pytest.mark.asyncio
    async def test_best_plan(self, engine: Engine) -> None:
        plan = await engine.converter.get_conversion_plan(WETH, WAD, USDC, 1000)
        assert plan.converter == ALPHA_CONVERTER
        assert plan.collateral_amount == WAD
        assert plan.amount_to_borrow == 800 * 10**6

    @pytest.mark.asyncio
    async def test_no_venue_gives_null_plan(self, engine: Engine) -> None:
        engine.controller.set_frozen(ALPHA_PLATFORM_ADAPTER, True, GOVERNANCE)
        engine.controller.set_frozen(BETA_PLATFORM_ADAPTER, True, GOVERNANCE)
        assert await engine.converter.get_conversion_plan(WETH, WAD, USDC, 1000) == NULL_PLAN

    @pytest.mark.asyncio
    async def test_find_borrow_strategies(self, engine: Engine) -> None:
        strategies = await engine.converter.find_borrow_strategies(
            EntryData(), WETH, WAD, USDC, 1000
        )
        assert strategies.converters == (ALPHA_CONVERTER, BETA_CONVERTER)
        assert strategies.collateral_amounts_out == (WAD, WAD)
        assert strategies.amount_to_borrows_out == (800 * 10**6, 800 * 10**6)
        assert strategies.aprs18 == (4 * 10**11, 8 * 10**11)

    @pytest.mark.asyncio
    async def test_quote_repay(self, engine: Engine) -> None:
        await open_position(engine, ALPHA_CONVERTER)
        converter = engine.converter
        assert await converter.quote_repay(USER, WETH, USDC, 200 * 10**6) == WAD // 4
        assert await converter.quote_repay(USER, WETH, USDC, 900 * 10**6) == WAD
        assert await converter.quote_repay(STRANGER, WETH, USDC, 900 * 10**6) == 0
        with pytest.raises(IncorrectValue):
            await converter.quote_repay(USER, WETH, USDC, 0)


class TestBorrow:
    @pytest.mark.asyncio
    async def test_opens_position_at_target(self, engine: Engine) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        assert engine.borrow_manager.get_pool_adapter(ALPHA_CONVERTER, USER, WETH, USDC) == address
        assert engine.debt_monitor.is_position_registered(address)
        status = await engine.borrow_manager.pool_adapter(address).get_status()
        assert status.opened
        assert status.health_factor18 == 2 * WAD
        assert engine.venues["alpha"].available_to_borrow(USDC) == USDC_LIQUIDITY - 800 * 10**6

    @pytest.mark.asyncio
    async def test_second_borrow_extends_position(self, engine: Engine) -> None:
        first = await open_position(engine, ALPHA_CONVERTER)
        second = await open_position(
            engine, ALPHA_CONVERTER, collateral_amount=WAD // 2, amount_to_borrow=400 * 10**6
        )
        assert first == second
        status = await engine.borrow_manager.pool_adapter(first).get_status()
        assert status.collateral_amount == 3 * WAD // 2
        assert status.amount_to_pay == 1200 * 10**6
        assert engine.debt_monitor.get_count_positions() == 1

    @pytest.mark.asyncio
    async def test_below_min_health_factor_rolled_back(self, engine: Engine) -> None:
        # hf ~1.03 is above 1.0 but below the 1.05 minimum
        with pytest.raises(WrongHealthFactor):
            await open_position(engine, ALPHA_CONVERTER, amount_to_borrow=1550 * 10**6)
        assert engine.debt_monitor.get_count_positions() == 0
        assert engine.borrow_manager.get_pool_adapter(ALPHA_CONVERTER, USER, WETH, USDC) == ZERO_ADDRESS
        assert engine.venues["alpha"].available_to_borrow(USDC) == USDC_LIQUIDITY

    @pytest.mark.asyncio
    async def test_below_one_rejected_by_venue(self, engine: Engine) -> None:
        with pytest.raises(WrongHealthFactor):
            await open_position(engine, ALPHA_CONVERTER, amount_to_borrow=1700 * 10**6)
        assert engine.borrow_manager.get_pool_adapter(ALPHA_CONVERTER, USER, WETH, USDC) == ZERO_ADDRESS
        assert engine.venues["alpha"].available_to_borrow(USDC) == USDC_LIQUIDITY

    @pytest.mark.asyncio
    async def test_rejected_extension_keeps_existing_position(self, engine: Engine) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        with pytest.raises(WrongHealthFactor):
            await open_position(
                engine, ALPHA_CONVERTER, collateral_amount=WAD // 100, amount_to_borrow=800 * 10**6
            )
        status = await engine.borrow_manager.pool_adapter(address).get_status()
        assert status.opened
        assert status.amount_to_pay == 800 * 10**6
        assert engine.debt_monitor.is_position_registered(address)

    @pytest.mark.asyncio
    async def test_frozen_venue(self, engine: Engine) -> None:
        engine.controller.set_frozen(ALPHA_PLATFORM_ADAPTER, True, GOVERNANCE)
        with pytest.raises(VenueUnavailable):
            await open_position(engine, ALPHA_CONVERTER)
        engine.controller.set_frozen(ALPHA_PLATFORM_ADAPTER, False, GOVERNANCE)
        engine.venues["alpha"].set_frozen(True)
        with pytest.raises(VenueUnavailable):
            await open_position(engine, ALPHA_CONVERTER)
        assert engine.debt_monitor.get_count_positions() == 0

    @pytest.mark.asyncio
    async def test_unknown_converter(self, engine: Engine) -> None:
        with pytest.raises(ConverterNotFound):
            await open_position(engine, "0x0000000000000000000000000000000000000c99")

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, engine: Engine) -> None:
        with pytest.raises(ZeroAddress):
            await engine.converter.borrow(
                ALPHA_CONVERTER, WETH, WAD, USDC, 800 * 10**6, ZERO_ADDRESS, USER
            )
        with pytest.raises(IncorrectValue):
            await engine.converter.borrow(ALPHA_CONVERTER, WETH, 0, USDC, 800 * 10**6, USER, USER)


class TestRepay:
    @pytest.mark.asyncio
    async def test_full_repay_returns_excess(self, engine: Engine) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        result = await engine.converter.repay(WETH, USDC, 1000 * 10**6, USER, USER)
        assert result == RepayResult(WAD, 200 * 10**6)
        assert not engine.debt_monitor.is_position_registered(address)
        assert engine.venues["alpha"].available_to_borrow(USDC) == USDC_LIQUIDITY

    @pytest.mark.asyncio
    async def test_partial_repay(self, engine: Engine) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        result = await engine.converter.repay(WETH, USDC, 200 * 10**6, USER, USER)
        assert result == RepayResult(WAD // 4, 0)
        status = await engine.borrow_manager.pool_adapter(address).get_status()
        assert status.amount_to_pay == 600 * 10**6
        assert status.health_factor18 == 2 * WAD
        assert engine.debt_monitor.is_position_registered(address)

    @pytest.mark.asyncio
    async def test_repay_includes_accrued_interest(
        self, engine: Engine, chain: ManualChain
    ) -> None:
        await open_position(engine, ALPHA_CONVERTER)
        chain.advance(1000)
        first = await engine.converter.repay(WETH, USDC, 800 * 10**6, USER, USER)
        # 800 of interest is still owed
        assert first.returned_borrow_amount_out == 0
        assert first.collateral_amount_out < WAD
        assert engine.debt_monitor.get_count_positions() == 1
        second = await engine.converter.repay(WETH, USDC, 800, USER, USER)
        assert second.returned_borrow_amount_out == 0
        assert first.collateral_amount_out + second.collateral_amount_out == WAD
        assert engine.debt_monitor.get_count_positions() == 0

    @pytest.mark.asyncio
    async def test_repay_walks_positions_in_order(self, engine: Engine) -> None:
        on_alpha = await open_position(engine, ALPHA_CONVERTER)
        on_beta = await open_position(engine, BETA_CONVERTER)
        result = await engine.converter.repay(WETH, USDC, 1200 * 10**6, USER, USER)
        assert result == RepayResult(WAD + WAD // 2, 0)
        assert not engine.debt_monitor.is_position_registered(on_alpha)
        status = await engine.borrow_manager.pool_adapter(on_beta).get_status()
        assert status.amount_to_pay == 400 * 10**6

    @pytest.mark.asyncio
    async def test_nothing_to_repay(self, engine: Engine) -> None:
        assert await engine.converter.repay(WETH, USDC, 10**6, USER, USER) == RepayResult(0, 10**6)

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, engine: Engine) -> None:
        with pytest.raises(IncorrectValue):
            await engine.converter.repay(WETH, USDC, 0, USER, USER)
        with pytest.raises(ZeroAddress):
            await engine.converter.repay(WETH, USDC, 1, ZERO_ADDRESS, USER)

    @pytest.mark.asyncio
    async def test_debt_gap_venue(self, gap_engine: Engine) -> None:
        address = await open_position(gap_engine, BETA_CONVERTER)
        # 808 USDC are sent, the venue keeps 800
        assert await gap_engine.converter.quote_repay(USER, WETH, USDC, 1000 * 10**6) == WAD
        result = await gap_engine.converter.repay(WETH, USDC, 1000 * 10**6, USER, USER)
        assert result == RepayResult(WAD, 200 * 10**6)
        assert not gap_engine.debt_monitor.is_position_registered(address)

    @pytest.mark.asyncio
    async def test_debt_gap_venue_closes_when_debt_is_covered(self, gap_engine: Engine) -> None:
        address = await open_position(gap_engine, BETA_CONVERTER)
        result = await gap_engine.converter.repay(WETH, USDC, 805 * 10**6, USER, USER)
        assert result == RepayResult(WAD, 5 * 10**6)
        assert not gap_engine.debt_monitor.is_position_registered(address)


class TestRepayTheBorrow:
    @pytest.mark.asyncio
    async def test_close(self, engine: Engine) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        result = await engine.converter.repay_the_borrow(address, True, GOVERNANCE)
        assert result == (WAD, 800 * 10**6)
        assert not engine.debt_monitor.is_position_registered(address)
        assert engine.borrow_manager.get_pool_adapter(ALPHA_CONVERTER, USER, WETH, USDC) == ZERO_ADDRESS

    @pytest.mark.asyncio
    async def test_partial_restores_target(
        self, engine: Engine, oracle: StaticPriceOracle
    ) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        oracle.set_price(WETH, 1000 * WAD)
        result = await engine.converter.repay_the_borrow(address, False, GOVERNANCE)
        assert result == (0, 400 * 10**6)
        status = await engine.borrow_manager.pool_adapter(address).get_status()
        assert status.health_factor18 == 2 * WAD

    @pytest.mark.asyncio
    async def test_partial_on_healthy_position_is_noop(self, engine: Engine) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        assert await engine.converter.repay_the_borrow(address, False, GOVERNANCE) == (0, 0)

    @pytest.mark.asyncio
    async def test_governance_only(self, engine: Engine) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        with pytest.raises(GovernanceOnly):
            await engine.converter.repay_the_borrow(address, True, KEEPER)

    @pytest.mark.asyncio
    async def test_unknown_position(self, engine: Engine) -> None:
        with pytest.raises(PositionNotRegistered):
            await engine.converter.repay_the_borrow("0xnope", True, GOVERNANCE)


class TestRequireRepay:
    @pytest.mark.asyncio
    async def test_adds_collateral(self, engine: Engine, oracle: StaticPriceOracle) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        oracle.set_price(WETH, 1000 * WAD)
        health_factor18 = await engine.converter.require_repay(400 * 10**6, WAD, address, KEEPER)
        assert health_factor18 == 2 * WAD
        status = await engine.borrow_manager.pool_adapter(address).get_status()
        assert status.collateral_amount == 2 * WAD
        assert status.amount_to_pay == 800 * 10**6

    @pytest.mark.asyncio
    async def test_repays_debt(self, engine: Engine, oracle: StaticPriceOracle) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        oracle.set_price(WETH, 1000 * WAD)
        health_factor18 = await engine.converter.require_repay(400 * 10**6, 0, address, KEEPER)
        assert health_factor18 == 2 * WAD

    @pytest.mark.asyncio
    async def test_healthy_position_refused(self, engine: Engine) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        with pytest.raises(RepayToRebalanceNotAllowed):
            await engine.converter.require_repay(1, 0, address, KEEPER)

    @pytest.mark.asyncio
    async def test_nothing_to_repay(self, engine: Engine, oracle: StaticPriceOracle) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        oracle.set_price(WETH, 1000 * WAD)
        with pytest.raises(IncorrectValue):
            await engine.converter.require_repay(0, 0, address, KEEPER)

    @pytest.mark.asyncio
    async def test_keeper_only(self, engine: Engine, oracle: StaticPriceOracle) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        oracle.set_price(WETH, 1000 * WAD)
        with pytest.raises(KeeperOnly):
            await engine.converter.require_repay(0, WAD, address, USER)

    @pytest.mark.asyncio
    async def test_liquidated_position_closed(self, engine: Engine) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        engine.borrow_manager.pool_adapter(address).simulate_liquidation(WAD // 2, 400 * 10**6)
        assert await engine.converter.require_repay(0, 0, address, KEEPER) == 0
        assert not engine.debt_monitor.is_position_registered(address)
        assert engine.borrow_manager.get_pool_adapter(ALPHA_CONVERTER, USER, WETH, USDC) == ZERO_ADDRESS
        # the next borrow gets a fresh pool adapter
        assert await open_position(engine, ALPHA_CONVERTER) != address

    @pytest.mark.asyncio
    async def test_paused_venue_fails(self, engine: Engine, oracle: StaticPriceOracle) -> None:
        address = await open_position(engine, ALPHA_CONVERTER)
        oracle.set_price(WETH, 1000 * WAD)
        engine.venues["alpha"].set_paused(True)
        with pytest.raises(VenueUnavailable):
            await engine.converter.require_repay(0, WAD, address, KEEPER)


class TestReconvert:
    @pytest.mark.asyncio
    async def test_moves_to_cheaper_venue(self, engine: Engine, chain: ManualChain) -> None:
        old = await open_position(engine, BETA_CONVERTER)
        chain.advance(1000)
        before = await engine.borrow_manager.pool_adapter(old).get_status()
        new = await engine.converter.reconvert(old, 1000, KEEPER)

        assert new != old
        assert engine.debt_monitor.positions == (new,)
        assert engine.debt_monitor.last_reconversion_block(new) == chain.block
        new_adapter = engine.borrow_manager.pool_adapter(new)
        assert new_adapter.config().origin_converter == ALPHA_CONVERTER
        status = await new_adapter.get_status()
        # the beta debt with its 1000 blocks of interest, on the same collateral
        assert status.amount_to_pay == 800_001_600
        assert status.collateral_amount == WAD
        assert status.health_factor18 == before.health_factor18
        assert before.health_factor18 < 2 * WAD
        old_status = await engine.borrow_manager.pool_adapter(old).get_status()
        assert not old_status.opened
        assert engine.venues["beta"].available_to_borrow(USDC) == USDC_LIQUIDITY

    @pytest.mark.asyncio
    async def test_user_may_reconvert_own_position(self, engine: Engine) -> None:
        old = await open_position(engine, BETA_CONVERTER)
        new = await engine.converter.reconvert(old, 1000, USER)
        assert engine.debt_monitor.positions == (new,)

    @pytest.mark.asyncio
    async def test_stranger_refused(self, engine: Engine) -> None:
        old = await open_position(engine, BETA_CONVERTER)
        with pytest.raises(KeeperOnly):
            await engine.converter.reconvert(old, 1000, STRANGER)

    @pytest.mark.asyncio
    async def test_unknown_position(self, engine: Engine) -> None:
        with pytest.raises(PositionNotRegistered):
            await engine.converter.reconvert("0xnope", 1000, KEEPER)

    @pytest.mark.asyncio
    async def test_period_must_be_positive(self, engine: Engine) -> None:
        old = await open_position(engine, BETA_CONVERTER)
        with pytest.raises(IncorrectValue):
            await engine.converter.reconvert(old, 0, KEEPER)

    @pytest.mark.asyncio
    async def test_no_other_venue(self, engine: Engine) -> None:
        old = await open_position(engine, BETA_CONVERTER)
        engine.controller.set_frozen(ALPHA_PLATFORM_ADAPTER, True, GOVERNANCE)
        with pytest.raises(MigrationFailed):
            await engine.converter.reconvert(old, 1000, KEEPER)
        assert engine.debt_monitor.positions == (old,)

    @pytest.mark.asyncio
    async def test_failure_leaves_old_position_untouched(
        self, engine: Engine, chain: ManualChain
    ) -> None:
        old = await open_position(engine, BETA_CONVERTER)
        chain.advance(1000)
        # the old venue refuses the repayment after the new position is opened
        engine.venues["beta"].set_paused(True)
        with pytest.raises(MigrationFailed):
            await engine.converter.reconvert(old, 1000, KEEPER)

        assert engine.debt_monitor.positions == (old,)
        old_status = await engine.borrow_manager.pool_adapter(old).get_status()
        assert old_status.opened
        assert old_status.collateral_amount == WAD
        assert old_status.amount_to_pay == 800_001_600
        assert engine.venues["alpha"].available_to_borrow(USDC) == USDC_LIQUIDITY
        assert engine.borrow_manager.get_pool_adapter(ALPHA_CONVERTER, USER, WETH, USDC) == ZERO_ADDRESS

    @pytest.mark.asyncio
    async def test_collateral_is_carried_over(self, engine: Engine, chain: ManualChain) -> None:
        old = await open_position(engine, BETA_CONVERTER, collateral_amount=3 * WAD)
        chain.advance(1000)
        new = await engine.converter.reconvert(old, 1000, KEEPER)
        status = await engine.borrow_manager.pool_adapter(new).get_status()
        assert status.collateral_amount == 3 * WAD
        assert status.amount_to_pay == 800_001_600
        old_status = await engine.borrow_manager.pool_adapter(old).get_status()
        assert old_status.collateral_amount == 0
        assert not old_status.opened

    @pytest.mark.asyncio
    async def test_venue_where_user_already_borrows_is_not_a_target(
        self, engine: Engine, chain: ManualChain
    ) -> None:
        old = await open_position(engine, BETA_CONVERTER)
        existing = await open_position(engine, ALPHA_CONVERTER, collateral_amount=3 * WAD)
        chain.advance(1000)
        with pytest.raises(MigrationFailed):
            await engine.converter.reconvert(old, 1000, KEEPER)

        assert engine.debt_monitor.positions == (old, existing)
        status = await engine.borrow_manager.pool_adapter(existing).get_status()
        assert status.collateral_amount == 3 * WAD
        assert status.amount_to_pay == 800_000_800
        old_status = await engine.borrow_manager.pool_adapter(old).get_status()
        assert old_status.collateral_amount == WAD

    @pytest.mark.asyncio
    async def test_unhealthy_position_may_move_at_its_own_health_factor(
        self, engine: Engine, chain: ManualChain, oracle: StaticPriceOracle
    ) -> None:
        old = await open_position(engine, BETA_CONVERTER)
        chain.advance(1000)
        oracle.set_price(WETH, 1500 * WAD)
        before = await engine.borrow_manager.pool_adapter(old).get_status()
        new = await engine.converter.reconvert(old, 1000, KEEPER)
        status = await engine.borrow_manager.pool_adapter(new).get_status()
        assert status.collateral_amount == WAD
        assert status.health_factor18 == before.health_factor18

    @pytest.mark.asyncio
    async def test_partial_collateral_release_refused(
        self, engine: Engine, chain: ManualChain
    ) -> None:
        old = await open_position(engine, BETA_CONVERTER)
        chain.advance(1000)
        adapter = engine.borrow_manager.pool_adapter(old)
        release = AsyncMock(return_value=WAD // 2)
        with patch.object(adapter, "get_collateral_amount_to_return", release):
            with pytest.raises(MigrationFailed, match="would release"):
                await engine.converter.reconvert(old, 1000, KEEPER)

        assert engine.debt_monitor.positions == (old,)
        assert (await adapter.get_status()).collateral_amount == WAD
        assert engine.borrow_manager.get_pool_adapter(ALPHA_CONVERTER, USER, WETH, USDC) == ZERO_ADDRESS
