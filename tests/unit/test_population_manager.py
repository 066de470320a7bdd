"""Unit tests for bot seeding, rotation, expiry and liquidation."""
import random
from datetime import timedelta

import pytest

from perp_arena.config.config import PopulationConfig
from perp_arena.constants import STRATEGIES
from perp_arena.domain.models import Direction, EphemeralOrigin, Owner, PositionStatus, Side
from perp_arena.execution.position_ledger import PositionLedger
from perp_arena.population.manager import PopulationManager
from perp_arena.population.personas import TemplatePersonaProvider


def _manager(**overrides):
    config = PopulationConfig(**overrides)
    ledger = PositionLedger()
    return PopulationManager(config, ledger, random.Random(99)), ledger


class TestGenerateBot:
    def test_bot_shape(self, now):
        manager, ledger = _manager()
        bot = manager.generate_bot(Direction.SHORT, "MON", 0.02, now)

        assert bot.id == f"bot-1-{int(now.timestamp() * 1000)}"
        assert bot.owner == Owner.SYSTEM
        assert bot.owner_id is None
        assert bot.is_ephemeral
        assert bot.status == PositionStatus.ACTIVE
        assert bot.effective_direction == Side.SHORT
        assert 5 <= bot.leverage <= 49
        assert 1000 <= bot.balance <= 8999
        assert 0.019 <= bot.entry_price <= 0.021
        assert isinstance(bot.origin, EphemeralOrigin)
        assert 30 <= bot.origin.max_age_seconds <= 120
        assert bot.id not in ledger

    def test_ids_unique_within_same_millisecond(self, now):
        manager, _ = _manager()
        ids = {manager.generate_bot(Direction.LONG, "MON", 1.0, now).id for _ in range(50)}
        assert len(ids) == 50

    def test_max_age_drawn_per_bot(self, now):
        manager, _ = _manager()
        ages = {manager.generate_bot(Direction.LONG, "MON", 1.0, now).origin.max_age_seconds for _ in range(20)}
        assert len(ages) > 1


class TestSeed:
    def test_seed_balanced(self, now):
        manager, ledger = _manager(initial_per_side=4)
        bots = manager.seed("MON", 0.02, now)
        assert len(bots) == 8
        assert len(ledger) == 8
        assert sum(1 for b in bots if b.direction == Direction.LONG) == 4
        assert sum(1 for b in bots if b.direction == Direction.SHORT) == 4


class TestRotate:
    def test_adds_batch_toward_target(self, now):
        manager, ledger = _manager(target_min=10, target_max=10, batch_size=3, initial_per_side=0)
        result = manager.rotate("MON", 0.02, now)
        assert len(result.added) == 3
        assert result.target == 10
        assert result.survivors == 0
        assert len(ledger.ephemeral_positions()) == 3

    def test_new_bots_favor_smaller_side(self, now):
        manager, ledger = _manager(target_min=10, target_max=10, batch_size=2)
        for _ in range(3):
            ledger.add(manager.generate_bot(Direction.SHORT, "MON", 1.0, now))
        result = manager.rotate("MON", 1.0, now)
        assert [b.direction for b in result.added] == [Direction.LONG, Direction.LONG]

    def test_hard_cap_bounds_population(self, now):
        manager, ledger = _manager(target_min=10, target_max=10, batch_size=10, hard_cap=4)
        manager.rotate("MON", 1.0, now)
        second = manager.rotate("MON", 1.0, now)
        assert second.added == []
        assert len(ledger.ephemeral_positions()) == 4

    def test_no_additions_at_or_above_target(self, now):
        manager, ledger = _manager(target_min=2, target_max=2, initial_per_side=1)
        manager.seed("MON", 1.0, now)
        assert manager.rotate("MON", 1.0, now).added == []

    def test_expired_bot_retired_then_dropped(self, now):
        manager, ledger = _manager(target_min=0, target_max=0, grace_seconds=5.0)
        bot = manager.generate_bot(Direction.LONG, "MON", 1.0, now)
        ledger.add(bot)
        max_age = bot.origin.max_age_seconds

        expired_at = now + timedelta(seconds=max_age + 1)
        result = manager.rotate("MON", 1.0, expired_at)
        assert result.expired == [bot]
        assert bot.status == PositionStatus.IDLE
        assert bot.retired_at == expired_at
        assert bot.id in ledger

        # Still inside the grace window
        assert manager.rotate("MON", 1.0, expired_at + timedelta(seconds=4)).dropped == []

        result = manager.rotate("MON", 1.0, expired_at + timedelta(seconds=5))
        assert result.dropped == [bot.id]
        assert bot.id not in ledger

    def test_exhausted_bot_liquidated(self, now):
        manager, ledger = _manager(target_min=0, target_max=0)
        bot = manager.generate_bot(Direction.LONG, "MON", 1.0, now)
        bot.pnl = -bot.balance
        ledger.add(bot)

        result = manager.rotate("MON", 1.0, now + timedelta(seconds=1))

        assert result.liquidated == [bot]
        assert bot.status == PositionStatus.LIQUIDATED
        assert bot.balance == 0.0
        assert bot.retired_at is not None

    def test_settled_liquidation_gets_grace_window(self, now):
        manager, ledger = _manager(target_min=0, target_max=0, grace_seconds=5.0)
        bot = manager.generate_bot(Direction.LONG, "MON", 1.0, now)
        bot.status = PositionStatus.LIQUIDATED
        ledger.add(bot)

        first = manager.rotate("MON", 1.0, now)
        assert first.dropped == []
        assert bot.retired_at == now

        second = manager.rotate("MON", 1.0, now + timedelta(seconds=6))
        assert second.dropped == [bot.id]

    def test_user_positions_untouched(self, position_factory, now):
        manager, ledger = _manager(target_min=0, target_max=0, grace_seconds=0.0)
        user = position_factory("user-1", status=PositionStatus.IDLE)
        ledger.add(user)
        manager.rotate("MON", 1.0, now + timedelta(hours=1))
        assert ledger.get("user-1") is user
        assert user.retired_at is None


@pytest.mark.parametrize("seed", [1, 2, 3])
def test_rotation_is_deterministic(seed, now):
    def run():
        config = PopulationConfig(target_min=5, target_max=15)
        manager = PopulationManager(config, PositionLedger(), random.Random(seed))
        manager.seed("MON", 1.0, now)
        trail = []
        for i in range(20):
            result = manager.rotate("MON", 1.0, now + timedelta(seconds=3 * i))
            trail.append((len(result.added), len(result.expired), len(result.dropped)))
        return trail

    assert run() == run()


def test_persona_provider_keeps_name_hint():
    provider = TemplatePersonaProvider(random.Random(3))
    persona = provider("  Vortex ")
    assert persona.name == "Vortex"
    assert persona.strategy in STRATEGIES


def test_persona_provider_fallback_name():
    persona = TemplatePersonaProvider(random.Random(3))(None)
    assert persona.name.startswith("Unit-")
