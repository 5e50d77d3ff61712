import pytest

from config import settings
from services.errors import InvalidTierDefinitionError
from services.pricing import (
    DEFAULT_TIER_NAME,
    delete_tiers,
    resolve_tier,
    resolve_unit_cost,
    set_tiers,
    validate_tiers,
)


PRODUCT = settings.DEFAULT_PRODUCT_ID

TIERS = [
    {"tier_name": "Starter", "min_volume": 1, "max_volume": 100, "credits_per_unit": 40},
    {"tier_name": "Growth", "min_volume": 101, "max_volume": 500, "credits_per_unit": 30},
    {"tier_name": "Scale", "min_volume": 501, "max_volume": None, "credits_per_unit": 20},
]


def test_validate_tiers_sorts_by_volume():
    ordered = validate_tiers(list(reversed(TIERS)))
    assert [tier["tier_name"] for tier in ordered] == ["Starter", "Growth", "Scale"]


def test_validate_tiers_names_unnamed_tiers():
    ordered = validate_tiers([{"min_volume": 1, "max_volume": None, "credits_per_unit": 3}])
    assert ordered[0]["tier_name"] == "Tier 1"


@pytest.mark.parametrize(
    "tiers",
    [
        [],
        [{"tier_name": "A", "min_volume": 0, "max_volume": None, "credits_per_unit": 1}],
        [{"tier_name": "A", "min_volume": 2, "max_volume": None, "credits_per_unit": 1}],
        [{"tier_name": "A", "min_volume": 1, "max_volume": None, "credits_per_unit": 0}],
        [
            {"tier_name": "A", "min_volume": 1, "max_volume": 10, "credits_per_unit": 5},
            {"tier_name": "B", "min_volume": 10, "max_volume": None, "credits_per_unit": 4},
        ],
        [
            {"tier_name": "A", "min_volume": 1, "max_volume": 10, "credits_per_unit": 5},
            {"tier_name": "B", "min_volume": 12, "max_volume": None, "credits_per_unit": 4},
        ],
        [
            {"tier_name": "A", "min_volume": 1, "max_volume": None, "credits_per_unit": 5},
            {"tier_name": "B", "min_volume": 11, "max_volume": None, "credits_per_unit": 4},
        ],
        [{"tier_name": "A", "min_volume": 1, "max_volume": None, "credits_per_unit": True}],
    ],
    ids=["empty", "zero-start", "late-start", "free-unit", "overlap", "gap", "unbounded-middle", "bool-credits"],
)
def test_validate_tiers_rejects_invalid_sets(tiers):
    with pytest.raises(InvalidTierDefinitionError):
        validate_tiers(tiers)


@pytest.mark.asyncio
async def test_resolve_tier_by_month_position(db, make_client):
    client = await make_client()
    await set_tiers(client.id, PRODUCT, TIERS, db)

    assert (await resolve_tier(client.id, PRODUCT, 0, db)).tier_name == "Starter"
    assert (await resolve_tier(client.id, PRODUCT, 99, db)).credits_per_unit == 40
    assert (await resolve_tier(client.id, PRODUCT, 100, db)).tier_name == "Growth"
    scale = await resolve_tier(client.id, PRODUCT, 5000, db)
    assert scale.tier_name == "Scale"
    assert scale.max_volume is None


@pytest.mark.asyncio
async def test_resolve_unit_cost_follows_next_unit(db, make_client):
    client = await make_client()
    assert await resolve_unit_cost(client.id, PRODUCT, 0, db) == settings.DEFAULT_UNIT_COST_CREDITS

    await set_tiers(client.id, PRODUCT, TIERS, db)
    assert await resolve_unit_cost(client.id, PRODUCT, 100, db) == 30
    assert await resolve_unit_cost(client.id, PRODUCT, 500, db) == 20


@pytest.mark.asyncio
async def test_resolve_tier_defaults_without_tiers(db, make_client):
    client = await make_client()

    tier = await resolve_tier(client.id, PRODUCT, 12, db)

    assert tier.is_default is True
    assert tier.tier_name == DEFAULT_TIER_NAME
    assert tier.credits_per_unit == settings.DEFAULT_UNIT_COST_CREDITS


@pytest.mark.asyncio
async def test_set_tiers_replaces_whole_set(db, make_client):
    client = await make_client()
    await set_tiers(client.id, PRODUCT, TIERS, db)

    rows = await set_tiers(
        client.id,
        PRODUCT,
        [{"tier_name": "Flat", "min_volume": 1, "max_volume": None, "credits_per_unit": 25}],
        db,
    )

    assert [row.tier_name for row in rows] == ["Flat"]
    assert (await resolve_tier(client.id, PRODUCT, 700, db)).credits_per_unit == 25
    assert await delete_tiers(client.id, PRODUCT, db) == 1
    assert (await resolve_tier(client.id, PRODUCT, 700, db)).is_default is True


@pytest.mark.asyncio
async def test_invalid_replacement_keeps_existing_tiers(db, make_client):
    client = await make_client()
    await set_tiers(client.id, PRODUCT, TIERS, db)

    with pytest.raises(InvalidTierDefinitionError):
        await set_tiers(
            client.id,
            PRODUCT,
            [{"tier_name": "Bad", "min_volume": 3, "max_volume": None, "credits_per_unit": 1}],
            db,
        )

    assert (await resolve_tier(client.id, PRODUCT, 0, db)).tier_name == "Starter"
