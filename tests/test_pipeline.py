import json

import pytest

from mtg_import.importer.attribute_map import ATTRIBUTE_DEFS, build_attribute_input, build_product_attributes
from mtg_import.importer.pipeline import (
    PipelineOptions,
    RunContext,
    batch_items,
    card_to_product_input,
    make_product_slug,
    round_price,
)


@pytest.fixture
def run_context(import_context):
    return RunContext.build(import_context)


def test_slug(make_record):
    assert make_product_slug(make_record(1)) == "test-card-1-tst-1"
    assert make_product_slug(make_record(7, name="Jötun Grunt // Æther", collector_number="7★")) == (
        "j-tun-grunt-ther-tst-7"
    )
    assert make_product_slug(make_record(3, name="!!!", set="", collector_number="")).startswith("card-")


def test_slug_is_capped(make_record):
    slug = make_product_slug(make_record(1, name="x" * 400))
    assert len(slug) <= 255
    assert slug.endswith("-tst-1")


def test_product_input_shape(make_record, run_context):
    product = card_to_product_input(make_record(1), run_context)

    assert product["name"] == "Test Card 1"
    assert product["productType"] == "pt-1"
    assert product["category"] == "cat-1"
    assert product["channelListings"] == [{
        "channelId": "ch-1",
        "isPublished": True,
        "visibleInListings": True,
        "isAvailableForPurchase": True,
    }]
    assert product["media"] == [{"mediaUrl": "https://img.test/1/large.jpg", "alt": "Test Card 1"}]
    assert json.loads(product["description"])["blocks"][0]["data"]["text"] == "Creature — Elf"
    assert {"key": "set_code", "value": "tst"} in product["metadata"]


def test_variants_skus_and_prices(make_record, run_context):
    variants = card_to_product_input(make_record(1), run_context)["variants"]

    # 2 finiture x 5 condizioni
    assert len(variants) == 10
    assert variants[0]["sku"] == "00000001-NM-NF"
    assert variants[0]["name"] == "Near Mint - Non-Foil"
    assert variants[0]["stocks"] == [{"warehouse": "wh-1", "quantity": 0}]
    assert variants[0]["attributes"] == [
        {"id": "attr-condition", "dropdown": {"value": "Near Mint"}},
        {"id": "attr-finish", "dropdown": {"value": "Non-Foil"}},
    ]
    by_sku = {v["sku"]: v["channelListings"][0] for v in variants}
    assert by_sku["00000001-LP-NF"] == {"channelId": "ch-1", "price": "0.90", "costPrice": "0.45"}
    assert by_sku["00000001-DMG-F"] == {"channelId": "ch-1", "price": "0.63", "costPrice": "0.32"}


def test_missing_price_uses_default(make_record, run_context):
    record = make_record(2, finishes=["etched", "unknown"], prices={"usd": None})
    options = PipelineOptions(default_price=0.5, cost_price_ratio=0.4)

    variants = card_to_product_input(record, run_context, options)["variants"]

    assert [v["sku"] for v in variants][:2] == ["00000002-NM-E", "00000002-LP-E"]
    assert len(variants) == 5
    assert variants[0]["channelListings"][0] == {"channelId": "ch-1", "price": "0.50", "costPrice": "0.20"}


def test_deterministic_output(make_record, run_context):
    record = make_record(5)
    assert card_to_product_input(record, run_context) == card_to_product_input(record, run_context)


def test_product_attributes(make_record, run_context):
    attrs = card_to_product_input(make_record(1), run_context)["attributes"]
    assert attrs == [
        {"id": "attr-rarity", "dropdown": {"value": "common"}},
        {"id": "attr-cmc", "numeric": "2"},
    ]


def test_attribute_inputs_by_type(make_record):
    assert len(ATTRIBUTE_DEFS) == 23
    assert build_attribute_input("a", "NUMERIC", 2.5) == {"id": "a", "numeric": "2.5"}
    assert build_attribute_input("a", "BOOLEAN", 0) == {"id": "a", "boolean": False}
    assert build_attribute_input("a", "FILE", "x") is None

    ids = {"mtg-scryfall-id": "s", "loyalty": "l", "reserved-list": "r"}
    attrs = build_product_attributes(make_record(1), ids)
    # loyalty assente sulla carta: omesso
    assert attrs == [
        {"id": "s", "plainText": make_record(1).id},
        {"id": "r", "boolean": False},
    ]


def test_round_price_half_up():
    assert round_price(0.125) == 0.13
    assert round_price(2.675) == 2.68


def test_batch_items():
    assert batch_items(range(5), 2) == [[0, 1], [2, 3], [4]]
    assert batch_items([], 3) == []
    with pytest.raises(ValueError):
        batch_items([1], 0)
