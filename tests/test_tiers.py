from conftest import make_job
from mailshop_analytics.tiers import (
    TieredFilter, apply_tiered_filter, build_tiered_index, describe_filter, has_active_filter,
    get_process_type, normalize_process_type, primary_category, process_type_label, sub_category_fields,
)


def test_normalize_process_type_aliases():
    assert normalize_process_type("Affix glue+") == "labelApply"
    assert normalize_process_type("Insert+") == "insert"
    assert normalize_process_type("IJ") == "inkjet"
    assert normalize_process_type("HP Press") == "hpPress"
    assert normalize_process_type("Label/Apply") == "labelApply"
    assert normalize_process_type("Fold") == "fold"
    assert normalize_process_type(None) == ""
    assert normalize_process_type("Mystery") == "mystery"


def test_sub_category_fields_skip_price_and_primary():
    names = [f.name for f in sub_category_fields("laser")]
    assert names == ["print_type", "paper_stock", "color"]
    assert sub_category_fields("data") == []


def test_primary_category_prefers_basic_oe(jobs):
    assert primary_category(jobs[0], "insert") == "#10"
    assert primary_category(jobs[0], "inkjet") == "6x9"
    assert primary_category(jobs[0], "fold") is None


def test_build_tiered_index(jobs):
    index = build_tiered_index(jobs)

    assert [t.value for t in index.process_types] == ["insert", "inkjet", "fold"]
    insert = index.process_types[0]
    assert insert.count == 2
    assert insert.total_quantity == 15000
    assert insert.label == "Insert"

    cats = index.primary_categories["insert"]
    assert [(c.value, c.count) for c in cats] == [("#10", 2)]

    pockets = index.sub_categories[("insert", "#10")]["pockets"]
    assert {p.label for p in pockets} == {"Number of Pockets/Inserts: 2", "Number of Pockets/Inserts: 3"}

    fold = index.sub_categories[("fold", "8.5x11")]["fold_type"]
    assert fold[0].value == "Tri-fold"


def test_tier_lists_sorted_by_count():
    jobs = [
        make_job(1, requirements=[{"process_type": "fold", "price_per_m": "1", "paper_size": "A"}]),
        make_job(2, requirements=[{"process_type": "laser", "price_per_m": "1", "paper_size": "A"}]),
        make_job(3, requirements=[{"process_type": "laser", "price_per_m": "1", "paper_size": "B"}]),
        make_job(4, requirements=[{"process_type": "laser", "price_per_m": "1", "paper_size": "B"}]),
    ]
    index = build_tiered_index(jobs)
    assert [t.value for t in index.process_types] == ["laser", "fold"]
    assert [c.value for c in index.primary_categories["laser"]] == ["B", "A"]


def test_undefined_values_are_not_indexed():
    job = make_job(1, requirements=[{"process_type": "insert", "basic_oe": "undefined", "paper_size": "null"}])
    index = build_tiered_index([job])
    assert index.process_types[0].value == "insert"
    assert "insert" not in index.primary_categories


def test_apply_tiered_filter(jobs):
    assert apply_tiered_filter(jobs, TieredFilter()) == jobs

    by_type = apply_tiered_filter(jobs, TieredFilter(process_type="Insert"))
    assert [j.id for j in by_type] == [1, 2]

    by_sub = apply_tiered_filter(
        jobs, TieredFilter(process_type="insert", primary_category="#10", sub_categories={"pockets": ["3"]})
    )
    assert [j.id for j in by_sub] == [2]

    none = apply_tiered_filter(jobs, TieredFilter(process_type="laser"))
    assert none == []


def test_describe_filter():
    flt = TieredFilter(process_type="insert", primary_category="#10", sub_categories={"pockets": ["2", "3"]})
    assert has_active_filter(flt)
    assert describe_filter(flt) == "Insert → #10 → pockets: 2, 3"
    assert not has_active_filter(TieredFilter(sub_categories={"pockets": []}))


def test_get_process_type_lookup():
    assert get_process_type("insert").label == "Insert"
    assert get_process_type("mystery") is None
    assert process_type_label("insert") == "Insert"
    assert process_type_label("mystery") == "mystery"
    assert sub_category_fields("mystery") == []
