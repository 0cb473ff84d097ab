"""
Tiered job filter
=================

Cascading filter used by the job pickers:

Tier 1: Process Type (Insert, Laser, Fold, ...)
Tier 2: Primary Category - Basic OE / envelope size (``basic_oe``, else ``paper_size``)
Tier 3: Sub-categories - the remaining non-price fields of that process type

The index is rebuilt from scratch on every job-set change. Job sets are
hundreds to low thousands of rows, so a single pass is cheap enough.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Tuple

if TYPE_CHECKING:
    from .etl import Job, Requirement


# =============================================================================
# PROCESS TYPE REGISTRY
# =============================================================================

@dataclass(frozen=True)
class ProcessField:
    name: str
    label: str
    is_price: bool = False


@dataclass(frozen=True)
class ProcessType:
    key: str
    label: str
    fields: Tuple[ProcessField, ...] = ()


_PRICE = ProcessField("price_per_m", "Price (per/m)", is_price=True)
_PAPER = ProcessField("paper_size", "Paper Size")

PROCESS_TYPES: Tuple[ProcessType, ...] = (
    ProcessType("insert", "Insert", (_PAPER, ProcessField("pockets", "Number of Pockets/Inserts"), _PRICE)),
    ProcessType("sort", "Sort", (ProcessField("sort_type", "Sort Type"), _PAPER, _PRICE)),
    ProcessType("inkjet", "Inkjet", (
        ProcessField("print_coverage", "Print Coverage"), _PAPER,
        ProcessField("num_addresses", "Number of Addresses"), _PRICE,
    )),
    ProcessType("labelApply", "Label/Apply", (
        ProcessField("application_type", "Application Type"),
        ProcessField("label_size", "Label Size"), _PAPER, _PRICE,
    )),
    ProcessType("fold", "Fold", (
        ProcessField("fold_type", "Fold Type"), ProcessField("paper_stock", "Paper Stock"), _PAPER, _PRICE,
    )),
    ProcessType("laser", "Laser", (
        ProcessField("print_type", "Print Type"), ProcessField("paper_stock", "Paper Stock"),
        _PAPER, ProcessField("color", "Color"), _PRICE,
    )),
    ProcessType("hpPress", "HP Press", (
        ProcessField("print_type", "Print Type"), ProcessField("paper_stock", "Paper Stock"),
        _PAPER, ProcessField("color", "Color"), _PRICE,
    )),
    ProcessType("data", "Data"),
)

_BY_KEY: Dict[str, ProcessType] = {p.key: p for p in PROCESS_TYPES}

# Legacy / shorthand labels seen in imported jobs
_ALIASES = {
    "affixglue": "labelApply",
    "affix glue+": "labelApply",
    "affixlabel": "labelApply",
    "affix label+": "labelApply",
    "insertplus": "insert",
    "insert+": "insert",
    "insert9to12": "insert",
    "9-12 in+": "insert",
    "insert13plus": "insert",
    "13+ in+": "insert",
    "inkjetplus": "inkjet",
    "ink jet+": "inkjet",
    "sortalt": "insert",
}

PRIMARY_CATEGORY_FIELDS = ("basic_oe", "paper_size")

_EMPTY_MARKERS = {"", "undefined", "null"}


def normalize_process_type(process_type: Optional[str]) -> str:
    """Map free-form process type names onto registry keys ("" when missing)."""
    if process_type is None:
        return ""
    s = str(process_type).strip().lower()
    if not s:
        return ""
    if s in _ALIASES:
        return _ALIASES[s]

    if "inkjet" in s or s in {"ij", "ink jet"}:
        return "inkjet"
    if "label" in s or "affix" in s or s == "l/a":
        return "labelApply"
    if "hp" in s and "press" in s:
        return "hpPress"

    for p in PROCESS_TYPES:
        if p.key.lower() == s or p.label.lower() == s:
            return p.key
    return s


def get_process_type(key: str) -> Optional[ProcessType]:
    return _BY_KEY.get(key)


def process_type_label(key: str) -> str:
    p = get_process_type(key)
    return p.label if p else key


def sub_category_fields(process_type: str) -> List[ProcessField]:
    """Fields shown at tier 3: everything except prices and the primary category."""
    p = get_process_type(process_type)
    if p is None:
        return []
    return [
        f for f in p.fields
        if not f.is_price and "price" not in f.name and f.name not in PRIMARY_CATEGORY_FIELDS
    ]


# =============================================================================
# JOB ACCESSORS
# =============================================================================

def _clean(value) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    if s.lower() in _EMPTY_MARKERS:
        return None
    return s


def job_process_types(job: "Job") -> List[str]:
    """Distinct normalised process types of a job, in requirement order."""
    seen: List[str] = []
    for req in job.requirements:
        if req.process_type and req.process_type not in seen:
            seen.append(req.process_type)
    return seen


def _find_requirement(job: "Job", process_type: str) -> Optional["Requirement"]:
    key = normalize_process_type(process_type)
    for req in job.requirements:
        if req.process_type and req.process_type == key:
            return req
    return None


def primary_category(job: "Job", process_type: str) -> Optional[str]:
    req = _find_requirement(job, process_type)
    if req is None:
        return None
    for name in PRIMARY_CATEGORY_FIELDS:
        value = _clean(req.attributes.get(name))
        if value is not None:
            return value
    return None


def sub_category_value(job: "Job", process_type: str, field_name: str) -> Optional[str]:
    req = _find_requirement(job, process_type)
    if req is None:
        return None
    return _clean(req.attributes.get(field_name))


# =============================================================================
# INDEX
# =============================================================================

@dataclass
class TierItem:
    value: str
    label: str
    count: int
    total_quantity: int


@dataclass
class TieredIndex:
    process_types: List[TierItem] = field(default_factory=list)
    # process type -> primary categories
    primary_categories: Dict[str, List[TierItem]] = field(default_factory=dict)
    # (process type, primary category) -> field name -> values
    sub_categories: Dict[Tuple[str, str], Dict[str, List[TierItem]]] = field(default_factory=dict)


@dataclass
class TieredFilter:
    process_type: Optional[str] = None
    primary_category: Optional[str] = None
    sub_categories: Dict[str, List[str]] = field(default_factory=dict)


def _bump(counter: Dict[str, List[int]], key: str, quantity: int) -> None:
    slot = counter.setdefault(key, [0, 0])
    slot[0] += 1
    slot[1] += quantity


def _items(counter: Dict[str, List[int]], label_fmt: str = "{value}") -> List[TierItem]:
    items = [
        TierItem(value=k, label=label_fmt.format(value=k), count=c, total_quantity=q)
        for k, (c, q) in counter.items()
    ]
    return sorted(items, key=lambda t: t.count, reverse=True)


def build_tiered_index(jobs: Iterable["Job"]) -> TieredIndex:
    """Count jobs (and pieces) at each tier in one pass over the job list."""
    tier1: Dict[str, List[int]] = {}
    tier2: Dict[str, Dict[str, List[int]]] = {}
    tier3: Dict[Tuple[str, str], Dict[str, Dict[str, List[int]]]] = {}

    for job in jobs:
        qty = int(job.quantity or 0)
        for ptype in job_process_types(job):
            _bump(tier1, ptype, qty)

            category = primary_category(job, ptype)
            if category is None:
                continue
            _bump(tier2.setdefault(ptype, {}), category, qty)

            fields_for_category = tier3.setdefault((ptype, category), {})
            for f in sub_category_fields(ptype):
                value = sub_category_value(job, ptype, f.name)
                if value is not None:
                    _bump(fields_for_category.setdefault(f.name, {}), value, qty)

    # Tier 1 keeps registry order before the count sort; unknown types go last
    order = {p.key: i for i, p in enumerate(PROCESS_TYPES)}
    ordered = sorted(tier1.items(), key=lambda kv: order.get(kv[0], len(order)))
    process_items = sorted(
        [TierItem(value=k, label=process_type_label(k), count=c, total_quantity=q) for k, (c, q) in ordered],
        key=lambda t: t.count,
        reverse=True,
    )

    subs: Dict[Tuple[str, str], Dict[str, List[TierItem]]] = {}
    for key, field_map in tier3.items():
        labels = {f.name: f.label for f in sub_category_fields(key[0])}
        built = {
            name: _items(values, label_fmt=labels.get(name, name) + ": {value}")
            for name, values in field_map.items()
            if values
        }
        if built:
            subs[key] = built

    return TieredIndex(
        process_types=process_items,
        primary_categories={p: _items(c) for p, c in tier2.items()},
        sub_categories=subs,
    )


# =============================================================================
# FILTERING
# =============================================================================

def has_active_filter(flt: TieredFilter) -> bool:
    if flt.process_type or flt.primary_category:
        return True
    return any(values for values in flt.sub_categories.values())


def apply_tiered_filter(jobs: Iterable["Job"], flt: TieredFilter) -> List["Job"]:
    """Jobs matching every active tier. Tiers 2 and 3 only apply under a process type."""
    jobs = list(jobs)
    if not has_active_filter(flt):
        return jobs

    ptype = normalize_process_type(flt.process_type) if flt.process_type else None
    out = []
    for job in jobs:
        if ptype and ptype not in job_process_types(job):
            continue
        if ptype and flt.primary_category and primary_category(job, ptype) != flt.primary_category:
            continue
        if ptype and not all(
            sub_category_value(job, ptype, name) in allowed
            for name, allowed in flt.sub_categories.items()
            if allowed
        ):
            continue
        out.append(job)
    return out


def describe_filter(flt: TieredFilter) -> str:
    parts: List[str] = []
    if flt.process_type:
        parts.append(process_type_label(normalize_process_type(flt.process_type)))
    if flt.primary_category:
        parts.append(flt.primary_category)
    for name, values in flt.sub_categories.items():
        if values:
            parts.append(f"{name}: {', '.join(values)}")
    return " → ".join(parts)
