"""
column_mapper.py — Header-text detectors for distributor extracts.

Maps arbitrary column names to canonical fields using:
  - Exact matching against the synonym table (confidence = synonym weight)
  - Partial containment matching (confidence = weight × partial penalty)
  - Ordered regular-expression rules as a last-resort structural detector

No API calls and no stored state — the synonym table is handed in.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from .config import EngineConfig
from .fields import (
    CanonicalField, ColumnMapping, DetectionMethod, FieldMapping, FieldSynonym,
    FIELD_ORDER, normalize_header,
)


# ═══════════════════════════════════════════════════════════════
#  DEFAULT SYNONYMS (Seed Dictionary)
# ═══════════════════════════════════════════════════════════════

# (variant, weight) per field. Seeded into the store on first open.
DEFAULT_FIELD_SYNONYMS = {
    CanonicalField.QUANTITY: [
        ('quantity', 1.0), ('qty', 1.0), ('units', 1.0), ('cases', 1.0),
        ('boxes', 0.9), ('count', 0.8), ('volume', 0.8), ('pieces', 0.9),
        ('pcs', 0.9), ('units sold', 1.0), ('qty sold', 1.0),
        ('quantity sold', 1.0), ('total units', 0.9), ('total qty', 0.9),
        ('ship qty', 0.8), ('shipped', 0.7), ('ordered', 0.7),
    ],
    CanonicalField.REVENUE: [
        ('revenue', 1.0), ('amount', 1.0), ('total', 0.7), ('sales', 0.9),
        ('price', 0.7), ('value', 0.8), ('extended price', 1.0),
        ('total amount', 1.0), ('total sales', 1.0), ('sale amount', 1.0),
        ('net amount', 0.9), ('gross amount', 0.9), ('invoice amount', 1.0),
        ('order total', 1.0), ('line total', 0.9), ('ext price', 0.9),
    ],
    CanonicalField.DATE: [
        ('date', 0.8), ('order date', 1.0), ('invoice date', 1.0),
        ('ship date', 0.9), ('sale date', 1.0), ('transaction date', 1.0),
        ('created date', 0.8), ('posted date', 0.9), ('delivery date', 0.8),
        ('order_date', 1.0), ('invoice_date', 1.0), ('ship_date', 0.9),
        ('sale_date', 1.0), ('purchased date', 0.9),
    ],
    CanonicalField.ACCOUNT: [
        ('account', 1.0), ('customer', 1.0), ('client', 1.0), ('buyer', 0.9),
        ('company', 0.7), ('account name', 1.0), ('customer name', 1.0),
        ('client name', 1.0), ('ship to', 0.9), ('sold to', 0.9),
        ('bill to', 0.8), ('customer code', 0.8), ('account code', 0.8),
        ('acct', 0.9), ('cust', 0.9), ('store', 0.7), ('location', 0.6),
    ],
    CanonicalField.PRODUCT: [
        ('product', 1.0), ('item', 1.0), ('sku', 1.0), ('product name', 1.0),
        ('item name', 1.0), ('description', 0.8), ('item description', 0.9),
        ('product description', 1.0), ('item number', 1.0),
        ('product code', 1.0), ('part number', 0.9), ('material', 0.7),
        ('item code', 1.0), ('prod', 0.8),
    ],
    CanonicalField.ORDER_ID: [
        ('order id', 1.0), ('order number', 1.0), ('order_id', 1.0),
        ('order_number', 1.0), ('transaction id', 0.9), ('invoice number', 0.9),
        ('invoice id', 0.9), ('reference', 0.7), ('po number', 0.8),
        ('order no', 1.0), ('invoice no', 0.9),
    ],
    CanonicalField.CATEGORY: [
        ('category', 1.0), ('product category', 1.0), ('type', 0.7),
        ('class', 0.8), ('classification', 0.9), ('group', 0.7),
        ('product type', 0.9), ('item category', 1.0), ('product class', 0.9),
    ],
    CanonicalField.REGION: [
        ('region', 1.0), ('territory', 1.0), ('location', 0.8), ('area', 0.8),
        ('zone', 0.9), ('state', 0.8), ('province', 0.8), ('district', 0.9),
        ('sales region', 1.0), ('sales territory', 1.0),
    ],
    CanonicalField.REPRESENTATIVE: [
        ('rep', 1.0), ('rep name', 1.0), ('sales rep', 1.0),
        ('representative', 1.0), ('sales representative', 1.0),
        ('salesperson', 1.0), ('sales person', 1.0), ('account manager', 0.9),
        ('sold by', 0.8), ('agent', 0.7),
    ],
    CanonicalField.DISTRIBUTOR: [
        ('distributor', 1.0), ('distributor name', 1.0), ('wholesaler', 0.9),
        ('vendor', 0.8), ('vendor name', 0.8), ('supplier', 0.8),
    ],
}


def default_synonyms() -> list:
    """The seed dictionary as global FieldSynonym objects."""
    return [
        FieldSynonym(canonical_field=f, variant_text=variant, weight=weight)
        for f, entries in DEFAULT_FIELD_SYNONYMS.items()
        for variant, weight in entries
    ]


# ═══════════════════════════════════════════════════════════════
#  SYNONYM TABLE & MATCHER
# ═══════════════════════════════════════════════════════════════

@dataclass
class HeaderMatch:
    """One synonym hit for one header."""
    header: str
    canonical_field: CanonicalField
    confidence: float
    synonym: FieldSynonym
    exact: bool


class SynonymTable:
    """
    Read-only view over active synonyms, global plus organization-scoped.

    An organization-scoped synonym replaces the global one with the same
    (field, variant) for that lookup.
    """

    def __init__(self, synonyms: Iterable[FieldSynonym], config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        merged: dict = {}
        for syn in synonyms:
            if not syn.is_active or not syn.variant_text:
                continue
            slot = (syn.canonical_field, syn.variant_text)
            current = merged.get(slot)
            if current is None or (current.organization_id is None and syn.organization_id is not None):
                merged[slot] = syn
        self._synonyms = list(merged.values())
        self._exact: dict = {}
        for syn in self._synonyms:
            self._exact.setdefault(syn.variant_text, []).append(syn)

    @classmethod
    def from_defaults(cls, config: Optional[EngineConfig] = None) -> 'SynonymTable':
        return cls(default_synonyms(), config)

    def with_hints(self, hints: Optional[Iterable[FieldSynonym]]) -> 'SynonymTable':
        """New table with organization hints layered on top."""
        if not hints:
            return self
        return SynonymTable(self._synonyms + list(hints), self.config)

    def __len__(self) -> int:
        return len(self._synonyms)

    def synonyms_for(self, canonical_field) -> list:
        parsed = CanonicalField.parse(canonical_field)
        return [s for s in self._synonyms if s.canonical_field == parsed]

    def as_hint_dict(self) -> dict:
        """{'quantity': ['cases', 'qty', ...]} — the shape the AI service expects."""
        out: dict = {}
        for f in FIELD_ORDER:
            variants = sorted(s.variant_text for s in self.synonyms_for(f))
            if variants:
                out[f.value] = variants
        return out

    # ── Matching ──

    def match_header(self, header: str) -> list:
        """
        Every synonym hit for a header, best first.

        Ordering: confidence desc, exact before partial, longer variant,
        canonical field order.
        """
        normalized = normalize_header(header)
        if not normalized:
            return []

        hits = [
            HeaderMatch(header, syn.canonical_field, syn.weight, syn, True)
            for syn in self._exact.get(normalized, [])
        ]

        min_len = self.config.min_partial_match_length
        penalty = self.config.partial_match_penalty
        for syn in self._synonyms:
            variant = syn.variant_text
            if variant == normalized:
                continue
            shorter = min(len(variant), len(normalized))
            if shorter < min_len:
                continue
            if _contains_term(normalized, variant) or _contains_term(variant, normalized):
                hits.append(HeaderMatch(header, syn.canonical_field, syn.weight * penalty, syn, False))

        hits.sort(key=lambda h: (
            -h.confidence,
            not h.exact,
            -len(h.synonym.variant_text),
            FIELD_ORDER.index(h.canonical_field),
        ))
        return hits

    def match_headers(self, headers: list) -> ColumnMapping:
        """
        Synonym detector: one field per header, one header per field.

        The best hit per header decides its field; a field claimed by several
        headers keeps the highest confidence (first header on ties).
        """
        mapping = ColumnMapping()
        for header in headers:
            hits = self.match_header(header)
            if not hits:
                continue
            best = hits[0]
            current = mapping.get(best.canonical_field)
            if current is not None and current.confidence >= best.confidence:
                continue
            mapping.set(best.canonical_field, FieldMapping(
                source_column=header,
                confidence=round(best.confidence, 4),
                method=DetectionMethod.SYNONYM,
                synonyms=(best.synonym.key,),
                contributors=(DetectionMethod.SYNONYM,),
            ))
        return mapping


def _contains_term(haystack: str, needle: str) -> bool:
    """Substring test that treats '_' and ' ' alike."""
    return needle.replace('_', ' ') in haystack.replace('_', ' ')


def match_synonyms(headers: list, synonyms: Optional[Iterable[FieldSynonym]] = None,
                   organization_hints: Optional[Iterable[FieldSynonym]] = None,
                   config: Optional[EngineConfig] = None) -> ColumnMapping:
    """Convenience wrapper: build a table (defaults when none given) and match."""
    table = SynonymTable(synonyms, config) if synonyms is not None else SynonymTable.from_defaults(config)
    return table.with_hints(organization_hints).match_headers(headers)


# ═══════════════════════════════════════════════════════════════
#  PATTERN RULES
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PatternRule:
    regex: re.Pattern
    canonical_field: CanonicalField
    priority: int
    confidence: float


def _rule(pattern: str, f: CanonicalField, priority: int, confidence: float) -> PatternRule:
    return PatternRule(re.compile(pattern, re.IGNORECASE), f, priority, confidence)


# Specific anchored rules outrank loose containment rules; within a tier the
# list order is the tie-break (e.g. invoice_date before bare date).
PATTERN_RULES = [
    _rule(r'^(order|invoice|sale|ship|transaction)[_ ]?date$', CanonicalField.DATE, 100, 0.75),
    _rule(r'^(order[_ ]?(id|number|no)|invoice[_ ]?(number|no|id)|transaction[_ ]?id)$',
          CanonicalField.ORDER_ID, 100, 0.75),
    _rule(r'^(revenue|amount|total|extended[_ ]?price|sale[_ ]?amount|net[_ ]?amount|line[_ ]?total|ext[_ ]?price)$',
          CanonicalField.REVENUE, 100, 0.75),
    _rule(r'^(account|customer|client|ship[_ ]?to|sold[_ ]?to|acct[_ ]?name|cust[_ ]?name|customer[_ ]?name)$',
          CanonicalField.ACCOUNT, 100, 0.75),
    _rule(r'^(product|item|sku|part[_ ]?number|item[_ ]?number|prod[_ ]?name|item[_ ]?desc|description)$',
          CanonicalField.PRODUCT, 100, 0.75),
    _rule(r'^(quantity|qty|units|cases|boxes|count|volume|pieces|qnty|pcs|cs)$',
          CanonicalField.QUANTITY, 100, 0.75),
    _rule(r'^(rep|representative|sales[_ ]?rep|salesperson|account[_ ]?manager|sold[_ ]?by|sales[_ ]?person|sales[_ ]?agent)$',
          CanonicalField.REPRESENTATIVE, 100, 0.75),
    _rule(r'^(period|month[_ ]?year|sales[_ ]?period|reporting[_ ]?period)$', CanonicalField.DATE, 90, 0.7),
    _rule(r'^(distributor|wholesaler)([_ ]?name)?$', CanonicalField.DISTRIBUTOR, 90, 0.7),
    _rule(r'^(region|territory|zone|district|state)$', CanonicalField.REGION, 90, 0.7),
    _rule(r'^(category|class|product[_ ]?type)$', CanonicalField.CATEGORY, 90, 0.7),
    _rule(r'(order|invoice|transaction).*(id|number|no)', CanonicalField.ORDER_ID, 60, 0.65),
    _rule(r'(sales[_ ]?rep|salesperson|sold[_ ]?by|\brep\b)', CanonicalField.REPRESENTATIVE, 60, 0.65),
    _rule(r'date', CanonicalField.DATE, 50, 0.65),
    _rule(r'(quantity|qty|units|cases|boxes|pcs|qnty)', CanonicalField.QUANTITY, 50, 0.65),
    _rule(r'(revenue|amount|price|sales|total|line[_ ]?amt)', CanonicalField.REVENUE, 50, 0.65),
    _rule(r'(account|customer|client|acct|cust|buyer|purchaser)', CanonicalField.ACCOUNT, 50, 0.65),
    _rule(r'(product|item|sku|material|part|prod|desc)', CanonicalField.PRODUCT, 50, 0.65),
    _rule(r'(distributor|wholesaler|vendor|supplier)', CanonicalField.DISTRIBUTOR, 40, 0.6),
    _rule(r'(region|territory|zone|district)', CanonicalField.REGION, 40, 0.6),
    _rule(r'(category|class)', CanonicalField.CATEGORY, 40, 0.6),
    _rule(r'(amt|value|cost)', CanonicalField.REVENUE, 30, 0.6),
    _rule(r'(agent|manager)', CanonicalField.REPRESENTATIVE, 30, 0.6),
]

# Stable sort keeps list order inside a priority tier.
_ORDERED_RULES = sorted(PATTERN_RULES, key=lambda r: -r.priority)


def match_pattern(header: str) -> Optional[PatternRule]:
    """First rule (by descending priority) matching the header, or None."""
    normalized = normalize_header(header)
    if not normalized:
        return None
    for rule in _ORDERED_RULES:
        if rule.regex.search(normalized):
            return rule
    return None


def match_patterns(headers: list) -> ColumnMapping:
    """Pattern detector: one field per header, first/highest header per field."""
    mapping = ColumnMapping()
    for header in headers:
        rule = match_pattern(header)
        if rule is None:
            continue
        current = mapping.get(rule.canonical_field)
        if current is not None and current.confidence >= rule.confidence:
            continue
        mapping.set(rule.canonical_field, FieldMapping(
            source_column=header,
            confidence=rule.confidence,
            method=DetectionMethod.PATTERN,
            contributors=(DetectionMethod.PATTERN,),
        ))
    return mapping


# ═══════════════════════════════════════════════════════════════
#  REPORTING
# ═══════════════════════════════════════════════════════════════

def format_mapping_summary(mapping: ColumnMapping) -> str:
    """
    Generate a human-readable summary of a column mapping.

    Returns:
        Multi-line string describing the mapping
    """
    lines = ["Column Mapping Summary:"]
    lines.append("=" * 50)
    if not mapping:
        lines.append("  [no columns detected]")
    for f, entry in mapping.items():
        lines.append(f"  {f.value} → {entry.source_column} ({entry.confidence:.0%} {entry.method.value})")
    return '\n'.join(lines)
