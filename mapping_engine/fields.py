"""
fields.py — Canonical fields, detection provenance and mapping structures.

Shared vocabulary for every detector, the combiner, the transformer and the
learning store. No I/O here.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional


# ═══════════════════════════════════════════════════════════════
#  CANONICAL FIELDS
# ═══════════════════════════════════════════════════════════════

class CanonicalField(str, Enum):
    DATE = 'date'
    ACCOUNT = 'account'
    PRODUCT = 'product'
    QUANTITY = 'quantity'
    REVENUE = 'revenue'
    REPRESENTATIVE = 'representative'
    ORDER_ID = 'order_id'
    CATEGORY = 'category'
    REGION = 'region'
    DISTRIBUTOR = 'distributor'

    @classmethod
    def parse(cls, value) -> Optional['CanonicalField']:
        """Return the field for a name like 'Account' or ' order_id ', else None."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


# Canonical order doubles as the final tie-break between fields.
FIELD_ORDER = list(CanonicalField)

REQUIRED_FIELDS = (CanonicalField.ACCOUNT, CanonicalField.PRODUCT)

# Depletion reports may omit these; records are flagged, not rejected.
CONDITIONAL_FIELDS = (CanonicalField.DATE, CanonicalField.REVENUE)

FIELD_DESCRIPTIONS = {
    CanonicalField.QUANTITY: 'Number of units sold (Cases, Units, Qty, Boxes, etc.)',
    CanonicalField.REVENUE: 'Sale amount or revenue (Amount, Total, Sales, Extended Price, etc.)',
    CanonicalField.DATE: 'Transaction or order date (Order Date, Invoice Date, Sale Date, etc.)',
    CanonicalField.ACCOUNT: 'Customer or account name (Customer, Account, Client, Ship To, etc.)',
    CanonicalField.PRODUCT: 'Product or item identifier (Product, Item, SKU, Part Number, etc.)',
    CanonicalField.ORDER_ID: 'Order or transaction ID (Order ID, Invoice Number, Transaction ID, etc.)',
    CanonicalField.CATEGORY: 'Product category or type (Category, Type, Class, etc.)',
    CanonicalField.REGION: 'Geographic region or territory (Region, Territory, Zone, State, etc.)',
    CanonicalField.DISTRIBUTOR: 'Distributor or vendor name (Distributor, Vendor, Supplier, etc.)',
    CanonicalField.REPRESENTATIVE: 'Sales representative (Rep, Salesperson, Account Manager, etc.)',
}


# ═══════════════════════════════════════════════════════════════
#  DETECTION PROVENANCE
# ═══════════════════════════════════════════════════════════════

class DetectionMethod(str, Enum):
    LEARNED = 'learned'
    AI = 'ai'
    SYNONYM = 'synonym'
    PATTERN = 'pattern'
    VALUE_INFERENCE = 'value_inference'
    HYBRID = 'hybrid'


# Lower rank wins a tie.
METHOD_PRIORITY = {
    DetectionMethod.LEARNED: 0,
    DetectionMethod.AI: 1,
    DetectionMethod.SYNONYM: 2,
    DetectionMethod.PATTERN: 3,
    DetectionMethod.VALUE_INFERENCE: 4,
    DetectionMethod.HYBRID: 5,
}


def normalize_header(text) -> str:
    """Trim, lowercase and collapse internal whitespace."""
    if text is None:
        return ''
    return re.sub(r'\s+', ' ', str(text)).strip().lower()


def clean_headers(headers) -> list:
    """
    Trimmed header text, one entry per column.

    A repeated header gets a ' (2)', ' (3)', ... suffix so every column
    stays addressable by name: ['Qty', 'Qty'] → ['Qty', 'Qty (2)'].
    """
    out, seen = [], {}
    for h in headers:
        text = str(h).strip() if h is not None else ''
        key = normalize_header(text)
        if key:
            seen[key] = seen.get(key, 0) + 1
            if seen[key] > 1:
                text = f"{text} ({seen[key]})"
        out.append(text)
    return out


# ═══════════════════════════════════════════════════════════════
#  SYNONYMS
# ═══════════════════════════════════════════════════════════════

class SynonymScope(str, Enum):
    GLOBAL = 'global'
    ORGANIZATION = 'organization'


@dataclass
class FieldSynonym:
    """A header variant known to mean a canonical field."""
    canonical_field: CanonicalField
    variant_text: str
    organization_id: Optional[str] = None   # None = global synonym
    weight: float = 1.0
    usage_count: int = 0
    is_active: bool = True

    def __post_init__(self):
        parsed = CanonicalField.parse(self.canonical_field)
        if parsed is None:
            raise ValueError(f"Unknown canonical field: {self.canonical_field!r}")
        self.canonical_field = parsed
        self.variant_text = normalize_header(self.variant_text)
        self.weight = min(1.0, max(0.0, float(self.weight)))

    @property
    def scope(self) -> SynonymScope:
        return SynonymScope.GLOBAL if self.organization_id is None else SynonymScope.ORGANIZATION

    @property
    def key(self) -> tuple:
        """Unique identity: (field, variant, scope owner)."""
        return (self.canonical_field.value, self.variant_text, self.organization_id or '')


# ═══════════════════════════════════════════════════════════════
#  COLUMN MAPPING
# ═══════════════════════════════════════════════════════════════

@dataclass
class FieldMapping:
    """One canonical field resolved to one source column."""
    source_column: str
    confidence: float
    method: DetectionMethod
    # Synonym keys that produced this entry; the feedback writer bumps them.
    synonyms: tuple = ()
    # Every detector that proposed this same column.
    contributors: tuple = ()

    def to_dict(self) -> dict:
        return {
            'source_column': self.source_column,
            'confidence': round(float(self.confidence), 4),
            'method': self.method.value,
            'synonyms': [list(k) for k in self.synonyms],
            'contributors': [m.value for m in self.contributors],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'FieldMapping':
        return cls(
            source_column=data['source_column'],
            confidence=float(data.get('confidence', 0.0)),
            method=DetectionMethod(data.get('method', DetectionMethod.LEARNED.value)),
            synonyms=tuple(tuple(k) for k in data.get('synonyms', [])),
            contributors=tuple(DetectionMethod(m) for m in data.get('contributors', [])),
        )


class ColumnMapping:
    """
    CanonicalField -> FieldMapping, at most one source column per field.

    Iterates in canonical field order.
    """

    def __init__(self, entries: Optional[dict] = None):
        self._entries: dict = {}
        for f, entry in (entries or {}).items():
            self.set(f, entry)

    def set(self, canonical_field, entry: FieldMapping):
        parsed = CanonicalField.parse(canonical_field)
        if parsed is None:
            raise ValueError(f"Unknown canonical field: {canonical_field!r}")
        self._entries[parsed] = entry

    def get(self, canonical_field) -> Optional[FieldMapping]:
        parsed = CanonicalField.parse(canonical_field)
        return self._entries.get(parsed) if parsed else None

    def column_for(self, canonical_field) -> Optional[str]:
        entry = self.get(canonical_field)
        return entry.source_column if entry else None

    def remove(self, canonical_field):
        self._entries.pop(CanonicalField.parse(canonical_field), None)

    def fields(self) -> list:
        return [f for f in FIELD_ORDER if f in self._entries]

    def items(self) -> list:
        return [(f, self._entries[f]) for f in self.fields()]

    def columns(self) -> list:
        return [e.source_column for _, e in self.items()]

    def field_for_column(self, column: str) -> Optional[CanonicalField]:
        for f, e in self.items():
            if e.source_column == column:
                return f
        return None

    def average_confidence(self) -> float:
        if not self._entries:
            return 0.0
        return sum(e.confidence for e in self._entries.values()) / len(self._entries)

    def as_simple(self) -> dict:
        """{'date': 'Invoice Date', ...} — the shape callers and the AI contract use."""
        return {f.value: e.source_column for f, e in self.items()}

    def to_dict(self) -> dict:
        return {f.value: e.to_dict() for f, e in self.items()}

    @classmethod
    def from_dict(cls, data: dict) -> 'ColumnMapping':
        mapping = cls()
        for name, entry in (data or {}).items():
            if CanonicalField.parse(name) is None:
                continue
            mapping.set(name, FieldMapping.from_dict(entry))
        return mapping

    def copy(self) -> 'ColumnMapping':
        return ColumnMapping(dict(self._entries))

    def __contains__(self, canonical_field) -> bool:
        return CanonicalField.parse(canonical_field) in self._entries

    def __iter__(self) -> Iterator:
        return iter(self.fields())

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __eq__(self, other) -> bool:
        if not isinstance(other, ColumnMapping):
            return NotImplemented
        return self.as_simple() == other.as_simple()

    def __repr__(self) -> str:
        return f"ColumnMapping({self.as_simple()!r})"


def missing_required(mapping: ColumnMapping) -> list:
    """Required fields with no column or zero confidence."""
    missing = []
    for f in REQUIRED_FIELDS:
        entry = mapping.get(f)
        if entry is None or entry.confidence <= 0:
            missing.append(f.value)
    return missing


# ═══════════════════════════════════════════════════════════════
#  DETECTION RESULT
# ═══════════════════════════════════════════════════════════════

@dataclass
class DetectionResult:
    """Final detection output handed to the transformer and the feedback writer."""
    mapping: ColumnMapping
    overall_confidence: float
    method: DetectionMethod
    warnings: list = field(default_factory=list)
    source_key: str = ''
    headers: list = field(default_factory=list)
    # Raw per-detector proposals kept for audit.
    proposals: dict = field(default_factory=dict)
    ai_reasoning: str = ''

    def to_dict(self) -> dict:
        return {
            'mapping': self.mapping.as_simple(),
            'overallConfidence': round(self.overall_confidence, 4),
            'method': self.method.value,
            'warnings': list(self.warnings),
        }

    def summary(self) -> str:
        """Human-readable summary of the detected mapping."""
        lines = ["Column Mapping Summary:"]
        lines.append("=" * 50)
        for f in FIELD_ORDER:
            entry = self.mapping.get(f)
            if entry:
                lines.append(
                    f"  {f.value:<15} → {entry.source_column} "
                    f"({entry.confidence:.0%}, {entry.method.value})"
                )
            elif f in REQUIRED_FIELDS or f in CONDITIONAL_FIELDS:
                lines.append(f"  {f.value:<15} → [not detected]")
        lines.append(f"  Overall: {self.overall_confidence:.0%} via {self.method.value}")
        for w in self.warnings:
            lines.append(f"  ⚠ {w}")
        return '\n'.join(lines)
