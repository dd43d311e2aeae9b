"""
cli.py — Command line interface.

    mapping-engine detect FILE
    mapping-engine process FILE [--distributor ID] [--default-period YYYY-MM] [--organization ID]
    mapping-engine stats
    mapping-engine history
    mapping-engine add-synonym FIELD VARIANT
    mapping-engine deactivate-synonym FIELD VARIANT

Files are decoded with pandas; the engine only ever sees rows of cells.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

import pandas as pd

from . import __version__
from .config import load_config
from .errors import RequiredFieldUnresolved
from .file_profiler import split_extract
from .history_db import HistoryDB
from .pipeline import MappingEngine
from .training import (
    add_custom_synonym, deactivate_synonym, get_mapping_history, get_mapping_statistics,
)


# ═══════════════════════════════════════════════════════════════
#  FILE LOADING
# ═══════════════════════════════════════════════════════════════

def load_raw_rows(path: str, sheet: Optional[str] = None) -> list:
    """Read a CSV/XLSX extract as raw rows (header position unknown)."""
    suffix = Path(path).suffix.lower()
    if suffix in ('.xlsx', '.xlsm', '.xls'):
        df = pd.read_excel(path, sheet_name=sheet or 0, header=None, dtype=object)
    elif suffix in ('.csv', '.txt'):
        df = pd.read_csv(path, header=None, dtype=object, keep_default_na=False)
    else:
        raise ValueError(f"Unsupported file type: {suffix or path}")
    return [list(values) for values in df.itertuples(index=False, name=None)]


# ═══════════════════════════════════════════════════════════════
#  COMMANDS
# ═══════════════════════════════════════════════════════════════

def _cmd_detect(engine: MappingEngine, args) -> int:
    header, sample = split_extract(load_raw_rows(args.file, args.sheet), engine.config)
    print(header.summary())
    result = engine.detect(
        header.headers, sample,
        distributor_id=args.distributor,
        organization_id=args.organization,
    )
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(result.summary())
    return 0


def _cmd_process(engine: MappingEngine, args) -> int:
    result = engine.process_extract(
        load_raw_rows(args.file, args.sheet),
        distributor_id=args.distributor,
        organization_id=args.organization,
        default_period=args.default_period,
        filename=Path(args.file).name,
        learn=not args.no_learn,
    )
    if args.json:
        print(json.dumps({
            'detection': result.detection.to_dict(),
            'transform': result.transform.to_dict(),
        }, indent=2))
    else:
        print(result.summary())

    if args.output:
        pd.DataFrame([r.to_dict() for r in result.transform.records]).to_csv(args.output, index=False)
        print(f"Records saved to: {args.output}")
    return 0


def _cmd_stats(engine: MappingEngine, args) -> int:
    print(get_mapping_statistics(engine.store, args.organization).summary())
    return 0


def _cmd_history(engine: MappingEngine, args) -> int:
    records = get_mapping_history(
        engine.store, args.organization, args.distributor,
        include_superseded=args.all, limit=args.limit,
    )
    if not records:
        print("No learned mappings.")
    for rec in records:
        state = 'active' if rec.is_active else f"superseded {rec.superseded_at}"
        print(
            f"{rec.source_key}  {rec.confidence:.0%}  {rec.success_count} run(s)  "
            f"{rec.detection_method or '-'}  [{state}]"
        )
        for f, column in rec.mapping.as_simple().items():
            print(f"    {f:<15} → {column}")
    return 0


def _cmd_add_synonym(engine: MappingEngine, args) -> int:
    synonym = add_custom_synonym(engine.store, args.field, args.variant, args.organization, args.weight)
    print(f"Added synonym '{synonym.variant_text}' → {synonym.canonical_field.value} ({synonym.scope.value})")
    return 0


def _cmd_deactivate_synonym(engine: MappingEngine, args) -> int:
    if deactivate_synonym(engine.store, args.field, args.variant, args.organization):
        print(f"Deactivated synonym '{args.variant}' for {args.field}")
        return 0
    print(f"Error: no synonym '{args.variant}' for {args.field}")
    return 1


# ═══════════════════════════════════════════════════════════════
#  ENTRY POINT
# ═══════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mapping-engine',
        description="Detect distributor column mappings and transform rows into canonical records",
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--config', help="JSON file with EngineConfig overrides")
    parser.add_argument('--db', help="Learning store path (default: MAPPING_ENGINE_DB or ~/.mapping_engine)")
    parser.add_argument('--organization', help="Organization scope for synonyms and history")
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('detect', help="Detect the column mapping of a file")
    p.add_argument('file')
    p.add_argument('--sheet', help="Excel sheet name (default: first sheet)")
    p.add_argument('--distributor', help="Distributor id used in the source key")
    p.add_argument('--json', action='store_true', help="Print the detection contract as JSON")
    p.set_defaults(func=_cmd_detect)

    p = sub.add_parser('process', help="Detect, transform and learn from a file")
    p.add_argument('file')
    p.add_argument('--sheet', help="Excel sheet name (default: first sheet)")
    p.add_argument('--distributor', help="Distributor id used in the source key")
    p.add_argument('--default-period', help="YYYY-MM applied to rows without a date")
    p.add_argument('--output', help="Write transformed records to this CSV")
    p.add_argument('--no-learn', action='store_true', help="Do not update the learning store")
    p.add_argument('--json', action='store_true', help="Print detection + transform contracts as JSON")
    p.set_defaults(func=_cmd_process)

    p = sub.add_parser('stats', help="Learning statistics")
    p.set_defaults(func=_cmd_stats)

    p = sub.add_parser('history', help="List learned mappings")
    p.add_argument('--distributor')
    p.add_argument('--all', action='store_true', help="Include superseded mappings")
    p.add_argument('--limit', type=int, default=20)
    p.set_defaults(func=_cmd_history)

    p = sub.add_parser('add-synonym', help="Register a header variant for a field")
    p.add_argument('field')
    p.add_argument('variant')
    p.add_argument('--weight', type=float, default=1.0)
    p.set_defaults(func=_cmd_add_synonym)

    p = sub.add_parser('deactivate-synonym', help="Stop using a header variant")
    p.add_argument('field')
    p.add_argument('variant')
    p.set_defaults(func=_cmd_deactivate_synonym)

    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    if args.db:
        config = config.with_overrides(db_path=args.db)

    engine = MappingEngine(config, store=HistoryDB(config.db_path))
    try:
        return args.func(engine, args)
    except RequiredFieldUnresolved as e:
        print(f"Error: {e}")
        return 2
    except (ValueError, OSError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        engine.close()


if __name__ == '__main__':
    sys.exit(main())
