#!/usr/bin/env python3
"""
bfbin_tool.py - Convert and inspect Byfl binary-output files

Usage:
  # Convert every table to CSV on stdout
  python bfbin_tool.py convert program.byfl

  # Convert selected tables to YAML / JSON
  python bfbin_tool.py convert program.byfl -f yaml --include Functions
  python bfbin_tool.py convert program.byfl -f json --exclude Loops -o out.json

  # Take defaults from a YAML config file (flags still win)
  python bfbin_tool.py convert program.byfl --config convert.yaml

  # Table summary
  python bfbin_tool.py info program.byfl

  # Raw callback event stream
  python bfbin_tool.py dump program.byfl

Config file keys mirror the convert options:
  format: yaml
  include: [Functions, Program]
  exclude: []
"""

import argparse
import csv
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

import yaml

from bfbin import BfbinCallbacks, TableKind, process_byfl_file

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ('csv', 'json', 'yaml')


@dataclass
class DecodedTable:
    """A table reassembled from callback events."""
    name: str
    kind: str
    columns: List[str] = field(default_factory=list)
    rows: List[List[Any]] = field(default_factory=list)
    values: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        if self.kind == 'keyval':
            return {'name': self.name, 'kind': self.kind, 'values': self.values}
        return {'name': self.name, 'kind': self.kind,
                'columns': self.columns, 'rows': self.rows}


class TableHandler:
    """Base event handler; the handler itself is passed as user data.

    Subclasses override the on_* hooks they need. Hooks never fire for
    tables rejected by the include/exclude filter.
    """

    def __init__(self, include: Optional[List[str]] = None,
                 exclude: Optional[List[str]] = None):
        self.include = set(include or [])
        self.exclude = set(exclude or [])
        self.errors: List[str] = []
        self.kind: Optional[TableKind] = None
        self.selected = False
        self._key: Optional[str] = None

    def wants(self, name: str) -> bool:
        if self.include and name not in self.include:
            return False
        return name not in self.exclude

    def callbacks(self) -> BfbinCallbacks:
        return BfbinCallbacks(
            error_cb=TableHandler._error,
            table_begin_cb=TableHandler._table_begin,
            table_end_cb=TableHandler._table_end,
            column_uint64_cb=TableHandler._column,
            column_string_cb=TableHandler._column,
            column_bool_cb=TableHandler._column,
            column_end_cb=TableHandler._columns_end,
            row_begin_cb=TableHandler._row_begin,
            data_uint64_cb=TableHandler._datum,
            data_string_cb=TableHandler._datum,
            data_bool_cb=TableHandler._datum,
            row_end_cb=TableHandler._row_end,
        )

    def process(self, filename: str) -> bool:
        """Decode `filename` through this handler. Returns True on success."""
        process_byfl_file(filename, self.callbacks(), user_data=self)
        return not self.errors

    # Dispatch from decoder callbacks; every hook runs only for selected tables

    def _error(self, message: str) -> None:
        self.errors.append(message)

    def _table_begin(self, kind: TableKind, name: str) -> None:
        self.kind = kind
        self.selected = self.wants(name)
        if self.selected:
            self.on_table_begin(kind, name)
        else:
            logger.debug("Skipping table %r", name)

    def _table_end(self) -> None:
        if self.selected:
            self.on_table_end()
        self.kind = None
        self.selected = False

    def _column(self, name: str) -> None:
        if not self.selected:
            return
        if self.kind == TableKind.KEYVAL:
            self._key = name
        else:
            self.on_column(name)

    def _columns_end(self) -> None:
        if self.selected:
            self.on_columns_end()

    def _row_begin(self) -> None:
        if self.selected:
            self.on_row_begin()

    def _datum(self, value: Any) -> None:
        if not self.selected:
            return
        if self.kind == TableKind.KEYVAL:
            self.on_entry(self._key, value)
        else:
            self.on_datum(value)

    def _row_end(self) -> None:
        if self.selected:
            self.on_row_end()

    # Hooks

    def on_table_begin(self, kind: TableKind, name: str) -> None:
        pass

    def on_table_end(self) -> None:
        pass

    def on_column(self, name: str) -> None:
        pass

    def on_columns_end(self) -> None:
        pass

    def on_row_begin(self) -> None:
        pass

    def on_datum(self, value: Any) -> None:
        pass

    def on_row_end(self) -> None:
        pass

    def on_entry(self, key: str, value: Any) -> None:
        pass


class TableCollector(TableHandler):
    """Collects selected tables into DecodedTable objects."""

    def __init__(self, include=None, exclude=None):
        super().__init__(include, exclude)
        self.tables: List[DecodedTable] = []
        self._row: List[Any] = []

    def on_table_begin(self, kind, name):
        kind_name = 'keyval' if kind == TableKind.KEYVAL else 'basic'
        self.tables.append(DecodedTable(name=name, kind=kind_name))

    def on_column(self, name):
        self.tables[-1].columns.append(name)

    def on_row_begin(self):
        self._row = []

    def on_datum(self, value):
        self._row.append(value)

    def on_row_end(self):
        self.tables[-1].rows.append(self._row)

    def on_entry(self, key, value):
        table = self.tables[-1]
        if key in table.values:
            logger.warning("Table %r repeats key %r; keeping the last value",
                           table.name, key)
        table.values[key] = value


class CsvTableWriter(TableHandler):
    """Streams selected tables as CSV, one block per table.

    Each block is the table name, then either a header line and one line
    per row or one key,value line per entry. Blocks are separated by a
    blank line.
    """

    def __init__(self, stream: TextIO, include=None, exclude=None):
        super().__init__(include, exclude)
        self.writer = csv.writer(stream, lineterminator='\n')
        self.tables_written = 0
        self._header: List[str] = []
        self._row: List[Any] = []

    @staticmethod
    def _cell(value: Any) -> Any:
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return value

    def on_table_begin(self, kind, name):
        if self.tables_written:
            self.writer.writerow([])
        self.writer.writerow([name])
        self._header = []

    def on_table_end(self):
        self.tables_written += 1

    def on_column(self, name):
        self._header.append(name)

    def on_columns_end(self):
        # A zero-column table is written as its name line only
        if self._header:
            self.writer.writerow(self._header)

    def on_row_begin(self):
        self._row = []

    def on_datum(self, value):
        self._row.append(self._cell(value))

    def on_row_end(self):
        if self._header:
            self.writer.writerow(self._row)

    def on_entry(self, key, value):
        self.writer.writerow([key, self._cell(value)])


@dataclass
class TableSummary:
    """Shape of one table for the info command."""
    name: str
    kind: str
    columns: int = 0
    rows: int = 0


class TableSummarizer(TableHandler):
    """Counts columns and rows (or entries) per table."""

    def __init__(self, include=None, exclude=None):
        super().__init__(include, exclude)
        self.summaries: List[TableSummary] = []

    def on_table_begin(self, kind, name):
        kind_name = 'keyval' if kind == TableKind.KEYVAL else 'basic'
        self.summaries.append(TableSummary(name=name, kind=kind_name))

    def on_column(self, name):
        self.summaries[-1].columns += 1

    def on_row_end(self):
        self.summaries[-1].rows += 1

    def on_entry(self, key, value):
        self.summaries[-1].columns += 1


def dump_events(filename: str, stream: TextIO) -> List[str]:
    """Write one line per decoder callback event. Returns reported errors."""
    errors: List[str] = []

    def emit(event: str, *args) -> None:
        if args:
            stream.write(f"{event} {' '.join(repr(a) for a in args)}\n")
        else:
            stream.write(f"{event}\n")

    def handler(event):
        return lambda user_data, *args: emit(event, *args)

    callbacks = BfbinCallbacks(
        error_cb=lambda user_data, message: errors.append(message),
        table_begin_cb=lambda user_data, kind, name: emit('table_begin', kind.name, name),
        table_end_cb=handler('table_end'),
        column_begin_cb=handler('column_begin'),
        column_uint64_cb=handler('column_uint64'),
        column_string_cb=handler('column_string'),
        column_bool_cb=handler('column_bool'),
        column_end_cb=handler('column_end'),
        row_begin_cb=handler('row_begin'),
        data_uint64_cb=handler('data_uint64'),
        data_string_cb=handler('data_string'),
        data_bool_cb=handler('data_bool'),
        row_end_cb=handler('row_end'),
    )
    process_byfl_file(filename, callbacks)
    return errors


def load_config(path: Optional[Path]) -> Dict[str, Any]:
    """Load convert defaults from a YAML file."""
    if path is None:
        return {}
    config = yaml.safe_load(path.read_text()) or {}
    if not isinstance(config, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    unknown = set(config) - {'format', 'include', 'exclude'}
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {', '.join(sorted(unknown))}")
    fmt = config.get('format')
    if fmt is not None and fmt not in OUTPUT_FORMATS:
        raise ValueError(f"Unknown output format in {path}: {fmt}")
    return config


def convert(filename: str, fmt: str, stream: TextIO,
            include: Optional[List[str]] = None,
            exclude: Optional[List[str]] = None) -> List[str]:
    """Convert `filename` to `fmt` on `stream`. Returns reported errors."""
    if fmt == 'csv':
        writer = CsvTableWriter(stream, include, exclude)
        writer.process(filename)
        return writer.errors

    collector = TableCollector(include, exclude)
    if not collector.process(filename):
        return collector.errors

    tables = [t.to_dict() for t in collector.tables]
    if fmt == 'json':
        stream.write(json.dumps(tables, indent=2))
        stream.write('\n')
    else:
        stream.write(yaml.dump(tables, default_flow_style=False, sort_keys=False))
    return []


def configure_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, stream=sys.stderr, force=True,
                        format='%(levelname)s %(name)s: %(message)s')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Byfl binary-output converter')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Increase log verbosity (repeatable)')
    parser.add_argument('-q', '--quiet', action='store_true',
                        help='Only log errors')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # Convert
    conv = subparsers.add_parser('convert', help='Convert tables to CSV, JSON or YAML')
    conv.add_argument('input', type=Path, help='Input Byfl binary file')
    conv.add_argument('-f', '--format', choices=OUTPUT_FORMATS,
                      help='Output format (default: csv)')
    conv.add_argument('-o', '--output', type=Path, help='Output file')
    conv.add_argument('--include', action='append', metavar='NAME',
                      help='Only output this table (repeatable)')
    conv.add_argument('--exclude', action='append', metavar='NAME',
                      help='Omit this table (repeatable)')
    conv.add_argument('--config', type=Path, help='YAML file of convert defaults')

    # Info
    inf = subparsers.add_parser('info', help='Summarize tables')
    inf.add_argument('input', type=Path, help='Input Byfl binary file')

    # Dump
    dmp = subparsers.add_parser('dump', help='Print the decoder event stream')
    dmp.add_argument('input', type=Path, help='Input Byfl binary file')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    filename = str(args.input)
    errors: List[str] = []

    if args.command == 'convert':
        try:
            config = load_config(args.config)
        except (OSError, ValueError, yaml.YAMLError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        fmt = args.format or config.get('format') or 'csv'
        include = args.include if args.include is not None else config.get('include')
        exclude = args.exclude if args.exclude is not None else config.get('exclude')

        if args.output:
            with open(args.output, 'w', newline='', encoding='utf-8',
                      errors='surrogateescape') as out:
                errors = convert(filename, fmt, out, include, exclude)
            if not errors:
                print(f"Converted to {args.output}", file=sys.stderr)
        else:
            sys.stdout.reconfigure(errors='surrogateescape')
            errors = convert(filename, fmt, sys.stdout, include, exclude)

    elif args.command == 'info':
        summarizer = TableSummarizer()
        if summarizer.process(filename):
            print(f"File: {filename}")
            print(f"Tables: {len(summarizer.summaries)}")
            for s in summarizer.summaries:
                if s.kind == 'keyval':
                    print(f"  {s.name} (key:value): {s.columns} entries")
                else:
                    print(f"  {s.name} (basic): {s.columns} columns, {s.rows} rows")
        errors = summarizer.errors

    elif args.command == 'dump':
        errors = dump_events(filename, sys.stdout)

    for message in errors:
        print(f"Error: {message}", file=sys.stderr)
    return 1 if errors else 0


if __name__ == '__main__':
    sys.exit(main())
