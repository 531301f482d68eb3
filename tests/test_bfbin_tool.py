"""
Tests for the bfbin_tool converter and inspector.
"""

import io
import json
import logging
import pytest
import sys
import yaml
from pathlib import Path

# Add tools to path
sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))

from bfbin import ColumnType
from bfbin_tool import (
    TableCollector, CsvTableWriter, TableSummarizer, DecodedTable,
    convert, dump_events, load_config, main,
)


EXPECTED_CSV = (
    "Functions\n"
    "Function,Loads,Inlined\n"
    "main,1024,false\n"
    "helper,7,true\n"
    "\n"
    "Program\n"
    "Bytes loaded,8192\n"
    "Compiler,clang\n"
    "Instrumented,true\n"
)

EXPECTED_TABLES = [
    {'name': 'Functions', 'kind': 'basic',
     'columns': ['Function', 'Loads', 'Inlined'],
     'rows': [['main', 1024, False], ['helper', 7, True]]},
    {'name': 'Program', 'kind': 'keyval',
     'values': {'Bytes loaded': 8192, 'Compiler': 'clang', 'Instrumented': True}},
]


@pytest.fixture
def sample_path(sample_bytes, write_bfbin):
    return write_bfbin(sample_bytes)


class TestTableCollector:
    """Tests for reassembling tables from events."""

    def test_collects_all_tables(self, sample_path):
        collector = TableCollector()
        assert collector.process(sample_path)
        assert [t.to_dict() for t in collector.tables] == EXPECTED_TABLES

    def test_include_filter(self, sample_path):
        collector = TableCollector(include=['Program'])
        collector.process(sample_path)
        assert [t.name for t in collector.tables] == ['Program']

    def test_exclude_filter(self, sample_path):
        collector = TableCollector(exclude=['Program'])
        collector.process(sample_path)
        assert [t.name for t in collector.tables] == ['Functions']

    def test_errors_collected(self, write_bfbin):
        collector = TableCollector()
        assert not collector.process(write_bfbin(b'not a byfl file'))
        assert len(collector.errors) == 1

    def test_duplicate_key_warns(self, factory, write_bfbin, caplog):
        data = factory.keyval_table('KV', [
            ('k', ColumnType.UINT64, 1),
            ('k', ColumnType.UINT64, 2),
        ]).build()
        collector = TableCollector()
        with caplog.at_level(logging.WARNING, logger='bfbin_tool'):
            assert collector.process(write_bfbin(data))
        assert collector.tables[0].values == {'k': 2}
        assert "repeats key 'k'" in caplog.text

    def test_decoded_table_dict_by_kind(self):
        table = DecodedTable(name='KV', kind='keyval', values={'a': 1})
        assert table.to_dict() == {'name': 'KV', 'kind': 'keyval', 'values': {'a': 1}}


class TestCsvTableWriter:
    """Tests for streaming CSV output."""

    def test_csv_layout(self, sample_path):
        out = io.StringIO()
        writer = CsvTableWriter(out)
        assert writer.process(sample_path)
        assert out.getvalue() == EXPECTED_CSV
        assert writer.tables_written == 2

    def test_csv_quotes_commas(self, factory, write_bfbin):
        data = factory.basic_table('T', [('name', ColumnType.STRING)],
                                   [['a,b']]).build()
        out = io.StringIO()
        CsvTableWriter(out).process(write_bfbin(data))
        assert out.getvalue() == 'T\nname\n"a,b"\n'

    def test_csv_skips_excluded(self, sample_path):
        out = io.StringIO()
        CsvTableWriter(out, exclude=['Functions']).process(sample_path)
        assert out.getvalue().startswith('Program\n')

    def test_zero_column_table_writes_name_only(self, factory, write_bfbin):
        data = (factory.basic_table('Empty', [], [[], []])
                .keyval_table('KV', [('k', ColumnType.UINT64, 1)])
                .build())
        out = io.StringIO()
        writer = CsvTableWriter(out)
        assert writer.process(write_bfbin(data))
        assert out.getvalue() == 'Empty\n\nKV\nk,1\n'
        assert writer.tables_written == 2


class TestConvert:
    """Tests for the convert entry point."""

    def test_json(self, sample_path):
        out = io.StringIO()
        assert convert(sample_path, 'json', out) == []
        assert json.loads(out.getvalue()) == EXPECTED_TABLES

    def test_yaml(self, sample_path):
        out = io.StringIO()
        assert convert(sample_path, 'yaml', out) == []
        assert yaml.safe_load(out.getvalue()) == EXPECTED_TABLES

    def test_error_writes_nothing_for_collected_formats(self, write_bfbin):
        out = io.StringIO()
        errors = convert(write_bfbin(b'BYFLBIN\x01'), 'json', out)
        assert len(errors) == 1
        assert out.getvalue() == ''


class TestSummaryAndDump:
    """Tests for info and dump helpers."""

    def test_summaries(self, sample_path):
        summarizer = TableSummarizer()
        summarizer.process(sample_path)
        shapes = [(s.name, s.kind, s.columns, s.rows) for s in summarizer.summaries]
        assert shapes == [('Functions', 'basic', 3, 2), ('Program', 'keyval', 3, 0)]

    def test_dump_scenario(self, factory, write_bfbin):
        data = factory.basic_table('T', [('x', ColumnType.UINT64)], [[42]]).build()
        out = io.StringIO()
        assert dump_events(write_bfbin(data), out) == []
        assert out.getvalue().splitlines() == [
            "table_begin 'BASIC' 'T'",
            "column_begin",
            "column_uint64 'x'",
            "column_end",
            "row_begin",
            "data_uint64 42",
            "row_end",
            "table_end",
        ]


class TestConfig:
    """Tests for YAML convert defaults."""

    def test_no_config(self):
        assert load_config(None) == {}

    def test_valid_config(self, tmp_path):
        path = tmp_path / 'convert.yaml'
        path.write_text("format: yaml\ninclude: [Program]\n")
        assert load_config(path) == {'format': 'yaml', 'include': ['Program']}

    def test_empty_config(self, tmp_path):
        path = tmp_path / 'empty.yaml'
        path.write_text("")
        assert load_config(path) == {}

    def test_unknown_key(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text("colour: blue\n")
        with pytest.raises(ValueError, match="Unknown config keys"):
            load_config(path)

    def test_unknown_format(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text("format: xml\n")
        with pytest.raises(ValueError, match="Unknown output format"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / 'list.yaml'
        path.write_text("- csv\n")
        with pytest.raises(ValueError, match="must contain a mapping"):
            load_config(path)


class TestMain:
    """Tests for the command-line interface."""

    def test_convert_default_csv(self, sample_path, capsys):
        assert main(['convert', sample_path]) == 0
        assert capsys.readouterr().out == EXPECTED_CSV

    def test_convert_to_file(self, sample_path, tmp_path, capsys):
        out = tmp_path / 'out.json'
        assert main(['convert', sample_path, '-f', 'json', '-o', str(out)]) == 0
        assert json.loads(out.read_text()) == EXPECTED_TABLES
        assert 'Converted to' in capsys.readouterr().err

    def test_convert_preserves_undecodable_bytes(self, factory, write_bfbin, tmp_path):
        data = factory.keyval_table('KV', [('name', ColumnType.STRING, b'\xe9t\xe9')]).build()
        out = tmp_path / 'out.csv'
        assert main(['convert', write_bfbin(data), '-o', str(out)]) == 0
        assert out.read_bytes() == b'KV\nname,\xe9t\xe9\n'

    def test_config_supplies_defaults(self, sample_path, tmp_path, capsys):
        config = tmp_path / 'convert.yaml'
        config.write_text("format: json\ninclude: [Program]\n")
        assert main(['convert', sample_path, '--config', str(config)]) == 0
        tables = json.loads(capsys.readouterr().out)
        assert [t['name'] for t in tables] == ['Program']

    def test_flags_override_config(self, sample_path, tmp_path, capsys):
        config = tmp_path / 'convert.yaml'
        config.write_text("format: json\ninclude: [Program]\n")
        assert main(['convert', sample_path, '--config', str(config),
                     '-f', 'yaml', '--include', 'Functions']) == 0
        tables = yaml.safe_load(capsys.readouterr().out)
        assert [t['name'] for t in tables] == ['Functions']

    def test_bad_config_exits_1(self, sample_path, tmp_path, capsys):
        config = tmp_path / 'convert.yaml'
        config.write_text("format: xml\n")
        assert main(['convert', sample_path, '--config', str(config)]) == 1
        assert 'Unknown output format' in capsys.readouterr().err

    def test_info(self, sample_path, capsys):
        assert main(['info', sample_path]) == 0
        out = capsys.readouterr().out
        assert 'Tables: 2' in out
        assert 'Functions (basic): 3 columns, 2 rows' in out
        assert 'Program (key:value): 3 entries' in out

    def test_dump(self, sample_path, capsys):
        assert main(['dump', sample_path]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines[0] == "table_begin 'BASIC' 'Functions'"
        assert lines[-1] == 'table_end'

    def test_decode_error_exits_1(self, write_bfbin, capsys):
        assert main(['-q', 'info', write_bfbin(b'BYFLBAD')]) == 1
        assert 'does not appear to be a Byfl' in capsys.readouterr().err

    def test_missing_file_exits_1(self, tmp_path, capsys):
        assert main(['-q', 'dump', str(tmp_path / 'missing.byfl')]) == 1
        assert 'Failed to open' in capsys.readouterr().err

    def test_usage_error(self):
        with pytest.raises(SystemExit) as exc:
            main(['convert'])
        assert exc.value.code == 2
