"""
Tests for the standalone Python codec generator.

Generated modules are compiled in memory and checked against FormatCodec on
the same schemas: same bytes out of encode, same records out of decode, same
error kinds and locations.
"""

import io
import types
import pytest
import sys
from pathlib import Path

from hypothesis import given, settings, HealthCheck

# Add tools to path
sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))
sys.path.insert(0, str(Path(__file__).parent))

from format_codec import FormatCodec
from format_errors import FormatError
from format_schema import load_format, load_format_file
from generate_python_codec import PythonCodecGenerator, generate_codec_source, main
from save_strategies import save_records

SCHEMA_DIR = Path(__file__).parent.parent / 'schemas'


def load_generated(schema, name='generated_codec'):
    source = generate_codec_source(schema, name, timestamp=False)
    module = types.ModuleType(name)
    exec(compile(source, f'<{name}>', 'exec'), module.__dict__)
    return module


def pair_for(doc):
    schema = load_format(doc)
    return FormatCodec(schema), load_generated(schema)


SAVE_SCHEMA = load_format_file(SCHEMA_DIR / 'save.yaml')
SAVE_FIXED_SCHEMA = load_format_file(SCHEMA_DIR / 'save_fixed.yaml')
SAVE_MODULE = load_generated(SAVE_SCHEMA, 'save_codec')
SAVE_FIXED_MODULE = load_generated(SAVE_FIXED_SCHEMA, 'save_fixed_codec')
SAVE_CODEC = FormatCodec(SAVE_SCHEMA)
SAVE_FIXED_CODEC = FormatCodec(SAVE_FIXED_SCHEMA)


class TestGeneratedSource:
    """Shape of the generated module."""

    def test_functions_per_type(self):
        source = generate_codec_source(SAVE_SCHEMA, timestamp=False)
        for name in ('_read_Building', '_write_Building', '_read_Upgrade',
                     '_write_Upgrade', '_read__root', '_write__root'):
            assert f'def {name}(' in source
        assert source.index('def _read_Building(') < source.index('def _read__root(')

    def test_entry_points(self):
        for name in ('decode', 'decode_stream', 'encode', 'encode_stream'):
            assert callable(getattr(SAVE_MODULE, name))

    def test_deterministic_without_timestamp(self):
        first = generate_codec_source(SAVE_SCHEMA, timestamp=False)
        second = generate_codec_source(SAVE_SCHEMA, timestamp=False)
        assert first == second
        assert 'Generated at' not in first

    def test_default_module_name(self):
        generator = PythonCodecGenerator(SAVE_SCHEMA)
        assert generator.module_name == 'save_codec'
        assert 'save_codec.py - Generated codec' in generator.generate()

    def test_endian_packers(self):
        source = generate_codec_source(SAVE_SCHEMA, timestamp=False)
        assert "_P_u16 = struct.Struct('>H')" in source
        assert "_P_f64 = struct.Struct('>d')" in source

    def test_empty_types(self):
        codec, module = pair_for({'types': {'Empty': []},
                                  'items': [{'id': 'e', 'type': 'Empty'}]})
        assert module.decode(b'') == codec.decode(b'').data == {'e': {}}
        assert module.encode({'e': {}}) == b''

    def test_no_unused_constants(self):
        source = generate_codec_source(SAVE_SCHEMA, timestamp=False)
        assert 'ENDIAN' not in source

    @pytest.mark.parametrize('type_name', ['value', 'Reader', 'count', 'P_u8'])
    def test_type_names_shadowing_helpers(self, type_name):
        codec, module = pair_for({
            'types': {type_name: [{'id': 'a', 'type': 'u8'}]},
            'items': [{'id': 'x', 'type': 'u16'}, {'id': 'v', 'type': type_name}],
        })
        payload = b'\x01\x00\x07'
        assert module.decode(payload) == codec.decode(payload).data == {
            'x': 1, 'v': {'a': 7}}
        assert module.encode({'x': 1, 'v': {'a': 7}}) == payload


class TestParity:
    """Generated code matches the interpreter."""

    @given(save_records())
    @settings(suppress_health_check=[HealthCheck.too_slow])
    def test_save_encode_decode(self, record):
        payload = SAVE_MODULE.encode(record)
        assert payload == SAVE_CODEC.encode(record).payload
        assert SAVE_MODULE.decode(payload) == SAVE_CODEC.decode(payload).data

    @given(save_records())
    @settings(suppress_health_check=[HealthCheck.too_slow])
    def test_save_fixed_encode_decode(self, record):
        payload = SAVE_FIXED_MODULE.encode(record)
        assert payload == SAVE_FIXED_CODEC.encode(record).payload
        assert SAVE_FIXED_MODULE.decode(payload) == SAVE_FIXED_CODEC.decode(payload).data

    def test_stream_entry_points(self):
        record = {'save_version': 30, 'reincarnation': 1, 'egg_rng_state': 2,
                  'egg_stack_size': 3, 'halloween_monsters': 4, 'season_n': 5,
                  'breath_effects': 6, 'building_offset': 7, 'upgrade_offset': 8,
                  'buildings': [], 'upgrades': []}
        sink = io.BytesIO()
        SAVE_MODULE.encode_stream(record, sink)
        SAVE_MODULE.encode_stream(record, sink)
        stream = io.BytesIO(sink.getvalue())
        first = SAVE_MODULE.decode_stream(stream)
        second = SAVE_MODULE.decode_stream(stream)
        assert first == second == SAVE_CODEC.decode(SAVE_MODULE.encode(record)).data

    def test_advance_composite(self):
        doc = {
            'types': {'Pair': [{'id': 'a', 'type': 'u16'}, {'id': 'b', 'type': 'f32'}]},
            'items': [
                {'id': 'v', 'type': 'u8'},
                {'id': 'p', 'type': 'Pair', 'if': 'v > 1', 'advance_if_false': True},
                {'id': 'xs', 'type': 'i8', 'repeat': 2},
            ],
        }
        codec, module = pair_for(doc)
        for record in ({'v': 0, 'xs': [-1, 1]}, {'v': 2, 'p': {'a': 5, 'b': 0.5}, 'xs': [0, 0]}):
            payload = module.encode(record)
            assert payload == codec.encode(record).payload
            assert module.decode(payload) == codec.decode(payload).data


class TestErrorParity:
    """Errors raised by generated code carry the interpreter's kind and location."""

    DOC = {
        'types': {'Item': [
            {'id': 'id', 'type': 'u16'},
            {'id': 'extra', 'type': 'Option<u8>', 'if': '_root.version >= 2'},
        ]},
        'items': [
            {'id': 'version', 'type': 'u8'},
            {'id': 'a', 'type': 'Option<u8>', 'if': 'version > 1'},
            {'id': 'b', 'type': 'Option<u8>', 'if': 'a == 3'},
            {'id': 'n', 'type': 'u8'},
            {'id': 'items', 'type': 'Item', 'repeat': 'Count(n)'},
            {'id': 'ys', 'type': 'u8', 'repeat': 'Count(n)'},
        ],
    }

    def capture(self, func, *args):
        with pytest.raises(FormatError) as exc:
            func(*args)
        err = exc.value
        return (err.kind, err.field, err.type_name, str(err))

    @pytest.mark.parametrize('payload', [
        b'',
        b'\x02',
        b'\x01',
        b'\x02\x03\x04\x01\x00',
        b'\x02\x05\x01\x00\x01\x09',
    ])
    def test_decode_errors(self, payload):
        codec, module = pair_for(self.DOC)
        assert self.capture(module.decode, payload) == self.capture(codec.decode, payload)

    @pytest.mark.parametrize('record', [
        {'items': [], 'ys': []},
        {'version': 2, 'a': 1, 'items': [{'id': 1}], 'ys': [1, 2]},
        {'version': 2, 'a': 1, 'items': [{}], 'ys': [1]},
        {'version': 2, 'a': 1, 'items': [5], 'ys': [1]},
        {'version': 2, 'a': 1, 'items': 'x', 'ys': []},
        {'version': 300, 'items': [], 'ys': []},
        {'version': 2.5, 'items': [], 'ys': []},
        {'version': 1, 'items': [], 'ys': []},
        {'version': 2, 'a': 1, 'items': [{'id': 70000}], 'ys': [1]},
        {'version': 2, 'a': 3, 'items': [], 'ys': []},
        [1, 2],
    ])
    def test_encode_errors(self, record):
        codec, module = pair_for(self.DOC)
        assert self.capture(module.encode, record) == self.capture(codec.encode, record)

    @pytest.mark.parametrize('type_name,value', [
        ('f32', 10**400), ('f64', 10**400), ('f32', 1e300),
    ])
    def test_float_overflow(self, type_name, value):
        codec, module = pair_for({'items': [{'id': 'f', 'type': type_name}]})
        kind, field, type_label, message = self.capture(module.encode, {'f': value})
        assert (kind, field, type_label, message) == self.capture(codec.encode, {'f': value})
        assert (kind, field) == ('value_shape_error', 'f')


class TestGeneratorCli:
    """Command line entry point."""

    def test_writes_file(self, tmp_path, monkeypatch, capsys):
        out = tmp_path / 'out' / 'save_codec.py'
        monkeypatch.setattr(sys, 'argv', [
            'generate_python_codec.py', str(SCHEMA_DIR / 'save.yaml'),
            '-o', str(out), '--no-timestamp'])
        main()
        assert out.exists()
        assert 'def decode(payload):' in out.read_text()
        assert 'Generated:' in capsys.readouterr().out

    def test_stdout(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, 'argv', [
            'generate_python_codec.py', str(SCHEMA_DIR / 'save_fixed.yaml'),
            '--module-name', 'fixed'])
        main()
        assert 'fixed.py - Generated codec' in capsys.readouterr().out

