#!/usr/bin/env python3
"""
format_tool.py - Command line front end for format schemas

Usage:
    python tools/format_tool.py validate schemas/save.yaml
    python tools/format_tool.py layout schemas/save.yaml --version 60
    python tools/format_tool.py layout schemas/save.yaml --version 10 --type Building
    python tools/format_tool.py decode schemas/save.yaml save.bin
    python tools/format_tool.py encode schemas/save.yaml save.json -o save.bin
    python tools/format_tool.py generate schemas/save.yaml -o save_codec.py

Options:
    --json              Machine-readable output (and errors)
    --log-level LEVEL   DEBUG, INFO, WARNING... (default: $BINFORMAT_LOG_LEVEL or WARNING)

Errors are reported as a single ``error: <kind>: <message>`` line and exit
status 1.
"""

import argparse
import io
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add tools to path
sys.path.insert(0, str(Path(__file__).parent))
from format_codec import FormatCodec
from format_errors import FormatError
from format_schema import load_format_file
from generate_python_codec import generate_codec_source

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV = 'BINFORMAT_LOG_LEVEL'


def _emit(args, payload: Any, text: str) -> None:
    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        print(text)


# =============================================================================
# Subcommands
# =============================================================================

def cmd_validate(args) -> int:
    codec = FormatCodec.from_file(args.schema)
    registry = codec.registry
    types = []
    for typedef in registry.order:
        types.append({
            'name': typedef.label,
            'fields': len(typedef.fields),
            'fixed_width': registry.fixed_width(typedef),
        })

    lines = [f"Schema: {args.schema}",
             f"Endian: {codec.endian.value}",
             "=" * 50]
    for entry in types:
        width = entry['fixed_width']
        size = f"{width} bytes" if width is not None else "variable"
        lines.append(f"  {entry['name']:<24} {entry['fields']:>3} fields  {size}")
    lines.append("OK")
    _emit(args, {'schema': str(args.schema), 'endian': codec.endian.value,
                 'valid': True, 'types': types}, '\n'.join(lines))
    return 0


def version_record(codec: FormatCodec, version: int) -> Dict[str, Any]:
    """Zero-valued root record with its first field set to ``version``."""
    root = codec.registry.root
    record = codec.registry.zero_value(root)
    if root.fields:
        record[root.fields[0].id] = version
    return record


def cmd_layout(args) -> int:
    codec = FormatCodec.from_file(args.schema)
    record = version_record(codec, args.version)

    if args.type:
        typedef = codec.registry.lookup(args.type)
        scope = codec.encode_to(None, record, io.BytesIO())
        rows = codec.layout(codec.registry.zero_value(typedef), typedef, context=scope)
        label = typedef.label
    else:
        rows = codec.layout(record)
        label = codec.registry.root.label

    total = sum(width for _, _, width in rows)
    lines = [f"{label} at version {args.version}: {total} bytes",
             f"{'offset':>8}  {'width':>5}  field"]
    for path, offset, width in rows:
        note = '' if width else '  (absent)'
        lines.append(f"{offset:>8}  {width:>5}  {path}{note}")
    payload = {
        'type': label,
        'version': args.version,
        'size': total,
        'fields': [{'field': p, 'offset': o, 'width': w} for p, o, w in rows],
    }
    _emit(args, payload, '\n'.join(lines))
    return 0


def cmd_decode(args) -> int:
    codec = FormatCodec.from_file(args.schema)
    with open(args.input, 'rb') as f:
        payload = f.read()
    result = codec.decode(payload)
    if result.trailing:
        logger.warning("%d trailing bytes after record", len(result.trailing))
    print(json.dumps(result.data, indent=2))
    return 0


def cmd_encode(args) -> int:
    codec = FormatCodec.from_file(args.schema)
    with open(args.input) as f:
        data = json.load(f)
    result = codec.encode(data)

    out_path = Path(args.output)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, 'wb') as f:
        f.write(result.payload)
    _emit(args, {'output': str(out_path), 'bytes': len(result)},
          f"Encoded {len(result)} bytes: {out_path}")
    return 0


def cmd_generate(args) -> int:
    schema = load_format_file(args.schema)
    source = generate_codec_source(schema, args.module_name,
                                   timestamp=not args.no_timestamp)
    if not args.output:
        print(source, end='')
        return 0

    out_path = Path(args.output)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, 'w') as f:
        f.write(source)
    _emit(args, {'output': str(out_path)}, f"Generated: {out_path}")
    return 0


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Validate, inspect and run binary format schemas'
    )
    parser.add_argument('--json', action='store_true',
                        help='Output results as JSON')
    parser.add_argument('--log-level',
                        default=os.environ.get(LOG_LEVEL_ENV, 'WARNING'),
                        help=f'Logging level (default: ${LOG_LEVEL_ENV} or WARNING)')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('validate', help='Load and check a schema')
    p.add_argument('schema', help='Path to schema YAML file')
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser('layout', help='Show field offsets at a format version')
    p.add_argument('schema', help='Path to schema YAML file')
    p.add_argument('--version', type=int, required=True,
                   help='Value bound to the first root field')
    p.add_argument('--type', help='Named type to lay out (default: root)')
    p.set_defaults(func=cmd_layout)

    p = sub.add_parser('decode', help='Decode a binary file to JSON')
    p.add_argument('schema', help='Path to schema YAML file')
    p.add_argument('input', help='Binary input file')
    p.set_defaults(func=cmd_decode)

    p = sub.add_parser('encode', help='Encode a JSON record to a binary file')
    p.add_argument('schema', help='Path to schema YAML file')
    p.add_argument('input', help='JSON input file')
    p.add_argument('-o', '--output', required=True, help='Binary output file')
    p.set_defaults(func=cmd_encode)

    p = sub.add_parser('generate', help='Generate a standalone Python codec')
    p.add_argument('schema', help='Path to schema YAML file')
    p.add_argument('-o', '--output', help='Output .py file (default: stdout)')
    p.add_argument('--module-name', help='Module name used in the docstring')
    p.add_argument('--no-timestamp', action='store_true',
                   help='Omit the generation timestamp')
    p.set_defaults(func=cmd_generate)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=str(args.log_level).upper(),
                        format='%(levelname)s %(name)s: %(message)s')

    try:
        return args.func(args)
    except FormatError as e:
        if args.json:
            print(json.dumps(e.to_dict(), indent=2))
        else:
            print(f"error: {e.kind}: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        if args.json:
            print(json.dumps({'error': 'io_error', 'message': str(e)}, indent=2))
        else:
            print(f"error: io_error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
