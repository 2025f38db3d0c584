#!/usr/bin/env python3
"""
defcon: Generate build configuration constants from key definitions.

Definition files declare the known keys (type, default value, description,
required-ness and the emitted macro name). A single configuration file then
supplies values for those keys. The resolved registry is rendered as a C
header and/or a makefile fragment.

Both input kinds use the same INI dialect:

    [PORT]
    type = integer
    define = PORT
    required = true

Python stdlib only.
"""

from __future__ import annotations

import argparse
import enum
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union


DEFCON_VERSION = "0.0.1"
DEFCON_COPYRIGHT = "Copyright (c) 2021, Kirill GPRB."

DEFAULT_CONFIG = "defcon.conf"
DEFINE_PREFIX = "CONFIG_"
HEADER_GUARD = "__CONFIG_H__"

INTMAX_MIN = -(1 << 63)
INTMAX_MAX = (1 << 63) - 1
UINTMAX_MAX = (1 << 64) - 1

_RE_INT = re.compile(r"^[+-]?[0-9]+$")
_RE_UINT = re.compile(r"^[0-9]+$")
_RE_HEX = re.compile(r"^0x[0-9a-fA-F]+$")
_RE_ATOI = re.compile(r"^[ \t\n\r\f\v]*([+-]?[0-9]+)")


class DefconError(Exception):
    pass


class IniError(DefconError):
    def __init__(self, source: str, lineno: int, message: str) -> None:
        super().__init__(f"{source}:{lineno}: {message}")
        self.source = source
        self.lineno = lineno


def _warn(message: str) -> None:
    print(message, file=sys.stderr)


IniEntry = Tuple[str, str, str]


def _strip_inline_comment(text: str) -> str:
    # A ';' only opens a comment when preceded by whitespace.
    for i in range(1, len(text)):
        if text[i] == ";" and text[i - 1].isspace():
            return text[:i]
    return text


def parse_ini(text: str, *, source: str = "<string>") -> List[IniEntry]:
    """
    Parse an INI document into ``(section, key, value)`` triples, in order.

    Keys that appear before the first section header get section ``""``.
    An indented line directly following a key continues that key and is
    reported as a further triple with the same key. The whole document is
    rejected with ``IniError`` on the first malformed line.
    """

    if text.startswith("\ufeff"):
        text = text[1:]

    entries: List[IniEntry] = []
    section = ""
    prev_key = ""

    for index, line in enumerate(text.split("\n")):
        lineno = index + 1
        raw = line.rstrip("\r")
        content = raw.strip()

        if content == "" or content[0] in ";#":
            continue

        if prev_key and raw[:1].isspace():
            entries.append((section, prev_key, _strip_inline_comment(content).strip()))
            continue

        if content.startswith("["):
            end = content.find("]")
            if end < 0:
                raise IniError(source, lineno, "section header missing ']'")
            section = content[1:end].strip()
            prev_key = ""
            continue

        content = _strip_inline_comment(content)
        sep = min((i for i in (content.find("="), content.find(":")) if i >= 0), default=-1)
        if sep < 0:
            raise IniError(source, lineno, f"expected 'key = value': {content!r}")

        key = content[:sep].strip()
        value = content[sep + 1 :].strip()
        entries.append((section, key, value))
        prev_key = key

    return entries


def read_ini(path: Path) -> List[IniEntry]:
    return parse_ini(path.read_text(encoding="utf-8"), source=str(path))


class ValueType(enum.Enum):
    STRING = "string"
    INTEGER = "integer"
    HEX_INTEGER = "hex_integer"
    UNSIGNED_INTEGER = "unsigned_integer"
    BOOLEAN = "boolean"


_TYPES_BY_NAME: Dict[str, ValueType] = {t.value: t for t in ValueType}


@dataclass(frozen=True)
class Value:
    type: ValueType = ValueType.STRING
    data: Union[str, int, bool] = ""

    @classmethod
    def default(cls, vtype: ValueType) -> "Value":
        if vtype is ValueType.STRING:
            return cls(vtype, "")
        if vtype is ValueType.BOOLEAN:
            return cls(vtype, False)
        return cls(vtype, 0)


def lookup_type(token: str) -> Optional[ValueType]:
    """Map a type token to its ValueType, or None if the token is not a known type."""
    return _TYPES_BY_NAME.get(token)


def parse_type(token: str) -> ValueType:
    vtype = lookup_type(token)
    if vtype is None:
        return ValueType.STRING
    return vtype


def _atoi(text: str) -> int:
    m = _RE_ATOI.match(text)
    if not m:
        return 0
    return int(m.group(1), 10)


def parse_boolean(text: str) -> bool:
    return _atoi(text) != 0 or text == "true"


def parse_value(text: str, vtype: ValueType) -> Optional[Value]:
    """
    Coerce ``text`` into a fresh Value of type ``vtype``.

    Returns None when the text does not fit the type. Booleans and strings
    always succeed.
    """

    s = text.strip()
    if vtype is ValueType.INTEGER:
        if not _RE_INT.match(s):
            return None
        n = int(s, 10)
        if n < INTMAX_MIN or n > INTMAX_MAX:
            return None
        return Value(vtype, n)
    if vtype is ValueType.HEX_INTEGER:
        if not _RE_HEX.match(s):
            return None
        n = int(s[2:], 16)
        if n > UINTMAX_MAX:
            return None
        return Value(vtype, n)
    if vtype is ValueType.UNSIGNED_INTEGER:
        if not _RE_UINT.match(s):
            return None
        n = int(s, 10)
        if n > UINTMAX_MAX:
            return None
        return Value(vtype, n)
    if vtype is ValueType.BOOLEAN:
        return Value(vtype, parse_boolean(text))
    return Value(ValueType.STRING, text)


def _c_string(s: str) -> str:
    escaped = s.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_value(value: Value) -> str:
    if value.type is ValueType.INTEGER:
        return str(int(value.data))
    if value.type is ValueType.HEX_INTEGER:
        return f"0x{int(value.data):X}"
    if value.type is ValueType.UNSIGNED_INTEGER:
        return str(int(value.data))
    if value.type is ValueType.BOOLEAN:
        return "1" if value.data else "0"
    return _c_string(str(value.data))


@dataclass
class Definition:
    name: str
    description: str = ""
    define: str = ""
    value: Value = field(default_factory=Value)
    has_value: bool = False
    required: bool = False
    default_text: Optional[str] = None

    @property
    def type(self) -> ValueType:
        return self.value.type


class Registry:
    """Definitions keyed by name, iterated in the order they were first seen."""

    def __init__(self) -> None:
        self._defs: Dict[str, Definition] = {}

    def get_or_create(self, name: str) -> Definition:
        d = self._defs.get(name)
        if d is None:
            d = Definition(name=name)
            self._defs[name] = d
        return d

    def find(self, name: str) -> Optional[Definition]:
        return self._defs.get(name)

    def __iter__(self) -> Iterator[Definition]:
        return iter(self._defs.values())

    def __len__(self) -> int:
        return len(self._defs)

    def __contains__(self, name: object) -> bool:
        return name in self._defs


def _settle_value(d: Definition, source: str) -> None:
    if d.default_text is None:
        return

    value = parse_value(d.default_text, d.type)
    if value is None:
        _warn(f"{source}:{d.name}:value: warning: unable to parse: {d.default_text}")
        d.value = Value.default(d.type)
        d.has_value = False
        return
    d.value = value
    d.has_value = True


def ingest_definitions(registry: Registry, entries: Sequence[IniEntry], *, source: str) -> None:
    """
    Apply one definition document to the registry.

    Every field is last-writer-wins. ``value`` is coerced once the whole
    document has been applied, so it may appear before or after ``type``.
    """

    touched: List[Definition] = []
    seen: Set[str] = set()

    for section, key, value in entries:
        d = registry.get_or_create(section)

        if key == "description":
            d.description = value
            continue

        if key == "define":
            d.define = value
            continue

        if key == "type":
            vtype = lookup_type(value)
            if vtype is None:
                _warn(f"{source}:{section}:{key}: warning: unable to parse: {value}")
                vtype = ValueType.STRING
            if vtype is not d.type:
                d.value = Value.default(vtype)
                d.has_value = False
            if section not in seen:
                seen.add(section)
                touched.append(d)
            continue

        if key == "value":
            d.default_text = value
            if section not in seen:
                seen.add(section)
                touched.append(d)
            continue

        if key == "required":
            d.required = parse_boolean(value)
            continue

        _warn(f"{source}:{section}: warning: unknown key: {key}")

    for d in touched:
        _settle_value(d, source)


def load_definitions(paths: Sequence[Path], registry: Optional[Registry] = None) -> Registry:
    if registry is None:
        registry = Registry()

    for path in paths:
        try:
            entries = read_ini(path)
        except OSError as e:
            _warn(f"{path}: warning: {e.strerror or e}")
            continue
        except UnicodeDecodeError as e:
            _warn(f"{path}: warning: {e}")
            continue
        except IniError as e:
            _warn(f"{path}:{e.lineno}: warning: parse error")
            continue
        ingest_definitions(registry, entries, source=str(path))

    return registry


@dataclass
class Resolution:
    resolved: List[str] = field(default_factory=list)
    undefined: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)


def resolve_config(
    registry: Registry,
    entries: Sequence[IniEntry],
    *,
    source: str,
    suppress_undefined: bool = False,
) -> Resolution:
    result = Resolution()

    for _section, key, text in entries:
        d = registry.find(key)
        if d is None:
            if not suppress_undefined:
                _warn(f"{source}: warning: undefined key: {key}")
            result.undefined.append(key)
            continue

        value = parse_value(text, d.type)
        if value is None:
            _warn(f"{source}:{key}: warning: unable to parse: {text}")
            result.rejected.append(key)
            continue

        d.value = value
        d.has_value = True
        result.resolved.append(key)

    return result


def load_config(registry: Registry, path: Path, *, suppress_undefined: bool = False) -> Resolution:
    try:
        entries = read_ini(path)
    except OSError as e:
        raise DefconError(f"{path}: {e.strerror or e}") from e
    except UnicodeDecodeError as e:
        raise DefconError(f"{path}: {e}") from e
    except IniError as e:
        raise DefconError(f"{path}:{e.lineno}: parse error") from e
    return resolve_config(registry, entries, source=str(path), suppress_undefined=suppress_undefined)


def check_required(registry: Registry) -> None:
    for d in registry:
        if d.has_value or not d.required:
            continue
        raise DefconError(f"key {d.name} requires a value!")


def _defined(registry: Registry) -> Iterator[Tuple[str, str]]:
    for d in registry:
        if not d.define:
            _warn(f"{d.name}: warning: no definition string")
            continue
        yield f"{DEFINE_PREFIX}{d.define}", format_value(d.value)


def emit_c_header(registry: Registry) -> str:
    out: List[str] = []
    out.append(f"#ifndef {HEADER_GUARD}")
    out.append(f"#define {HEADER_GUARD} 1")
    for name, text in _defined(registry):
        out.append(f"#define {name} {text}")
    out.append("#endif")
    return "\n".join(out) + "\n"


def emit_makefile(registry: Registry) -> str:
    out = [f"{name} := {text}" for name, text in _defined(registry)]
    return "".join(f"{line}\n" for line in out)


def _write_text(path: Path, text: str) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="\n") as f:
            f.write(text)
    except OSError:
        _warn(f"{path}: warning: unable to open file")
        return False
    return True


def generate_c_header(registry: Registry, path: Path) -> bool:
    return _write_text(path, emit_c_header(registry))


def generate_makefile(registry: Registry, path: Path) -> bool:
    return _write_text(path, emit_makefile(registry))


_GENERATORS = {
    "header": generate_c_header,
    "makefile": generate_makefile,
}


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _output(kind: str):
    def convert(text: str) -> Tuple[str, Path]:
        return kind, Path(text)

    return convert


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="defcon",
        description="Generate build configuration constants from key definitions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-C",
        dest="outputs",
        action="append",
        type=_output("header"),
        metavar="FILENAME",
        help="generate a C header",
    )
    parser.add_argument(
        "-M",
        dest="outputs",
        action="append",
        type=_output("makefile"),
        metavar="FILENAME",
        help="generate a makefile",
    )
    parser.add_argument(
        "-c",
        dest="config",
        default=DEFAULT_CONFIG,
        metavar="FILENAME",
        help=f"set the input file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument(
        "-s",
        dest="suppress",
        action="store_true",
        help='suppress "undefined key" warnings during parsing',
    )
    parser.add_argument(
        "-v",
        action="version",
        version=f"%(prog)s (DefCon) {DEFCON_VERSION}\n{DEFCON_COPYRIGHT}",
        help="print version and exit",
    )
    parser.add_argument("definitions", nargs="*", metavar="DEFINITIONS", help="set the definition files")
    return parser


def build_registry(
    definitions: Sequence[Path],
    config: Path,
    *,
    suppress_undefined: bool = False,
) -> Registry:
    """Run ingestion, resolution and validation; raises DefconError on fatal conditions."""

    if not definitions:
        raise DefconError("no definition files")

    registry = load_definitions(definitions)
    load_config(registry, config, suppress_undefined=suppress_undefined)
    check_required(registry)
    return registry


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_intermixed_args(list(argv) if argv is not None else None)

    try:
        registry = build_registry(
            [Path(p) for p in args.definitions],
            Path(args.config),
            suppress_undefined=args.suppress,
        )
    except DefconError as e:
        print(f"{parser.prog}: fatal: {e}", file=sys.stderr)
        return 1

    for kind, path in args.outputs or []:
        _GENERATORS[kind](registry, path)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
