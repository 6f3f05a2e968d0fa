"""Source loading: comment stripping, line normalization, macros and settings."""

from __future__ import annotations
import os
import re
from dataclasses import dataclass, fields
from typing import Dict, List, Mapping, Optional, Tuple

from lexer import AquilaSyntaxError, UnknownMacroError


_BLOCK_COMMENT_RE = re.compile(r"/\*\*.*?\*\*/", re.DOTALL)
_LINE_COMMENT_RE = re.compile(r"//[^\n]*")
_KEY_SEPARATORS_RE = re.compile(r"[\s_]+")

_TRUE_WORDS = {"true", "1", "yes", "on"}
_FALSE_WORDS = {"false", "0", "no", "off"}

# Spaced, lower-case spellings -> Settings field.
SETTING_ALIASES: Dict[str, str] = {
    "implicit declaration": "implicit_declaration",
    "implicit declaration in assignment": "implicit_declaration",
    "lazy logic": "lazy_logic",
    "debug": "debug",
    "trace all": "trace_all",
    "trace debug": "debug",
    "recursion limit": "recursion_limit",
    "name": "name",
}


def parse_bool(text: str) -> bool:
    word = text.strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise AquilaSyntaxError(f"Invalid boolean value '{text}'")


@dataclass
class Settings:
    implicit_declaration: bool = True
    lazy_logic: bool = True
    debug: bool = False
    trace_all: bool = False
    recursion_limit: int = 200
    name: str = ""

    @staticmethod
    def field_for(key: str) -> str:
        spaced = _KEY_SEPARATORS_RE.sub(" ", key.strip().strip("()[]").strip().lower())
        field_name = SETTING_ALIASES.get(spaced)
        if field_name is None:
            raise UnknownMacroError(f"Unknown setting '{key}'")
        return field_name

    def set(self, key: str, raw_value: str) -> None:
        field_name = self.field_for(key)
        if field_name == "name":
            self.name = raw_value.strip()
        elif field_name == "recursion_limit":
            try:
                limit = int(raw_value.strip())
            except ValueError:
                raise AquilaSyntaxError(f"Invalid recursion limit '{raw_value}'") from None
            if limit < 1:
                raise AquilaSyntaxError(f"Recursion limit must be positive, got {limit}")
            self.recursion_limit = limit
        else:
            setattr(self, field_name, parse_bool(raw_value))

    def as_dict(self) -> Dict[str, object]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class Macro:
    line: int
    key: str
    value: Optional[str]
    text: str


def strip_comments(text: str, filename: str = "<string>") -> str:
    """Remove '// ...' and '/** ... **/' comments, keeping every newline."""

    def _keep_newlines(match: "re.Match[str]") -> str:
        return "\n" * match.group(0).count("\n")

    text = _BLOCK_COMMENT_RE.sub(_keep_newlines, text)
    text = _LINE_COMMENT_RE.sub("", text)
    unclosed = text.find("/**")
    if unclosed != -1:
        line = text.count("\n", 0, unclosed) + 1
        raise AquilaSyntaxError("Unclosed '/**' comment", filename=filename, line=line)
    return text


def normalize_line(line: str) -> str:
    return " ".join(line.replace("\t", " ").split())


def read_lines(text: str, filename: str = "<string>") -> Dict[int, str]:
    stripped = strip_comments(text, filename)
    return {number: normalize_line(line) for number, line in enumerate(stripped.splitlines(), start=1)}


def read_source(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read()
    except OSError as exc:
        raise AquilaSyntaxError(f"Cannot read '{path}': {exc.strerror or exc}", filename=path) from None


def extract_macros(lines: Mapping[int, str], filename: str = "<string>") -> List[Macro]:
    macros: List[Macro] = []
    for number in sorted(lines):
        text = lines[number]
        if not text.startswith("#"):
            continue
        key, _, value = text[1:].strip().partition(" ")
        if not key:
            raise UnknownMacroError("Empty macro", filename=filename, line=number, statement=text)
        macros.append(Macro(line=number, key=key, value=value.strip() or None, text=text))
    return macros


def _split_setting(value: str) -> Tuple[str, str]:
    text = value.strip()
    if text.startswith("("):
        end = text.find(")")
        if end == -1:
            raise AquilaSyntaxError("Unclosed '(' in setting key")
        return text[1:end], text[end + 1:].strip()
    key, _, rest = text.partition(" ")
    return key, rest.strip()


def apply_macros(macros: List[Macro], settings: Settings, *, base_dir: str, filename: str = "<string>") -> List[str]:
    """Apply macros to settings. Returns the library paths requested by '#load'."""
    libraries: List[str] = []
    for macro in macros:
        try:
            if macro.key == "setting":
                key, raw_value = _split_setting(macro.value or "")
                if not key or not raw_value:
                    raise AquilaSyntaxError("#setting expects a key and a value")
                settings.set(key, raw_value)
            elif macro.key in ("debug", "trace_debug", "trace_all"):
                settings.set(macro.key, macro.value or "true")
            elif macro.key == "name":
                settings.name = macro.value or ""
            elif macro.key == "load":
                if not macro.value:
                    raise AquilaSyntaxError("#load expects a file path")
                path = macro.value if os.path.isabs(macro.value) else os.path.join(base_dir, macro.value)
                path = os.path.abspath(path)
                if not os.path.isfile(path):
                    raise AquilaSyntaxError(f"Library file not found: '{macro.value}'")
                libraries.append(path)
            else:
                raise UnknownMacroError(f"Unknown macro '#{macro.key}'")
        except AquilaSyntaxError as exc:
            if exc.line is not None:
                raise
            raise type(exc)(exc.message, filename=filename, line=macro.line, statement=macro.text) from None
    return libraries
