"""Aquila entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from compiler import block_opener
from environment import AquilaRuntimeError
from extensions import AquilaExtensionError, RuntimeServices, load_runtime_services
from interpreter import Interpreter, TracebackFormatter
from lexer import AquilaSyntaxError
from loader import Settings


def _report_runtime_error(interpreter: Interpreter, error: AquilaRuntimeError, *, verbose: bool, as_json: bool = False) -> None:
    formatter = TracebackFormatter(interpreter)
    print(formatter.format_text(error, verbose=verbose), file=sys.stderr)
    if as_json:
        print(formatter.to_json(error), file=sys.stderr)


def run_repl(verbose: bool, *, settings: Optional[Settings] = None, services: Optional[RuntimeServices] = None, seed: Optional[int] = None) -> int:
    print("\x1b[38;2;153;221;255mAquila\033[0m REPL. Enter instructions, blank line to run a block.")  # "Aquila" in light blue
    had_output = False

    def _output_sink(text: str) -> None:
        nonlocal had_output
        had_output = True
        print(text, end="", flush=True)

    try:
        interpreter = Interpreter(filename="<string>", verbose=verbose, settings=settings, services=services, output_sink=_output_sink, seed=seed)
    except AquilaExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1
    env = interpreter.new_environment()
    buffer: List[str] = []

    def _run(text: str) -> None:
        try:
            program = interpreter.compile_source(text)
            interpreter.run(program, env)
        except AquilaSyntaxError as error:
            print(f"SyntaxError: {error}", file=sys.stderr)
        except AquilaRuntimeError as error:
            _report_runtime_error(interpreter, error, verbose=interpreter.verbose)

    while True:
        prompt = "\x1b[38;2;153;221;255m>>>\033[0m " if not buffer else "\x1b[38;2;153;221;255m..>\033[0m "  # light blue
        if had_output:
            # Ensure prompt starts on a fresh line if the program printed anything
            print()
            had_output = False
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        stripped = line.strip()
        if not buffer:
            if stripped == "":
                continue
            if block_opener(stripped) is None:
                _run(line)
                continue
            buffer.append(line)
            continue

        if stripped == "":
            source_text = "\n".join(buffer)
            buffer.clear()
            _run(source_text)
            continue

        buffer.append(line)
    return 0


def _build_settings(pairs: List[str]) -> Settings:
    settings = Settings()
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise AquilaSyntaxError(f"--setting expects KEY=VALUE, got '{pair}'")
        settings.set(key, value)
    return settings


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Aquila pseudo-code interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an extension (.py) or pointer file (.aqx)")
    parser.add_argument("--setting", action="append", default=[], metavar="KEY=VALUE", help="Override an interpreter setting")
    parser.add_argument("--seed", type=int, default=None, help="Seed for the random() builtin")
    args = parser.parse_args(argv)

    try:
        settings = _build_settings(args.setting)
    except AquilaSyntaxError as error:
        print(f"SettingError: {error}", file=sys.stderr)
        return 1
    try:
        services = load_runtime_services(args.ext)
    except AquilaExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, settings=settings, services=services, seed=args.seed)

    if args.source_mode:
        source_text = args.program.replace("\\n", "\n")
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    try:
        interpreter = Interpreter(
            source=source_text,
            filename=filename,
            verbose=args.verbose,
            settings=settings,
            services=services,
            seed=args.seed,
        )
    except AquilaExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1
    try:
        interpreter.run()
    except AquilaSyntaxError as error:
        print(f"SyntaxError: {error}", file=sys.stderr)
        return 1
    except AquilaRuntimeError as error:
        _report_runtime_error(interpreter, error, verbose=interpreter.verbose, as_json=args.traceback_json)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
