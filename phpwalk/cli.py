import asyncio
import argparse
import sys
from pathlib import Path

from phpwalk.php_config import load_config
from phpwalk.php_printer import Printer
from phpwalk.php_runtime import ScriptRunner
from phpwalk.php_serialize import load_document

# Exit status PHP uses for fatal errors
FATAL_STATUS = 255


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


async def run_script_file(file_path: str, config_path=None, strict=False, print_result=False) -> int:
    """Run an AST document non-interactively and return the process exit status."""
    try:
        config = load_config(config_path)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if strict:
        config.strict_types = True

    p = Path(file_path)
    try:
        document = load_document(p)
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    streaming = config.echo_to_stdout
    on_output = _write_stdout if streaming else None
    runner = ScriptRunner(config, on_output=on_output)
    runner.evaluator.script_name = p.name
    result = await runner.handle_script(document)

    if not streaming:
        sys.stdout.write(result.output)
    for effect in result.side_effects:
        if effect.get('topics') == ['stderr']:
            print(effect.get('message', ''), file=sys.stderr)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        return FATAL_STATUS
    if print_result and result.value is not None:
        print(Printer().pformat(result.value))
    if result.exit_status is not None:
        return result.exit_status
    return 0


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="phpwalk", description="Evaluate a PHP AST document.")
    parser.add_argument("script", help="AST document (.json, .yaml or .yml)")
    parser.add_argument("--config", help="YAML interpreter config")
    parser.add_argument("--strict", action="store_true", help="run as if declare(strict_types=1)")
    parser.add_argument("--print-result", action="store_true",
                        help="print the value a top-level return produces")
    return parser


async def _main(argv=None) -> int:
    args = _parser().parse_args(argv)
    return await run_script_file(args.script, args.config, args.strict, args.print_result)


def main(argv=None) -> None:
    try:
        status = asyncio.run(_main(argv))
    except KeyboardInterrupt:
        status = 130
    raise SystemExit(status)


if __name__ == "__main__":
    main()
