import asyncio
import sys
from pathlib import Path

from sss.sss_runtime import ScriptRunner, RuntimeConfig


async def run_script_file(file_path: str, args) -> int:
    """Run an SSS script file non-interactively and return its exit status."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        return 1
    runner = ScriptRunner(args=args, config=RuntimeConfig.from_env())
    result = await runner.handle_script(source)
    # Non-fatal diagnostics first, then the error itself
    for effect in result.side_effects:
        if effect.get('topics') == ['stderr'] and effect.get('message') != result.error_message:
            print(effect.get('message', ''), file=sys.stderr)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
    return result.exit_status


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0].startswith("-"):
        print("usage: sss script.sss [args...]", file=sys.stderr)
        return 2
    try:
        return asyncio.run(run_script_file(argv[0], argv[1:]))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
