"""Local deterministic agent for CLI integration tests and dry runs."""

from __future__ import annotations

import argparse
import json
import sys


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back, or a fixed reply when ``--reply`` is given."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", required=True)
    parser.add_argument("--reply", default=None)
    parser.add_argument("--format", choices=("json", "text"), default="text")
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    if args.exit_code != 0:
        sys.stderr.write("echo agent failure requested\n")
        return args.exit_code

    if args.reply is not None:
        sys.stdout.write(args.reply)
    elif args.format == "json":
        sys.stdout.write(json.dumps({"echo": args.prompt}))
    else:
        sys.stdout.write(args.prompt)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
