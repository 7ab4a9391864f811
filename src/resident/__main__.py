"""Start a resident worker and attach a console to it."""

import argparse
import sys

from resident.errors import ResidentError
from resident.options import SessionOptions
from resident.session import Session


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments.

    :param argv: Optional argument list.
    :returns: Parsed CLI arguments.
    """
    parser = argparse.ArgumentParser(
        prog="python -m resident",
        description="Start a long-lived worker interpreter and attach a console to it.",
    )
    parser.add_argument("--load-hook", default=None, help="Python source run in the worker before it is ready")
    parser.add_argument("--wait-timeout", type=float, default=None, help="seconds to wait for the worker to start")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the attach console until end-of-file or interrupt.

    :param argv: Optional argument list.
    :returns: Process exit code where ``0`` indicates success.
    """
    args: argparse.Namespace = _parse_args(argv)
    options: SessionOptions = SessionOptions()
    if args.load_hook is not None:
        options = options.model_copy(update={"load_hook": args.load_hook})
    try:
        session: Session = Session(options, wait_timeout=args.wait_timeout)
    except ResidentError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    with session:
        session.attach()
    return 0


if __name__ == "__main__":
    sys.exit(main())
