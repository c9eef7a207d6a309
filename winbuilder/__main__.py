# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/__main__.py
from __future__ import annotations

import sys
import traceback
from typing import Optional, Sequence

from .cli.commands import COMMANDS, CommandContext
from .cli.parser import build_parser
from .core.exceptions import WinBuilderError, format_exception_for_cli, wrap_fatal
from .core.logger import Log


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logger = Log.setup(
        args.verbose,
        args.log_file,
        quiet=args.quiet,
        color=not args.no_color,
        json_logs=args.json_logs,
    )

    ctx: Optional[CommandContext] = None
    try:
        try:
            ctx = CommandContext(args, logger)
            return COMMANDS[args.command](ctx)
        except OSError as e:
            raise wrap_fatal(f"{args.command}: host I/O error", e) from e
    except WinBuilderError as e:
        if ctx is not None and len(ctx.cleanup):
            ctx.cleanup.invoke_all(f"{args.command} failed")
        logger.error("💥 %s", format_exception_for_cli(e, verbose=args.verbose))
        if args.verbose >= 2:
            logger.debug(traceback.format_exc())
        return e.code
    except KeyboardInterrupt:
        logger.warning("Interrupted by user (Ctrl+C).")
        return 130


if __name__ == "__main__":
    sys.exit(main())
