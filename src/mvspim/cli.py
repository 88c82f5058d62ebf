# cli.py - part of mvspim

## Copyright (C) 2025  mvspim developers
##
## This program is free software: you can redistribute it and/or
## modify it under the terms of the GNU General Public License as
## published by the Free Software Foundation, either version 3 of the
## License, or (at your option) any later version.
##
## This program is distributed in the hope that it will be useful, but
## WITHOUT ANY WARRANTY; without even the implied warranty of
## MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU
## General Public License for more details.
##
## You should have received a copy of the GNU General Public License
## along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""Command line interface

    mvspim register CONFIG.yaml   detect, register, save registrations
    mvspim fuse CONFIG.yaml       as above (or load registrations), then fuse
"""

import argparse
import logging
import sys
from dataclasses import replace
from typing import Optional, List

from .config import load_config
from .errors import MvSpimError
from .pipeline import run_pipeline

logger = logging.getLogger(__name__)


def makeparser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mvspim",
        description="Multi-view SPIM registration and fusion")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="more logging; repeat for debug output")
    sub = parser.add_subparsers(dest="command", required=True)
    reg = sub.add_parser("register",
                         help="detect interest points and register views")
    reg.add_argument("config", help="YAML configuration file")
    fus = sub.add_parser("fuse", help="register (if needed) and fuse views")
    fus.add_argument("config", help="YAML configuration file")
    fus.add_argument("-o", "--output",
                     help="output file, overriding the configuration")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = makeparser().parse_args(argv)
    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level,
                        format="%(asctime)s %(name)s %(levelname)s: "
                        "%(message)s")
    try:
        config = load_config(args.config)
        if args.command == "register":
            spimdata = run_pipeline(config, register_only=True)
            if config.registrations is None:
                for view in spimdata.views():
                    print(f"{view}: {spimdata.model(view).tolist()}")
        else:
            if args.output is not None:
                config = replace(config, output=args.output)
            run_pipeline(config)
    except (MvSpimError, OSError) as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
