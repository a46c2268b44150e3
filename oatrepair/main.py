# Copyright (C) 2026  The oatrepair Authors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
# 
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
# 
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

import argparse
import logging
import os
import pathlib
import shutil
import signal
import sys
import tempfile

from oatrepair import repair, selection
from oatrepair.errors import InvalidInput, RepairException, SignalInterrupt
from oatrepair.tools import DexrepairRepairer, OatdumpDisassembler, \
        find_program


logger = logging.getLogger(__name__)

METHODS = ('NONE', 'OATDUMP')

# Earliest time representable in a zip entry
MIN_TIMESTAMP = 315532800


class PrefixFormatter(logging.Formatter):
    PREFIXES = {
        logging.DEBUG: '[*]',
        logging.INFO: '[*]',
        logging.WARNING: '[!]',
        logging.ERROR: '[-]',
        logging.CRITICAL: '[-]',
    }

    def format(self, record):
        prefix = self.PREFIXES.get(record.levelno, '[*]')
        return '%s %s' % (prefix, super().format(record))


def setup_logging(debug):
    formatter = PrefixFormatter('%(message)s')

    out = logging.StreamHandler(sys.stdout)
    out.addFilter(lambda r: r.levelno < logging.WARNING)
    out.setFormatter(formatter)

    err = logging.StreamHandler(sys.stderr)
    err.setLevel(logging.WARNING)
    err.setFormatter(formatter)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler.formatter, PrefixFormatter):
            root.removeHandler(handler)
    root.addHandler(out)
    root.addHandler(err)
    root.setLevel(logging.DEBUG if debug else logging.INFO)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='''\
            Repair pre-optimized bytecode of an extracted factory image
            system partition
        ''',
        epilog='''\
            Input path is expected to be the system root as extracted from
            the factory system image. APKs and jars without a classes.dex
            get their bytecode exported from the oat sidecars with oatdump,
            checksums fixed with dexrepair, and the dex files added back.
            Old signatures are removed from repaired APKs.
        ''',
    )
    parser.add_argument('-i', '--input', type=pathlib.Path, required=True,
                        help='Root path of extracted system partition')
    parser.add_argument('-o', '--output', type=pathlib.Path, required=True,
                        help='Path to save partition with repaired bytecode')
    parser.add_argument('-m', '--method', required=True, choices=METHODS,
                        help='Repair method')
    parser.add_argument('--oatdump',
                        help='Path to oatdump binary')
    parser.add_argument('--dexrepair', default='dexrepair',
                        help='Path to dexrepair binary')
    parser.add_argument('--bytecode-list', type=pathlib.Path,
                        help='List of bytecode archives to repair; all are '
                             'repaired when omitted')
    parser.add_argument('--timestamp', type=int,
                        default=repair.DEFAULT_TIMESTAMP,
                        help='Modification time stamped on added dex files')
    parser.add_argument('-d', '--debug', action='store_true',
                        help='Verbose output & keep workspace for inspection')

    return parser.parse_args(argv)


def link_to_input(input_dir, output_sys):
    if output_sys.is_symlink() or output_sys.exists():
        if output_sys.is_symlink() or output_sys.is_file():
            output_sys.unlink()
        else:
            output_sys.rmdir()
    output_sys.symlink_to(input_dir.resolve(), target_is_directory=True)


def is_empty_dir(path):
    return not any(not p.name.startswith('.') for p in path.iterdir())


def check_inputs(args):
    if not args.input.is_dir():
        raise InvalidInput("Input directory '%s' not found" % args.input)
    if not args.output.is_dir():
        raise InvalidInput("Output directory '%s' not found" % args.output)
    if args.bytecode_list and not args.bytecode_list.is_file():
        raise InvalidInput("Bytecode list '%s' not found" % args.bytecode_list)
    if args.oatdump and not os.path.isfile(args.oatdump):
        raise InvalidInput("oatdump '%s' not found" % args.oatdump)
    if args.timestamp < MIN_TIMESTAMP:
        raise InvalidInput('Timestamp %d is before 1980' % args.timestamp)

    if not (args.input / 'build.prop').is_file():
        raise InvalidInput("'%s' is not a valid system image partition"
                           % args.input)

    output_sys = args.output / 'system'
    if output_sys.is_dir() and not output_sys.is_symlink() \
            and not is_empty_dir(output_sys):
        raise InvalidInput('Output directory should be empty to avoid merge '
                           'problems with old extracts')


def discard_output(output_sys, created):
    if created:
        shutil.rmtree(str(output_sys), ignore_errors=True)
        return

    # Hidden entries were there before the run
    for p in output_sys.iterdir():
        if p.name.startswith('.'):
            continue
        if p.is_dir() and not p.is_symlink():
            shutil.rmtree(str(p), ignore_errors=True)
        else:
            p.unlink()


def run(args, workspace):
    """Repair the partition; returns False if output was only linked."""
    check_inputs(args)

    output_sys = args.output / 'system'

    if not (args.input / 'framework' / 'oat').is_dir():
        logger.warning("System partition doesn't contain any pre-optimized "
                       "files - link to original partition")
        link_to_input(args.input, output_sys)
        return False

    if args.method == 'NONE':
        logger.info('No repairing enabled - link to original partition')
        link_to_input(args.input, output_sys)
        return False

    selection_filter = selection.SelectionFilter()
    if args.bytecode_list:
        allowed = selection.load_bytecode_list(args.bytecode_list)
        if not allowed:
            logger.warning('No bytecode files selected for repairing - '
                           'link to original partition')
            link_to_input(args.input, output_sys)
            return False
        logger.info("'%d' bytecode archive files will be repaired",
                    len(allowed))
        selection_filter = selection.SelectionFilter(allowed)
    else:
        logger.info('All bytecode files under system partition will be '
                    'repaired')

    if not args.oatdump:
        raise InvalidInput('Missing oatdump external tool')

    isas = selection.find_isas(args.input)

    ctx = repair.RepairContext(
        input_dir=args.input,
        output_dir=output_sys,
        workspace=workspace,
        disassembler=OatdumpDisassembler(find_program(args.oatdump)),
        repairer=DexrepairRepairer(find_program(args.dexrepair)),
        isas=isas,
        boot_set=selection.resolve_boot_set(args.input, isas),
        selection=selection_filter,
        timestamp=args.timestamp,
        keep_workspace=args.debug,
    )

    created = output_sys.is_symlink() or not output_sys.is_dir()

    # Link left behind by an earlier unrepaired run
    if output_sys.is_symlink():
        output_sys.unlink()
    output_sys.mkdir(exist_ok=True)

    logger.info('Repairing bytecode under /system partition using oatdump '
                'method')
    try:
        outcomes = repair.repair_partition(ctx)
    except BaseException:
        # An incomplete tree is worse than none
        discard_output(output_sys, created)
        raise

    for outcome, count in sorted(repair.summarize(outcomes).items(),
                                 key=lambda i: i[0].name):
        logger.debug('%s: %d', outcome.value, count)

    return True


def _raise_signal(signum, frame):
    raise SignalInterrupt(signum)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.debug)

    old_handler = signal.signal(signal.SIGTERM, _raise_signal)

    workspace = pathlib.Path(tempfile.mkdtemp(prefix='android_img_repair.'))
    exit_code = 0

    try:
        run(args, workspace)
        logger.info("System partition successfully extracted & repaired at "
                    "'%s'", args.output)
    except (RepairException, OSError, KeyboardInterrupt) as e:
        if isinstance(e, KeyboardInterrupt):
            e = SignalInterrupt(signal.SIGINT)
        logger.error('%s', e, exc_info=args.debug)
        exit_code = 1
    finally:
        signal.signal(signal.SIGTERM, old_handler)

        if args.debug:
            logger.info("Workspace available at '%s' - delete manually "
                        "when done", workspace)
        else:
            shutil.rmtree(str(workspace), ignore_errors=True)

    sys.exit(exit_code)


if __name__ == '__main__':
    main()
