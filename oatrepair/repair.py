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

import collections
import dataclasses
import enum
import logging
import os
import pathlib
import shutil
import tempfile
import typing

from oatrepair import archive
from oatrepair.errors import ArchiveIOFailure, DisassemblyFailed, \
        RepairException
from oatrepair.selection import SelectionFilter
from oatrepair.tools import ChecksumRepairer, Disassembler


logger = logging.getLogger(__name__)

DEFAULT_TIMESTAMP = 1230768000

ART_EXTENSIONS = ('.art', '.oat', '.odex', '.vdex')


class Outcome(enum.Enum):
    COPIED_UNMODIFIED = 'copied unmodified'
    COPIED_NO_REPAIR_NEEDED = 'copied, no repair needed'
    COPY_FAILED = 'copy failed'
    REPAIRED_MULTI_DEX = 'repaired (multi-dex)'
    REPAIRED_SINGLE_DEX = 'repaired'
    SKIPPED_ART_FILE = 'skipped optimized artifact'
    SKIPPED_BOOT_JAR = 'skipped boot jar'
    SKIPPED_NOT_SELECTED = 'skipped, not selected'
    FAILED = 'failed'


@dataclasses.dataclass(frozen=True)
class RepairOutcome:
    rel_path: str
    outcome: Outcome
    dex_count: int = 0
    error: typing.Optional[Exception] = None


@dataclasses.dataclass
class RepairContext:
    input_dir: pathlib.Path
    output_dir: pathlib.Path
    workspace: pathlib.Path
    disassembler: Disassembler
    repairer: ChecksumRepairer
    isas: typing.Sequence[str] = archive.ISAS
    boot_set: typing.FrozenSet[str] = frozenset()
    selection: SelectionFilter = dataclasses.field(
            default_factory=SelectionFilter)
    timestamp: int = DEFAULT_TIMESTAMP
    keep_workspace: bool = False


def _output_path(ctx, rel_path):
    dest = ctx.output_dir / rel_path
    dest.parent.mkdir(parents=True, exist_ok=True)
    return dest


def _copy_verbatim(ctx, rel_path, outcome):
    src = ctx.input_dir / rel_path

    try:
        shutil.copy2(str(src), str(_output_path(ctx, rel_path)),
                     follow_symlinks=False)
    except OSError as e:
        logger.warning("Failed to copy '%s' - skipping: %s", rel_path, e)
        return RepairOutcome(rel_path, Outcome.COPY_FAILED, error=e)

    return RepairOutcome(rel_path, outcome)


def _export(ctx, sidecars, workspace):
    fail_info = None

    # Dex payloads are identical across instruction sets, so the first
    # sidecar that exports anything is enough
    for i, sidecar in enumerate(sidecars):
        isa_dir = workspace / sidecar.isa
        isa_dir.mkdir()

        try:
            units = ctx.disassembler.export(sidecar.path, isa_dir)
        except DisassemblyFailed as e:
            # Only an error once no instruction set is left to try
            level = logging.ERROR if i == len(sidecars) - 1 \
                    else logging.WARNING
            logger.log(level, '%s', e)
            for line in e.output.splitlines():
                logger.log(level, '%s', line)
            fail_info = (sidecar, e)
            continue

        logger.debug('Exported %d DEX from %s', len(units), sidecar.path)
        return units, isa_dir

    raise DisassemblyFailed('Failed to export DEX for %s'
                            % sidecars[0].package) from fail_info[1]


def _repair_package(ctx, rel_path, sidecars):
    src = ctx.input_dir / rel_path
    workspace = pathlib.Path(tempfile.mkdtemp(prefix=src.name + '.',
                                              dir=str(ctx.workspace)))
    succeeded = False

    try:
        exported, export_dir = _export(ctx, sidecars, workspace)
        repaired = ctx.repairer.repair(exported, export_dir)

        package_copy = workspace / src.name
        try:
            shutil.copyfile(str(src), str(package_copy))
        except OSError as e:
            raise ArchiveIOFailure('Failed to copy %s to workspace'
                                   % rel_path) from e

        if len(repaired) > 1:
            logger.info("'%s' is multi-dex - adding %d DEX files",
                        rel_path, len(repaired))

        archive.reassemble(package_copy, repaired, ctx.timestamp)

        # The old signature is invalid once the contents change
        if src.suffix == '.apk':
            archive.strip_signature(package_copy)

        dest = _output_path(ctx, rel_path)

        # Empty per-ABI directories let the vendor generator detect
        # multilib packages
        for sidecar in sidecars:
            (dest.parent / 'oat' / sidecar.isa).mkdir(parents=True,
                                                      exist_ok=True)

        try:
            shutil.move(str(package_copy), str(dest))
            shutil.copymode(str(src), str(dest))
        except OSError as e:
            raise ArchiveIOFailure('Failed to move repaired %s to output'
                                   % rel_path) from e

        succeeded = True
    finally:
        if succeeded or not ctx.keep_workspace:
            shutil.rmtree(str(workspace), ignore_errors=True)

    if len(repaired) > 1:
        return RepairOutcome(rel_path, Outcome.REPAIRED_MULTI_DEX,
                             len(repaired))
    return RepairOutcome(rel_path, Outcome.REPAIRED_SINGLE_DEX, 1)


def process_file(ctx, rel_path):
    src = ctx.input_dir / rel_path

    try:
        if src.suffix in ART_EXTENSIONS:
            return RepairOutcome(rel_path, Outcome.SKIPPED_ART_FILE)

        if src.is_symlink() or not archive.is_package(src):
            return _copy_verbatim(ctx, rel_path, Outcome.COPIED_UNMODIFIED)

        if src.name in ctx.boot_set:
            logger.debug("'%s' is a boot jar - copying without changes",
                         rel_path)
            return _copy_verbatim(ctx, rel_path, Outcome.SKIPPED_BOOT_JAR)

        if not ctx.selection.is_selected(rel_path):
            return RepairOutcome(rel_path, Outcome.SKIPPED_NOT_SELECTED)

        result = archive.classify(src, ctx.isas)

        if result.kind == archive.Kind.ALREADY_CONTAINS_BYTECODE:
            logger.warning("'%s' bytecode is not stripped - copying without "
                           "changes", rel_path)
            return _copy_verbatim(ctx, rel_path,
                                  Outcome.COPIED_NO_REPAIR_NEEDED)
        elif result.kind == archive.Kind.PRE_OPTIMIZED_NO_SIDECARS:
            logger.warning("'%s' not pre-optimized & without 'classes.dex' - "
                           "copying without changes", rel_path)
            return _copy_verbatim(ctx, rel_path,
                                  Outcome.COPIED_NO_REPAIR_NEEDED)

        return _repair_package(ctx, rel_path, result.sidecars)
    except RepairException as e:
        return RepairOutcome(rel_path, Outcome.FAILED, error=e)


def walk_partition(root):
    root = pathlib.Path(root)

    for dirpath, dirs, files in os.walk(str(root)):
        dirs.sort()
        base = pathlib.Path(dirpath)

        # Symlinks to directories are copied as links, not descended into
        links = [d for d in dirs if (base / d).is_symlink()]
        dirs[:] = [d for d in dirs if d not in links]

        for f in sorted(files + links):
            yield str((base / f).relative_to(root))


def repair_partition(ctx):
    outcomes = []

    for rel_path in walk_partition(ctx.input_dir):
        outcome = process_file(ctx, rel_path)
        outcomes.append(outcome)

        if outcome.outcome == Outcome.FAILED:
            logger.error("'%s' bytecode repair failed", rel_path)
            raise outcome.error
        elif outcome.outcome in (Outcome.REPAIRED_SINGLE_DEX,
                                 Outcome.REPAIRED_MULTI_DEX):
            logger.info("Repaired '%s'", rel_path)

    return outcomes


def summarize(outcomes):
    return collections.Counter(o.outcome for o in outcomes)
