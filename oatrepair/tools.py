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

import abc
import logging
import os
import pathlib
import shutil
import subprocess

from oatrepair.archive import DexUnit, dex_index
from oatrepair.errors import CountMismatch, DisassemblyFailed, \
        ExternalToolFailure, InvalidInput


logger = logging.getLogger(__name__)

EXPORT_SUFFIX = '_export.dex'
REPAIRED_SUFFIX = '_repaired.dex'


def find_program(name):
    path = shutil.which(name)
    if not path:
        raise InvalidInput('%s executable not found' % name)
    return path


def collect_units(workspace, suffix):
    units = [DexUnit(dex_index(p.name), pathlib.Path(p.path))
             for p in os.scandir(workspace)
             if p.is_file() and p.name.endswith(suffix)]
    return sorted(units, key=lambda u: (u.index, u.path.name))


class Disassembler(abc.ABC):
    @abc.abstractmethod
    def export(self, sidecar_path, workspace):
        """Export every dex segment embedded in ``sidecar_path``.

        Returns the exported units ordered by dex index. Raises
        ``DisassemblyFailed`` when nothing could be exported.
        """


class ChecksumRepairer(abc.ABC):
    @abc.abstractmethod
    def repair(self, exported_units, workspace):
        """Return one repaired unit for each exported unit."""


class OatdumpDisassembler(Disassembler):
    def __init__(self, binary):
        self.binary = binary

    def export(self, sidecar_path, workspace):
        log_path = pathlib.Path(workspace) / 'oatdump_log.txt'

        try:
            with open(log_path, 'wb') as log:
                result = subprocess.run([
                    self.binary,
                    '--oat-file=%s' % sidecar_path,
                    '--export-dex-to=%s' % workspace,
                ], stdout=log, stderr=subprocess.STDOUT)
        except OSError as e:
            raise DisassemblyFailed('Failed to run %s' % self.binary) from e

        if result.returncode != 0:
            raise DisassemblyFailed('DEX dump from %s failed (exit %d)'
                                    % (sidecar_path, result.returncode),
                                    self._read_log(log_path))

        units = collect_units(workspace, EXPORT_SUFFIX)

        # oatdump skips the export if it fails to resolve a dependency
        if not units:
            raise DisassemblyFailed('No DEX exported from %s' % sidecar_path,
                                    self._read_log(log_path))

        os.unlink(log_path)
        return units

    @staticmethod
    def _read_log(log_path):
        with open(log_path, 'r', errors='replace') as f:
            return f.read()


class DexrepairRepairer(ChecksumRepairer):
    def __init__(self, binary='dexrepair'):
        self.binary = binary

    def repair(self, exported_units, workspace):
        try:
            result = subprocess.run([self.binary, '-I', str(workspace)],
                                    stdout=subprocess.PIPE,
                                    stderr=subprocess.STDOUT)
        except OSError as e:
            raise ExternalToolFailure('Failed to run %s' % self.binary) from e

        if result.returncode != 0:
            for line in result.stdout.decode(errors='replace').splitlines():
                logger.error('%s', line)
            raise ExternalToolFailure('dexrepair failed on %s (exit %d)'
                                      % (workspace, result.returncode))

        for unit in exported_units:
            unit.path.unlink()

        repaired = collect_units(workspace, REPAIRED_SUFFIX)
        if len(repaired) != len(exported_units):
            raise CountMismatch(len(exported_units), len(repaired))

        return repaired
