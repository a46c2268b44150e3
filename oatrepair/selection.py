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

import logging
import pathlib

from oatrepair.archive import ISAS
from oatrepair.errors import InvalidInput


logger = logging.getLogger(__name__)


def find_isas(partition_root):
    framework = pathlib.Path(partition_root) / 'framework'
    return [isa for isa in ISAS if (framework / isa).is_dir()]


def boot_jar_name(oat_name):
    # boot-<stem>.oat -> <stem>.jar
    _, _, stem = oat_name.partition('-')
    return str(pathlib.PurePath(stem or oat_name).with_suffix('.jar'))


def resolve_boot_set(partition_root, isas):
    if not isas:
        logger.warning('No framework instruction set directory found - '
                       'boot jars cannot be excluded')
        return frozenset()

    boot_dir = pathlib.Path(partition_root) / 'framework' / isas[0]
    boot_set = frozenset(boot_jar_name(p.name)
                         for p in boot_dir.iterdir()
                         if p.is_file()
                         and p.name.lower().startswith('boot')
                         and p.name.lower().endswith('.oat'))

    logger.debug('Boot jars (%s): %s', isas[0], ', '.join(sorted(boot_set)))
    return boot_set


def load_bytecode_list(path):
    entries = set()

    try:
        with open(path, 'r') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#'):
                    continue
                entries.add(line.split(':', 1)[0].lstrip('/'))
    except OSError as e:
        raise InvalidInput('Failed to read bytecode list: %s' % path) from e

    return frozenset(entries)


def is_always_repaired(rel_path):
    path = pathlib.PurePosixPath(rel_path)
    return path.parts[:1] == ('framework',) and path.suffix == '.jar'


class SelectionFilter(object):
    """Decide which packages are in scope for repair.

    With no allow-list every package is selected. List entries match a
    partition-relative path either as is or prefixed with the partition
    name, since lists are commonly written relative to the device root
    (``system/app/...``). Framework jars bypass the list.
    """

    def __init__(self, allowed=None, partition='system'):
        self.allowed = frozenset(allowed) if allowed is not None else None
        self.partition = partition

    def __len__(self):
        return len(self.allowed) if self.allowed is not None else 0

    @property
    def enabled(self):
        return self.allowed is not None

    def is_selected(self, rel_path):
        if self.allowed is None or is_always_repaired(rel_path):
            return True

        rel_path = str(rel_path).lstrip('/')
        return rel_path in self.allowed \
            or '%s/%s' % (self.partition, rel_path) in self.allowed
