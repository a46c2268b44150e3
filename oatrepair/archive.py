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

import dataclasses
import enum
import logging
import os
import pathlib
import re
import tempfile
import time
import zipfile

from oatrepair.errors import ArchiveIOFailure


logger = logging.getLogger(__name__)

# Instruction sets in the order their sidecars are tried
ISAS = ('arm', 'arm64', 'x86', 'x86_64')

PACKAGE_EXTENSIONS = ('.apk', '.jar')
SIGNATURE_DIR = 'META-INF/'

_DEX_INDEX_RE = re.compile(r'classes(\d+)\.dex')


class RenamableTempFile(object):
    def __init__(self, *args, **kwargs):
        kwargs['delete'] = False
        self.file = tempfile.NamedTemporaryFile(*args, **kwargs)
        self.needs_unlink = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.file.close()
        if self.needs_unlink:
            os.unlink(self.file.name)

    def rename_and_disown(self, path):
        self.file.flush()
        os.rename(self.file.name, path)
        self.needs_unlink = False


@dataclasses.dataclass(frozen=True)
class DexUnit:
    """A dex blob on disk, keyed by its position in a multi-dex package.

    Index 1 is the primary ``classes.dex``; index k maps to
    ``classes<k>.dex``.
    """
    index: int
    path: pathlib.Path


@dataclasses.dataclass(frozen=True)
class AotSidecar:
    isa: str
    path: pathlib.Path
    package: str


class Kind(enum.Enum):
    ALREADY_CONTAINS_BYTECODE = 'already contains bytecode'
    PRE_OPTIMIZED_WITH_SIDECARS = 'pre-optimized with sidecars'
    PRE_OPTIMIZED_NO_SIDECARS = 'pre-optimized without sidecars'
    NOT_APPLICABLE = 'not applicable'


@dataclasses.dataclass(frozen=True)
class Classification:
    kind: Kind
    sidecars: tuple = ()


def is_package(path):
    return pathlib.Path(path).suffix in PACKAGE_EXTENSIONS


def package_name(path):
    return pathlib.Path(path).stem


def has_embedded_dex(path):
    try:
        with zipfile.ZipFile(path) as z:
            try:
                z.getinfo('classes.dex')
                return True
            except KeyError:
                return False
    except (OSError, zipfile.BadZipFile) as e:
        raise ArchiveIOFailure('Failed to read archive: %s' % path) from e


def find_sidecars(path, isas=ISAS):
    file_path = pathlib.Path(path)
    oat_dir = file_path.parent / 'oat'
    name = package_name(file_path)
    sidecars = []

    if not oat_dir.is_dir():
        return sidecars

    for isa in isas:
        odex = oat_dir / isa / (name + '.odex')
        if odex.is_file():
            sidecars.append(AotSidecar(isa, odex, name))

    return sidecars


def classify(path, isas=ISAS):
    if not is_package(path):
        return Classification(Kind.NOT_APPLICABLE)

    sidecars = find_sidecars(path, isas)

    try:
        embedded = has_embedded_dex(path)
    except ArchiveIOFailure:
        if sidecars:
            raise
        logger.warning('%s is not a readable archive', path)
        embedded = False

    if embedded:
        return Classification(Kind.ALREADY_CONTAINS_BYTECODE)

    if not sidecars:
        return Classification(Kind.PRE_OPTIMIZED_NO_SIDECARS)

    return Classification(Kind.PRE_OPTIMIZED_WITH_SIDECARS, tuple(sidecars))


def dex_index(name):
    match = _DEX_INDEX_RE.search(name)
    if match:
        return int(match.group(1))
    return 1


def canonical_dex_name(index):
    if index == 1:
        return 'classes.dex'
    return 'classes%d.dex' % index


def zip_date_time(timestamp):
    return time.gmtime(timestamp)[:6]


def _rewrite_zip(path, exclude, additions=()):
    file_path = pathlib.Path(path)

    try:
        with RenamableTempFile(dir=str(file_path.parent),
                               prefix=file_path.name + '.') as t:
            with zipfile.ZipFile(str(file_path)) as zin, \
                    zipfile.ZipFile(t.file, 'w') as zout:
                zout.comment = zin.comment

                for info in zin.infolist():
                    if exclude(info.filename):
                        logger.debug('Dropping %s from %s',
                                     info.filename, file_path.name)
                        continue
                    zout.writestr(info, zin.read(info))

                for info, data in additions:
                    zout.writestr(info, data)

            t.rename_and_disown(str(file_path))
    except (OSError, zipfile.BadZipFile) as e:
        raise ArchiveIOFailure('Failed to rewrite archive: %s' % path) from e


def reassemble(package_copy, repaired_units, timestamp):
    units = sorted(repaired_units, key=lambda u: u.index)
    indices = [u.index for u in units]
    if indices != list(range(1, len(units) + 1)):
        raise ArchiveIOFailure('Non-contiguous dex indices %s for %s'
                               % (indices, package_copy))

    date_time = zip_date_time(timestamp)
    additions = []

    for unit in units:
        info = zipfile.ZipInfo(canonical_dex_name(unit.index),
                               date_time=date_time)
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = 0o644 << 16
        try:
            data = pathlib.Path(unit.path).read_bytes()
        except OSError as e:
            raise ArchiveIOFailure('Failed to read repaired dex: %s'
                                   % unit.path) from e
        additions.append((info, data))

    names = {info.filename for info, _ in additions}
    _rewrite_zip(package_copy, lambda n: n in names, additions)


def strip_signature(package_copy):
    _rewrite_zip(package_copy, lambda n: n.startswith(SIGNATURE_DIR))
