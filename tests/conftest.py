import pathlib
import stat
import zipfile

import pytest

from oatrepair.errors import CountMismatch, DisassemblyFailed
from oatrepair.repair import RepairContext
from oatrepair.tools import REPAIRED_SUFFIX, ChecksumRepairer, Disassembler, \
        collect_units


FIXED_DATE = (2015, 6, 1, 12, 0, 0)


def make_zip(path, entries):
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(str(path), 'w') as z:
        for name, data in entries.items():
            info = zipfile.ZipInfo(name, date_time=FIXED_DATE)
            info.compress_type = zipfile.ZIP_DEFLATED
            z.writestr(info, data)
    return path


def write(path, data=b''):
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def stripped_apk(path):
    return make_zip(path, {
        'AndroidManifest.xml': b'<manifest/>',
        'resources.arsc': b'arsc',
        'META-INF/MANIFEST.MF': b'Manifest-Version: 1.0\n',
        'META-INF/CERT.RSA': b'cert',
    })


def snapshot(root):
    root = pathlib.Path(root)
    return {str(p.relative_to(root)): (p.read_bytes() if p.is_file() else None)
            for p in sorted(root.rglob('*'))}


OATDUMP = '''#!/bin/sh
out=""
for arg in "$@"; do
  case "$arg" in
    --export-dex-to=*) out="${arg#--export-dex-to=}" ;;
  esac
done
echo "dumping"
printf 'dex-1' > "$out/Foo.apk_export.dex"
printf 'dex-2' > "$out/Foo.apk!classes2.dex_export.dex"
'''

OATDUMP_FAILING = '''#!/bin/sh
echo "Failed to open oat file"
exit 3
'''

OATDUMP_SILENT = '''#!/bin/sh
echo "Failed to resolve dependency"
'''

DEXREPAIR = '''#!/bin/sh
for f in "$2"/*_export.dex; do
  cp "$f" "${f}_repaired.dex"
done
'''

DEXREPAIR_PARTIAL = '''#!/bin/sh
for f in "$2"/*_export.dex; do
  cp "$f" "${f}_repaired.dex"
  break
done
'''

DEXREPAIR_FAILING = '''#!/bin/sh
echo "bad dex"
exit 1
'''


def script(tmp_path, name, body):
    path = write(tmp_path / 'bin' / name, body.encode())
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


class FakeDisassembler(Disassembler):
    """Exports canned dex payloads keyed by package name."""

    def __init__(self, payloads, failing=()):
        self.payloads = payloads
        self.failing = set(failing)
        self.calls = []

    def export(self, sidecar_path, workspace):
        sidecar_path = pathlib.Path(sidecar_path)
        isa = sidecar_path.parent.name
        name = sidecar_path.stem
        self.calls.append((name, isa))

        if isa in self.failing or name not in self.payloads:
            raise DisassemblyFailed('No DEX exported from %s' % sidecar_path,
                                    'Failed to resolve dependency\n')

        for i, data in enumerate(self.payloads[name], 1):
            suffix = '' if i == 1 else '!classes%d.dex' % i
            write(pathlib.Path(workspace) / ('%s.apk%s_export.dex'
                                             % (name, suffix)), data)

        return collect_units(workspace, '_export.dex')


class FakeRepairer(ChecksumRepairer):
    """Appends a marker to each unit, optionally losing some."""

    def __init__(self, drop=0):
        self.drop = drop
        self.calls = 0

    def repair(self, exported_units, workspace):
        self.calls += 1
        keep = exported_units[:len(exported_units) - self.drop]

        for unit in keep:
            write(str(unit.path) + '_repaired.dex',
                  unit.path.read_bytes() + b'+crc')
        for unit in exported_units:
            unit.path.unlink()

        repaired = collect_units(workspace, REPAIRED_SUFFIX)
        if len(repaired) != len(exported_units):
            raise CountMismatch(len(exported_units), len(repaired))
        return repaired


@pytest.fixture
def partition(tmp_path):
    root = tmp_path / 'system'
    write(root / 'build.prop', b'ro.build.id=TEST\n')
    write(root / 'etc' / 'permissions' / 'foo.xml', b'<permissions/>')
    write(root / 'framework' / 'arm64' / 'boot-framework.oat', b'oat')
    write(root / 'framework' / 'arm64' / 'boot-framework.vdex', b'vdex')
    write(root / 'framework' / 'oat' / 'arm64' / 'services.odex', b'odex')
    make_zip(root / 'framework' / 'framework.jar',
             {'META-INF/MANIFEST.MF': b'Manifest-Version: 1.0\n'})
    make_zip(root / 'framework' / 'services.jar',
             {'META-INF/MANIFEST.MF': b'Manifest-Version: 1.0\n'})
    stripped_apk(root / 'app' / 'Foo.apk')
    write(root / 'app' / 'oat' / 'arm64' / 'Foo.odex', b'odex')
    write(root / 'app' / 'oat' / 'arm64' / 'Foo.vdex', b'vdex')
    stripped_apk(root / 'app' / 'Bar.apk')
    write(root / 'app' / 'oat' / 'arm64' / 'Bar.odex', b'odex')
    make_zip(root / 'app' / 'Plain.apk', {
        'AndroidManifest.xml': b'<manifest/>',
        'classes.dex': b'dex\n035\0plain',
        'META-INF/CERT.RSA': b'cert',
    })
    return root


@pytest.fixture
def disassembler():
    return FakeDisassembler({
        'Foo': [b'dex\n035\0foo-1', b'dex\n035\0foo-2'],
        'Bar': [b'dex\n035\0bar-1'],
        'services': [b'dex\n035\0services-1'],
    })


@pytest.fixture
def repairer():
    return FakeRepairer()


@pytest.fixture
def context(partition, tmp_path, disassembler, repairer):
    workspace = tmp_path / 'work'
    workspace.mkdir()
    return RepairContext(
        input_dir=partition,
        output_dir=tmp_path / 'out' / 'system',
        workspace=workspace,
        disassembler=disassembler,
        repairer=repairer,
        isas=('arm64',),
        boot_set=frozenset({'framework.jar'}),
    )
