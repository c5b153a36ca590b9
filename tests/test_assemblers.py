import os
from io import BytesIO
from zipfile import ZipFile

import pytest

from packaging.utils import parse_wheel_filename
from packaging.version import Version

from extwheel import (
    Cpu,
    LoadableFile,
    NoLoadableFilesError,
    Os,
    PlatformBuild,
    ProjectSpec,
    SemanticVersion,
    UnsupportedPlatformError,
    build_base_wheel,
    build_datasette_wheel,
    build_sqlite_utils_wheel,
)

LINUX_TAG = 'manylinux_2_17_x86_64.manylinux2014_x86_64.manylinux1_x86_64'


class TestBaseWheel:

    @pytest.fixture
    def built(self, spec, linux_build):
        return build_base_wheel(spec, linux_build)

    @pytest.fixture
    def wheel(self, built):
        return ZipFile(BytesIO(built[1]))

    def test_wheel_name(self, built):
        assert built[0] == f'my_ext-1.2.0a3-py3-none-{LINUX_TAG}.whl'

    def test_wheel_name_is_parseable(self, built):
        name, version, build, tags = parse_wheel_filename(built[0])
        assert name == 'my-ext'
        assert version == Version('1.2.0a3')
        assert {t.platform for t in tags} == set(LINUX_TAG.split('.'))

    def test_contents(self, wheel):
        assert wheel.namelist() == [
            'my_ext/__init__.py',
            'my_ext/ext.so',
            'my_ext-1.2.0a3.dist-info/METADATA',
            'my_ext-1.2.0a3.dist-info/WHEEL',
            'my_ext-1.2.0a3.dist-info/top_level.txt',
            'my_ext-1.2.0a3.dist-info/RECORD',
        ]

    def test_payload(self, wheel, ext_so):
        assert wheel.read('my_ext/ext.so') == ext_so.data

    def test_top_level(self, wheel):
        assert wheel.read('my_ext-1.2.0a3.dist-info/top_level.txt') == (
            b'my_ext\n'
        )

    def test_record_lines(self, wheel):
        record = wheel.read('my_ext-1.2.0a3.dist-info/RECORD').decode()
        lines = record.splitlines()
        assert len(lines) == len(wheel.namelist())
        assert lines[1].startswith('my_ext/ext.so,sha256=')
        assert lines[-1] == 'my_ext-1.2.0a3.dist-info/RECORD,,'

    def test_wheel_tag(self, wheel):
        wheeldata = wheel.read('my_ext-1.2.0a3.dist-info/WHEEL').decode()
        assert f'Tag: py3-none-{LINUX_TAG}\n' in wheeldata

    def test_init_exposes_loadable_path(self, wheel):
        source = wheel.read('my_ext/__init__.py').decode()
        package_dir = os.path.join('site-packages', 'my_ext')
        namespace = {'__file__': os.path.join(package_dir, '__init__.py')}
        exec(compile(source, 'my_ext/__init__.py', 'exec'), namespace)

        assert namespace['__version__'] == '1.2.0a3'
        assert namespace['loadable_path']() == os.path.join(package_dir, 'ext')

    def test_init_load_passes_path_to_connection(self, wheel):
        source = wheel.read('my_ext/__init__.py').decode()
        namespace = {'__file__': '/site-packages/my_ext/__init__.py'}
        exec(source, namespace)

        class Connection:
            loaded = []

            def load_extension(self, path):
                self.loaded.append(path)

        namespace['load'](Connection())
        assert Connection.loaded == [namespace['loadable_path']()]

    def test_entrypoint_is_first_file(self, spec):
        build = PlatformBuild(Os.MACOS, Cpu.AARCH64, [
            LoadableFile('vec0.dylib', b'1'),
            LoadableFile('vec_extra.dylib', b'2'),
        ])
        _, data = build_base_wheel(spec, build)
        wheel = ZipFile(BytesIO(data))
        source = wheel.read('my_ext/__init__.py').decode()
        assert "'vec0'" in source
        assert 'my_ext/vec_extra.dylib' in wheel.namelist()

    def test_no_loadable_files(self, spec):
        with pytest.raises(NoLoadableFilesError):
            build_base_wheel(spec, PlatformBuild(Os.LINUX, Cpu.X86_64, []))

    def test_unsupported_platform(self, spec, ext_so):
        build = PlatformBuild(Os.WINDOWS, Cpu.AARCH64, [ext_so])
        with pytest.raises(UnsupportedPlatformError):
            build_base_wheel(spec, build)

    @pytest.mark.parametrize('os, cpu', [
        ('freebsd', 'x86_64'), ('linux', 'riscv64'),
    ])
    def test_unknown_platform_values(self, spec, ext_so, os, cpu):
        build = PlatformBuild(os, cpu, [ext_so])
        with pytest.raises(UnsupportedPlatformError):
            build_base_wheel(spec, build)

    def test_platform_may_be_given_by_value(self, spec, ext_so):
        build = PlatformBuild('windows', 'x86_64', [ext_so])
        name, _ = build_base_wheel(spec, build)
        assert name == 'my_ext-1.2.0a3-py3-none-win_amd64.whl'


def test_end_to_end_release_version(ext_so):
    spec = ProjectSpec('my-ext', SemanticVersion(0, 4, 1))
    name, _ = build_base_wheel(
        spec, PlatformBuild(Os.LINUX, Cpu.AARCH64, [ext_so])
    )
    assert name == (
        'my_ext-0.4.1-py3-none-manylinux_2_17_aarch64.manylinux2014_aarch64.whl'
    )


@pytest.mark.parametrize('build, distname, host, host_requirement', [
    (build_datasette_wheel, 'datasette_my_ext', 'datasette', 'datasette'),
    (build_sqlite_utils_wheel, 'sqlite_utils_my_ext', 'sqlite_utils',
     'sqlite-utils'),
])
class TestPluginWheels:

    def test_wheel_name(self, spec, build, distname, host, host_requirement):
        name, _ = build(spec)
        assert name == f'{distname}-1.2.0a3-py3-none-any.whl'

    def test_contents(self, spec, build, distname, host, host_requirement):
        _, data = build(spec)
        assert ZipFile(BytesIO(data)).namelist() == [
            f'{distname}/__init__.py',
            f'{distname}-1.2.0a3.dist-info/METADATA',
            f'{distname}-1.2.0a3.dist-info/WHEEL',
            f'{distname}-1.2.0a3.dist-info/top_level.txt',
            f'{distname}-1.2.0a3.dist-info/RECORD',
        ]

    def test_hook_wraps_base_package(self, spec, build, distname, host,
                                     host_requirement):
        _, data = build(spec)
        source = ZipFile(BytesIO(data)).read(f'{distname}/__init__.py')
        source = source.decode()
        compile(source, f'{distname}/__init__.py', 'exec')

        assert f'from {host} import hookimpl\n' in source
        assert 'import my_ext\n' in source
        assert [line.strip() for line in source.splitlines()[-3:]] == [
            'conn.enable_load_extension(True)',
            'my_ext.load(conn)',
            'conn.enable_load_extension(False)',
        ]

    def test_requires_base_package_and_host(self, spec, build, distname,
                                            host, host_requirement):
        _, data = build(spec)
        metadata = ZipFile(BytesIO(data)).read(
            f'{distname}-1.2.0a3.dist-info/METADATA'
        ).decode().splitlines()
        assert 'Requires-Dist: my-ext==1.2.0a3' in metadata
        assert f'Requires-Dist: {host_requirement}' in metadata

    def test_is_platform_independent(self, spec, build, distname, host,
                                     host_requirement):
        _, data = build(spec)
        wheeldata = ZipFile(BytesIO(data)).read(
            f'{distname}-1.2.0a3.dist-info/WHEEL'
        ).decode()
        assert 'Tag: py3-none-any\n' in wheeldata
        assert 'Root-Is-Purelib: true\n' in wheeldata
