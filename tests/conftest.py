import pytest

from extwheel import (
    Cpu,
    LoadableFile,
    Os,
    PlatformBuild,
    ProjectSpec,
    SemanticVersion,
    WheelBuilder,
)


@pytest.fixture
def builder():
    return WheelBuilder('my-ext', '1.0.0')


@pytest.fixture
def spec():
    return ProjectSpec('my-ext', SemanticVersion.parse('1.2.0-alpha.3'))


@pytest.fixture
def ext_so():
    return LoadableFile('ext.so', b'\x7fELF not really a library')


@pytest.fixture
def linux_build(ext_so):
    return PlatformBuild(Os.LINUX, Cpu.X86_64, [ext_so])
