# Copyright (c) 2020-2021 Blazej Michalik
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
"""Build ".whl" packages for SQLite loadable extensions.

Use :class:`WheelBuilder` to assemble a wheel in memory, or one of the
``build_*_wheel`` functions to produce the three kinds of packages shipped for
an extension:

    - the base package, one per platform, holding the native library and a
      small ``__init__.py`` with ``loadable_path()`` and ``load(conn)``,
    - ``datasette-<name>``, a plugin registering the extension with Datasette,
    - ``sqlite-utils-<name>``, a plugin doing the same for sqlite-utils.

Example
-------
Here's how to build a base wheel for Linux and save it into ``dist/``::

    spec = load_spec('extension.toml')
    build = collect_platform_directory('out/linux-x86_64', 'linux', 'x86_64')
    write_base_packages('dist/', [build], spec)
"""

import csv
import io
import re
import hashlib
import base64
import logging
import warnings
import zipfile

from enum import Enum
from pathlib import Path
from collections import namedtuple
from email.message import EmailMessage
from email.policy import EmailPolicy
from packaging.version import Version, InvalidVersion

import toml

from typing import Optional, Union, List, Set, Tuple, Sequence

__version__ = '0.1.0'

logger = logging.getLogger(__name__)


class BuildConfigurationError(ValueError):
    """Build inputs are wrong in a way that must not be guessed around."""


class InvalidSemanticVersionError(BuildConfigurationError):
    """The given string is not a MAJOR.MINOR.PATCH[-PRE][+BUILD] version."""


class UnsupportedVersionError(BuildConfigurationError):
    """The version cannot be expressed in the wheel version dialect."""


class UnsupportedPlatformError(BuildConfigurationError):
    """There is no compatibility tag for the given OS and CPU pair."""


class NoLoadableFilesError(BuildConfigurationError):
    """A platform build has no native files to package."""


class ArchiveError(RuntimeError):
    """The archive rejected a write, or the builder was already finalized."""


# Versions

_SEMVER_RE = re.compile(
    r'(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)'
    r'(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?'
    r'(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?'
)

PRERELEASE_CODES = {
    'alpha': 'a',
    'beta': 'b',
    'rc': 'rc',
}


class SemanticVersion(
    namedtuple('SemanticVersion', 'major minor patch pre build',
               defaults=(None, None))
):
    """Version in the MAJOR.MINOR.PATCH[-PRE][+BUILD] form.

    ``pre`` and ``build`` hold the dot-separated identifiers as they appear
    after ``-`` and ``+`` respectively, or None if absent.
    """
    __slots__ = ()

    @classmethod
    def parse(cls, s: str) -> 'SemanticVersion':
        match = _SEMVER_RE.fullmatch(s.strip())
        if match is None:
            raise InvalidSemanticVersionError(
                f"Not a semantic version: {repr(s)}."
            )
        major, minor, patch, pre, build = match.groups()
        return cls(int(major), int(minor), int(patch), pre, build)

    def __str__(self) -> str:
        s = f"{self.major}.{self.minor}.{self.patch}"
        if self.pre:
            s += f"-{self.pre}"
        if self.build:
            s += f"+{self.build}"
        return s


def pip_version(version: Union[str, SemanticVersion]) -> str:
    """Convert a semantic version into the version string used by wheels.

    Only ``alpha.N``, ``beta.N`` and ``rc.N`` pre-releases are supported, and
    they map to ``aN``, ``bN`` and ``rcN`` suffixes. Build metadata is dropped
    (with a warning) when there is no pre-release, and rejected when there is
    one.

    Raises
    ------
    UnsupportedVersionError
        If the pre-release identifier has an unknown shape, or both
        pre-release and build metadata are present.
    """
    if isinstance(version, str):
        version = SemanticVersion.parse(version)

    base = f"{version.major}.{version.minor}.{version.patch}"

    if not version.pre:
        if version.build:
            # TODO: decide between a local version label and an error once
            # a release needs build metadata.
            warnings.warn(RuntimeWarning(
                f"Build metadata {repr(version.build)} of {version} has no "
                f"wheel version counterpart and is dropped."
            ))
        return base

    if version.build:
        raise UnsupportedVersionError(
            f"Versions with both a pre-release and build metadata are not "
            f"supported: {version}."
        )

    kind, sep, number = version.pre.partition('.')
    if not sep or not (number.isascii() and number.isdigit()):
        raise UnsupportedVersionError(
            f"Pre-release must look like '<kind>.<number>', got "
            f"{repr(version.pre)}."
        )
    try:
        code = PRERELEASE_CODES[kind]
    except KeyError:
        raise UnsupportedVersionError(
            f"Unknown pre-release kind {repr(kind)}, expected one of: "
            f"{', '.join(PRERELEASE_CODES)}."
        ) from None

    return f"{base}{code}{int(number)}"


normalize_version = pip_version


# Platforms

class Os(Enum):
    MACOS = 'macos'
    LINUX = 'linux'
    WINDOWS = 'windows'


class Cpu(Enum):
    X86_64 = 'x86_64'
    AARCH64 = 'aarch64'


PLATFORM_TAGS = {
    (Os.MACOS, Cpu.X86_64): 'macosx_10_6_x86_64',
    (Os.MACOS, Cpu.AARCH64): 'macosx_11_0_arm64',
    (Os.LINUX, Cpu.X86_64):
        'manylinux_2_17_x86_64.manylinux2014_x86_64.manylinux1_x86_64',
    (Os.LINUX, Cpu.AARCH64): 'manylinux_2_17_aarch64.manylinux2014_aarch64',
    (Os.WINDOWS, Cpu.X86_64): 'win_amd64',
}

Platform = Tuple[Os, Cpu]


def platform_tag(os: Os, cpu: Cpu) -> str:
    """Return the platform compatibility tag for a given OS and CPU.

    Raises
    ------
    UnsupportedPlatformError
        If the pair is not in `PLATFORM_TAGS`.
    """
    try:
        return PLATFORM_TAGS[(Os(os), Cpu(cpu))]
    except (KeyError, ValueError):
        raise UnsupportedPlatformError(
            f"No wheel platform tag for {os} on {cpu}."
        ) from None


def platform_tag_for(platform: Optional[Platform]) -> str:
    """Like `platform_tag`, but ``None`` means a platform-independent wheel."""
    if platform is None:
        return 'any'
    os, cpu = platform
    return platform_tag(os, cpu)


# Wheel building

class ManifestEntry(namedtuple('ManifestEntry', 'path hash size')):
    """One line of the RECORD file: archive path, hash, and size in bytes."""
    __slots__ = ()

    @classmethod
    def of(cls, path: str, data: bytes) -> 'ManifestEntry':
        digest = hashlib.sha256(data).digest()
        return cls(path, f"sha256={cls._hash_encoder(digest)}", len(data))

    @staticmethod
    def _hash_encoder(data: bytes) -> str:
        """
        Encode a file hash per PEP 376 spec

        From the spec:
        The hash is either the empty string or the hash algorithm as named in
        hashlib.algorithms_guaranteed, followed by the equals character =,
        followed by the urlsafe-base64-nopad encoding of the digest
        (base64.urlsafe_b64encode(digest) with trailing = removed).
        """
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode('ascii')


class ProjectMetadata(namedtuple(
    'ProjectMetadata',
    'summary home_page author license requires_python requires_dists '
    'description description_content_type',
    defaults=(None, None, None, None, None, (), None, None)
)):
    """Optional METADATA fields, on top of the name and version."""
    __slots__ = ()

    _FIELD_NAMES = {
        'summary': 'Summary',
        'home_page': 'Home-page',
        'author': 'Author',
        'license': 'License',
        'description_content_type': 'Description-Content-Type',
        'requires_python': 'Requires-Python',
    }

    def render(self, name: str, version: str) -> str:
        m = EmailMessage(EmailPolicy(max_line_length=None))
        m.add_header("Metadata-Version", "2.1")
        m.add_header("Name", name)
        m.add_header("Version", version)
        for attr_name, field_name in self._FIELD_NAMES.items():
            content = getattr(self, attr_name)
            if content:
                m.add_header(field_name, content)
        for requirement in self.requires_dists:
            m.add_header("Requires-Dist", requirement)
        if self.description:
            m.set_payload(self.description)
        return str(m)


class WheelBuilder:
    """Writes a wheel into an in-memory buffer.

    Every member is stored uncompressed with a fixed timestamp, so the same
    inputs always give byte-identical archives. Each write is recorded in
    `manifest`, which becomes the RECORD file on `finalize()`.

    The builder is single use: after `finalize()` returns (or fails) it
    refuses any further writes.

    Parameters
    ----------
    distname
        Name of the distribution, e.g. ``"sqlite-vec"``. Dashes are replaced
        with underscores to get `import_name`, which names the package
        directory, the ``.dist-info`` directory, and the wheel file.

    version
        Semantic version of the distribution. Converted once with
        `pip_version`.

    metadata
        Optional extra fields for the METADATA file. Can also be replaced
        later through the `metadata` attribute, up until `finalize()`.

    Attributes
    ----------
    manifest : Tuple[ManifestEntry, ...]
        Entries for every file written so far, in write order.
    """
    GENERATOR = 'extwheel ' + __version__
    ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)
    FILE_MODE = 0o644

    def __init__(self, distname: str, version: Union[str, SemanticVersion],
                 *, metadata: Optional[ProjectMetadata] = None) -> None:
        import_name = distname.replace('-', '_')
        if not import_name.isidentifier():
            raise BuildConfigurationError(
                f"Distribution name {repr(distname)} does not give a valid "
                f"import name."
            )
        normalized = pip_version(version)
        try:
            Version(normalized)
        except InvalidVersion as e:
            raise UnsupportedVersionError(
                f"{repr(normalized)} is not a valid wheel version."
            ) from e

        self._distname = distname
        self._import_name = import_name
        self._version = normalized
        self.metadata = metadata or ProjectMetadata()
        self._manifest: List[ManifestEntry] = []
        self._arcnames: Set[str] = set()
        self._buf = io.BytesIO()
        self._zip: Optional[zipfile.ZipFile] = zipfile.ZipFile(
            self._buf, 'w', compression=zipfile.ZIP_STORED
        )

    @property
    def distname(self) -> str:
        return self._distname

    @property
    def import_name(self) -> str:
        return self._import_name

    @property
    def version(self) -> str:
        return self._version

    @property
    def manifest(self) -> Tuple[ManifestEntry, ...]:
        return tuple(self._manifest)

    @property
    def finalized(self) -> bool:
        return self._zip is None

    @property
    def distinfo_dirname(self) -> str:
        return f"{self.import_name}-{self.version}.dist-info"

    def _distinfo_path(self, filename: str) -> str:
        return f"{self.distinfo_dirname}/{filename}"

    def wheel_name(self, platform: Optional[Platform] = None) -> str:
        """Filename of the wheel built for ``platform`` (None for "any")."""
        tag = platform_tag_for(platform)
        return f"{self.import_name}-{self.version}-py3-none-{tag}.whl"

    def write(self, arcname: str, data: Union[bytes, str]) -> None:
        """Store ``data`` under ``arcname`` and add it to the manifest.

        Strings are encoded as UTF-8 first.

        Raises
        ------
        ArchiveError
            If ``arcname`` is already in the archive, the zip layer rejects
            the write, or the builder has been finalized.
        """
        if isinstance(data, str):
            data = data.encode('utf-8')
        self._write_member(arcname, data)
        self._manifest.append(ManifestEntry.of(arcname, data))

    def write_library_file(self, path: str, data: Union[bytes, str]) -> None:
        """Write a file into the package directory, ``<import_name>/<path>``.

        ``path`` is not checked for ``..`` segments or leading slashes.
        """
        self.write(f"{self.import_name}/{path}", data)

    def _write_member(self, arcname: str, data: bytes) -> None:
        if self._zip is None:
            raise ArchiveError(
                f"Cannot write {repr(arcname)}: wheel already finalized."
            )
        if arcname in self._arcnames:
            raise ArchiveError(
                f"Duplicate archive member: {repr(arcname)}."
            )

        zinfo = zipfile.ZipInfo(arcname, date_time=self.ZIP_DATE_TIME)
        zinfo.compress_type = zipfile.ZIP_STORED
        zinfo.external_attr = self.FILE_MODE << 16
        try:
            self._zip.writestr(zinfo, data)
        except (ValueError, zipfile.LargeZipFile) as e:
            raise ArchiveError(
                f"Cannot write {repr(arcname)} into the archive: {e}"
            ) from e
        self._arcnames.add(arcname)
        logger.debug("Wrote %s (%d bytes)", arcname, len(data))

    def _wheel_text(self, tag: str) -> str:
        m = EmailMessage(EmailPolicy(max_line_length=None))
        m.add_header("Wheel-Version", "1.0")
        m.add_header("Generator", self.GENERATOR)
        m.add_header("Root-Is-Purelib", "true" if tag == 'any' else "false")
        m.add_header("Tag", f"py3-none-{tag}")
        return str(m)

    def _record_text(self, record_path: str) -> str:
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator='\n')
        for entry in self._manifest:
            writer.writerow(entry)
        # RECORD cannot contain its own hash
        writer.writerow((record_path, '', ''))
        return buf.getvalue()

    def finalize(self, platform: Optional[Platform] = None) -> bytes:
        """Write the .dist-info files, close the archive, and return it.

        METADATA, WHEEL, top_level.txt, and RECORD are written in this order.
        The first three are hashed into the manifest, RECORD lists the
        manifest followed by an entry for itself with empty hash and size.

        Whether it succeeds or not, the builder cannot be used afterwards. A
        failed build leaves no usable archive behind.

        Parameters
        ----------
        platform
            ``(Os, Cpu)`` pair for the WHEEL tag, or None for a
            platform-independent wheel.

        Raises
        ------
        UnsupportedPlatformError
            If there is no tag for ``platform``. Nothing is written then, and
            the builder remains usable.
        ArchiveError
            If the builder was already finalized, or the zip layer failed.
        """
        tag = platform_tag_for(platform)
        if self._zip is None:
            raise ArchiveError("Wheel already finalized.")

        zf = self._zip
        try:
            self.write(self._distinfo_path("METADATA"),
                       self.metadata.render(self.distname, self.version))
            self.write(self._distinfo_path("WHEEL"), self._wheel_text(tag))
            self.write(self._distinfo_path("top_level.txt"),
                       f"{self.import_name}\n")
            record_path = self._distinfo_path("RECORD")
            self._write_member(record_path,
                               self._record_text(record_path).encode('utf-8'))
        finally:
            self._zip = None
            zf.close()

        return self._buf.getvalue()


# Package assemblers

class LoadableFile(namedtuple('LoadableFile', 'name data')):
    """A native library file to ship in the base package."""
    __slots__ = ()

    @property
    def stem(self) -> str:
        return Path(self.name).stem


class PlatformBuild(namedtuple('PlatformBuild', 'os cpu loadable_files')):
    """Native files built for a single OS and CPU pair."""
    __slots__ = ()

    @property
    def platform(self) -> Platform:
        try:
            return (Os(self.os), Cpu(self.cpu))
        except ValueError as e:
            raise UnsupportedPlatformError(str(e)) from e


class ProjectSpec(namedtuple('ProjectSpec', 'name version metadata',
                             defaults=(ProjectMetadata(),))):
    """Name, semantic version, and METADATA extras of an extension."""
    __slots__ = ()

    @property
    def import_name(self) -> str:
        return self.name.replace('-', '_')


_BASE_INIT_TEMPLATE = '''\
import os
import sqlite3

__version__ = {version!r}
__version_info__ = tuple(__version__.split("."))


def loadable_path():
    loadable_path = os.path.join(os.path.dirname(__file__), {entrypoint!r})
    return os.path.normpath(loadable_path)


def load(conn: sqlite3.Connection) -> None:
    conn.load_extension(loadable_path())
'''

_PLUGIN_INIT_TEMPLATE = '''\
from {host} import hookimpl
import {dependency}

__version__ = {version!r}
__version_info__ = tuple(__version__.split("."))


@hookimpl
def prepare_connection(conn):
    conn.enable_load_extension(True)
    {dependency}.load(conn)
    conn.enable_load_extension(False)
'''


def base_init_py(version: str, entrypoint: str) -> str:
    return _BASE_INIT_TEMPLATE.format(version=version, entrypoint=entrypoint)


def plugin_init_py(host: str, dependency: str, version: str) -> str:
    return _PLUGIN_INIT_TEMPLATE.format(host=host, dependency=dependency,
                                        version=version)


def build_base_wheel(spec: ProjectSpec,
                     platform_build: PlatformBuild) -> Tuple[str, bytes]:
    """Build the base package for one platform.

    The generated ``__init__.py`` loads the first of the loadable files, by
    its name without the suffix, so that SQLite picks the right one for the
    platform.

    Returns
    -------
    Tuple[str, bytes]
        The wheel filename and the archive contents.

    Raises
    ------
    NoLoadableFilesError
        If ``platform_build`` has no loadable files.
    UnsupportedPlatformError
        If the platform has no compatibility tag.
    """
    if not platform_build.loadable_files:
        raise NoLoadableFilesError(
            f"No loadable files for {platform_build.os} on "
            f"{platform_build.cpu}."
        )
    platform = platform_build.platform
    builder = WheelBuilder(spec.name, spec.version, metadata=spec.metadata)
    wheel_name = builder.wheel_name(platform)

    entrypoint = platform_build.loadable_files[0].stem
    builder.write_library_file("__init__.py",
                               base_init_py(builder.version, entrypoint))
    for loadable in platform_build.loadable_files:
        builder.write_library_file(loadable.name, loadable.data)

    return wheel_name, builder.finalize(platform)


def _build_plugin_wheel(spec: ProjectSpec, prefix: str, host: str,
                        host_requirement: str) -> Tuple[str, bytes]:
    builder = WheelBuilder(f"{prefix}-{spec.name}", spec.version)
    builder.metadata = spec.metadata._replace(
        requires_dists=(f"{spec.name}=={builder.version}", host_requirement),
    )
    builder.write_library_file(
        "__init__.py",
        plugin_init_py(host, spec.import_name, builder.version),
    )
    return builder.wheel_name(None), builder.finalize(None)


def build_datasette_wheel(spec: ProjectSpec) -> Tuple[str, bytes]:
    """Build ``datasette-<name>``, a plugin loading the extension."""
    return _build_plugin_wheel(spec, "datasette", "datasette", "datasette")


def build_sqlite_utils_wheel(spec: ProjectSpec) -> Tuple[str, bytes]:
    """Build ``sqlite-utils-<name>``, a plugin loading the extension."""
    return _build_plugin_wheel(spec, "sqlite-utils", "sqlite_utils",
                               "sqlite-utils")


# Inputs and outputs

LOADABLE_SUFFIXES = {'.so', '.dylib', '.dll'}

GeneratedAsset = namedtuple('GeneratedAsset', 'kind platform path checksum')


def load_spec(path: Union[str, Path]) -> ProjectSpec:
    """Read the ``[package]`` table of a TOML project description.

    ``name`` and ``version`` are required. Any of the `ProjectMetadata`
    fields, e.g. ``summary`` or ``requires_dists``, are copied into METADATA
    when present.
    """
    try:
        config = toml.load(str(path))
    except toml.TomlDecodeError as e:
        raise BuildConfigurationError(
            f"Cannot parse {str(path)}: {e}"
        ) from e

    package = config.get('package', {})
    for key in ('name', 'version'):
        if key not in package:
            raise BuildConfigurationError(
                f"Missing 'package.{key}' in {str(path)}."
            )

    extras = {field: package[field] for field in ProjectMetadata._fields
              if field in package}
    if 'requires_dists' in extras:
        extras['requires_dists'] = tuple(extras['requires_dists'])
    return ProjectSpec(
        name=package['name'],
        version=SemanticVersion.parse(package['version']),
        metadata=ProjectMetadata(**extras),
    )


def collect_platform_directory(directory: Union[str, Path],
                               os: Union[str, Os],
                               cpu: Union[str, Cpu]) -> PlatformBuild:
    """Gather the loadable files from a directory of build outputs.

    Files are picked by suffix (see `LOADABLE_SUFFIXES`) and sorted by name,
    subdirectories are ignored.
    """
    directory = Path(directory)
    try:
        os, cpu = Os(os), Cpu(cpu)
    except ValueError as e:
        raise UnsupportedPlatformError(str(e)) from e

    loadable_files = [
        LoadableFile(path.name, path.read_bytes())
        for path in sorted(directory.iterdir())
        if path.is_file() and path.suffix in LOADABLE_SUFFIXES
    ]
    return PlatformBuild(os, cpu, loadable_files)


def write_asset(kind: str, path: Union[str, Path], data: bytes,
                platform: Optional[Platform] = None) -> GeneratedAsset:
    """Save a built wheel to ``path`` and describe it as a `GeneratedAsset`.

    Parent directories are created as needed.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    checksum = hashlib.sha256(data).hexdigest()
    logger.info("Generated %s asset %s (sha256 %s)", kind, path, checksum)
    return GeneratedAsset(kind, platform, path, checksum)


def write_base_packages(pip_path: Union[str, Path],
                        platform_builds: Sequence[PlatformBuild],
                        spec: ProjectSpec) -> List[GeneratedAsset]:
    assets = []
    for platform_build in platform_builds:
        wheel_name, data = build_base_wheel(spec, platform_build)
        assets.append(write_asset('pip', Path(pip_path) / wheel_name, data,
                                  platform_build.platform))
    return assets


def write_datasette(datasette_path: Union[str, Path],
                    spec: ProjectSpec) -> GeneratedAsset:
    wheel_name, data = build_datasette_wheel(spec)
    return write_asset('datasette', Path(datasette_path) / wheel_name, data)


def write_sqlite_utils(sqlite_utils_path: Union[str, Path],
                       spec: ProjectSpec) -> GeneratedAsset:
    wheel_name, data = build_sqlite_utils_wheel(spec)
    return write_asset('sqlite_utils', Path(sqlite_utils_path) / wheel_name,
                       data)


def build_distributions(spec: ProjectSpec,
                        platform_builds: Sequence[PlatformBuild],
                        output_dir: Union[str, Path]) -> List[GeneratedAsset]:
    """Build every wheel for the extension into ``output_dir``.

    Base packages go to ``pip/``, plugins to ``datasette/`` and
    ``sqlite_utils/``.
    """
    output_dir = Path(output_dir)
    assets = write_base_packages(output_dir / 'pip', platform_builds, spec)
    assets.append(write_datasette(output_dir / 'datasette', spec))
    assets.append(write_sqlite_utils(output_dir / 'sqlite_utils', spec))
    return assets
