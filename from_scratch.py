#!/usr/bin/env python3
"""
from-scratch
Build GCC, LLVM/Clang and RTags from upstream sources with their own build systems.
"""

import argparse
import os
import platform
import re
import shlex
import shutil
import subprocess
import sys
import tarfile
import tempfile
import traceback
import urllib.request
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Type, Union

import yaml

# ============================================================================
# ERRORS
# ============================================================================

class FromScratchError(Exception):
    """Base class for every fatal run error"""


class ConfigurationError(FromScratchError):
    """A required setting is missing or invalid"""


class UnknownPackageError(ConfigurationError):
    """A build list names a package that is not registered"""

    def __init__(self, name: str, available: Sequence[str] = ()):
        msg = f"Unknown package '{name}'"
        if available:
            msg += f" (available: {', '.join(sorted(available))})"
        super().__init__(msg)
        self.name = name


class StepError(FromScratchError):
    """A package step failed"""

    def __init__(self, package: str, step: str, msg: str):
        super().__init__(f"{package}: {step} failed: {msg}")
        self.package = package
        self.step = step


class StageError(StepError):
    """Fetch, extract or update of a source tree failed"""


class BuildError(StepError):
    """Configure, build or install exited with an error"""

# ============================================================================
# ENUMS AND DATA CLASSES
# ============================================================================

class FetchStrategy(Enum):
    TARBALL = "tarball"
    GIT = "git"

class BuildStrategy(Enum):
    AUTOTOOLS = "autotools"
    CMAKE = "cmake"

class RunState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    FETCHING = "fetching"
    BUILDING = "building"
    INSTALLED = "installed"
    DONE = "done"
    FAILED = "failed"

@dataclass(frozen=True)
class RunConfig:
    """Resolved configuration for one run"""
    build_list: Tuple[str, ...]
    build_dir: Path
    prefix: Path

    jobs: int = field(default_factory=lambda: os.cpu_count() or 1)
    cmake_generator: str = "Ninja"

    # GCC
    gcc_prefix: Optional[Path] = None
    gcc_lib_prefix: Optional[Path] = Path("/usr")
    gcc_version: str = "6.1.0"

    # LLVM
    llvm_prefix: Optional[Path] = None
    llvm_version: str = "3.9.1"
    llvm_targets: str = "X86;ARM"
    with_lldb: bool = False

    # Build options
    strip_install: bool = True
    niceness: int = 19
    machine: str = field(default_factory=platform.machine)
    verbose: bool = False

    @property
    def arch_suffix(self) -> str:
        """Library directory suffix, lib64 vs lib32"""
        return "64" if self.machine == "x86_64" else "32"

    @property
    def host_triple(self) -> str:
        return f"{self.machine}-redhat-linux"

    @property
    def gcc_bin(self) -> Path:
        return Path(self.gcc_prefix or "/usr") / "bin"

    @property
    def llvm_bin(self) -> Path:
        return Path(self.llvm_prefix or self.prefix) / "bin"

@dataclass(frozen=True)
class PackageSpec:
    """Static description of a buildable package"""
    name: str
    fetch: FetchStrategy
    build: BuildStrategy
    builder: Type["PackageBuilder"]
    required_fields: Tuple[str, ...] = ()
    prefix_field: str = "prefix"
    description: str = ""

@dataclass
class RunResult:
    """Outcome of an orchestrator run"""
    state: RunState
    completed: List[str] = field(default_factory=list)
    failed_package: Optional[str] = None
    error: Optional[FromScratchError] = None

    @property
    def ok(self) -> bool:
        return self.state == RunState.DONE

# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

class Color:
    """ANSI color codes"""
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    BOLD = '\033[1m'
    RESET = '\033[0m'

def log_info(msg: str):
    print(f"{Color.BLUE}[INFO]{Color.RESET} {msg}")

def log_success(msg: str):
    print(f"{Color.GREEN}[SUCCESS]{Color.RESET} {msg}")

def log_warning(msg: str):
    print(f"{Color.YELLOW}[WARNING]{Color.RESET} {msg}")

def log_error(msg: str):
    print(f"{Color.RED}[ERROR]{Color.RESET} {msg}")

def log_step(step: str, msg: str):
    print(f"\n{Color.CYAN}[{step}]{Color.RESET} {Color.BOLD}{msg}{Color.RESET}")

def run_command(cmd: Union[str, List[str]], cwd: Optional[Path] = None,
                env: Optional[Dict] = None, verbose: bool = False) -> subprocess.CompletedProcess:
    """
    Run a command and wait for it, raising on a non-zero exit
    """
    if isinstance(cmd, str):
        args = cmd
        cmd_str = cmd
        shell = True
    else:
        args = [str(arg) for arg in cmd]
        cmd_str = ' '.join(shlex.quote(arg) for arg in args)
        shell = False

    if verbose:
        log_info(f"Running: {cmd_str}")
        if cwd:
            log_info(f"  in: {cwd}")

    current_env = os.environ.copy()
    if env:
        current_env.update(env)

    try:
        result = subprocess.run(args, shell=shell, cwd=cwd, env=current_env)
    except FileNotFoundError as e:
        raise RuntimeError(f"Command not found: {args[0] if isinstance(args, list) else args}") from e

    if result.returncode != 0:
        raise subprocess.CalledProcessError(result.returncode, args)

    return result

def download_file(url: str, dest: Path):
    """
    Download url to dest, leaving no partial file behind on failure
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".part")

    log_info(f"Downloading: {url}")
    try:
        urllib.request.urlretrieve(url, partial)
    except Exception as e:
        if partial.exists():
            partial.unlink()
        raise RuntimeError(f"Failed to download {url}: {e}") from e

    partial.rename(dest)
    log_success(f"Downloaded: {dest}")

def extract_archive(archive: Path, dest: Path):
    """
    Extract a tar archive (gz, bz2, xz) into dest
    """
    log_info(f"Extracting: {archive} -> {dest}")

    dest.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive, 'r:*') as tar:
            if hasattr(tarfile, "data_filter"):
                tar.extractall(dest, filter="data")
            else:
                tar.extractall(dest)
    except tarfile.TarError as e:
        raise RuntimeError(f"Failed to extract tar archive {archive}: {e}") from e

def version_tuple(version: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r"\d+", version))

# ============================================================================
# CONFIGURATION
# ============================================================================

# Environment variable -> option name
ENV_VARS = {
    "BUILD_LIST": "build",
    "BUILD_DIR": "build_dir",
    "INSTALL_PREFIX": "prefix",
    "CORES": "jobs",
    "CGTOOL": "cmake_gen",
    "GCC_PREFIX": "gcc_prefix",
    "GCC_LIB_PREFIX": "gcc_lib_prefix",
    "GCC_VERSION": "gcc_version",
    "LLVM_INSTALL_PREFIX": "llvm_prefix",
    "LLVM_VERSION": "llvm_version",
    "LLVM_TARGETS": "llvm_targets",
    "WITH_LLDB": "with_lldb",
}

CONFIG_ENV_VAR = "FROM_SCRATCH_CONFIG"

CONFIG_KEYS = set(ENV_VARS.values()) | {"no_strip", "verbose"}

def detect_gcc_prefix() -> Path:
    """Prefix of the gcc found on PATH, e.g. /usr for /usr/bin/gcc"""
    gcc = shutil.which("gcc")
    if not gcc:
        return Path("/usr")
    return Path(gcc).parent.parent

def default_settings() -> Dict[str, object]:
    return {
        "build": "",
        "build_dir": str(Path(tempfile.gettempdir()) / "from-scratch"),
        "prefix": "/usr/local",
        "jobs": str(os.cpu_count() or 1),
        "cmake_gen": "Ninja",
        "gcc_prefix": str(detect_gcc_prefix()),
        "gcc_lib_prefix": "/usr",
        "gcc_version": "6.1.0",
        "llvm_prefix": None,
        "llvm_version": "3.9.1",
        "llvm_targets": "X86;ARM",
        "with_lldb": False,
        "no_strip": False,
        "verbose": False,
    }

def load_config_file(path: Path) -> Dict[str, object]:
    """Read YAML defaults; keys are the long option names"""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    settings = {}
    for key, value in data.items():
        name = str(key).replace('-', '_')
        if name not in CONFIG_KEYS:
            raise ConfigurationError(f"Unknown key '{key}' in config file {path}")
        if name == "build" and isinstance(value, list):
            value = ";".join(str(v) for v in value)
        settings[name] = value
    return settings

def parse_build_list(text: str) -> Tuple[str, ...]:
    """Split a ';'-separated package list, dropping empty items"""
    return tuple(item for item in re.split(r"[;,\s]+", text or "") if item)

def _as_bool(value: object) -> bool:
    # Any non-empty string is true, as with `[ ! -z "$WITH_LLDB" ]`
    if isinstance(value, str):
        return value.strip() != ""
    return bool(value)

def _as_abspath(value: object) -> Path:
    return Path(os.path.abspath(os.path.expanduser(str(value))))

def _as_jobs(value: object) -> int:
    try:
        jobs = int(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"jobs must be a positive integer, got '{value}'") from None
    if jobs < 1:
        raise ConfigurationError(f"jobs must be a positive integer, got '{value}'")
    return jobs

def resolve_config(args: argparse.Namespace,
                   environ: Optional[Mapping[str, str]] = None) -> RunConfig:
    """
    Merge defaults, config file, environment and CLI into a RunConfig.

    Precedence is CLI > environment > config file > default. An environment
    variable that is set overrides even when empty.
    """
    environ = os.environ if environ is None else environ
    settings = default_settings()

    config_path = getattr(args, "config", None) or environ.get(CONFIG_ENV_VAR)
    if config_path:
        settings.update(load_config_file(Path(config_path)))

    for var, name in ENV_VARS.items():
        if var in environ:
            settings[name] = environ[var]

    for name in CONFIG_KEYS:
        value = getattr(args, name, None)
        if value is not None and value is not False:
            settings[name] = value

    build_list = parse_build_list(str(settings["build"] or ""))
    if not build_list:
        raise ConfigurationError(
            "Don't know what to build, please provide a semicolon separated "
            "list of software packages to build (--build)")

    for name, flag in (("build_dir", "--build-dir"), ("prefix", "--prefix")):
        if not settings[name]:
            raise ConfigurationError(f"Missing required setting {flag}")

    prefix = _as_abspath(settings["prefix"])

    def optional_path(name):
        value = settings[name]
        return Path(str(value)) if value else None

    return RunConfig(
        build_list=build_list,
        build_dir=_as_abspath(settings["build_dir"]),
        prefix=prefix,
        jobs=_as_jobs(settings["jobs"]),
        cmake_generator=str(settings["cmake_gen"] or ""),
        gcc_prefix=optional_path("gcc_prefix"),
        gcc_lib_prefix=optional_path("gcc_lib_prefix"),
        gcc_version=str(settings["gcc_version"] or ""),
        llvm_prefix=optional_path("llvm_prefix") or prefix,
        llvm_version=str(settings["llvm_version"] or ""),
        llvm_targets=str(settings["llvm_targets"] or ""),
        with_lldb=_as_bool(settings["with_lldb"]),
        strip_install=not _as_bool(settings["no_strip"]),
        verbose=_as_bool(settings["verbose"]),
    )

# ============================================================================
# SOURCE MANAGEMENT
# ============================================================================

class SourceManager:
    """Materialise package source trees under the build directory"""

    def __init__(self, config: RunConfig, package: str):
        self.config = config
        self.package = package
        self.workdir = config.build_dir

    def fetch_tarball(self, url: str, archive: Path, expected_dir: Path,
                      extracted_name: str, dest: Optional[Path] = None) -> bool:
        """
        Download and unpack a source tarball once.

        Returns False when expected_dir already exists and nothing was done.
        The archive is kept next to the tree so a re-run never downloads it
        twice.
        """
        if expected_dir.is_dir():
            log_info(f"Source present, skipping fetch: {expected_dir}")
            return False

        dest = dest or expected_dir.parent
        try:
            if not archive.is_file():
                download_file(url, archive)

            extract_archive(archive, dest)

            extracted = dest / extracted_name
            if not extracted.is_dir():
                raise StageError(self.package, "extract",
                                 f"{archive.name} did not contain {extracted_name}/")
            if extracted != expected_dir:
                extracted.rename(expected_dir)
        except (RuntimeError, OSError) as e:
            raise StageError(self.package, "fetch", str(e)) from e

        return True

    def fetch_git(self, url: str, checkout: Path) -> bool:
        """
        Clone url into checkout, or update an existing checkout in place.

        Returns True for a fresh clone and False for an update.
        """
        try:
            if checkout.is_dir():
                log_info(f"Updating checkout: {checkout}")
                for cmd in (["git", "pull"],
                            ["git", "submodule", "init"],
                            ["git", "submodule", "update"]):
                    run_command(cmd, cwd=checkout, verbose=self.config.verbose)
                return False

            checkout.parent.mkdir(parents=True, exist_ok=True)
            run_command(["git", "clone", "--recursive", url, checkout.name],
                        cwd=checkout.parent, verbose=self.config.verbose)
            return True
        except (subprocess.CalledProcessError, RuntimeError, OSError) as e:
            raise StageError(self.package, "fetch", str(e)) from e

# ============================================================================
# BUILDERS
# ============================================================================

class PackageBuilder:
    """Base class for package builders"""

    name = ""

    def __init__(self, config: RunConfig):
        self.config = config
        self.source_mgr = SourceManager(config, self.name)

    @property
    def source_dir(self) -> Path:
        raise NotImplementedError

    def stage(self):
        """Make sure the source tree exists"""
        raise NotImplementedError

    def configure_command(self) -> List[str]:
        raise NotImplementedError

    def build_command(self) -> List[str]:
        raise NotImplementedError

    def install_command(self) -> List[str]:
        raise NotImplementedError

    def build(self):
        """Configure, compile and install into a fresh build directory"""
        build_dir = self.fresh_build_dir()
        self._run("configure", self.configure_command(), build_dir)
        self._run("build", self.build_command(), build_dir)
        self._run("install", self.install_command(), build_dir)

    def fresh_build_dir(self) -> Path:
        """Remove any previous build tree and recreate it empty"""
        build_dir = self.source_dir / "build"
        try:
            if build_dir.exists():
                log_info(f"Removing stale build directory: {build_dir}")
                shutil.rmtree(build_dir)
            build_dir.mkdir(parents=True)
        except OSError as e:
            raise BuildError(self.name, "configure", f"cannot prepare {build_dir}: {e}") from e
        return build_dir

    def niced(self, cmd: List[str]) -> List[str]:
        return ["nice", "-n", str(self.config.niceness), *cmd]

    def _run(self, step: str, cmd: List[str], cwd: Path):
        log_step(self.name.upper(), step.capitalize())
        try:
            run_command(cmd, cwd=cwd, verbose=self.config.verbose)
        except subprocess.CalledProcessError as e:
            raise BuildError(self.name, step, f"exit status {e.returncode}") from e
        except RuntimeError as e:
            raise BuildError(self.name, step, str(e)) from e


class CMakeBuilder(PackageBuilder):
    """Shared build and install steps for CMake projects"""

    def build_command(self) -> List[str]:
        return self.niced(["cmake", "--build", ".", "--", "-j", str(self.config.jobs)])

    def install_command(self) -> List[str]:
        target = "install/strip" if self.config.strip_install else "install"
        return ["cmake", "--build", ".", "--target", target]


# Requires gmp, mpfr and libmpc development headers on the host, plus 32-bit
# glibc headers for multilib.
class GCCBuilder(PackageBuilder):
    """Build GCC with autotools"""

    name = "gcc"
    MIRROR = "https://ftp.gnu.org/gnu/gcc/"

    @property
    def source_dir(self) -> Path:
        return self.config.build_dir / f"gcc-{self.config.gcc_version}"

    def stage(self):
        version = self.config.gcc_version
        archive_name = f"gcc-{version}.tar.bz2"
        self.source_mgr.fetch_tarball(
            f"{self.MIRROR}gcc-{version}/{archive_name}",
            self.config.build_dir / archive_name,
            self.source_dir,
            f"gcc-{version}",
        )

    def configure_command(self) -> List[str]:
        return [
            "../configure",
            f"--prefix={self.config.gcc_prefix}",
            "--with-system-zlib",
            "--without-included-gettext",
            "--enable-threads=posix",
            "--enable-nls",
            "--enable-objc-gc",
            "--enable-clocale=gnu",
            "--enable-plugin",
            "--enable-multilib",
            "--enable-checking=release",
            "--enable-__cxa_atexit",
            "--enable-gnu-unique-object",
            "--disable-libunwind-exceptions",
            "--enable-linker-build-id",
            "--with-linker-hash-style=gnu",
            "--enable-initfini-array",
            "--disable-libgcj",
            "--enable-bootstrap",
            "--with-isl",
            "--enable-libmpx",
            "--enable-gnu-indirect-function",
            "--with-arch_32=i686",
            "--with-tune=generic",
            f"--build={self.config.host_triple}",
            f"--host={self.config.host_triple}",
            "--enable-languages=c,c++,objc",
        ]

    def build_command(self) -> List[str]:
        return self.niced(["make", "-j", str(self.config.jobs)])

    def install_command(self) -> List[str]:
        return ["make", "install-strip" if self.config.strip_install else "install"]


class LLVMBuilder(CMakeBuilder):
    """Build LLVM with clang and compiler-rt, and lldb on request"""

    name = "llvm"
    MIRROR = "https://releases.llvm.org/"

    @property
    def source_dir(self) -> Path:
        return self.config.build_dir / f"llvm-{self.config.llvm_version}"

    @property
    def compression(self) -> str:
        # Releases before 3.5 were published as gzip tarballs
        return "gz" if version_tuple(self.config.llvm_version)[:2] < (3, 5) else "xz"

    def components(self) -> List[Tuple[str, Path]]:
        """(upstream name, destination) pairs, llvm itself first"""
        src = self.source_dir
        components = [
            ("llvm", src),
            ("cfe", src / "tools" / "clang"),
            ("compiler-rt", src / "projects" / "compiler-rt"),
        ]
        if self.config.with_lldb:
            components.append(("lldb", src / "tools" / "lldb"))
        return components

    def stage(self):
        version = self.config.llvm_version
        for component, dest in self.components():
            archive_name = f"{component}-{version}.src.tar.{self.compression}"
            self.source_mgr.fetch_tarball(
                f"{self.MIRROR}{version}/{archive_name}",
                self.config.build_dir / archive_name,
                dest,
                f"{component}-{version}.src",
            )

    def configure_command(self) -> List[str]:
        config = self.config
        return [
            "cmake", "..", "-G", config.cmake_generator,
            f"-DCMAKE_CXX_COMPILER={config.gcc_bin / 'g++'}",
            f"-DCMAKE_C_COMPILER={config.gcc_bin / 'gcc'}",
            "-DCMAKE_BUILD_TYPE=Release",
            f"-DCMAKE_INSTALL_PREFIX={config.llvm_prefix}",
            f"-DLLVM_LIBDIR_SUFFIX={config.arch_suffix}",
            f"-DLLVM_TARGETS_TO_BUILD={config.llvm_targets}",
            "-DLLVM_BUILD_EXAMPLES=OFF",
            "-DLLVM_INCLUDE_EXAMPLES=OFF",
            "-DLLVM_INCLUDE_TESTS=OFF",
            "-DLLVM_APPEND_VC_REV=OFF",
            "-DLLVM_ENABLE_CXX1Y=ON",
            "-DLLVM_ENABLE_ASSERTIONS=OFF",
            "-DLLVM_ENABLE_EH=ON",
            "-DLLVM_ENABLE_PIC=ON",
            "-DLLVM_ENABLE_RTTI=ON",
            "-DLLVM_ENABLE_WARNINGS=ON",
            "-DLLVM_TARGET_ARCH=host",
            "-DLLVM_ENABLE_FFI=ON",
            "-DLLVM_ENABLE_ZLIB=ON",
            "-DLLVM_USE_OPROFILE=OFF",
            f"-DLLVM_PARALLEL_COMPILE_JOBS={config.jobs}",
            "-DLLVM_PARALLEL_LINK_JOBS=1",
            "-DLLVM_BUILD_LLVM_DYLIB=ON",
            "-DLLVM_INSTALL_UTILS=ON",
            "-DLLVM_INSTALL_TOOLCHAIN_ONLY=OFF",
            "-DLLVM_LINK_LLVM_DYLIB=ON",
        ]


class RTagsBuilder(CMakeBuilder):
    """Build the RTags indexer against the installed LLVM"""

    name = "rtags"
    REPOSITORY = "https://github.com/Andersbakken/rtags.git"

    @property
    def source_dir(self) -> Path:
        return self.config.build_dir / "rtags"

    def stage(self):
        self.source_mgr.fetch_git(self.REPOSITORY, self.source_dir)

    def link_flags(self) -> str:
        config = self.config
        rpaths = [
            f"{config.gcc_lib_prefix}/lib{config.arch_suffix}",
            f"{config.gcc_lib_prefix}/lib",
            f"{config.llvm_prefix}/lib{config.arch_suffix}",
            f"{config.llvm_prefix}/lib",
        ]
        return " ".join(f"-Wl,-rpath,{path}" for path in rpaths)

    def configure_command(self) -> List[str]:
        config = self.config
        return [
            "cmake", "..", "-G", config.cmake_generator,
            f"-DCMAKE_INSTALL_PREFIX={config.prefix}",
            f"-DCMAKE_C_COMPILER={config.gcc_bin / 'gcc'}",
            f"-DCMAKE_CXX_COMPILER={config.gcc_bin / 'g++'}",
            f"-DLIBCLANG_LLVM_CONFIG_EXECUTABLE={config.llvm_bin / 'llvm-config'}",
            f"-DCMAKE_CXX_LINK_FLAGS={self.link_flags()}",
            "-DCMAKE_EXPORT_COMPILE_COMMANDS=ON",
        ]

# ============================================================================
# PACKAGE REGISTRY
# ============================================================================

REGISTRY: Dict[str, PackageSpec] = {
    spec.name: spec for spec in (
        PackageSpec(
            name="llvm",
            fetch=FetchStrategy.TARBALL,
            build=BuildStrategy.CMAKE,
            builder=LLVMBuilder,
            required_fields=("llvm_version", "llvm_targets", "cmake_generator", "gcc_prefix"),
            prefix_field="llvm_prefix",
            description="LLVM/Clang with compiler-rt (and lldb with --with-lldb)",
        ),
        PackageSpec(
            name="gcc",
            fetch=FetchStrategy.TARBALL,
            build=BuildStrategy.AUTOTOOLS,
            builder=GCCBuilder,
            required_fields=("gcc_version", "gcc_prefix"),
            prefix_field="gcc_prefix",
            description="GNU Compiler Collection (C, C++, Objective-C)",
        ),
        PackageSpec(
            name="rtags",
            fetch=FetchStrategy.GIT,
            build=BuildStrategy.CMAKE,
            builder=RTagsBuilder,
            required_fields=("cmake_generator", "gcc_prefix", "llvm_prefix"),
            description="RTags C/C++ source indexer",
        ),
    )
}

def validate_build_list(config: RunConfig,
                        registry: Mapping[str, PackageSpec] = REGISTRY) -> List[PackageSpec]:
    """
    Check every requested package before anything touches the filesystem.

    Unknown names, duplicates and empty required fields are errors.
    """
    seen = set()
    specs = []
    for name in config.build_list:
        if name not in registry:
            raise UnknownPackageError(name, list(registry))
        if name in seen:
            raise ConfigurationError(f"Package '{name}' is listed more than once")
        seen.add(name)

        spec = registry[name]
        for field_name in spec.required_fields:
            if not getattr(config, field_name):
                raise ConfigurationError(
                    f"You need to specify {field_name.replace('_', ' ')} to build {name}")
        specs.append(spec)
    return specs

# ============================================================================
# ORCHESTRATOR
# ============================================================================

def print_banner(config: RunConfig):
    print(f"""
{Color.BOLD}{Color.CYAN}from-scratch{Color.RESET}
{Color.BOLD}Packages:   {Color.GREEN}{' -> '.join(config.build_list)}{Color.RESET}
{Color.BOLD}Build dir:  {Color.GREEN}{config.build_dir}{Color.RESET}
{Color.BOLD}Prefix:     {Color.GREEN}{config.prefix}{Color.RESET}
{Color.BOLD}Jobs:       {Color.GREEN}{config.jobs}{Color.RESET}
    """)

class Orchestrator:
    """Run the build list in order, stopping at the first failure"""

    def __init__(self, config: RunConfig, registry: Mapping[str, PackageSpec] = REGISTRY):
        self.config = config
        self.registry = registry
        self.state = RunState.IDLE
        self.transitions: List[Tuple[Optional[str], RunState]] = []

    def _enter(self, state: RunState, package: Optional[str] = None):
        self.state = state
        self.transitions.append((package, state))

    def run(self) -> RunResult:
        result = RunResult(state=RunState.IDLE)
        current = None

        try:
            self._enter(RunState.VALIDATING)
            specs = validate_build_list(self.config, self.registry)
            print_banner(self.config)

            try:
                self.config.build_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigurationError(f"Cannot create build directory {self.config.build_dir}: {e}") from e

            for spec in specs:
                current = spec.name
                builder = spec.builder(self.config)
                prefix = getattr(self.config, spec.prefix_field)

                log_step(spec.name.upper(), f"Fetching {spec.name} ({spec.fetch.value})")
                self._enter(RunState.FETCHING, spec.name)
                builder.stage()

                log_step(spec.name.upper(), f"Building {spec.name} into {prefix}")
                self._enter(RunState.BUILDING, spec.name)
                builder.build()

                self._enter(RunState.INSTALLED, spec.name)
                result.completed.append(spec.name)
                log_success(f"{spec.name} installed to {prefix}")

        except FromScratchError as e:
            self._enter(RunState.FAILED, current)
            result.state = RunState.FAILED
            result.failed_package = current
            result.error = e
            return result
        except BaseException:
            self._enter(RunState.FAILED, current)
            raise

        self._enter(RunState.DONE)
        result.state = RunState.DONE
        return result

# ============================================================================
# MAIN PROGRAM
# ============================================================================

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130
EXIT_BAD_ARGUMENT = 255

class ArgumentParser(argparse.ArgumentParser):
    """argparse that exits with 255 on a bad argument"""

    def error(self, message):
        self.print_usage(sys.stderr)
        log_error(message)
        sys.exit(EXIT_BAD_ARGUMENT)

def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser"""

    packages = "\n".join(f"  {name:8} {spec.description}" for name, spec in REGISTRY.items())
    parser = ArgumentParser(
        prog="from-scratch",
        description="Compile GCC, LLVM/Clang and other packages from scratch.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        epilog=f"""
Available packages to build:
{packages}

Every option can also come from the environment (BUILD_LIST, BUILD_DIR,
INSTALL_PREFIX, CORES, CGTOOL, GCC_PREFIX, GCC_LIB_PREFIX, GCC_VERSION,
LLVM_INSTALL_PREFIX, LLVM_VERSION, LLVM_TARGETS, WITH_LLDB) or from a YAML
file given with --config or {CONFIG_ENV_VAR}.

Examples:
  from-scratch --build "gcc;llvm;rtags" --prefix /opt/toolchain
  from-scratch --build llvm --llvm-version 3.9.1 --with-lldb --jobs 8
"""
    )

    build_group = parser.add_argument_group('Build Selection')
    build_group.add_argument(
        '--build',
        metavar='PKG[;PKG...]',
        help='Semicolon separated packages in the order they should be built'
    )
    build_group.add_argument(
        '--build-dir',
        help='Build directory (default: <tmp>/from-scratch)'
    )
    build_group.add_argument(
        '--prefix',
        help='General installation prefix (default: /usr/local)'
    )
    build_group.add_argument(
        '--jobs',
        help='Number of parallel jobs (default: processor count)'
    )
    build_group.add_argument(
        '--cmake-gen',
        help='CMake generator (default: Ninja)'
    )

    gcc_group = parser.add_argument_group('GCC')
    gcc_group.add_argument(
        '--gcc-prefix',
        help='GCC install prefix, or prefix of the host GCC when gcc is not built'
    )
    gcc_group.add_argument(
        '--gcc-lib-prefix',
        help='GCC libraries prefix (default: /usr)'
    )
    gcc_group.add_argument(
        '--gcc-version',
        help='GCC version to build (default: 6.1.0)'
    )

    llvm_group = parser.add_argument_group('LLVM')
    llvm_group.add_argument(
        '--llvm-prefix',
        help='LLVM/Clang install prefix (default: --prefix)'
    )
    llvm_group.add_argument(
        '--llvm-version',
        help='LLVM/Clang version to build (default: 3.9.1)'
    )
    llvm_group.add_argument(
        '--llvm-targets',
        help='Targets LLVM should be built for (default: X86;ARM)'
    )
    llvm_group.add_argument(
        '--with-lldb',
        action='store_true',
        help='Also build the LLDB debugger'
    )

    other_group = parser.add_argument_group('Other')
    other_group.add_argument(
        '--config',
        help='YAML file with default option values'
    )
    other_group.add_argument(
        '--no-strip',
        action='store_true',
        help='Install unstripped (debug) binaries'
    )
    other_group.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Echo every command before running it'
    )
    other_group.add_argument(
        '--help', '-h',
        action='help',
        help='Print this help'
    )

    return parser

def wants_help(argv: Sequence[str]) -> bool:
    for arg in argv:
        if arg == "--":
            return False
        if arg in ("--help", "-h"):
            return True
    return False

def main(argv: Optional[Sequence[str]] = None,
         environ: Optional[Mapping[str, str]] = None) -> int:
    """Main program entry point"""

    argv = list(sys.argv[1:] if argv is None else argv)
    parser = create_parser()

    # Help wins over every other flag, including malformed ones
    if wants_help(argv):
        parser.print_help()
        return EXIT_OK

    args = parser.parse_args(argv)

    try:
        config = resolve_config(args, environ)
    except ConfigurationError as e:
        log_error(str(e))
        parser.print_usage()
        return EXIT_FAILURE

    try:
        result = Orchestrator(config).run()
    except KeyboardInterrupt:
        log_error("Build interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        log_error(f"Unexpected error: {e}")
        traceback.print_exc()
        return EXIT_FAILURE

    if not result.ok:
        log_error(str(result.error))
        if isinstance(result.error, ConfigurationError):
            parser.print_usage()
        elif result.failed_package:
            log_error(f"Stopped at {result.failed_package}; artifacts left in {config.build_dir}")
        return EXIT_FAILURE

    log_success(f"Built {', '.join(result.completed)}")
    return EXIT_OK

if __name__ == "__main__":
    sys.exit(main())
