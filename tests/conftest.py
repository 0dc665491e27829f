"""Shared fixtures for the from-scratch test suite."""

import tarfile
from pathlib import Path

import pytest

from from_scratch import RunConfig


@pytest.fixture
def make_config(tmp_path):
    """Factory for a RunConfig rooted in the test's temporary directory."""

    def _make(build_list=("gcc",), **overrides):
        values = dict(
            build_list=tuple(build_list),
            build_dir=tmp_path / "work",
            prefix=tmp_path / "install",
            jobs=4,
            gcc_prefix=Path("/opt/gcc"),
            gcc_lib_prefix=Path("/opt/gcc"),
            llvm_prefix=tmp_path / "install",
            machine="x86_64",
        )
        values.update(overrides)
        return RunConfig(**values)

    return _make


@pytest.fixture
def make_tarball(tmp_path):
    """Factory that packs a directory named `top` into a tarball."""

    def _make(archive: Path, top: str, files=None, mode="w:gz"):
        staging = tmp_path / "tarball-staging" / archive.name
        root = staging / top
        root.mkdir(parents=True)
        for rel, content in (files or {"README": "source\n"}).items():
            target = root / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        archive.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, mode) as tar:
            tar.add(root, arcname=top)
        return archive

    return _make
