"""Tests for the orchestrator state machine."""

from pathlib import Path

import pytest

from from_scratch import (
    BuildError,
    BuildStrategy,
    ConfigurationError,
    FetchStrategy,
    Orchestrator,
    PackageBuilder,
    PackageSpec,
    RunState,
    StageError,
    UnknownPackageError,
)


def fake_registry(events, fail_stage=(), fail_build=()):
    """Registry of builders that only record what they were asked to do."""

    def make_builder(pkg):

        class FakeBuilder(PackageBuilder):
            name = pkg

            @property
            def source_dir(self) -> Path:
                return self.config.build_dir / pkg

            def stage(self):
                events.append(("stage", pkg))
                if pkg in fail_stage:
                    raise StageError(pkg, "fetch", "network unreachable")
                self.source_dir.mkdir(exist_ok=True)

            def build(self):
                events.append(("build", pkg))
                if pkg in fail_build:
                    raise BuildError(pkg, "build", "exit status 2")

        return FakeBuilder

    return {
        name: PackageSpec(
            name=name,
            fetch=FetchStrategy.TARBALL,
            build=BuildStrategy.CMAKE,
            builder=make_builder(name),
            required_fields=("llvm_version",) if name == "c" else (),
        )
        for name in ("a", "b", "c")
    }


class TestOrchestrator:

    @pytest.fixture
    def events(self):
        return []

    def test_runs_packages_in_order(self, make_config, events):
        config = make_config(("c", "a", "b"))
        orchestrator = Orchestrator(config, fake_registry(events))

        result = orchestrator.run()

        assert result.ok
        assert result.state == RunState.DONE
        assert result.completed == ["c", "a", "b"]
        assert events == [
            ("stage", "c"), ("build", "c"),
            ("stage", "a"), ("build", "a"),
            ("stage", "b"), ("build", "b"),
        ]

    def test_transitions(self, make_config, events):
        orchestrator = Orchestrator(make_config(("a", "b")), fake_registry(events))
        orchestrator.run()

        assert orchestrator.transitions == [
            (None, RunState.VALIDATING),
            ("a", RunState.FETCHING),
            ("a", RunState.BUILDING),
            ("a", RunState.INSTALLED),
            ("b", RunState.FETCHING),
            ("b", RunState.BUILDING),
            ("b", RunState.INSTALLED),
            (None, RunState.DONE),
        ]
        assert orchestrator.state == RunState.DONE

    def test_starts_idle(self, make_config, events):
        assert Orchestrator(make_config(("a",)), fake_registry(events)).state == RunState.IDLE

    def test_unknown_package_has_no_side_effects(self, make_config, events):
        config = make_config(("a", "zzz"))
        orchestrator = Orchestrator(config, fake_registry(events))

        result = orchestrator.run()

        assert result.state == RunState.FAILED
        assert isinstance(result.error, UnknownPackageError)
        assert result.failed_package is None
        assert events == []
        assert not config.build_dir.exists()
        assert orchestrator.transitions == [(None, RunState.VALIDATING), (None, RunState.FAILED)]

    def test_missing_requirement_fails_before_fetching(self, make_config, events):
        config = make_config(("a", "c"), llvm_version="")
        orchestrator = Orchestrator(config, fake_registry(events))

        result = orchestrator.run()

        assert isinstance(result.error, ConfigurationError)
        assert all(state != RunState.FETCHING for _, state in orchestrator.transitions)
        assert events == []
        assert not config.build_dir.exists()

    def test_failure_skips_remaining_packages(self, make_config, events):
        config = make_config(("a", "b", "c"))
        orchestrator = Orchestrator(config, fake_registry(events, fail_build={"b"}))

        result = orchestrator.run()

        assert not result.ok
        assert result.failed_package == "b"
        assert isinstance(result.error, BuildError)
        assert result.completed == ["a"]
        assert ("stage", "c") not in events
        assert ("build", "c") not in events
        assert all(pkg != "c" for pkg, _ in orchestrator.transitions)
        assert orchestrator.transitions[-1] == ("b", RunState.FAILED)

    def test_stage_failure_skips_build(self, make_config, events):
        config = make_config(("a", "b"))
        orchestrator = Orchestrator(config, fake_registry(events, fail_stage={"a"}))

        result = orchestrator.run()

        assert result.failed_package == "a"
        assert isinstance(result.error, StageError)
        assert events == [("stage", "a")]
        assert orchestrator.transitions[-1] == ("a", RunState.FAILED)

    def test_build_dir_created_after_validation(self, make_config, events):
        config = make_config(("a",))
        assert not config.build_dir.exists()

        Orchestrator(config, fake_registry(events)).run()

        assert (config.build_dir / "a").is_dir()

    def test_rerun_after_failure(self, make_config, events):
        config = make_config(("a", "b"))
        first = Orchestrator(config, fake_registry(events, fail_build={"b"})).run()
        second = Orchestrator(config, fake_registry(events)).run()

        assert not first.ok
        assert second.ok
        assert second.completed == ["a", "b"]

    def test_unexpected_error_still_marks_failed(self, make_config, events):
        registry = fake_registry(events)

        class BrokenBuilder(registry["b"].builder):
            def stage(self):
                raise TypeError("extractall() got an unexpected keyword argument 'filter'")

        registry["b"] = PackageSpec(name="b", fetch=FetchStrategy.TARBALL,
                                    build=BuildStrategy.CMAKE, builder=BrokenBuilder)
        orchestrator = Orchestrator(make_config(("a", "b", "c")), registry)

        with pytest.raises(TypeError):
            orchestrator.run()

        assert orchestrator.state == RunState.FAILED
        assert orchestrator.transitions[-2:] == [("b", RunState.FETCHING), ("b", RunState.FAILED)]
        assert ("stage", "c") not in events

    def test_interrupt_marks_failed(self, make_config, events):
        registry = fake_registry(events)

        class InterruptedBuilder(registry["a"].builder):
            def build(self):
                raise KeyboardInterrupt

        registry["a"] = PackageSpec(name="a", fetch=FetchStrategy.TARBALL,
                                    build=BuildStrategy.CMAKE, builder=InterruptedBuilder)
        orchestrator = Orchestrator(make_config(("a",)), registry)

        with pytest.raises(KeyboardInterrupt):
            orchestrator.run()

        assert orchestrator.transitions[-1] == ("a", RunState.FAILED)
