"""Tests for architecture resolution."""

import logging

import pytest

from macruby_deploy.architectures import intersect_architectures, parse_arch_list, resolve_architectures
from macruby_deploy.errors import ConfigurationError


class TestIntersect:
    @pytest.mark.parametrize(
        "candidates, supported, usable",
        [
            (("x86_64", "i386"), ("x86_64", "arm64"), ("x86_64",)),
            (("arm64", "x86_64"), ("x86_64", "arm64"), ("arm64", "x86_64")),
            (("ppc",), ("x86_64", "arm64"), ()),
            (("x86_64", "x86_64"), ("x86_64",), ("x86_64",)),
        ],
    )
    def test_result_is_candidates_and_supported(self, candidates, supported, usable):
        got, dropped = intersect_architectures(candidates=candidates, supported=supported)
        assert got == usable
        assert set(got) | set(dropped) == set(candidates)
        assert set(dropped).isdisjoint(supported)


class TestParseArchList:
    def test_space_separated(self):
        assert parse_arch_list("x86_64  arm64") == ("x86_64", "arm64")

    def test_unset_or_blank(self):
        assert parse_arch_list(None) is None
        assert parse_arch_list("   ") is None


class TestResolveArchitectures:
    def test_unsupported_dropped_with_warning(self, app, distribution, runner, caplog):
        with caplog.at_level(logging.WARNING, logger="macruby_deploy"):
            archs = resolve_architectures(
                bundle=app,
                distribution=distribution,
                override=("x86_64", "i386"),
                runner=runner,
            )
        assert archs == ("x86_64",)
        assert "i386" in caplog.text
        assert runner.calls == []

    def test_detected_from_executable(self, app, distribution, runner):
        runner.archs[str(app.macos_dir / "Foo")] = ["arm64", "x86_64"]
        archs = resolve_architectures(bundle=app, distribution=distribution, override=None, runner=runner)
        assert archs == ("arm64", "x86_64")
        assert runner.calls == [["lipo", "-info", str(app.macos_dir / "Foo")]]

    def test_empty_intersection_is_fatal(self, app, distribution, runner):
        with pytest.raises(ConfigurationError):
            resolve_architectures(bundle=app, distribution=distribution, override=("i386", "ppc"), runner=runner)

    def test_unreadable_executable_is_fatal(self, app, distribution, runner):
        with pytest.raises(ConfigurationError):
            resolve_architectures(bundle=app, distribution=distribution, override=None, runner=runner)
