"""Tests for the command line entry point."""

import os
import pathlib

import pytest

from macruby_deploy import __version__
from macruby_deploy.cli import _resolve_bundle_path, main
from macruby_deploy.errors import ConfigurationError


@pytest.fixture
def fake_runner(monkeypatch, runner):
    monkeypatch.setattr("macruby_deploy.deploy.ToolRunner", lambda logger=None: runner)
    return runner


class TestResolveBundlePath:
    def test_explicit_argument_wins(self):
        env = {"TARGET_BUILD_DIR": "/build", "PROJECT_NAME": "Foo"}
        assert _resolve_bundle_path(pathlib.Path("/x/Bar.app"), env) == pathlib.Path("/x/Bar.app")

    def test_from_xcode_environment(self):
        env = {"TARGET_BUILD_DIR": "/build/Release", "PROJECT_NAME": "Foo"}
        assert _resolve_bundle_path(None, env) == pathlib.Path("/build/Release/Foo.app")

    def test_missing_environment(self):
        with pytest.raises(ConfigurationError):
            _resolve_bundle_path(None, {"TARGET_BUILD_DIR": "/build"})


def test_version(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--version"])
    assert excinfo.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_unknown_flag_is_usage_error():
    with pytest.raises(SystemExit) as excinfo:
        main(["--frobnicate"], environ={})
    assert excinfo.value.code == 2


def test_nothing_to_do(app, capsys):
    assert main([str(app.root)], environ={}) == 1
    assert "Nothing to do" in capsys.readouterr().err


def test_conflicting_stdlib_flags(app, capsys):
    assert main([str(app.root), "--embed", "--no-stdlib", "--stdlib", "json"], environ={}) == 1
    assert "cannot be used together" in capsys.readouterr().err


def test_missing_bundle(tmp_path, capsys):
    assert main([str(tmp_path / "Missing.app"), "--embed"], environ={}) == 1
    assert "macruby-deploy: error:" in capsys.readouterr().err


def test_no_bundle_and_no_environment(capsys):
    assert main(["--embed"], environ={}) == 1


def test_embed_from_xcode_environment(app, framework, fake_runner):
    env = {"TARGET_BUILD_DIR": str(app.root.parent), "PROJECT_NAME": "Foo"}
    code = main(["--embed", "--framework", str(framework), "-q"], environ=env)
    assert code == 0
    versions = app.frameworks_dir / "MacRuby.framework" / "Versions"
    assert os.readlink(versions / "Current") == "0.12"
    assert (versions / "0.12").is_dir()


def test_archs_from_environment(app, framework, fake_runner):
    env = {"ARCHS": "arm64 ppc"}
    code = main([str(app.root), "--compile", "--framework", str(framework), "-q"], environ=env)
    assert code == 0
    compile_calls = [argv for argv in fake_runner.calls if argv[0].endswith("macrubyc")]
    assert len(compile_calls) == 2
    assert all(argv[1:4] == ["-C", "--arch", "arm64"] for argv in compile_calls)


def test_arch_flag_overrides_environment(app, framework, fake_runner):
    env = {"ARCHS": "arm64"}
    code = main([str(app.root), "--compile", "--arch", "x86_64", "--framework", str(framework), "-q"], environ=env)
    assert code == 0
    assert all("arm64" not in argv for argv in fake_runner.calls)
