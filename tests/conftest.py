"""Shared fixtures: a fake MacRuby install, a fake app bundle, and a fake tool runner."""

import logging
import os
import pathlib
import plistlib
import subprocess

import pytest

from macruby_deploy.errors import CommandError
from macruby_deploy.layout import AppBundle, RuntimeDistribution, load_distribution
from macruby_deploy.tools import ToolRunner


RBCONFIG = """\
module RbConfig
  CONFIG = {}
  CONFIG["MAJOR"] = "1"
  CONFIG["MINOR"] = "9"
  CONFIG["TEENY"] = "2"
  CONFIG["ruby_version"] = "1.9.2"
  CONFIG["ARCH_FLAG"] = "-arch x86_64 -arch arm64"
  CONFIG["LIBRUBY_SO"] = "libmacruby.$(MAJOR).$(MINOR).$(TEENY).dylib"
end
"""

OLD_STYLE_GEMSPEC = """\
# -*- encoding: utf-8 -*-

Gem::Specification.new do |s|
  s.name = %q{{{name}}}
  s.version = "{version}"
  s.require_paths = [{paths}]
  if s.respond_to? :specification_version then
    s.specification_version = 3
    if Gem::Version.new(Gem::VERSION) >= Gem::Version.new('1.2.0') then
{deps}
      s.add_development_dependency(%q<rspec>, [">= 0"])
    else
{plain_deps}
    end
  else
{plain_deps}
  end
end
"""


def write(path: pathlib.Path, text: str = "") -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def write_gem(
    repo: pathlib.Path,
    name: str,
    version: str,
    *,
    deps: tuple[str, ...] = (),
    require_paths: tuple[str, ...] = ("lib",),
) -> pathlib.Path:
    """Install a fake gem (spec + files) into a gem repository."""

    deps_lines = "\n".join(f"      s.add_runtime_dependency(%q<{d}>, [\">= 0\"])" for d in deps)
    plain_lines = "\n".join(f"      s.add_dependency(%q<{d}>, [\">= 0\"])" for d in deps)
    paths = ", ".join(f'"{p}"' for p in require_paths)
    write(
        repo / "specifications" / f"{name}-{version}.gemspec",
        OLD_STYLE_GEMSPEC.format(name=name, version=version, paths=paths, deps=deps_lines, plain_deps=plain_lines),
    )
    root = repo / "gems" / f"{name}-{version}"
    for p in require_paths:
        write(root / p / f"{name}.rb", f"# {name} {version}\n")
    return root


class FakeToolRunner(ToolRunner):
    """Stands in for lipo/otool/install_name_tool/macrubyc.

    Binaries are modelled in memory: ``links`` maps a path to the install
    names it references, ``ids`` maps a library to its own install name.
    """

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[list[str]] = []
        self.archs: dict[str, list[str]] = {}
        self.links: dict[str, list[str]] = {}
        self.ids: dict[str, str] = {}
        self.fail_paths: set[str] = set()

    def run(self, argv: list[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(argv))
        rc, stdout = self._simulate(argv)
        if check is True and rc != 0:
            raise CommandError(argv, rc, "simulated failure")
        return subprocess.CompletedProcess(argv, rc, stdout, "")

    def _simulate(self, argv: list[str]) -> tuple[int, str]:
        tool = argv[0]
        target = argv[-1]
        if target in self.fail_paths:
            return 1, ""
        if tool == "lipo":
            archs = self.archs.get(target)
            if archs is None:
                return 1, ""
            if len(archs) == 1:
                return 0, f"Non-fat file: {target} is architecture: {archs[0]}\n"
            return 0, f"Architectures in the fat file: {target} are: {' '.join(archs)}\n"
        if tool == "otool":
            lines = [f"{target}:"]
            for ref in self.links.get(target, []):
                lines.append(f"\t{ref} (compatibility version 1.0.0, current version 1.0.0)")
            return 0, "\n".join(lines) + "\n"
        if tool == "install_name_tool" and argv[1] == "-change":
            old, new = argv[2], argv[3]
            refs = self.links.get(target, [])
            self.links[target] = [new if r == old else r for r in refs]
            return 0, ""
        if tool == "install_name_tool" and argv[1] == "-id":
            self.ids[target] = argv[2]
            return 0, ""
        if tool.endswith("macrubyc"):
            out = pathlib.Path(argv[argv.index("-o") + 1])
            out.write_bytes(b"rbo")
            return 0, ""
        return 127, ""


@pytest.fixture(autouse=True)
def reset_logger():
    """Undo CLI logging setup so caplog sees records in every test."""

    yield
    logger = logging.getLogger("macruby_deploy")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def runner() -> FakeToolRunner:
    return FakeToolRunner()


@pytest.fixture
def framework(tmp_path: pathlib.Path) -> pathlib.Path:
    """A MacRuby.framework with two installed versions; 0.12 is current."""

    root = tmp_path / "Library" / "Frameworks" / "MacRuby.framework"
    v = root / "Versions" / "0.12"
    usr = v / "usr"
    write(v / "MacRuby", "framework binary")
    write(v / "Headers" / "ruby.h")
    write(v / "Resources" / "Info.plist")
    write(usr / "bin" / "macrubyc", "#!/bin/sh\n")
    write(usr / "include" / "ruby-1.9.2" / "ruby.h")
    write(usr / "share" / "man" / "macruby.1")
    write(usr / "lib" / "libmacruby.1.9.2.dylib", "dylib")
    write(usr / "lib" / "libmacruby-static.a", "archive")
    os.symlink("libmacruby.1.9.2.dylib", usr / "lib" / "libmacruby.dylib")

    stdlib = usr / "lib" / "ruby" / "1.9.2"
    write(stdlib / "json.rb")
    write(stdlib / "json.rbo")
    write(stdlib / "yaml.rb")
    write(stdlib / "net" / "http.rb")
    write(stdlib / "universal-darwin10.0" / "rbconfig.rb", RBCONFIG)
    write(stdlib / "universal-darwin10.0" / "json" / "ext" / "parser.bundle", "bundle")
    write(usr / "lib" / "ruby" / "site_ruby" / "1.9.2" / "site.rb")

    gems = usr / "lib" / "ruby" / "Gems" / "1.9.2"
    write_gem(gems, "hotcocoa", "0.6.3", deps=("rake",))
    write_gem(gems, "rake", "0.8.7")

    old = root / "Versions" / "0.11"
    write(old / "MacRuby", "old framework binary")
    write(old / "usr" / "lib" / "libmacruby.1.9.0.dylib")

    os.symlink("0.12", root / "Versions" / "Current")
    os.symlink("Versions/Current/MacRuby", root / "MacRuby")
    os.symlink("Versions/Current/Headers", root / "Headers")
    os.symlink("Versions/Current/Resources", root / "Resources")
    return root


@pytest.fixture
def distribution(framework: pathlib.Path) -> RuntimeDistribution:
    return load_distribution(framework)


@pytest.fixture
def app(tmp_path: pathlib.Path) -> AppBundle:
    """A minimal ``Foo.app`` with an executable and two Ruby sources."""

    root = tmp_path / "build" / "Foo.app"
    contents = root / "Contents"
    write(contents / "MacOS" / "Foo", "executable")
    contents.joinpath("Info.plist").write_bytes(
        plistlib.dumps({"CFBundleExecutable": "Foo", "CFBundleName": "Foo"})
    )
    write(contents / "Resources" / "rb_main.rb", "require 'helper'\n")
    write(contents / "Resources" / "lib" / "helper.rb", "def helper; end\n")
    write(contents / "Resources" / "MainMenu.nib", "nib")
    return AppBundle(root)
