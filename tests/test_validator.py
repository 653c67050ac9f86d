"""Tests for the link-policy check."""

import logging

from macruby_deploy.validator import LinkViolation, find_link_violations, is_disallowed, report_link_violations

from conftest import write


def test_disallowed_prefixes():
    assert is_disallowed("/Users/dev/libfoo.dylib")
    assert is_disallowed("/opt/local/lib/libyaml.dylib")
    assert not is_disallowed("/usr/lib/libSystem.B.dylib")
    assert not is_disallowed("@executable_path/../Frameworks/libfoo.dylib")


def test_one_violation_per_offending_reference(tmp_path, runner):
    ext = write(tmp_path / "lib" / "foo.bundle")
    clean = write(tmp_path / "lib" / "bar.bundle")
    runner.links[str(ext)] = ["/usr/lib/libSystem.B.dylib", "/Users/dev/libfoo.dylib"]
    runner.links[str(clean)] = ["/usr/lib/libSystem.B.dylib"]

    violations = find_link_violations(root=tmp_path, runner=runner)

    assert violations == [LinkViolation(bundle=ext, reference="/Users/dev/libfoo.dylib")]


def test_adding_a_reference_never_removes_findings(tmp_path, runner):
    ext = write(tmp_path / "foo.bundle")
    runner.links[str(ext)] = ["/Users/dev/libfoo.dylib"]
    before = find_link_violations(root=tmp_path, runner=runner)

    runner.links[str(ext)].append("/usr/local/lib/libbar.dylib")
    after = find_link_violations(root=tmp_path, runner=runner)

    assert set(before) <= set(after)
    assert len(after) == 2


def test_unreadable_bundle_is_skipped(tmp_path, runner, caplog):
    broken = write(tmp_path / "a.bundle")
    ext = write(tmp_path / "b.bundle")
    runner.fail_paths.add(str(broken))
    runner.links[str(ext)] = ["/sw/lib/libz.dylib"]

    with caplog.at_level(logging.WARNING, logger="macruby_deploy"):
        violations = find_link_violations(root=tmp_path, runner=runner)

    assert [v.bundle for v in violations] == [ext]
    assert "cannot inspect" in caplog.text


def test_report_groups_by_bundle(tmp_path, caplog):
    ext = tmp_path / "Contents" / "foo.bundle"
    violations = [
        LinkViolation(bundle=ext, reference="/Users/dev/libfoo.dylib"),
        LinkViolation(bundle=ext, reference="/opt/lib/libbar.dylib"),
    ]
    with caplog.at_level(logging.WARNING, logger="macruby_deploy"):
        report_link_violations(violations, root=tmp_path)

    assert len(caplog.records) == 1
    message = caplog.records[0].getMessage()
    assert "Contents/foo.bundle links against" in message
    assert "  - /Users/dev/libfoo.dylib" in message
    assert "  - /opt/lib/libbar.dylib" in message


def test_dropping_a_reference_drops_only_its_finding(tmp_path, runner):
    ext = write(tmp_path / "foo.bundle")
    runner.links[str(ext)] = ["/Users/dev/libfoo.dylib", "/usr/local/lib/libbar.dylib"]
    before = find_link_violations(root=tmp_path, runner=runner)

    runner.links[str(ext)].remove("/Users/dev/libfoo.dylib")
    after = find_link_violations(root=tmp_path, runner=runner)

    assert set(before) - set(after) == {LinkViolation(bundle=ext, reference="/Users/dev/libfoo.dylib")}
    assert after == [LinkViolation(bundle=ext, reference="/usr/local/lib/libbar.dylib")]
