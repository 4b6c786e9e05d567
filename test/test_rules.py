import pytest

from glauncher.rules import Platform, Rule, UnresolvedRule, evaluate_rules, collect_features
from glauncher.manifest import parse_rules


LINUX = Platform("linux", "x64", os_version="6.1.0")
WINDOWS = Platform("windows", "x64", os_version="10.0.19045")
OSX = Platform("osx", "arm64", os_version="22.5.0")


def test_no_rules():
    assert evaluate_rules((), LINUX)
    assert evaluate_rules((), WINDOWS)


def test_disallow_os():

    rules = parse_rules("test", "/rules", [{"action": "disallow", "os": {"name": "windows"}}])
    assert not evaluate_rules(rules, WINDOWS)
    assert evaluate_rules(rules, LINUX)
    assert evaluate_rules(rules, OSX)

    # Shorthand form of the OS predicate.
    rules = parse_rules("test", "/rules", [{"action": "disallow", "os": "windows"}])
    assert not evaluate_rules(rules, WINDOWS)
    assert evaluate_rules(rules, LINUX)


def test_allow_list():

    rules = parse_rules("test", "/rules", [{"action": "allow", "os": {"name": "osx"}}])
    assert evaluate_rules(rules, OSX)
    assert not evaluate_rules(rules, LINUX)


def test_last_match_wins():

    rules = parse_rules("test", "/rules", [
        {"action": "allow"},
        {"action": "disallow", "os": {"name": "osx"}},
    ])
    assert evaluate_rules(rules, LINUX)
    assert not evaluate_rules(rules, OSX)

    rules = parse_rules("test", "/rules", [
        {"action": "disallow", "os": {"name": "osx"}},
        {"action": "allow"},
    ])
    assert evaluate_rules(rules, OSX)


def test_arch_and_version():

    rules = parse_rules("test", "/rules", [{"action": "allow", "os": {"name": "windows", "version": "^10\\."}}])
    assert evaluate_rules(rules, WINDOWS)
    assert not evaluate_rules(rules, Platform("windows", "x64", os_version="6.1.7601"))

    rules = parse_rules("test", "/rules", [{"action": "allow", "os": {"arch": "x86"}}])
    assert not evaluate_rules(rules, LINUX)
    assert evaluate_rules(rules, Platform("linux", "x86"))


def test_features():

    rules = parse_rules("test", "/rules", [{"action": "allow", "features": {"has_custom_resolution": True}}])
    assert not evaluate_rules(rules, LINUX)
    assert evaluate_rules(rules, LINUX.with_features({"has_custom_resolution": True}))
    assert list(collect_features(rules)) == ["has_custom_resolution"]

    rules = parse_rules("test", "/rules", [{"action": "allow", "features": {"is_demo_user": False}}])
    assert evaluate_rules(rules, LINUX)


def test_unknown_predicate():

    rules = parse_rules("test", "/rules", [{"action": "allow", "moon_phase": "full"}])
    assert rules[0].unknown == ("moon_phase",)

    with pytest.raises(UnresolvedRule) as error:
        evaluate_rules(rules, LINUX)
    assert error.value.predicate == "moon_phase"

    # Unknown OS sub-predicates are also reported.
    rules = parse_rules("test", "/rules", [{"action": "allow", "os": {"name": "linux", "kernel": "6"}}])
    with pytest.raises(UnresolvedRule):
        evaluate_rules(rules, LINUX)


def test_invalid_rules():

    from glauncher.manifest import ManifestInvalid

    with pytest.raises(ManifestInvalid) as error:
        parse_rules("test", "/libraries/0/rules", [{"action": "maybe"}])
    assert str(error.value) == "test: metadata: /libraries/0/rules/0/action must be 'allow' or 'disallow'"

    with pytest.raises(ManifestInvalid):
        parse_rules("test", "/rules", {"action": "allow"})


def test_platform():

    assert Platform("linux", "x64").arch_bits == 64
    assert Platform("linux", "arm64").arch_bits == 64
    assert Platform("windows", "x86").arch_bits == 32

    current = Platform.current({"foo": True})
    assert current.features == {"foo": True}
    assert len(current.os) and len(current.arch)
    assert Rule(Rule.ALLOW, os_name=current.os).matches(current)
