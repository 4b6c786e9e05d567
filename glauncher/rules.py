"""Platform facts and the rules evaluated against them, rules are used by version
metadata to conditionally include libraries and arguments.
"""

from functools import reduce
import platform as _platform
import re

from typing import Optional, Dict, Tuple, Iterable


# Name of the OS as used by version metadata.
_OS_NAMES = {
    "Linux": "linux",
    "Windows": "windows",
    "Darwin": "osx",
    "FreeBSD": "freebsd"
}

# Name of the processor's architecture, normalized.
_ARCH_NAMES = {
    "i386": "x86",
    "i686": "x86",
    "x86": "x86",
    "x86_64": "x64",
    "amd64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "armv7l": "arm32",
    "armv6l": "arm32",
}


class Platform:
    """Facts about the platform the game is launched on, the enabled features are also
    part of these facts because rules can depend on them.
    """

    __slots__ = "os", "arch", "os_version", "features"

    def __init__(self, os: str, arch: str, *,
        os_version: str = "",
        features: Optional[Dict[str, bool]] = None
    ) -> None:
        self.os = os
        self.arch = arch
        self.os_version = os_version
        self.features: Dict[str, bool] = {} if features is None else dict(features)

    @classmethod
    def current(cls, features: Optional[Dict[str, bool]] = None) -> "Platform":
        """Detect the platform of the running host.
        """
        system = _platform.system()
        return cls(
            _OS_NAMES.get(system, system.lower()),
            _ARCH_NAMES.get(_platform.machine().lower(), _platform.machine().lower()),
            os_version=_platform.version(),
            features=features)

    @property
    def arch_bits(self) -> int:
        """Pointer width, used to expand `${arch}` in native classifiers.
        """
        return 64 if self.arch in ("x64", "arm64") else 32

    def with_features(self, features: Dict[str, bool]) -> "Platform":
        """Return a copy of this platform with the given features added.
        """
        return Platform(self.os, self.arch, os_version=self.os_version, features={**self.features, **features})

    def __repr__(self) -> str:
        return f"<Platform {self.os}/{self.arch}>"


class Rule:
    """A single rule: an action applied when all of its predicates match. Predicate
    kinds that are not known are kept in `unknown` and make the evaluation fail.
    """

    ALLOW = "allow"
    DISALLOW = "disallow"

    __slots__ = "action", "os_name", "os_arch", "os_version", "features", "unknown"

    def __init__(self, action: str, *,
        os_name: Optional[str] = None,
        os_arch: Optional[str] = None,
        os_version: Optional[str] = None,
        features: Optional[Dict[str, bool]] = None,
        unknown: Tuple[str, ...] = ()
    ) -> None:
        self.action = action
        self.os_name = os_name
        self.os_arch = os_arch
        self.os_version = os_version
        self.features = features
        self.unknown = unknown

    @property
    def allow(self) -> bool:
        return self.action == self.ALLOW

    def matches(self, platform: Platform) -> bool:
        """Return true if every predicate of this rule matches the platform.

        :raises UnresolvedRule: If the rule has a predicate of unknown kind.
        """

        if len(self.unknown):
            raise UnresolvedRule(self, self.unknown[0])

        if self.os_name is not None and self.os_name != platform.os:
            return False
        if self.os_arch is not None and self.os_arch != platform.arch:
            return False
        if self.os_version is not None and re.search(self.os_version, platform.os_version) is None:
            return False

        if self.features is not None:
            for name, expected in self.features.items():
                if bool(platform.features.get(name, False)) != bool(expected):
                    return False

        return True

    def __repr__(self) -> str:
        return f"<Rule {self.action} os={self.os_name}/{self.os_arch} features={self.features}>"


def evaluate_rules(rules: Iterable[Rule], platform: Platform) -> bool:
    """Evaluate an ordered list of rules, the last matching rule wins. An empty list
    allows. If no rule matches, the result is to allow unless the list contains an
    allow rule, in which case it's an allow-list and what it doesn't match is excluded.
    """
    rules = tuple(rules)
    default = not any(rule.allow for rule in rules)
    return reduce(lambda allowed, rule: rule.allow if rule.matches(platform) else allowed, rules, default)


def collect_features(rules: Iterable[Rule]) -> Iterable[str]:
    """Yield the names of all features referenced by the given rules.
    """
    for rule in rules:
        if rule.features is not None:
            yield from rule.features.keys()


class UnresolvedRule(Exception):
    """Raised when a rule references a predicate kind that cannot be evaluated.
    """

    def __init__(self, rule: Rule, predicate: str) -> None:
        self.rule = rule
        self.predicate = predicate

    def __str__(self) -> str:
        return f"unknown rule predicate: {self.predicate!r}"
