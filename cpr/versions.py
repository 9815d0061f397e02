from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from .errors import IncompatibleVersion, InvalidVersion, VersionSkewError
from .settings import settings


VERSION_RE = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<pre>[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?$"
)

DISTRO_DECORATION_RE = re.compile(r"[-+]k0s\.\d+$")

# Releases that must not be used for a control plane, with the suggested replacement.
INCOMPATIBLE_VERSIONS = {
    "1.31.1": "v1.31.2+",
}


def _ident_key(ident: str) -> tuple[int, int | str]:
    # Numeric identifiers sort before alphanumeric ones and compare as numbers.
    if ident.isdigit():
        return (0, int(ident))
    return (1, ident)


@dataclass(frozen=True)
class Version:
    major: int
    minor: int
    patch: int
    pre: str | None = None
    build: str | None = None

    @property
    def core(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    def sort_key(self) -> tuple:
        pre_key: tuple = (1,) if self.pre is None else (0, tuple(_ident_key(p) for p in self.pre.split(".")))
        build_key = tuple(_ident_key(p) for p in (self.build or "").split(".") if p)
        return (self.major, self.minor, self.patch, pre_key, build_key)

    def __str__(self) -> str:
        out = f"v{self.core}"
        if self.pre:
            out += f"-{self.pre}"
        if self.build:
            out += f"+{self.build}"
        return out


def parse(version: str) -> Version:
    if not isinstance(version, str):
        raise InvalidVersion(f"version must be a string, got {type(version).__name__}")
    m = VERSION_RE.match(version.strip())
    if not m:
        raise InvalidVersion(f"invalid version {version!r}")
    return Version(
        major=int(m.group("major")),
        minor=int(m.group("minor")),
        patch=int(m.group("patch")),
        pre=m.group("pre"),
        build=m.group("build"),
    )


def normalize(version: str) -> tuple[str, str | None]:
    """Split a version into (core, build suffix or None).

    The core keeps everything before the '+' separator, including a leading
    'v' and any pre-release segment.
    """
    parse(version)
    core, sep, suffix = version.strip().partition("+")
    return core, (suffix if sep else None)


def _aligned(a: str, b: str) -> tuple[Version, Version]:
    """Parse both sides, giving a suffix-less side the other side's suffix.

    So "v1.31.0" equals both "v1.31.0+k0s.0" and "v1.31.0+k0s.1". When
    neither side has a suffix both get the baseline one.
    """
    va, vb = parse(a), parse(b)
    suffix = vb.build or va.build or settings.baseline_suffix
    if va.build is None:
        va = Version(va.major, va.minor, va.patch, va.pre, suffix)
    if vb.build is None:
        vb = Version(vb.major, vb.minor, vb.patch, vb.pre, suffix)
    return va, vb


def equal(a: str, b: str) -> bool:
    va, vb = _aligned(a, b)
    return va.sort_key() == vb.sort_key()


def less_than(a: str, b: str) -> bool:
    va, vb = _aligned(a, b)
    return va.sort_key() < vb.sort_key()


def min_version(versions: Iterable[str]) -> str:
    """Return the lowest of the given versions as written, or "" for none."""
    lowest: str | None = None
    lowest_key: tuple | None = None
    for v in versions:
        key = parse(v).sort_key()
        if lowest_key is None or key < lowest_key:
            lowest, lowest_key = v, key
    return lowest or ""


def suffix_of(version: str) -> str:
    _, suffix = normalize(version)
    return suffix or ""


def format_status_version(spec_version: str, status_version: str) -> str:
    """Keep the distribution decoration on the status version only if the desired version has one."""
    if DISTRO_DECORATION_RE.search(spec_version):
        return status_version
    return DISTRO_DECORATION_RE.sub("", status_version)


def check_upgrade_skew(old: str, new: str) -> None:
    """Reject upgrades that skip more than one minor version."""
    if old == new:
        return
    vo, vn = parse(old), parse(new)
    if vn.minor - vo.minor > 1:
        raise VersionSkewError(
            f"upgrading from {old} to {new} skips more than one minor version, which the skew policy does not allow"
        )


def deny_incompatible_version(version: str) -> None:
    v = parse(version)
    replacement = INCOMPATIBLE_VERSIONS.get(v.core)
    if replacement:
        raise IncompatibleVersion(f"version {version} is not compatible with the control plane, use {replacement}")
