"""Obsolescence checks: is a change already part of an installed version?

Gerrit reports the release tags and branches that contain a change. An
installed package is considered to include the change when its resolved
version equals one of those tags, or when it is the development version of
one of those branches (``dev-<branch>``).
"""

from __future__ import annotations

import re

from packaging.version import InvalidVersion, Version

from corepatches.gerrit.client import IncludedIn

DEV_PREFIX = "dev-"
DEV_SUFFIX = "-dev"
# Composer pads branch aliases with this when normalizing "11.5.x-dev"
_BRANCH_PAD = "9999999"
_NUMERIC_BRANCH_RE = re.compile(r"^v?(\d+(?:\.\d+){0,3})(?:\.x)?$", re.IGNORECASE)


def satisfies_tag(version: str, tag: str) -> bool:
    """True when ``version`` is the release ``tag`` (``11.5.3.0`` vs ``v11.5.3``)."""
    installed = _parse(version)
    tagged = _parse(tag)
    if installed is None or tagged is None:
        return _strip_v(version) == _strip_v(tag)
    return installed == tagged


def satisfies_branch(version: str, branch: str) -> bool:
    """True when ``version`` is the development version of ``branch``."""
    normalized = version.strip().lower()
    branch = branch.strip()

    if normalized == f"{DEV_PREFIX}{branch}".lower():
        return True

    numeric = _NUMERIC_BRANCH_RE.match(branch)
    if not numeric:
        return False

    parts = numeric.group(1).split(".")
    aliases = {
        f"{'.'.join(parts)}.x{DEV_SUFFIX}",
        ".".join(parts + [_BRANCH_PAD] * (4 - len(parts))) + DEV_SUFFIX,
    }
    return _strip_v(normalized) in aliases


def find_inclusion(version: str, included_in: IncludedIn) -> str | None:
    """Return the first tag or branch that contains ``version``, if any.

    Tags are checked before branches; the first hit wins.
    """
    for tag in included_in.tags:
        if satisfies_tag(version, tag):
            return tag
    for branch in included_in.branches:
        if satisfies_branch(version, branch):
            return branch
    return None


def _strip_v(value: str) -> str:
    value = value.strip().lower()
    return value[1:] if value.startswith("v") and value[1:2].isdigit() else value


def _parse(value: str) -> Version | None:
    value = _strip_v(value)
    if value.startswith(DEV_PREFIX) or value.endswith(DEV_SUFFIX):
        return None
    try:
        return Version(value)
    except InvalidVersion:
        return None
