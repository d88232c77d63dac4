"""Worker/task version compatibility checks."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from crawler_fleet.coordinator.models import VersionAction, VersionConstraints

_LEADING_DIGITS = re.compile(r"^(\d+)")


@dataclass(slots=True)
class VersionCheckResult:
    """Outcome of a worker version check against task requirements."""

    compatible: bool
    current_version: str | None
    reason: str
    required_version: str | None = None
    action: VersionAction | None = None
    details: dict[str, object] = field(default_factory=dict)


def compare_versions(left: str, right: str) -> int:
    """Compare dotted versions numerically, ignoring a leading ``v``.

    Missing parts count as zero, so ``v1.2`` equals ``1.2.0``.
    """

    left_parts = _version_parts(left)
    right_parts = _version_parts(right)
    width = max(len(left_parts), len(right_parts))
    for index in range(width):
        left_value = left_parts[index] if index < len(left_parts) else 0
        right_value = right_parts[index] if index < len(right_parts) else 0
        if left_value != right_value:
            return -1 if left_value < right_value else 1
    return 0


def check_version(  # noqa: PLR0911
    worker_version: str | None,
    required_version: str | None = None,
    constraints: VersionConstraints | None = None,
) -> VersionCheckResult:
    """Decide whether a worker at ``worker_version`` may run a task."""

    has_constraints = constraints is not None and not constraints.is_empty()
    if not required_version and not has_constraints:
        return VersionCheckResult(
            compatible=True,
            current_version=worker_version,
            reason="No version requirements",
        )

    if not worker_version:
        return VersionCheckResult(
            compatible=False,
            current_version=None,
            required_version=required_version,
            action=VersionAction.UPGRADE,
            reason="Worker did not report a version but the task has version requirements",
        )

    if constraints is not None and has_constraints:
        blacklisted = [
            version
            for version in constraints.blacklist_versions
            if compare_versions(worker_version, version) == 0
        ]
        if blacklisted:
            return VersionCheckResult(
                compatible=False,
                current_version=worker_version,
                required_version=required_version,
                action=VersionAction.UPGRADE,
                reason=f"Current version {worker_version} is blacklisted",
                details={"blacklist_versions": list(constraints.blacklist_versions)},
            )

        if (
            constraints.min_version
            and compare_versions(worker_version, constraints.min_version) < 0
        ):
            return VersionCheckResult(
                compatible=False,
                current_version=worker_version,
                required_version=constraints.min_version,
                action=VersionAction.UPGRADE,
                reason=(
                    f"Current version {worker_version} is below minimum requirement "
                    f"{constraints.min_version}"
                ),
                details={"min_version": constraints.min_version},
            )

        if (
            constraints.max_version
            and compare_versions(worker_version, constraints.max_version) > 0
        ):
            return VersionCheckResult(
                compatible=False,
                current_version=worker_version,
                required_version=constraints.max_version,
                action=VersionAction.DOWNGRADE,
                reason=(
                    f"Current version {worker_version} exceeds maximum allowed "
                    f"{constraints.max_version}"
                ),
                details={"max_version": constraints.max_version},
            )

    if required_version:
        comparison = compare_versions(worker_version, required_version)
        if comparison == 0:
            return VersionCheckResult(
                compatible=True,
                current_version=worker_version,
                required_version=required_version,
                reason="Exact version match",
            )
        return VersionCheckResult(
            compatible=False,
            current_version=worker_version,
            required_version=required_version,
            action=VersionAction.UPGRADE if comparison < 0 else VersionAction.DOWNGRADE,
            reason=f"Version mismatch: current {worker_version}, required {required_version}",
        )

    if constraints is not None and constraints.preferred_versions:
        preferred = constraints.preferred_versions
        if not any(compare_versions(worker_version, version) == 0 for version in preferred):
            latest = newest_version(preferred)
            details: dict[str, object] = {"preferred_versions": list(preferred)}
            if not constraints.preferred_mandatory:
                return VersionCheckResult(
                    compatible=True,
                    current_version=worker_version,
                    required_version=latest,
                    action=VersionAction.SWITCH,
                    reason=f"Current version not in preferred list, suggest switching to {latest}",
                    details=details,
                )
            return VersionCheckResult(
                compatible=False,
                current_version=worker_version,
                required_version=latest,
                action=(
                    VersionAction.UPGRADE
                    if compare_versions(worker_version, latest) < 0
                    else VersionAction.DOWNGRADE
                ),
                reason=f"Current version not in mandatory preferred list, requires {latest}",
                details=details,
            )

    return VersionCheckResult(
        compatible=True,
        current_version=worker_version,
        required_version=required_version,
        reason="Version constraints satisfied",
    )


def newest_version(versions: tuple[str, ...] | list[str]) -> str:
    """Return the highest version from a non-empty collection."""

    if not versions:
        raise ValueError("At least one version is required.")
    best = versions[0]
    for version in versions[1:]:
        if compare_versions(version, best) > 0:
            best = version
    return best


def _version_parts(value: str) -> list[int]:
    cleaned = value.strip()
    if cleaned[:1] in {"v", "V"}:
        cleaned = cleaned[1:]
    cleaned = cleaned.split("-", 1)[0].split("+", 1)[0]
    parts: list[int] = []
    for token in cleaned.split("."):
        match = _LEADING_DIGITS.match(token)
        parts.append(int(match.group(1)) if match else 0)
    return parts
