"""Constraint evaluation for periodic work admission.

A ConstraintSet is a conjunction of independent predicates. Each predicate is
checked against the matching field of an EnvironmentSnapshot. A snapshot
field of None means the host cannot report that signal; the predicate is then
vacuously satisfied so partial-capability hosts never starve a schedule.

Everything here is pure: no I/O, no memory of prior calls.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from errors import InvalidDefinitionError


class NetworkRequirement(str, Enum):
    NOT_REQUIRED = "not_required"
    CONNECTED = "connected"
    UNMETERED = "unmetered"


class NetworkClass(str, Enum):
    NONE = "none"
    METERED = "metered"
    UNMETERED = "unmetered"


@dataclass(frozen=True)
class ConstraintSet:
    network: NetworkRequirement = NetworkRequirement.NOT_REQUIRED
    battery_not_low: bool = False
    requires_charging: bool = False
    requires_idle: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "network": self.network.value,
            "battery_not_low": self.battery_not_low,
            "requires_charging": self.requires_charging,
            "requires_idle": self.requires_idle,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "ConstraintSet":
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise InvalidDefinitionError("Constraint set must be an object")

        unknown = set(raw) - {"network", "battery_not_low", "requires_charging", "requires_idle"}
        if unknown:
            raise InvalidDefinitionError(f"Unknown constraint(s): {', '.join(sorted(unknown))}")

        try:
            network = NetworkRequirement(raw.get("network", NetworkRequirement.NOT_REQUIRED.value))
        except ValueError as e:
            raise InvalidDefinitionError(f"Invalid network requirement: {raw.get('network')!r}") from e

        flags: dict[str, bool] = {}
        for key in ("battery_not_low", "requires_charging", "requires_idle"):
            value = raw.get(key, False)
            if not isinstance(value, bool):
                raise InvalidDefinitionError(f"Constraint {key} must be a boolean")
            flags[key] = value

        return cls(network=network, **flags)


@dataclass(frozen=True)
class EnvironmentSnapshot:
    network: NetworkClass | None = None
    battery_low: bool | None = None
    charging: bool | None = None
    idle: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "network": self.network.value if self.network is not None else None,
            "battery_low": self.battery_low,
            "charging": self.charging,
            "idle": self.idle,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "EnvironmentSnapshot":
        network = raw.get("network")
        return cls(
            network=NetworkClass(network) if network is not None else None,
            battery_low=_optional_bool(raw.get("battery_low")),
            charging=_optional_bool(raw.get("charging")),
            idle=_optional_bool(raw.get("idle")),
        )


def _optional_bool(v: Any) -> bool | None:
    if v is None:
        return None
    if not isinstance(v, bool):
        raise ValueError(f"Expected boolean or null, got {v!r}")
    return v


def _network_satisfied(requirement: NetworkRequirement, network: NetworkClass | None) -> bool:
    if requirement is NetworkRequirement.NOT_REQUIRED or network is None:
        return True
    if requirement is NetworkRequirement.CONNECTED:
        return network in (NetworkClass.METERED, NetworkClass.UNMETERED)
    return network is NetworkClass.UNMETERED


def blocking_constraints(constraints: ConstraintSet, snapshot: EnvironmentSnapshot) -> list[str]:
    """Names of the enforced predicates the snapshot does not satisfy."""
    blocked: list[str] = []
    if not _network_satisfied(constraints.network, snapshot.network):
        blocked.append("network")
    if constraints.battery_not_low and snapshot.battery_low is True:
        blocked.append("battery_not_low")
    if constraints.requires_charging and snapshot.charging is False:
        blocked.append("requires_charging")
    if constraints.requires_idle and snapshot.idle is False:
        blocked.append("requires_idle")
    return blocked


def is_admissible(constraints: ConstraintSet, snapshot: EnvironmentSnapshot) -> bool:
    return not blocking_constraints(constraints, snapshot)
