"""Tier policy table — subscription tier to scanner set, limits and priority.

The table is built once when the daemon starts and never mutated afterwards.
Jobs copy their tier's scanner tuple at submission time, so swapping in a new
table (e.g. on restart with a different ``TIER_POLICY_FILE``) never changes
how an already queued job is scanned.

Priority numbers follow the queue convention: lower numbers are claimed
first.  Tiers and submissions may name a priority instead of giving a
number::

    urgent=1, high=2, normal=3, low=4

Usage::

    from scandaemon.core.tiers import TierPolicyTable

    table = TierPolicyTable.default()
    gold = table.get("gold")
    print(gold.allowed_scanners)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from scandaemon.core.errors import UnknownTierError
from scandaemon.core.models import ScannerID

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

PRIORITY_NAMES: Mapping[str, int] = MappingProxyType(
    {"urgent": 1, "high": 2, "normal": 3, "low": 4}
)

#: Priority used when a name is not recognised.
DEFAULT_PRIORITY = PRIORITY_NAMES["normal"]


def resolve_priority(value: int | str | None, default: int) -> int:
    """Return a numeric priority for *value*, falling back to *default*.

    Integers (or integer strings) are used as-is and must be >= 1.  Named
    priorities map through :data:`PRIORITY_NAMES`; unknown names resolve to
    ``normal``.
    """
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValueError("priority must be an integer or a priority name")
    if isinstance(value, int):
        if value < 1:
            raise ValueError(f"priority must be >= 1, got {value}")
        return value
    text = str(value).strip().lower()
    if text.isdigit():
        return resolve_priority(int(text), default)
    return PRIORITY_NAMES.get(text, DEFAULT_PRIORITY)


@dataclass(frozen=True)
class TierPolicy:
    """Limits and scanner set for one subscription tier."""

    name: str
    allowed_scanners: tuple[str, ...]
    max_file_size_bytes: int
    max_jobs_per_day: int
    base_priority: int

    def __post_init__(self) -> None:
        if not self.allowed_scanners:
            raise ValueError(f"tier {self.name!r} must allow at least one scanner")
        if len(set(self.allowed_scanners)) != len(self.allowed_scanners):
            raise ValueError(f"tier {self.name!r} lists a scanner more than once")
        if self.max_file_size_bytes <= 0:
            raise ValueError(f"tier {self.name!r} max_file_size_bytes must be positive")
        if self.max_jobs_per_day <= 0:
            raise ValueError(f"tier {self.name!r} max_jobs_per_day must be positive")
        if self.base_priority < 1:
            raise ValueError(f"tier {self.name!r} base_priority must be >= 1")

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> "TierPolicy":
        scanners = tuple(ScannerID(s).value for s in data["allowed_scanners"])
        return cls(
            name=name,
            allowed_scanners=scanners,
            max_file_size_bytes=int(data["max_file_size_bytes"]),
            max_jobs_per_day=int(data["max_jobs_per_day"]),
            base_priority=resolve_priority(data.get("base_priority"), DEFAULT_PRIORITY),
        )


_FULL_SCANNERS = (
    ScannerID.BASIC_VALIDATION.value,
    ScannerID.SIGNATURE.value,
    ScannerID.RULES_FULL.value,
    ScannerID.REPUTATION.value,
    ScannerID.HEURISTIC.value,
)

DEFAULT_TIERS: tuple[TierPolicy, ...] = (
    TierPolicy(
        name="free",
        allowed_scanners=(ScannerID.BASIC_VALIDATION.value, ScannerID.SIGNATURE.value),
        max_file_size_bytes=10 * MIB,
        max_jobs_per_day=50,
        base_priority=PRIORITY_NAMES["low"],
    ),
    TierPolicy(
        name="premium",
        allowed_scanners=(
            ScannerID.BASIC_VALIDATION.value,
            ScannerID.SIGNATURE.value,
            ScannerID.RULES_REDUCED.value,
        ),
        max_file_size_bytes=50 * MIB,
        max_jobs_per_day=200,
        base_priority=PRIORITY_NAMES["normal"],
    ),
    TierPolicy(
        name="gold",
        allowed_scanners=_FULL_SCANNERS,
        max_file_size_bytes=100 * MIB,
        max_jobs_per_day=1000,
        base_priority=PRIORITY_NAMES["high"],
    ),
    TierPolicy(
        name="enterprise",
        allowed_scanners=_FULL_SCANNERS,
        max_file_size_bytes=500 * MIB,
        max_jobs_per_day=10000,
        base_priority=PRIORITY_NAMES["urgent"],
    ),
)


class TierPolicyTable:
    """Read-only mapping of tier name to :class:`TierPolicy`."""

    def __init__(self, policies: Mapping[str, TierPolicy] | list[TierPolicy] | tuple[TierPolicy, ...]) -> None:
        if isinstance(policies, Mapping):
            items = dict(policies)
        else:
            items = {p.name: p for p in policies}
        if not items:
            raise ValueError("tier policy table must define at least one tier")
        self._policies: Mapping[str, TierPolicy] = MappingProxyType(items)

    @classmethod
    def default(cls) -> "TierPolicyTable":
        return cls(DEFAULT_TIERS)

    @classmethod
    def from_json(cls, path: str | Path) -> "TierPolicyTable":
        """Load a table from a JSON object of ``{tier_name: {...policy...}}``."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError("tier policy file must contain a JSON object")
        table = cls([TierPolicy.from_dict(name, body) for name, body in raw.items()])
        logger.info("Loaded tier policy table path=%s tiers=%s", path, list(table.names))
        return table

    def get(self, name: str) -> TierPolicy:
        try:
            return self._policies[name]
        except KeyError:
            raise UnknownTierError(name) from None

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._policies)

    def __contains__(self, name: object) -> bool:
        return name in self._policies

    def __iter__(self) -> Iterator[TierPolicy]:
        return iter(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)
