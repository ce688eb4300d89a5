"""Read-only state -> division -> district -> block reference data.

The hierarchy is loaded once when the app starts and kept in memory. Deployments that correct the
JSON file call :meth:`LocationHierarchy.reload` (exposed as ``POST /admin/locations/reload``). When the
file cannot be read or parsed the repository stays in an unavailable state and every lookup raises
:class:`LocationLookupError`; authorization call sites treat that as "no access".
"""
import json
import logging
from typing import Dict, List, Optional

from flask import current_app

logger = logging.getLogger(__name__)

EXTENSION_KEY = "location_hierarchy"


class LocationLookupError(RuntimeError):
    """The hierarchy data is unavailable or malformed."""


def _key(name: str | None) -> str:
    return (name or "").strip().casefold()


class LocationHierarchy:
    def __init__(self, path: str | None = None, data: Dict | None = None) -> None:
        self.path = path
        self._error: Optional[str] = None
        self._tree: Dict[str, Dict[str, Dict[str, List[str]]]] = {}
        self._states: Dict[str, str] = {}
        self._divisions: Dict[str, tuple[str, str]] = {}
        self._districts: Dict[str, tuple[str, str, str]] = {}
        self._blocks: Dict[str, List[tuple[str, str]]] = {}
        if data is not None:
            self._build(data)
        else:
            self.reload()

    @classmethod
    def from_dict(cls, data: Dict) -> "LocationHierarchy":
        return cls(data=data)

    @property
    def available(self) -> bool:
        return self._error is None

    def reload(self) -> bool:
        """Re-read the JSON file. Returns False (and enters the unavailable state) on failure."""
        try:
            if not self.path:
                raise OSError("no location hierarchy path configured")
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
            self._build(data)
        except (OSError, ValueError) as exc:
            self._error = str(exc) or exc.__class__.__name__
            self._tree = {}
            logger.error("Location hierarchy unavailable", extra={"path": self.path, "error": self._error})
            return False
        logger.info("Location hierarchy loaded", extra={"path": self.path, "districts": len(self._districts)})
        return True

    def _build(self, data: Dict) -> None:
        if not isinstance(data, dict) or not data:
            raise ValueError("location hierarchy must be a non-empty object keyed by state")
        states: Dict[str, str] = {}
        divisions: Dict[str, tuple[str, str]] = {}
        districts: Dict[str, tuple[str, str, str]] = {}
        blocks: Dict[str, List[tuple[str, str]]] = {}
        for state, state_divisions in data.items():
            if not isinstance(state_divisions, dict):
                raise ValueError(f"state {state!r} must map divisions to districts")
            states[_key(state)] = state
            for division, division_districts in state_divisions.items():
                if not isinstance(division_districts, dict):
                    raise ValueError(f"division {division!r} must map districts to block lists")
                divisions[_key(division)] = (division, state)
                for district, district_blocks in division_districts.items():
                    if not isinstance(district_blocks, list):
                        raise ValueError(f"district {district!r} must list its blocks")
                    districts[_key(district)] = (district, division, state)
                    for block in district_blocks:
                        blocks.setdefault(_key(block), []).append((block, district))
        self._tree = data
        self._states = states
        self._divisions = divisions
        self._districts = districts
        self._blocks = blocks
        self._error = None

    def _require(self) -> None:
        if self._error is not None:
            raise LocationLookupError(self._error)

    def states(self) -> List[str]:
        self._require()
        return list(self._tree.keys())

    def divisions_for_state(self, state: str) -> List[str]:
        self._require()
        canonical = self._states.get(_key(state))
        if canonical is None:
            return []
        return list(self._tree[canonical].keys())

    def get_districts_for_division(self, division: str) -> List[str]:
        self._require()
        entry = self._divisions.get(_key(division))
        if entry is None:
            return []
        name, state = entry
        return list(self._tree[state][name].keys())

    def get_blocks_for_district(self, district: str) -> List[str]:
        self._require()
        entry = self._districts.get(_key(district))
        if entry is None:
            return []
        name, division, state = entry
        return list(self._tree[state][division][name])

    def division_for_district(self, district: str | None) -> Optional[str]:
        self._require()
        entry = self._districts.get(_key(district))
        return entry[1] if entry else None

    def block_in_district(self, block: str | None, district: str | None) -> bool:
        self._require()
        return any(_key(owner) == _key(district) for _, owner in self._blocks.get(_key(block), []))

    def canonical(self, level: str, name: str | None) -> Optional[str]:
        self._require()
        if level == "state":
            return self._states.get(_key(name))
        if level == "division":
            entry = self._divisions.get(_key(name))
        elif level == "district":
            entry = self._districts.get(_key(name))
        elif level == "block":
            owners = self._blocks.get(_key(name))
            entry = owners[0] if owners else None
        else:
            return None
        return entry[0] if entry else None

    def state_for(self, level: str, name: str | None) -> Optional[str]:
        """State owning the named entity, or None when the entity is unknown."""
        self._require()
        if level == "state":
            return self._states.get(_key(name))
        if level == "division":
            entry = self._divisions.get(_key(name))
            return entry[1] if entry else None
        if level == "district":
            entry = self._districts.get(_key(name))
            return entry[2] if entry else None
        if level == "block":
            for _, district in self._blocks.get(_key(name), []):
                return self._districts[_key(district)][2]
        return None


def get_hierarchy() -> LocationHierarchy:
    return current_app.extensions[EXTENSION_KEY]


def same_name(left: str | None, right: str | None) -> bool:
    return bool(left) and bool(right) and _key(left) == _key(right)
