"""Administrator role codes, their structured form, and the organisational posts catalogue."""
import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

SUPERADMIN = "superadmin"
PRESIDENT = "president"
SECRETARY = "secretary"
MEDIA_INCHARGE = "media_incharge"

LEVELS: tuple[str, ...] = (
    "state",
    "division",
    "district",
    "block",
)

ROLE_FUNCTIONS: tuple[str, ...] = (
    PRESIDENT,
    SECRETARY,
    MEDIA_INCHARGE,
)

ROLE_CODES: tuple[str, ...] = (SUPERADMIN,) + tuple(
    f"{level}_{function}" for level in LEVELS for function in ROLE_FUNCTIONS
)

# Provisioning order: an administrator may only create users strictly below their own rank.
LEVEL_RANK: Dict[str, int] = {
    SUPERADMIN: -1,
    "state": 0,
    "division": 1,
    "district": 2,
    "block": 3,
}

TEAM_TYPES: tuple[str, ...] = (
    "core",
    "mahila",
    "yuva",
    "alpsankhyak",
    "scst",
)


@dataclass(frozen=True)
class AdminRole:
    function: str
    level: Optional[str] = None

    @property
    def code(self) -> str:
        if self.function == SUPERADMIN:
            return SUPERADMIN
        return f"{self.level}_{self.function}"

    @property
    def is_superadmin(self) -> bool:
        return self.function == SUPERADMIN

    @property
    def is_media_incharge(self) -> bool:
        return self.function == MEDIA_INCHARGE

    @property
    def rank(self) -> int:
        return LEVEL_RANK[SUPERADMIN if self.is_superadmin else self.level]

    @property
    def can_provision(self) -> bool:
        """Block-level and media-incharge administrators create no one."""
        if self.is_superadmin:
            return True
        return not self.is_media_incharge and self.level != "block"


def parse_role(code: str | None) -> AdminRole:
    """Turn a stored role code such as ``district_secretary`` into an :class:`AdminRole`."""
    value = (code or "").strip().lower()
    if value == SUPERADMIN:
        return AdminRole(function=SUPERADMIN)
    level, _, function = value.partition("_")
    if level not in LEVELS or function not in ROLE_FUNCTIONS:
        raise ValueError(f"Unknown role: {code!r}")
    return AdminRole(function=function, level=level)


def roles_for_level(level: str) -> List[str]:
    return [code for code in ROLE_CODES if code != SUPERADMIN and parse_role(code).level == level]


class PostsCatalogue:
    """Read-only catalogue of the posts that can be granted to accepted members."""

    def __init__(self, path: str | None = None, data: Dict | None = None) -> None:
        self.path = path
        self._categories: Dict[str, Dict] = {}
        if data is not None:
            self._load_data(data)
        elif path:
            self.reload()

    def _load_data(self, data: Dict) -> None:
        categories = data.get("categories") or {}
        if not isinstance(categories, dict):
            raise ValueError("roles hierarchy must map category codes to objects")
        self._categories = categories

    def reload(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                self._load_data(json.load(handle))
        except (OSError, ValueError) as exc:
            logger.error("Posts catalogue could not be loaded", extra={"path": self.path, "error": str(exc)})
            self._categories = {}

    def categories(self) -> List[str]:
        return list(self._categories.keys())

    def posts(self, category: str) -> List[Dict]:
        entry = self._categories.get(category or "")
        return list(entry.get("roles") or []) if entry else []

    def summary(self) -> List[Dict]:
        return [
            {"code": code, "name": entry.get("name", code), "roles": list(entry.get("roles") or [])}
            for code, entry in self._categories.items()
        ]

    def find_post(self, category: str, role_code: str) -> Optional[Dict]:
        entry = self._categories.get(category or "")
        if not entry:
            return None
        for post in entry.get("roles") or []:
            if post.get("code") == role_code:
                return post
        return None


CATALOGUE_KEY = "posts_catalogue"


def get_catalogue() -> PostsCatalogue:
    from flask import current_app

    return current_app.extensions[CATALOGUE_KEY]
