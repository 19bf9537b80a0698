"""CX trait configuration loader."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple


class TraitConfigError(ValueError):
    """Raised when ``traits.json`` contains invalid data."""


@dataclass(frozen=True)
class CxTrait:
    """Immutable representation of a CX trait definition."""

    id: str
    label: str
    description: str
    aliases: Tuple[str, ...] = ()


class TraitRegistry:
    """Load the tracked CX traits from ``traits.json``."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        self.path = Path(path) if path is not None else base_path / "traits.json"
        self._traits: List[CxTrait] = []
        self._lookup: Dict[str, str] = {}
        self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Reload trait definitions from disk and validate the structure."""

        if not self.path.exists():
            raise FileNotFoundError(f"Traits file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, list):
            raise TraitConfigError("Traits file must contain a JSON list")

        traits: List[CxTrait] = []
        lookup: Dict[str, str] = {}
        for idx, entry in enumerate(raw, start=1):
            if not isinstance(entry, dict):
                raise TraitConfigError(f"Entry #{idx} must be a JSON object")
            trait_id = str(entry.get("id", "")).strip()
            if not trait_id:
                raise TraitConfigError(f"Entry #{idx} is missing a non-empty 'id'")
            label = str(entry.get("label", "")).strip()
            if not label:
                raise TraitConfigError(f"Entry {trait_id} is missing a non-empty 'label'")

            aliases_raw = entry.get("aliases") or []
            if not isinstance(aliases_raw, list):
                raise TraitConfigError(f"Entry {trait_id} aliases must be a list")
            aliases = tuple(str(alias).strip() for alias in aliases_raw if str(alias).strip())

            for key in (trait_id, *aliases):
                if key in lookup:
                    raise TraitConfigError(f"Duplicate trait key detected: {key}")
                lookup[key] = trait_id

            traits.append(
                CxTrait(
                    id=trait_id,
                    label=label,
                    description=str(entry.get("description", "")).strip(),
                    aliases=aliases,
                )
            )

        if not traits:
            raise TraitConfigError("Traits file may not be empty")

        self._traits = traits
        self._lookup = lookup

    # ------------------------------------------------------------------
    @property
    def traits(self) -> List[CxTrait]:
        return list(self._traits)

    def ids(self) -> Sequence[str]:
        """Return trait identifiers in display order."""

        return tuple(trait.id for trait in self._traits)

    def resolve(self, key: str) -> Optional[str]:
        """Map a trait id or one of its aliases to the canonical id."""

        return self._lookup.get(key)

    def get(self, trait_id: str) -> Optional[CxTrait]:
        for trait in self._traits:
            if trait.id == trait_id:
                return trait
        return None

    def label_map(self) -> dict[str, str]:
        return {trait.id: trait.label for trait in self._traits}

    def __iter__(self) -> Iterable[CxTrait]:
        return iter(self._traits)

    def __len__(self) -> int:
        return len(self._traits)


TRAITS = TraitRegistry()
"""Singleton registry used throughout the application."""

TRAIT_IDS: Sequence[str] = TRAITS.ids()
