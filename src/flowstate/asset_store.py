"""
asset_store.py - Session asset collection and selection
=======================================================

Holds the generated assets of the current round in arrival order plus the
user's selection. The selection is always a subset of the stored assets.
All mutation happens on the event loop thread, so no locking is needed.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .models import GeneratedAsset

logger = logging.getLogger("flowstate.asset_store")


class SelectionMode(str, Enum):
    MULTI = "multi"    # select/deselect toggle membership
    SINGLE = "single"  # selecting replaces the current selection


class DuplicateAssetError(ValueError):
    """An asset id or source task id is already present in the store."""


class AssetStore:
    """Append-only asset collection with a selection set."""

    def __init__(self, selection_mode: SelectionMode = SelectionMode.MULTI):
        self.selection_mode = SelectionMode(selection_mode)
        self._assets: Dict[str, GeneratedAsset] = {}
        self._by_task: Dict[str, str] = {}
        self._selected: List[str] = []

    def __len__(self) -> int:
        return len(self._assets)

    def __contains__(self, asset_id: object) -> bool:
        return asset_id in self._assets

    # -- assets -------------------------------------------------------------

    def append(self, asset: GeneratedAsset) -> None:
        if asset.id in self._assets:
            raise DuplicateAssetError(f"Asset {asset.id} already stored")
        if asset.source_task_id in self._by_task:
            raise DuplicateAssetError(f"Task {asset.source_task_id} already produced an asset")
        self._assets[asset.id] = asset
        self._by_task[asset.source_task_id] = asset.id
        logger.debug(f"Stored {asset.kind.value} asset '{asset.label}' ({asset.id})")

    def extend(self, assets: Iterable[GeneratedAsset]) -> None:
        for asset in assets:
            self.append(asset)

    def all(self) -> List[GeneratedAsset]:
        return list(self._assets.values())

    def get(self, asset_id: str) -> GeneratedAsset:
        try:
            return self._assets[asset_id]
        except KeyError:
            raise KeyError(f"Unknown asset id '{asset_id}'") from None

    def by_task(self, task_id: str) -> Optional[GeneratedAsset]:
        asset_id = self._by_task.get(task_id)
        return self._assets[asset_id] if asset_id else None

    # -- selection ----------------------------------------------------------

    def select(self, asset_id: str) -> None:
        self.get(asset_id)
        if self.selection_mode is SelectionMode.SINGLE:
            self._selected = [asset_id]
        elif asset_id not in self._selected:
            self._selected.append(asset_id)

    def deselect(self, asset_id: str) -> None:
        self.get(asset_id)
        if asset_id in self._selected:
            self._selected.remove(asset_id)

    def toggle(self, asset_id: str) -> bool:
        """Flip membership; returns True when the asset ends up selected."""
        if asset_id in self._selected:
            self.deselect(asset_id)
            return False
        self.select(asset_id)
        return True

    def is_selected(self, asset_id: str) -> bool:
        return asset_id in self._selected

    def selected(self) -> List[GeneratedAsset]:
        return [self._assets[a] for a in self._selected]

    def clear_selection(self) -> None:
        self._selected = []

    # -- lifecycle ----------------------------------------------------------

    def begin_round(self) -> None:
        """Drop the previous round so a new batch replaces rather than accumulates."""
        if self._assets:
            logger.info(f"Replacing {len(self._assets)} assets from previous round")
        self.clear()

    def clear(self) -> None:
        self._assets.clear()
        self._by_task.clear()
        self._selected = []
