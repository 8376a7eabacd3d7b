"""Stitch per-tile classification results into the global maps.

Overlap pixels get the mean of the stored and incoming confidence. The
category switches to the incoming tile's only when its confidence is
strictly higher; on an exact tie the tile with the lower index keeps the
pixel. The owner buffer records which tile set each pixel's category, so
the tie-break does not depend on the order tiles finish in.
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray

from planseg.engine.tiling import Tile
from planseg.errors import TileProcessingFailure

logger = logging.getLogger(__name__)

_UNWRITTEN = -1


class TileMerger:
    """Owns the SegmentationMap / ConfidenceMap while tiles are being merged."""

    def __init__(self, width: int, height: int, n_categories: int) -> None:
        self.width = width
        self.height = height
        self.n_categories = n_categories
        self.segmentation = np.zeros((height, width), dtype=np.uint16)
        self.confidence = np.zeros((height, width), dtype=np.float32)
        self._owner = np.full((height, width), _UNWRITTEN, dtype=np.int32)
        self.merged_tiles = 0

    def _check(self, tile: Tile, categories: NDArray, confidences: NDArray) -> tuple[NDArray, NDArray]:
        expected = tile.height * tile.width
        cats = np.asarray(categories)
        confs = np.asarray(confidences, dtype=np.float64)
        if cats.size != expected or confs.size != expected:
            raise TileProcessingFailure(
                f"tile {tile.index}: expected {expected} results, got "
                f"{cats.size} categories / {confs.size} confidences",
                tile_index=tile.index,
            )
        cats = cats.reshape(tile.height, tile.width)
        confs = confs.reshape(tile.height, tile.width)
        if cats.size and (cats.min() < 0 or cats.max() >= self.n_categories):
            raise TileProcessingFailure(
                f"tile {tile.index}: category code outside table", tile_index=tile.index
            )
        if not np.all(np.isfinite(confs)):
            raise TileProcessingFailure(f"tile {tile.index}: non-finite confidence", tile_index=tile.index)
        # Stored at float32, so compare at float32 precision too.
        return cats.astype(np.uint16), np.clip(confs, 0.0, 1.0).astype(np.float32)

    def merge(self, tile: Tile, categories: NDArray, confidences: NDArray) -> None:
        """Write one tile's results at its global offset."""
        cats, confs = self._check(tile, categories, confidences)
        rows, cols = tile.slices()
        seg = self.segmentation[rows, cols]
        conf = self.confidence[rows, cols]
        owner = self._owner[rows, cols]

        fresh = owner == _UNWRITTEN
        seen = ~fresh

        if seen.any():
            stored = conf[seen].astype(np.float64)
            incoming = confs[seen].astype(np.float64)
            prior_owner = owner[seen]
            takes_over = (incoming > stored) | ((incoming == stored) & (tile.index < prior_owner))

            conf[seen] = ((stored + incoming) / 2.0).astype(np.float32)
            seg_seen = seg[seen]
            owner_seen = prior_owner.copy()
            seg_seen[takes_over] = cats[seen][takes_over]
            owner_seen[takes_over] = tile.index
            seg[seen] = seg_seen
            owner[seen] = owner_seen

        seg[fresh] = cats[fresh]
        conf[fresh] = confs[fresh]
        owner[fresh] = tile.index
        self.merged_tiles += 1

    def write_failed(self, tile: Tile) -> None:
        """Record a failed tile as background at zero confidence."""
        self.merge(
            tile,
            np.zeros((tile.height, tile.width), dtype=np.uint16),
            np.zeros((tile.height, tile.width), dtype=np.float32),
        )

    @property
    def coverage_complete(self) -> bool:
        return bool(np.all(self._owner != _UNWRITTEN))

    def result(self) -> tuple[NDArray[np.uint16], NDArray[np.float32]]:
        if not self.coverage_complete:
            missing = int(np.count_nonzero(self._owner == _UNWRITTEN))
            logger.warning("%d pixels were not covered by any tile; left as background", missing)
        return self.segmentation, self.confidence
