"""PlanSeg: tiled pixel segmentation and annotation of construction plans."""

__version__ = "0.1.0"
