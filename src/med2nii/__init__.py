"""Convert DICOM CT + RT structure datasets into per-subject NIfTI datasets."""

__version__ = "0.1.0"
