"""CSV datasets, deterministic splits and batch plans."""

from .csv_dataset import Dataset, DatasetSplits, DatasetView, load_csv, load_features
from .utils import BatchPlan, SplitIndices, deterministic_split

__all__ = [
    "BatchPlan",
    "Dataset",
    "DatasetSplits",
    "DatasetView",
    "SplitIndices",
    "deterministic_split",
    "load_csv",
    "load_features",
]
