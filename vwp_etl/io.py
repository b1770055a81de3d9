"""
Functions for loading and saving fixation report tables
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from multiprocessing import Pool

import pandas as pd

logger = logging.getLogger(__name__)

TAB_SUFFIXES = {'.tsv', '.txt', '.xls'}
# Data Viewer writes "." for missing cells
MISSING_VALUES = ['.']


def load_fixation_report(path: Path, sep: Optional[str] = None) -> pd.DataFrame:
    """
    Load a sample-level fixation report exported from the eye tracker.

    Parameters:
    -----------
    path : Path
        Path to the report (.csv, .tsv/.txt/.xls tab-delimited, or .parquet)
    sep : Optional[str], optional
        Column delimiter. If None it is chosen from the file suffix, and
        sniffed by pandas for unknown suffixes, by default None

    Returns:
    --------
    pd.DataFrame
        One row per gaze sample

    Notes:
    ------
    EyeLink Data Viewer "sample reports" are saved with an .xls suffix but
    are plain tab-delimited text, so they are read as such.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Fixation report not found: {path}")

    suffix = path.suffix.lower()
    if suffix == '.parquet':
        df = pd.read_parquet(path)
    else:
        if sep is None:
            if suffix == '.csv':
                sep = ','
            elif suffix in TAB_SUFFIXES:
                sep = '\t'
        if sep is None:
            # python engine is required for delimiter sniffing
            df = pd.read_csv(path, sep=None, engine='python', na_values=MISSING_VALUES)
        else:
            df = pd.read_csv(path, sep=sep, na_values=MISSING_VALUES)

    logger.info("Loaded %d samples from %s", len(df), path.name)
    return df


def load_all(folder: str = "data", pattern: str = "*.csv",
             parallel: bool = True) -> pd.DataFrame:
    """
    Load all fixation reports in a folder (typically one file per subject).

    Parameters:
    -----------
    folder : str, optional
        Path to the folder containing report files, by default "data"
    pattern : str, optional
        File pattern to match, by default "*.csv"
    parallel : bool, optional
        Whether to use parallel processing, by default True

    Returns:
    --------
    pd.DataFrame
        Combined DataFrame with all samples
    """
    folder_path = Path(folder)
    files = sorted(folder_path.glob(pattern))

    if not files:
        raise FileNotFoundError(f"No files matching '{pattern}' found in {folder}")

    if parallel and len(files) > 1:
        with Pool() as p:
            dfs = p.map(load_fixation_report, files)
    else:
        dfs = [load_fixation_report(f) for f in files]

    return pd.concat(dfs, ignore_index=True)


def load_config(path: str) -> Dict[str, Any]:
    """Read pipeline parameters (bin_width, window_ms, category_divisors, ...) from JSON."""
    with open(path, 'r') as f:
        config = json.load(f)
    if not isinstance(config, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return config


def save_processed(df: pd.DataFrame, output_path: str, format: str = "parquet") -> None:
    """
    Save a processed table.

    Parameters:
    -----------
    df : pd.DataFrame
        DataFrame to save
    output_path : str
        Path to save the DataFrame to
    format : str, optional
        File format ("csv", "parquet"), by default "parquet"
    """
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if format.lower() == "csv":
        df.to_csv(path, index=False)
    elif format.lower() == "parquet":
        df.to_parquet(path, index=False)
    else:
        raise ValueError(f"Unsupported format: {format}. Use 'csv' or 'parquet'.")
