"""
ETL Pipeline runner for visual world fixation reports.

This module provides a command-line interface to run the ETL pipeline.
"""
import argparse
import logging
from pathlib import Path
from typing import Optional, Dict, Any, Sequence

import pandas as pd

from vwp_etl.io import load_all, load_config, load_fixation_report, save_processed
from vwp_etl.preprocess import preprocess_pipeline

# Config file keys used by this stage; the rest belong to the analysis stage
ETL_PARAMS = {
    'bin_width', 'keep', 'label', 'subject_col', 'trial_col', 'time_col',
    'aoi_col', 'target_loc_col', 'comp_loc_col',
}


def setup_logging(verbosity: int = 0) -> None:
    """
    Set up logging with appropriate verbosity.

    Parameters:
    -----------
    verbosity : int, optional
        0 = WARNING, 1 = INFO, 2 = DEBUG, by default 0
    """
    log_levels = {
        0: logging.WARNING,
        1: logging.INFO,
        2: logging.DEBUG
    }
    level = log_levels.get(verbosity, logging.DEBUG)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def run_pipeline(
    data_path: str = "data",
    pattern: str = "*.csv",
    output_dir: Optional[str] = None,
    output_format: str = "parquet",
    keep: Sequence[str] = ('Condition', 'ACC', 'RT'),
    bin_width: float = 20,
    **kwargs: Dict[str, Any]
) -> tuple:
    """
    Run the ETL pipeline.

    Parameters:
    -----------
    data_path : str, optional
        A single fixation report, or a folder of reports, by default "data"
    pattern : str, optional
        File pattern to match when data_path is a folder, by default "*.csv"
    output_dir : Optional[str], optional
        Directory to save the binned and long tables, by default None
    output_format : str, optional
        "parquet" or "csv", by default "parquet"
    keep : Sequence[str], optional
        Trial metadata columns to carry through binning
    bin_width : float, optional
        Bin width in ms, by default 20
    **kwargs : Dict[str, Any]
        Column names and flags forwarded to preprocess_pipeline

    Returns:
    --------
    tuple
        (binned_data, long_data)
    """
    path = Path(data_path)
    logging.info(f"Loading data from {data_path}")
    if path.is_dir():
        raw_data = load_all(str(path), pattern)
    else:
        raw_data = load_fixation_report(path)

    logging.info(f"Binning samples into {bin_width} ms bins")
    binned, long_data = preprocess_pipeline(raw_data, keep=keep, bin_width=bin_width, **kwargs)

    if output_dir:
        ext = 'csv' if output_format.lower() == 'csv' else 'parquet'
        out = Path(output_dir)
        logging.info(f"Saving processed data to {output_dir}")
        save_processed(binned, str(out / f"binned.{ext}"), output_format)
        save_processed(long_data, str(out / f"long.{ext}"), output_format)

    return binned, long_data


def main(argv: Optional[Sequence[str]] = None):
    """
    Main entry point for the ETL pipeline.
    """
    parser = argparse.ArgumentParser(description="Visual world ETL pipeline")
    parser.add_argument("--data", type=str, default="data",
                        help="Fixation report file, or folder of report files")
    parser.add_argument("--pattern", type=str, default="*.csv",
                        help="File pattern to match inside a folder")
    parser.add_argument("--output-dir", type=str, default="processed",
                        help="Directory to save binned and long tables")
    parser.add_argument("--format", type=str, default="parquet", choices=["parquet", "csv"],
                        help="Output file format")
    parser.add_argument("--config", type=str,
                        help="JSON file with pipeline parameters; flags override it")
    parser.add_argument("--bin-width", type=float,
                        help="Bin width in ms (default 20)")
    parser.add_argument("--keep", type=str, nargs="+",
                        help="Trial metadata columns to keep (default Condition ACC RT)")
    parser.add_argument("--trial-col", type=str,
                        help="Column identifying the trial (default Target, or Trial with --no-label)")
    parser.add_argument("--no-label", action="store_true",
                        help="Input already has Target/Competitor/Unrelated columns")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase verbosity (can be used multiple times)")

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    try:
        config = load_config(args.config) if args.config else {}
        params = {k: v for k, v in config.items() if k in ETL_PARAMS}
        if args.bin_width is not None:
            params['bin_width'] = args.bin_width
        if args.keep:
            params['keep'] = args.keep
        if args.trial_col:
            params['trial_col'] = args.trial_col
        if args.no_label:
            params['label'] = False

        run_pipeline(
            data_path=args.data,
            pattern=args.pattern,
            output_dir=args.output_dir,
            output_format=args.format,
            **params
        )
        logging.info("ETL pipeline completed successfully")
    except Exception as e:
        logging.error(f"Error in ETL pipeline: {e}", exc_info=True)
        return 1

    return 0


if __name__ == "__main__":
    exit(main())
