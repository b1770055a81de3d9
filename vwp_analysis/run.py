"""
Analysis Pipeline runner for visual world fixation data.

This module provides a command-line interface to run the analysis pipeline.
"""
import argparse
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List, Sequence, Tuple

import pandas as pd

from vwp_etl.io import load_config
from vwp_analysis.metrics import (
    fixation_timecourse, apply_category_divisors, window_proportions,
)
from vwp_analysis.group import summarize_timecourse, compare_conditions, mixed_effects_model


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


def load_data(long_path: str) -> pd.DataFrame:
    """
    Load the long-format table written by the ETL pipeline.
    """
    long_file = Path(long_path)
    if long_file.suffix.lower() == '.parquet':
        return pd.read_parquet(long_file)
    return pd.read_csv(long_file)


def parse_divisors(items: Optional[List[str]]) -> Dict[str, float]:
    """
    Parse ``CATEGORY=DIVISOR`` strings, e.g. ``["Unrelated=2"]``.
    """
    divisors = {}
    for item in items or []:
        category, sep, value = item.partition('=')
        if not sep or not category:
            raise ValueError(f"Divisor must look like CATEGORY=NUMBER, got '{item}'")
        divisors[category.strip()] = float(value)
    return divisors


def run_analysis(
    long_df: pd.DataFrame,
    output_dir: str,
    window_ms: Optional[float] = None,
    bin_width: Optional[float] = None,
    exclude_conditions: Sequence[str] = (),
    acc_pass: Any = 1,
    category_divisors: Optional[Dict[str, float]] = None,
    stats_window: Optional[Tuple[float, float]] = None,
    stats_object: str = "Target",
    **column_kwargs: Dict[str, Any]
) -> pd.DataFrame:
    """
    Run the analysis pipeline.

    Parameters:
    -----------
    long_df : pd.DataFrame
        Long-format binned data (one row per bin and object)
    output_dir : str
        Directory to save analysis results
    window_ms : Optional[float], optional
        Upper bound of the analysis window in ms, by default None (no bound)
    bin_width : Optional[float], optional
        Bin width used by the ETL stage. When given, a bin is kept only if it
        ends by window_ms; otherwise only its start is checked, by default None
    exclude_conditions : Sequence[str], optional
        Condition labels to drop, by default none
    acc_pass : Any, optional
        Accuracy value of a correct trial, by default 1
    category_divisors : Optional[Dict[str, float]], optional
        Divisor per pooled category, e.g. {"Unrelated": 2}, by default None
    stats_window : Optional[Tuple[float, float]], optional
        (start, end) in ms of the window for condition statistics, by default None
    stats_object : str, optional
        Object category compared across conditions, by default "Target"
    **column_kwargs : Dict[str, Any]
        Column name overrides forwarded to fixation_timecourse

    Returns:
    --------
    pd.DataFrame
        Per-subject time course
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    logging.info("Calculating fixation time course")
    timecourse = fixation_timecourse(
        long_df, window_ms=window_ms, bin_width=bin_width, exclude_conditions=exclude_conditions,
        acc_pass=acc_pass, **column_kwargs
    )

    if category_divisors:
        logging.info(f"Applying category divisors {category_divisors}")
        timecourse = apply_category_divisors(
            timecourse, category_divisors,
            object_col=column_kwargs.get('object_col', 'Object')
        )
    timecourse.to_csv(output_path / "timecourse.csv", index=False)

    subject_col = column_kwargs.get('subject_col', 'Subject')
    condition_col = column_kwargs.get('condition_col', 'Condition')
    object_col = column_kwargs.get('object_col', 'Object')
    time_col = column_kwargs.get('time_col', 'Time')

    logging.info("Summarising across subjects")
    summary = summarize_timecourse(timecourse, by=(condition_col, object_col, time_col),
                                   subject_col=subject_col)
    summary.to_csv(output_path / "timecourse_summary.csv", index=False)

    if stats_window:
        start_ms, end_ms = stats_window
        logging.info(f"Comparing conditions on {stats_object} fixations in [{start_ms}, {end_ms}) ms")
        stats_dir = output_path / "stats"
        stats_dir.mkdir(exist_ok=True)

        window_df = window_proportions(timecourse, start_ms, end_ms,
                                       subject_col=subject_col, condition_col=condition_col,
                                       object_col=object_col, time_col=time_col)
        window_df.to_csv(stats_dir / "window_proportions.csv", index=False)
        target_df = window_df[window_df[object_col] == stats_object]

        try:
            comparison = compare_conditions(target_df, condition_col=condition_col,
                                            subject_col=subject_col)
            comparison.to_csv(stats_dir / "condition_comparison.csv", index=False)
        except Exception as e:
            logging.error(f"Error comparing conditions: {e}")

        try:
            model_results = mixed_effects_model(
                target_df, formula=f"meanFix ~ C({condition_col})", group_var=subject_col
            )
            model_results.to_csv(stats_dir / "mixed_effects_model.csv", index=False)
        except Exception as e:
            logging.error(f"Error running mixed effects model: {e}")

    return timecourse


def main(argv: Optional[Sequence[str]] = None):
    """
    Main entry point for the analysis pipeline.
    """
    parser = argparse.ArgumentParser(description="Visual world analysis pipeline")
    parser.add_argument("--long", type=str, required=True,
                        help="Path to the long-format table from vwp-etl")
    parser.add_argument("--output-dir", type=str, default="analysis_results",
                        help="Directory to save analysis results")
    parser.add_argument("--config", type=str,
                        help="JSON file with analysis parameters; flags override it")
    parser.add_argument("--window-ms", type=float,
                        help="Drop bins at or after this time (ms)")
    parser.add_argument("--bin-width", type=float,
                        help="Bin width of the long table; bins must end by --window-ms")
    parser.add_argument("--exclude-condition", type=str, action="append",
                        help="Condition label to drop (repeatable)")
    parser.add_argument("--divisor", type=str, action="append",
                        help="CATEGORY=NUMBER divisor for pooled categories, e.g. Unrelated=2")
    parser.add_argument("--stats-window", type=float, nargs=2, metavar=("START", "END"),
                        help="Window (ms) for condition statistics")
    parser.add_argument("--stats-object", type=str, default="Target",
                        help="Object category compared across conditions")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                       help="Increase verbosity (can be used multiple times)")

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    try:
        config = load_config(args.config) if args.config else {}
        window_ms = args.window_ms if args.window_ms is not None else config.get('window_ms')
        bin_width = args.bin_width if args.bin_width is not None else config.get('bin_width')
        exclude = args.exclude_condition or config.get('exclude_conditions', [])
        divisors = dict(config.get('category_divisors', {}))
        divisors.update(parse_divisors(args.divisor))
        stats_window = args.stats_window or config.get('stats_window')

        logging.info(f"Loading data from {args.long}")
        long_df = load_data(args.long)

        run_analysis(
            long_df=long_df,
            output_dir=args.output_dir,
            window_ms=window_ms,
            bin_width=bin_width,
            exclude_conditions=exclude,
            acc_pass=config.get('acc_pass', 1),
            category_divisors=divisors,
            stats_window=tuple(stats_window) if stats_window else None,
            stats_object=args.stats_object,
        )

        logging.info("Analysis pipeline completed successfully")
    except Exception as e:
        logging.error(f"Error in analysis pipeline: {e}", exc_info=True)
        return 1

    return 0


if __name__ == "__main__":
    exit(main())
