import logging

import pandas as pd
from typing import Optional, Dict, Sequence

from vwp_etl.preprocess import require_columns, TRIAL_COL

logger = logging.getLogger(__name__)

TIMECOURSE_COLUMNS = ["sumFix", "nTrials", "meanFix"]


def filter_trials(df: pd.DataFrame,
                  acc_col: Optional[str] = "ACC",
                  acc_pass=1,
                  condition_col: str = "Condition",
                  exclude_conditions: Sequence[str] = (),
                  time_col: str = "Time",
                  window_ms: Optional[float] = None,
                  bin_width: Optional[float] = None) -> pd.DataFrame:
    """Keep rows from accurate trials, allowed conditions and the analysis window.

    Parameters
    ----------
    df : pd.DataFrame
        Binned or long-format fixation data.
    acc_col : Optional[str], optional
        Accuracy column; ``None`` disables the accuracy filter.
    acc_pass : optional
        Accuracy value of a correct trial, by default 1.
    condition_col : str, optional
        Condition column, only required when ``exclude_conditions`` is set.
    exclude_conditions : Sequence[str], optional
        Condition labels to drop (e.g. fillers).
    time_col : str, optional
        Time column, only required when ``window_ms`` is set.
    window_ms : Optional[float], optional
        Rows with ``time >= window_ms`` are dropped. ``None`` keeps all times.
        For binned data the time is the bin start.
    bin_width : Optional[float], optional
        Width of the bins. When given, rows whose bin ends after
        ``window_ms`` are dropped too, so no bin reaches past the window.

    Returns
    -------
    pd.DataFrame
        Filtered copy.
    """
    if isinstance(exclude_conditions, str):
        exclude_conditions = [exclude_conditions]
    needed = []
    if acc_col is not None:
        needed.append(acc_col)
    if exclude_conditions:
        needed.append(condition_col)
    if window_ms is not None:
        needed.append(time_col)
    require_columns(df, needed, "filter_trials")

    mask = pd.Series(True, index=df.index)
    if acc_col is not None:
        mask &= df[acc_col] == acc_pass
    if exclude_conditions:
        mask &= ~df[condition_col].isin(list(exclude_conditions))
    if window_ms is not None:
        time = pd.to_numeric(df[time_col], errors="coerce")
        mask &= time < window_ms
        if bin_width is not None:
            mask &= time + bin_width <= window_ms

    logger.debug("filter_trials kept %d of %d rows", int(mask.sum()), len(df))
    return df[mask].copy()


def fixation_timecourse(long_df: pd.DataFrame,
                        subject_col: str = "Subject",
                        condition_col: str = "Condition",
                        object_col: str = "Object",
                        time_col: str = "Time",
                        trial_col: str = TRIAL_COL,
                        fix_col: str = "Fix",
                        acc_col: Optional[str] = "ACC",
                        acc_pass=1,
                        exclude_conditions: Sequence[str] = (),
                        window_ms: Optional[float] = None,
                        bin_width: Optional[float] = None) -> pd.DataFrame:
    """Mean proportion of trials fixating each object, per time bin.

    Rows failing the accuracy, condition or window filters are removed before
    anything is counted. ``nTrials`` is the number of distinct trials per
    subject/condition/object and is shared by every time bin of that group;
    ``sumFix`` counts fixating rows per subject/condition/object/time, with
    missing fixation values counted as not fixating.

    Returns
    -------
    pd.DataFrame
        Columns subject, condition, object, time, ``sumFix``, ``nTrials`` and
        ``meanFix``. ``meanFix`` is NaN where ``nTrials`` is 0.
    """
    group_keys = [subject_col, condition_col, object_col]
    require_columns(long_df, group_keys + [time_col, trial_col, fix_col], "fixation_timecourse")

    kept = filter_trials(long_df, acc_col=acc_col, acc_pass=acc_pass,
                         condition_col=condition_col,
                         exclude_conditions=exclude_conditions,
                         time_col=time_col, window_ms=window_ms,
                         bin_width=bin_width)
    if kept.empty:
        logger.warning("No rows left after filtering; time course is empty")
        return pd.DataFrame(columns=group_keys + [time_col] + TIMECOURSE_COLUMNS)

    kept[fix_col] = kept[fix_col].fillna(False).astype(bool)

    n_trials = (kept.groupby(group_keys, dropna=False)[trial_col]
                .nunique()
                .rename("nTrials")
                .reset_index())
    sums = (kept.groupby(group_keys + [time_col], dropna=False)[fix_col]
            .sum()
            .rename("sumFix")
            .reset_index())

    result = sums.merge(n_trials, on=group_keys, how="left")
    result["sumFix"] = result["sumFix"].astype(int)
    result["nTrials"] = result["nTrials"].astype(int)
    result["meanFix"] = result["sumFix"] / result["nTrials"].where(result["nTrials"] > 0)

    empty = result.loc[result["nTrials"] == 0, group_keys].drop_duplicates()
    if not empty.empty:
        logger.warning("%d subject/condition/object groups have no identifiable trials; meanFix left missing",
                       len(empty))
    return result.sort_values(group_keys + [time_col]).reset_index(drop=True)


def apply_category_divisors(agg: pd.DataFrame, divisors: Dict[str, float],
                            object_col: str = "Object",
                            value_col: str = "meanFix") -> pd.DataFrame:
    """Divide proportions of pooled categories by the number of regions they pool.

    For example ``{"Unrelated": 2}`` when two unrelated pictures share one
    category. Returns a new table; categories not in ``divisors`` are unchanged.
    """
    require_columns(agg, [object_col, value_col], "apply_category_divisors")
    out = agg.copy()
    for category, divisor in divisors.items():
        if not divisor > 0:
            raise ValueError(f"Divisor for '{category}' must be positive, got {divisor}")
        rows = out[object_col] == category
        if not rows.any():
            logger.warning("Category '%s' not present; divisor ignored", category)
        out.loc[rows, value_col] = out.loc[rows, value_col] / divisor
    return out


def window_proportions(agg: pd.DataFrame, start_ms: float, end_ms: float,
                       subject_col: str = "Subject",
                       condition_col: str = "Condition",
                       object_col: str = "Object",
                       time_col: str = "Time",
                       value_col: str = "meanFix") -> pd.DataFrame:
    """Average a time course over the bins in ``[start_ms, end_ms)``.

    Returns one row per subject/condition/object, the usual input for a
    condition comparison.
    """
    if end_ms <= start_ms:
        raise ValueError(f"Empty window: start {start_ms} >= end {end_ms}")
    keys = [subject_col, condition_col, object_col]
    require_columns(agg, keys + [time_col, value_col], "window_proportions")

    in_window = agg[(agg[time_col] >= start_ms) & (agg[time_col] < end_ms)]
    out = in_window.groupby(keys, dropna=False)[value_col].mean().reset_index()
    out["window_start"] = start_ms
    out["window_end"] = end_ms
    return out


def gaze_diagnostics(samples: pd.DataFrame,
                     subject_col: str = "Subject",
                     trial_col: str = "Target",
                     aoi_col: str = "AOI",
                     acc_col: str = "ACC",
                     rt_col: str = "RT") -> pd.DataFrame:
    """Per-trial data quality for raw gaze samples.

    Parameters
    ----------
    samples : pd.DataFrame
        Sample-level data with an AOI code (0 or missing = looking at no object).
    acc_col, rt_col : str, optional
        Carried into the output when present.

    Returns
    -------
    pd.DataFrame
        ``n_samples`` and ``prop_no_aoi`` per subject/trial, plus accuracy and
        RT when available.
    """
    keys = [subject_col, trial_col]
    require_columns(samples, keys + [aoi_col], "gaze_diagnostics")

    work = samples[keys].copy()
    work["no_aoi"] = pd.to_numeric(samples[aoi_col], errors="coerce").fillna(0) == 0
    extra = [c for c in (acc_col, rt_col) if c in samples.columns]
    for col in extra:
        work[col] = pd.to_numeric(samples[col], errors="coerce")

    grouped = work.groupby(keys, dropna=False)
    diag = grouped.agg(n_samples=("no_aoi", "size"), prop_no_aoi=("no_aoi", "mean"))
    if extra:
        diag = diag.join(grouped[extra].first())
    return diag.reset_index()


def subject_diagnostics(trial_diag: pd.DataFrame, subject_col: str = "Subject",
                        acc_col: str = "ACC", rt_col: str = "RT") -> pd.DataFrame:
    """Summarise ``gaze_diagnostics`` output per subject."""
    require_columns(trial_diag, [subject_col, "prop_no_aoi"], "subject_diagnostics")
    grouped = trial_diag.groupby(subject_col, dropna=False)
    out = grouped.agg(n_trials=("prop_no_aoi", "size"), mean_prop_no_aoi=("prop_no_aoi", "mean"))
    if acc_col in trial_diag.columns:
        out["accuracy"] = grouped[acc_col].mean()
    if rt_col in trial_diag.columns:
        out["mean_rt"] = grouped[rt_col].mean()
    return out.reset_index()
